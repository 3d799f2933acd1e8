import argparse
import json
import logging
import signal
import sys
import os
from concurrent import futures

from colorama import Fore, Style, init

from . import __version__
from .actions import ActionRunner
from .config import Settings, load_hosts, load_thresholds
from .engine import AuditOrchestrator, build_steps
from .errors import AuditError, describe_error
from .log import init_logging
from .remote import RemoteChannel
from .reporting import ConsoleReporter, generate_json_report
from .service import AuditService
from .store import AuditStore
from .telemetry import TelemetryClient
from .wpengine import WPEngineClient, import_installs, sync_site_names

logger = logging.getLogger("wpaudit")

EXIT_TIMEOUT = 124


def signal_handler(sig, frame):
    print("\n[!] Force Quitting (Ctrl+C detected)...")
    sys.stdout.flush()
    os._exit(130)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="wpaudit", description="Health audits for remote WordPress installs")
    parser.add_argument("-V", "--version", action="version", version=f"wpaudit {__version__}")

    conf_group = parser.add_argument_group("Configuration")
    conf_group.add_argument("--database", help="SQLAlchemy database URL (default: $WPAUDIT_DATABASE_URL)")
    conf_group.add_argument("--thresholds", help="YAML file overriding default thresholds")
    conf_group.add_argument("--verbose", action="store_true")
    conf_group.add_argument("--log-file", help="Also write DEBUG logs to this rotating file")

    out_group = parser.add_argument_group("Reporting")
    out_group.add_argument("--json-report", help="Path to JSON output (audit and status commands)")

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    hosts = sub.add_parser("hosts", help="Manage the host registry")
    hosts_sub = hosts.add_subparsers(dest="hosts_command", metavar="ACTION")
    hosts_sub.required = True
    imp = hosts_sub.add_parser("import", help="Import hosts from a YAML file or the WP Engine account")
    imp.add_argument("file", nargs="?", help="YAML host inventory")
    imp.add_argument("--wpengine", action="store_true", help="Import every install on the WP Engine account")
    hosts_sub.add_parser("list", help="List registered hosts")
    hosts_sub.add_parser("sync-names", help="Fill in WP Engine site names for hosts missing one")

    audit = sub.add_parser("audit", help="Audit one host and wait for the result")
    audit.add_argument("host", help="Host id, domain or install name")
    audit.add_argument("--timeout", type=float, default=None, help="Give up waiting after N seconds")

    sub.add_parser("audit-all", help="Audit every registered host sequentially")

    status = sub.add_parser("status", help="Show an audit")
    status.add_argument("audit_id")

    cancel = sub.add_parser("cancel", help="Cancel a pending or running audit")
    cancel.add_argument("audit_id")

    sub.add_parser("cleanup", help="Fail audits stuck past the stale threshold")

    issues = sub.add_parser("issues", help="List open issues for a host")
    issues.add_argument("host")

    fix = sub.add_parser("fix", help="Run a remediation action on a host")
    fix.add_argument("host")
    fix.add_argument("action")
    fix.add_argument("--plugin", action="append", dest="plugins", help="Plugin slug (repeatable)")

    sub.add_parser("zones", help="List Cloudflare zones visible to the API token")
    return parser


def _resolve_host(store: AuditStore, key: str):
    host = store.get_host(key) or store.find_host(key)
    if host is None:
        print(f"{Fore.RED}[!] Unknown host: {key}{Style.RESET_ALL}")
        sys.exit(1)
    return host


def _telemetry(settings: Settings):
    return TelemetryClient(settings) if settings.telemetry_token else None


def _platform(settings: Settings):
    return WPEngineClient(settings) if settings.has_platform_credentials else None


def run(args: argparse.Namespace, settings: Settings) -> int:
    reporter = ConsoleReporter()
    store = AuditStore(args.database or settings.database_url)

    if args.command == "hosts":
        if args.hosts_command == "import":
            if args.wpengine:
                imported = import_installs(WPEngineClient(settings), store)
                source = "WP Engine"
            elif args.file:
                imported = [store.add_host(h) for h in load_hosts(args.file)]
                source = args.file
            else:
                raise ValueError("hosts import needs a FILE or --wpengine")
            print(f"[+] Imported {len(imported)} host(s) from {source}")
        elif args.hosts_command == "sync-names":
            synced = sync_site_names(WPEngineClient(settings), store)
            print(f"[+] Synced {synced.succeeded} site name(s), {synced.failed} failed")
        reporter.print_hosts(store.list_hosts())
        return 0

    if args.command == "zones":
        zones = TelemetryClient(settings).list_zones()
        for z in zones:
            print(f"  {z.get('id')}  {z.get('name')}  ({z.get('status')})")
        print(f"[*] {len(zones)} zone(s)")
        return 0

    thresholds = load_thresholds(args.thresholds or settings.thresholds_path)
    channel = RemoteChannel(settings)
    telemetry = _telemetry(settings)
    orchestrator = AuditOrchestrator(store, build_steps(settings, thresholds, channel, telemetry), thresholds)
    service = AuditService(store, orchestrator, settings.stale_after_minutes)
    join_workers = True
    try:
        if args.command == "audit":
            host = _resolve_host(store, args.host)
            print(f"[*] Auditing {host.name} ({host.domain})...")
            audit_id = service.start(host.id)
            try:
                audit = service.wait(audit_id, timeout=args.timeout)
            except futures.TimeoutError:
                store.fail_audit(audit_id, f"Gave up waiting after {args.timeout:g}s")
                print(f"{Fore.RED}[!] Audit {audit_id} still running after {args.timeout:g}s; abandoned{Style.RESET_ALL}")
                join_workers = False
                return EXIT_TIMEOUT
            issues = store.list_issues(host.id) if audit.health_score is not None else []
            reporter.print_audit(audit, issues)
            if args.json_report:
                generate_json_report(audit, issues, args.json_report)
            return 0 if audit.health_score is not None else 1

        if args.command == "audit-all":
            result = service.start_all()
            reporter.print_bulk(result)
            return 0 if result.failed == 0 else 1

        if args.command == "status":
            audit = service.get(args.audit_id)
            issues = store.list_issues(audit.host_id) if audit.health_score is not None else []
            reporter.print_audit(audit, issues)
            if args.json_report:
                generate_json_report(audit, issues, args.json_report)
            return 0

        if args.command == "cancel":
            reporter.print_audit(service.cancel(args.audit_id))
            return 0

        if args.command == "cleanup":
            cleaned = service.cleanup_stale()
            print(f"[+] Cleaned up {cleaned} stale audit(s)")
            return 0

        if args.command == "issues":
            host = _resolve_host(store, args.host)
            reporter.print_issues(store.list_issues(host.id))
            return 0

        if args.command == "fix":
            host = _resolve_host(store, args.host)
            params = {"plugins": args.plugins} if args.plugins else {}
            result = ActionRunner(store, channel, telemetry, _platform(settings)).run(host, args.action, params)
            print(f"{Fore.GREEN}[+] {result.get('message')}{Style.RESET_ALL}")
            print(json.dumps(result, indent=2, default=str))
            return 0
    finally:
        service.shutdown(wait=join_workers)
    return 2


def main():
    init(autoreset=True)
    signal.signal(signal.SIGINT, signal_handler)
    args = build_parser().parse_args()
    init_logging(verbose=args.verbose, log_file=args.log_file)
    settings = Settings.from_env()
    try:
        code = run(args, settings)
    except (AuditError, ValueError, OSError) as e:
        logger.debug("Command failed", exc_info=True)
        print(f"{Fore.RED}[!] {describe_error(e)}{Style.RESET_ALL}")
        sys.exit(1)
    if code == EXIT_TIMEOUT:
        # abandoned audit workers would still be joined at interpreter exit
        logging.shutdown()
        sys.stdout.flush()
        os._exit(code)
    sys.exit(code)


if __name__ == "__main__":
    main()

"""
Remediation actions.

Each action name matches a `fix_action` emitted by the checks (plus
`clear_all_cache`). Runs are recorded in the action log; on success the
host's open issues carrying that fix_action are marked fixed.
"""
import logging
from typing import Any, Callable, Dict, Optional

from . import catalog
from .errors import describe_error
from .models import Host, IssueStatus
from .remote import RemoteChannel, WordPressCli
from .store import AuditStore
from .telemetry import TelemetryClient
from .wpengine import WPEngineClient

logger = logging.getLogger(__name__)

ActionResult = Dict[str, Any]


class ActionRunner:
    def __init__(self, store: AuditStore, channel: RemoteChannel, telemetry: Optional[TelemetryClient] = None,
                 platform: Optional[WPEngineClient] = None):
        self.store = store
        self.channel = channel
        self.telemetry = telemetry
        self.platform = platform
        self.handlers: Dict[str, Callable[[Host, WordPressCli, Dict[str, Any]], ActionResult]] = {
            "clear_all_cache": self._clear_all_cache,
            "update_plugins_staging": self._update_plugins,
            "remove_inactive_plugins": self._remove_plugins,
            "cleanup_database": self._cleanup_database,
            "cleanup_revisions": self._cleanup_revisions,
            "cleanup_transients": self._cleanup_transients,
        }

    def run(self, host: Host, action: str, params: Optional[Dict[str, Any]] = None) -> ActionResult:
        handler = self.handlers.get(action)
        if handler is None:
            raise ValueError(f"Unknown action: {action}. Valid actions: {', '.join(self.handlers)}")
        params = params or {}

        log_id = self.store.start_action(host.id, action, params)
        logger.info("Running %s on %s", action, host.name)
        try:
            result = handler(host, WordPressCli(self.channel, host), params)
        except Exception as e:
            logger.error("Action %s failed for %s: %s", action, host.name, e)
            self.store.finish_action(log_id, error=describe_error(e))
            raise
        self.store.finish_action(log_id, result=result)

        resolved = 0
        for issue in self.store.list_issues(host.id):
            if issue.fix_action == action and self.store.set_issue_status(issue.id, IssueStatus.FIXED):
                resolved += 1
        result["resolved_issues"] = resolved
        return result

    def _clear_all_cache(self, host: Host, cli: WordPressCli, params: Dict[str, Any]) -> ActionResult:
        cleared = ["wordpress"]
        cli.flush_cache()
        if self.platform is not None:
            self.platform.purge_cache(host.install_name)
            cleared.append("wpengine")
        if host.telemetry_zone_id and self.telemetry is not None:
            self.telemetry.purge_cache(host.telemetry_zone_id)
            cleared.append("cloudflare")
        return {"message": f"All caches cleared for {host.name}", "cleared": cleared}

    def _update_plugins(self, host: Host, cli: WordPressCli, params: Dict[str, Any]) -> ActionResult:
        requested = params.get("plugins") or []
        skipped = sorted(catalog.NO_AUTO_UPDATE_PLUGINS.intersection(requested) if requested
                         else catalog.NO_AUTO_UPDATE_PLUGINS)
        if requested:
            updated = [slug for slug in requested if slug not in catalog.NO_AUTO_UPDATE_PLUGINS]
            for slug in updated:
                cli.update_plugin(slug)
            output = f"Updated {len(updated)} plugin(s)"
        else:
            output = cli.update_all_plugins(exclude=catalog.NO_AUTO_UPDATE_PLUGINS)
        return {"message": f"Plugins updated on {host.name}", "details": output, "skipped": skipped}

    def _remove_plugins(self, host: Host, cli: WordPressCli, params: Dict[str, Any]) -> ActionResult:
        plugins = params.get("plugins") or []
        if not plugins:
            raise ValueError("No plugins specified for removal")
        for slug in plugins:
            cli.delete_plugin(slug)
        return {"message": f"Removed {len(plugins)} plugin(s) from {host.name}", "removed": list(plugins)}

    def _cleanup_database(self, host: Host, cli: WordPressCli, params: Dict[str, Any]) -> ActionResult:
        results = {
            "revisions": cli.delete_revisions(),
            "transients": cli.delete_expired_transients(),
            "optimize": cli.optimize_db(),
        }
        return {"message": f"Database cleanup completed for {host.name}", "results": results}

    def _cleanup_revisions(self, host: Host, cli: WordPressCli, params: Dict[str, Any]) -> ActionResult:
        return {"message": f"Post revisions cleaned up for {host.name}", "details": cli.delete_revisions()}

    def _cleanup_transients(self, host: Host, cli: WordPressCli, params: Dict[str, Any]) -> ActionResult:
        return {"message": f"Transients cleaned up for {host.name}", "details": cli.delete_expired_transients()}

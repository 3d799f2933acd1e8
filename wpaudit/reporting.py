import json
import logging
from typing import Any, Dict, List, Optional

from colorama import Fore, Style

from .models import Audit, AuditStatus, BulkResult, Host, HealthStatus, Issue, Severity
from .scoring import get_health_status, severity_counts

logger = logging.getLogger(__name__)

SEVERITY_COLORS = {
    Severity.CRITICAL: Fore.RED,
    Severity.WARNING: Fore.YELLOW,
    Severity.INFO: Fore.CYAN,
}

HEALTH_COLORS = {
    HealthStatus.HEALTHY: Fore.GREEN,
    HealthStatus.ATTENTION: Fore.YELLOW,
    HealthStatus.CRITICAL: Fore.RED,
}

STATUS_COLORS = {
    AuditStatus.PENDING: Style.DIM,
    AuditStatus.RUNNING: Fore.CYAN,
    AuditStatus.COMPLETED: Fore.GREEN,
    AuditStatus.FAILED: Fore.RED,
}


def audit_to_dict(audit: Audit) -> Dict[str, Any]:
    return {
        "id": audit.id,
        "host_id": audit.host_id,
        "status": audit.status.value,
        "started_at": audit.started_at.isoformat() if audit.started_at else None,
        "completed_at": audit.completed_at.isoformat() if audit.completed_at else None,
        "health_score": audit.health_score,
        "summary": audit.summary,
        "progress": audit.progress.to_dict(),
        "error_message": audit.error_message,
        "raw_data": audit.raw_data,
    }


def issue_to_dict(issue: Issue) -> Dict[str, Any]:
    return {
        "id": issue.id,
        "audit_id": issue.audit_id,
        "category": issue.category.value,
        "severity": issue.severity.value,
        "title": issue.title,
        "description": issue.description,
        "recommendation": issue.recommendation,
        "auto_fixable": issue.auto_fixable,
        "fix_action": issue.fix_action,
        "fix_params": issue.fix_params,
        "status": issue.status.value,
    }


class ConsoleReporter:
    def print_hosts(self, hosts: List[Host]):
        print(f"\n{Style.BRIGHT}=== HOSTS ({len(hosts)}) ==={Style.RESET_ALL}\n")
        for h in hosts:
            zone = f"{Fore.GREEN}cf{Style.RESET_ALL}" if h.telemetry_zone_id else f"{Style.DIM}--{Style.RESET_ALL}"
            print(f"  [{zone}] {h.name:<30} {h.domain:<35} {h.install_name} ({h.environment})")

    def print_audit(self, audit: Audit, issues: Optional[List[Issue]] = None):
        color = STATUS_COLORS.get(audit.status, "")
        print(f"\n{Style.BRIGHT}=== AUDIT {audit.id} ==={Style.RESET_ALL}")
        print(f"Status:   {color}{audit.status.value.upper()}{Style.RESET_ALL}")
        print(f"Progress: {audit.progress.step} ({audit.progress.percent}%)")
        if audit.error_message:
            print(f"Error:    {Fore.RED}{audit.error_message}{Style.RESET_ALL}")
        if audit.health_score is not None:
            health = get_health_status(audit.health_score)
            print(f"Score:    {HEALTH_COLORS[health]}{audit.health_score}/100 ({health.value}){Style.RESET_ALL}")
        if audit.summary:
            print(audit.summary)
        if issues:
            self.print_issues(issues)

    def print_issues(self, issues: List[Issue]):
        counts = severity_counts(issues)
        print(f"\n{Style.BRIGHT}Issues: {counts['critical']} critical, {counts['warning']} warning, "
              f"{counts['info']} info{Style.RESET_ALL}")
        order = {Severity.CRITICAL: 0, Severity.WARNING: 1, Severity.INFO: 2}
        for issue in sorted(issues, key=lambda i: order[i.severity]):
            color = SEVERITY_COLORS[issue.severity]
            fix = f" {Fore.GREEN}[fix: {issue.fix_action}]{Style.RESET_ALL}" if issue.fix_action else ""
            print(f"  {color}[{issue.severity.value.upper():<8}]{Style.RESET_ALL} "
                  f"{issue.category.value:<11} {issue.title}{fix}")
            if issue.recommendation:
                print(f"      {Style.DIM}{issue.recommendation}{Style.RESET_ALL}")

    def print_bulk(self, result: BulkResult):
        print(f"\n{Style.BRIGHT}Bulk audit:{Style.RESET_ALL} "
              f"{Fore.GREEN}{result.succeeded} succeeded{Style.RESET_ALL}, "
              f"{Fore.RED if result.failed else ''}{result.failed} failed{Style.RESET_ALL} "
              f"(of {result.total})")


def generate_json_report(audit: Audit, issues: List[Issue], output_path: str) -> bool:
    report = {
        "audit": audit_to_dict(audit),
        "summary": severity_counts(issues),
        "issues": [issue_to_dict(i) for i in issues],
    }
    try:
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2, default=str)
    except OSError as e:
        logger.error("Failed to write JSON report: %s", e)
        return False
    print(f"\nJSON Report written to: {output_path}")
    return True

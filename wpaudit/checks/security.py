import logging
from typing import Any, Dict, List, Optional

from .. import catalog
from ..config import Thresholds
from ..errors import CommandTimeoutError, RemoteCommandError, explain_remote_error
from ..models import Category, CheckResult, Host, Issue, Severity
from ..remote import RemoteChannel, WordPressCli
from .base import Check

logger = logging.getLogger(__name__)

WEAK_USERNAMES = {"admin", "administrator", "root", "user", "test"}
MAX_ADMINS = 5
TRUTHY = {"1", "true", "yes", "on"}

CHECKSUM_LABELS = {
    "modified": "Modified",
    "missing": "Missing",
    "unexpected": "Unexpected",
}


class SecurityCheck(Check):
    category = Category.SECURITY
    name = "security"

    def __init__(self, channel: RemoteChannel, thresholds: Optional[Thresholds] = None):
        super().__init__(thresholds)
        self.channel = channel

    def run(self, host: Host) -> CheckResult:
        cli = WordPressCli(self.channel, host)
        issues: List[Issue] = []

        plugins = cli.plugin_list()
        active = [p.get("name", "") for p in plugins if p.get("status") in ("active", "active-network")]
        issues.extend(self._security_plugin(active))

        version = cli.core_version()
        update_available = False
        try:
            updates = cli.core_check_update()
        except RemoteCommandError as e:
            issues.append(self.partial("Could not check for core updates", explain_remote_error(e)))
        else:
            if updates:
                update_available = True
                latest = updates[0].get("version", "?")
                issues.append(self.issue(
                    Severity.CRITICAL,
                    f"WordPress core update available ({version} -> {latest})",
                    "Running outdated WordPress core is a security risk.",
                    "Update WordPress core on staging first, then production.",
                ))

        integrity = self._integrity(cli, issues)

        admins = cli.user_list("administrator")
        weak = [u.get("user_login", "") for u in admins if u.get("user_login", "").lower() in WEAK_USERNAMES]
        if weak:
            issues.append(self.issue(
                Severity.WARNING,
                f"Weak admin username detected: {', '.join(weak)}",
                "Common usernames are targets for brute force attacks.",
                "Create new admin account with unique username and remove weak ones.",
            ))
        if len(admins) > MAX_ADMINS:
            issues.append(self.issue(
                Severity.INFO,
                f"{len(admins)} administrator accounts",
                "Consider if all admin accounts are necessary.",
                "Review and remove unnecessary admin accounts.",
            ))

        debug_mode = self._debug_enabled(cli)
        if debug_mode:
            issues.append(self.issue(
                Severity.WARNING,
                "Debug mode is enabled",
                "WP_DEBUG can expose sensitive information.",
                "Ensure WP_DEBUG is false in production.",
            ))

        data: Dict[str, Any] = {
            "wp_version": version,
            "wp_update_available": update_available,
            "core_integrity": integrity,
            "debug_mode": debug_mode,
            "security_plugin": catalog.find_plugin(active, catalog.SECURITY_PLUGIN),
            "admin_users": [
                {"id": u.get("ID"), "username": u.get("user_login"), "email": u.get("user_email"),
                 "display_name": u.get("display_name")}
                for u in admins
            ],
        }
        return CheckResult(data=data, issues=issues)

    def _security_plugin(self, active: List[str]) -> List[Issue]:
        if catalog.find_plugin(active, catalog.SECURITY_PLUGIN):
            return []
        other = [s for s in active if s in catalog.OTHER_SECURITY_PLUGINS]
        if other:
            return [self.issue(
                Severity.INFO,
                f"Non-standard security plugin: {other[0]}",
                "Site is using a different security plugin than the standard (Really Simple Security).",
                "Consider migrating to Really Simple Security for consistency across sites.",
            )]
        return [self.issue(
            Severity.WARNING,
            "No security plugin detected",
            "No security plugin is active.",
            "Install and configure Really Simple Security (standard plugin).",
        )]

    def _integrity(self, cli: WordPressCli, issues: List[Issue]) -> Dict[str, Any]:
        try:
            result = cli.verify_checksums()
        except CommandTimeoutError as e:
            issues.append(self.issue(Severity.WARNING, "Core checksum verification timed out", str(e),
                                     "Run `wp core verify-checksums` manually when the server is quiet."))
            return {"valid": None}

        if result["valid"]:
            return result
        failed = {k: result.get(k) or [] for k in CHECKSUM_LABELS}
        if not any(failed.values()) and "verify" not in (result.get("error") or "").lower():
            issues.append(self.partial("Core checksum verification unavailable", result.get("error") or ""))
            return result

        parts = [f"{CHECKSUM_LABELS[k]}: {', '.join(files)}" for k, files in failed.items() if files]
        issues.append(self.issue(
            Severity.CRITICAL,
            "WordPress core file integrity check failed",
            "; ".join(parts) or result.get("error") or "Checksums do not match.",
            "Investigate modified core files for potential compromise.",
        ))
        return result

    def _debug_enabled(self, cli: WordPressCli) -> bool:
        try:
            value = cli.config_get("WP_DEBUG")
        except RemoteCommandError as e:
            # constant not defined in wp-config.php
            logger.debug("WP_DEBUG lookup failed: %s", e.first_line)
            return False
        return value.strip().lower() in TRUTHY

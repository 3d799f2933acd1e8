from typing import Any, Dict, List, Optional

from .. import catalog
from ..config import Thresholds
from ..models import Category, CheckResult, Host, Issue, Severity
from ..remote import RemoteChannel, WordPressCli
from .base import Check


class PluginCheck(Check):
    category = Category.PLUGINS
    name = "plugins"

    def __init__(self, channel: RemoteChannel, thresholds: Optional[Thresholds] = None):
        super().__init__(thresholds)
        self.channel = channel

    def run(self, host: Host) -> CheckResult:
        plugins: List[Dict[str, Any]] = WordPressCli(self.channel, host).plugin_list()
        issues: List[Issue] = []

        active = [p for p in plugins if p.get("status") in ("active", "active-network")]
        inactive = [p for p in plugins if p.get("status") == "inactive"]
        outdated = [p for p in plugins if p.get("update") == "available"]
        active_slugs = [p.get("name", "") for p in active]

        inactive_names = [p.get("name", "") for p in inactive]
        found = self.threshold_issue(
            self.thresholds.inactive_plugins, len(inactive),
            f"{len(inactive)} inactive plugins installed",
            f"Inactive plugins: {', '.join(inactive_names)}",
            {"critical": "Remove inactive plugins to reduce security surface and improve performance.",
             "warning": "Consider removing inactive plugins."},
            fix_action="remove_inactive_plugins",
            fix_params={"plugins": inactive_names},
        )
        if found:
            issues.append(found)

        outdated_names = [p.get("name", "") for p in outdated]
        found = self.threshold_issue(
            self.thresholds.outdated_plugins, len(outdated),
            f"{len(outdated)} plugins need updates",
            "Outdated: " + ", ".join(
                f"{p.get('name')} ({p.get('version')} -> {p.get('update_version')})" for p in outdated
            ),
            {"critical": "Update plugins on staging first, verify, then promote to production.",
             "warning": "Schedule plugin updates."},
            fix_action="update_plugins_staging",
            fix_params={"plugins": outdated_names},
        )
        if found:
            issues.append(found)

        for canonical in catalog.REQUIRED_PLUGINS:
            if catalog.find_plugin(active_slugs, canonical):
                continue
            alternatives = catalog.deprecated_alternatives_for(canonical, active_slugs)
            if alternatives:
                issues.append(self.issue(
                    Severity.WARNING,
                    f"Deprecated alternative active instead of {canonical}: {', '.join(alternatives)}",
                    f"{', '.join(alternatives)} still works but is no longer part of the standard stack.",
                    f"Replace {', '.join(alternatives)} with {canonical}.",
                ))
            else:
                issues.append(self.issue(
                    Severity.CRITICAL,
                    f"Required plugin missing: {canonical}",
                    f"The plugin {canonical} is part of the standard stack but is not active.",
                    f"Install and activate {canonical}.",
                ))

        for slug in active_slugs:
            reason = catalog.PROBLEMATIC_PLUGINS.get(slug)
            if reason:
                issues.append(self.issue(
                    Severity.WARNING,
                    f"Problematic plugin active: {slug}",
                    reason,
                    f"Consider replacing or removing {slug}.",
                ))

        non_standard = [s for s in active_slugs if s not in catalog.STANDARD_PLUGINS]
        if len(non_standard) > self.thresholds.non_standard_plugins_info:
            issues.append(self.issue(
                Severity.INFO,
                f"{len(non_standard)} non-standard plugins",
                f"Custom plugins: {', '.join(non_standard)}",
                "Review if all custom plugins are necessary.",
            ))

        data = {
            "total": len(plugins),
            "active": len(active),
            "inactive": len(inactive),
            "needs_update": len(outdated),
            "plugins": [
                {
                    "name": p.get("name"),
                    "status": p.get("status"),
                    "version": p.get("version"),
                    "update_version": p.get("update_version"),
                    "title": p.get("title"),
                }
                for p in plugins
            ],
        }
        return CheckResult(data=data, issues=issues)

import logging
import re
from typing import Any, Dict, List, Optional

from ..config import Thresholds
from ..errors import RemoteCommandError, explain_remote_error
from ..models import Category, CheckResult, Host, Issue, Severity
from ..remote import RemoteChannel, WordPressCli
from .base import Check

logger = logging.getLogger(__name__)

MB = 1024 * 1024


def table_size_bytes(row: Dict[str, Any]) -> int:
    """`wp db size --tables` reports "Size" as e.g. "16384" or "16384 B"."""
    if row.get("Data_length") is not None:
        return int(row.get("Data_length") or 0) + int(row.get("Index_length") or 0)
    m = re.search(r"\d+", str(row.get("Size", "")))
    return int(m.group(0)) if m else 0


class DatabaseCheck(Check):
    category = Category.DATABASE
    name = "database"

    def __init__(self, channel: RemoteChannel, thresholds: Optional[Thresholds] = None):
        super().__init__(thresholds)
        self.channel = channel

    def run(self, host: Host) -> CheckResult:
        cli = WordPressCli(self.channel, host)
        t = self.thresholds
        issues: List[Issue] = []

        tables = [{"name": r.get("Name"), "size_mb": round(table_size_bytes(r) / MB, 2)} for r in cli.db_tables()]
        total_size_mb = round(sum(x["size_mb"] for x in tables), 2)

        autoload_bytes = 0
        large_options = []
        for opt in cli.autoload_options():
            size = int(opt.get("size_bytes") or 0)
            autoload_bytes += size
            if size > t.large_autoload_option_bytes:
                large_options.append({"name": opt.get("option_name"), "size_bytes": size})
        autoload_kb = autoload_bytes / 1024

        revisions = cli.revision_count()

        transients: Optional[int]
        try:
            transients = cli.transient_count()
        except RemoteCommandError as e:
            transients = None
            issues.append(self.partial("Transient count unavailable", explain_remote_error(e),
                                       "Check that the transient command is available for this WP-CLI version."))

        try:
            spam_comments: Optional[int] = cli.spam_comment_count()
        except RemoteCommandError as e:
            logger.warning("Spam comment count failed on %s: %s", host.install_name, e)
            spam_comments = None

        candidates = [
            self.threshold_issue(
                t.database_size_mb, total_size_mb,
                f"Database is {round(total_size_mb)}MB",
                "Largest tables: " + ", ".join(
                    f"{x['name']} ({x['size_mb']}MB)" for x in self._largest(tables)
                ),
                "Review large tables for logs, sessions or orphaned plugin data.",
            ),
            self.threshold_issue(
                t.autoload_size_kb, autoload_kb,
                f"Autoload data is {round(autoload_kb)}KB",
                "Large autoload options: " + (", ".join(o["name"] for o in large_options) or "none over the limit"),
                {"critical": "Identify plugins storing excessive data in autoload options and clean up.",
                 "warning": "Review plugins with large autoload footprints."},
            ),
            self.threshold_issue(
                t.revision_count, revisions,
                f"{revisions:,} post revisions",
                "Excessive revisions are bloating the database.",
                {"critical": "Clean up old revisions and configure revision limits.",
                 "warning": "Schedule periodic revision cleanup."},
                fix_action="cleanup_revisions",
            ),
        ]
        if transients is not None:
            candidates.append(self.threshold_issue(
                t.transient_count, transients,
                f"{transients:,} transients in database",
                "Excessive transients indicate caching issues.",
                {"critical": "Clean expired transients and investigate source.",
                 "warning": "Run transient cleanup."},
                fix_action="cleanup_transients",
            ))
        issues.extend(i for i in candidates if i)

        if large_options:
            issues.append(self.issue(
                Severity.INFO,
                f"{len(large_options)} autoloaded options over {t.large_autoload_option_bytes // 1000}KB",
                ", ".join(f"{o['name']} ({o['size_bytes']} bytes)" for o in large_options),
                "Set autoload to 'no' for options not needed on every request.",
            ))

        data = {
            "total_size_mb": total_size_mb,
            "autoload_size_kb": round(autoload_kb, 1),
            "revision_count": revisions,
            "transient_count": transients,
            "spam_comment_count": spam_comments,
            "large_autoload_options": large_options,
            "largest_tables": self._largest(tables),
        }
        return CheckResult(data=data, issues=issues)

    @staticmethod
    def _largest(tables: List[Dict[str, Any]], limit: int = 10) -> List[Dict[str, Any]]:
        return sorted(tables, key=lambda x: x["size_mb"], reverse=True)[:limit]

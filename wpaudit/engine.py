"""
Audit orchestration.

One audit runs the six checks strictly in order:

    plugins -> database -> performance -> security -> seo -> crawl

Progress ticks are posted to a single-worker writer and never block a step.
Before each step the audit row is re-read so that an operator cancel stops
the run at the next module boundary. The terminal write is conditional on
the audit still being `running`.
"""
import logging
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .checks import Check, CrawlCheck, DatabaseCheck, PerformanceCheck, PluginCheck, SecurityCheck, SeoCheck
from .config import Settings, Thresholds
from .errors import AuditCancelledError, AuditInProgressError, AuditNotFoundError, HostNotFoundError
from .locks import HostLockRegistry
from .models import AuditOutcome, BulkResult, Issue
from .remote import RemoteChannel
from .scoring import calculate_health_score, summarize
from .store import AuditStore
from .telemetry import TelemetryClient

logger = logging.getLogger(__name__)

PROGRESS_FLUSH_TIMEOUT = 10.0


@dataclass
class AuditStep:
    key: str
    label: str
    percent: int
    check: Check


def build_steps(settings: Settings, thresholds: Thresholds, channel: Optional[RemoteChannel] = None,
                telemetry: Optional[TelemetryClient] = None) -> List[AuditStep]:
    channel = channel or RemoteChannel(settings)
    if telemetry is None and settings.telemetry_token:
        telemetry = TelemetryClient(settings)
    return [
        AuditStep("plugins", "Checking plugins", 20, PluginCheck(channel, thresholds)),
        AuditStep("database", "Analyzing database", 40, DatabaseCheck(channel, thresholds)),
        AuditStep("performance", "Measuring performance", 60, PerformanceCheck(telemetry, thresholds)),
        AuditStep("security", "Scanning security", 80, SecurityCheck(channel, thresholds)),
        AuditStep("seo", "Checking SEO", 95, SeoCheck(channel, thresholds)),
        AuditStep("crawl", "Crawling site", 100, CrawlCheck(settings, thresholds)),
    ]


class ProgressWriter:
    """Fire-and-forget progress updates, applied in order by one worker."""

    def __init__(self, store: AuditStore, audit_id: str):
        self.store = store
        self.audit_id = audit_id
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"progress-{audit_id[:8]}")
        self._pending: List[Future] = []

    def post(self, step: str, percent: int) -> None:
        future = self._executor.submit(self.store.update_progress, self.audit_id, step, percent)
        future.add_done_callback(self._report)
        self._pending.append(future)

    def _report(self, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.warning("[Audit %s] Progress update failed: %s", self.audit_id, exc)

    def close(self, timeout: float = PROGRESS_FLUSH_TIMEOUT) -> None:
        wait(self._pending, timeout=timeout)
        self._executor.shutdown(wait=False)


class AuditOrchestrator:
    def __init__(self, store: AuditStore, steps: Sequence[AuditStep], thresholds: Optional[Thresholds] = None,
                 locks: Optional[HostLockRegistry] = None):
        self.store = store
        self.steps = list(steps)
        self.thresholds = thresholds or Thresholds()
        self.locks = locks or HostLockRegistry()

    def run(self, host_id: str, audit_id: Optional[str] = None) -> AuditOutcome:
        host = self.store.get_host(host_id)
        if host is None:
            raise HostNotFoundError(f"Host not found: {host_id}")

        owner = audit_id or f"run-{uuid.uuid4().hex[:8]}"
        with self.locks.hold(host.id, owner):
            if audit_id:
                audit = self.store.get_audit(audit_id)
                if audit is None:
                    raise AuditNotFoundError(f"Audit {audit_id} not found")
            else:
                active = self.store.active_audit(host.id)
                if active is not None:
                    raise AuditInProgressError(f"Audit {active.id} is already {active.status.value} for {host.name}")
                audit = self.store.create_audit(host.id)
            if not self.store.mark_running(audit.id):
                raise AuditCancelledError(f"Audit {audit.id} was cancelled before it started")

            logger.info("[Audit %s] Starting audit for %s (%s)", audit.id, host.name, host.install_name)
            progress = ProgressWriter(self.store, audit.id)
            try:
                issues, raw_data = self._run_steps(host, audit.id, progress)
                progress.close()
                score = calculate_health_score(issues, self.thresholds.severity_deduction)
                summary = summarize(score, issues)
                completed = self.store.complete_audit(audit.id, host.id, score, summary, raw_data, issues)
            except AuditCancelledError:
                progress.close()
                logger.info("[Audit %s] Stopped: audit was cancelled", audit.id)
                raise
            except Exception as e:
                progress.close()
                logger.error("[Audit %s] Failed: %s", audit.id, e)
                self.store.fail_audit(audit.id, str(e))
                raise
            if not completed:
                raise AuditCancelledError(f"Audit {audit.id} was cancelled; results discarded")

        logger.info("[Audit %s] Completed. %s", audit.id, summary)
        return AuditOutcome(audit_id=audit.id, health_score=score, issue_count=len(issues), summary=summary)

    def _run_steps(self, host, audit_id: str, progress: ProgressWriter):
        issues: List[Issue] = []
        raw_data: Dict[str, Any] = {}
        for step in self.steps:
            self._check_cancelled(audit_id)
            progress.post(step.label, step.percent)
            logger.info("[Audit %s] %s (%d%%)", audit_id, step.label, step.percent)
            result = step.check.run(host)
            issues.extend(result.issues)
            raw_data[step.key] = result.data
            logger.debug("[Audit %s] %s: %d issue(s)", audit_id, step.key, len(result.issues))
        self._check_cancelled(audit_id)
        return issues, raw_data

    def _check_cancelled(self, audit_id: str) -> None:
        audit = self.store.get_audit(audit_id)
        if audit is None or audit.status.is_terminal:
            raise AuditCancelledError(f"Audit {audit_id} is no longer running")


def run_all(orchestrator: AuditOrchestrator) -> BulkResult:
    """Audit every host in turn; one host failing never stops the sweep."""
    result = BulkResult()
    hosts = orchestrator.store.list_hosts()
    logger.info("Bulk audit over %d host(s)", len(hosts))
    for host in hosts:
        try:
            orchestrator.run(host.id)
        except Exception as e:
            result.failed += 1
            logger.error("Audit failed for %s: %s", host.name, e)
        else:
            result.succeeded += 1
    logger.info("Bulk audit done: %d succeeded, %d failed", result.succeeded, result.failed)
    return result

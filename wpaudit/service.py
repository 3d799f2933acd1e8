"""
Audit lifecycle boundary.

`start` creates the audit row synchronously and hands the run to a thread
pool; whatever happens inside the detached run ends in a terminal audit
state. A host that already has a pending or running audit is rejected, not
queued. Everything else here is synchronous.
"""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from .engine import AuditOrchestrator, run_all
from .errors import AuditCancelledError, AuditInProgressError, AuditNotFoundError, HostNotFoundError
from .models import Audit, AuditOutcome, BulkResult
from .store import AuditStore, utcnow

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Audit was manually cancelled"
STALE_MESSAGE = "Audit timed out and was automatically cleaned up"
DEFAULT_STALE_MINUTES = 5.0


class AuditService:
    def __init__(self, store: AuditStore, orchestrator: AuditOrchestrator,
                 stale_after_minutes: float = DEFAULT_STALE_MINUTES, max_workers: int = 4):
        self.store = store
        self.orchestrator = orchestrator
        self.stale_after = timedelta(minutes=stale_after_minutes)
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="audit")
        self._futures: Dict[str, Future] = {}
        # serialises the active-audit check with the row insert
        self._start_guard = threading.Lock()

    def start(self, host_id: str) -> str:
        host = self.store.get_host(host_id) or self.store.find_host(host_id)
        if host is None:
            raise HostNotFoundError(f"Host not found: {host_id}")
        with self._start_guard:
            active = self.store.active_audit(host.id)
            if active is not None:
                raise AuditInProgressError(f"Audit {active.id} is already {active.status.value} for {host.name}")
            audit = self.store.create_audit(host.id)
        self._futures[audit.id] = self.executor.submit(self._run_detached, host.id, audit.id)
        logger.info("[Audit %s] Queued for %s", audit.id, host.name)
        return audit.id

    def _run_detached(self, host_id: str, audit_id: str) -> Optional[AuditOutcome]:
        try:
            return self.orchestrator.run(host_id, audit_id)
        except AuditCancelledError as e:
            logger.info("[Audit %s] %s", audit_id, e)
        except Exception as e:
            logger.exception("[Audit %s] Detached run failed", audit_id)
            # no-op if the orchestrator already wrote a terminal state
            self.store.fail_audit(audit_id, str(e))
        return None

    def start_all(self) -> BulkResult:
        return run_all(self.orchestrator)

    def get(self, audit_id: str) -> Audit:
        audit = self.store.get_audit(audit_id)
        if audit is None:
            raise AuditNotFoundError(f"Audit {audit_id} not found")
        return audit

    def cancel(self, audit_id: str) -> Audit:
        audit = self.store.cancel_audit(audit_id, CANCELLED_MESSAGE)
        logger.info("[Audit %s] Cancelled by operator", audit_id)
        return audit

    def cleanup_stale(self, now: Optional[datetime] = None) -> int:
        """Force-fail audits still pending/running past the stale threshold."""
        current = now or utcnow()
        if current.tzinfo is not None:
            current = current.astimezone(timezone.utc).replace(tzinfo=None)
        cleaned = self.store.fail_stale_audits(current - self.stale_after, STALE_MESSAGE)
        if cleaned:
            logger.warning("Cleaned up %d stale audit(s)", cleaned)
        return cleaned

    def wait(self, audit_id: str, timeout: Optional[float] = None) -> Audit:
        future = self._futures.get(audit_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.get(audit_id)

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from .errors import AuditInProgressError


class HostLockRegistry:
    """
    In-process, non-blocking per-host locks.

    A second audit for a host that is already being audited is rejected with
    AuditInProgressError rather than queued.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._holders: Dict[str, str] = {}

    def acquire(self, host_id: str, owner: str) -> bool:
        with self._guard:
            if host_id in self._holders:
                return False
            self._holders[host_id] = owner
            return True

    def release(self, host_id: str, owner: str) -> None:
        with self._guard:
            # only the holder may release
            if self._holders.get(host_id) == owner:
                del self._holders[host_id]

    def holder(self, host_id: str) -> Optional[str]:
        with self._guard:
            return self._holders.get(host_id)

    def is_locked(self, host_id: str) -> bool:
        return self.holder(host_id) is not None

    @contextmanager
    def hold(self, host_id: str, owner: str) -> Iterator[None]:
        if not self.acquire(host_id, owner):
            raise AuditInProgressError(
                f"Host {host_id} already has an audit in progress ({self.holder(host_id)})"
            )
        try:
            yield
        finally:
            self.release(host_id, owner)

import logging
import threading
from contextlib import contextmanager

from .exceptions import ConcurrencyConflictError

logger = logging.getLogger("allocation_service")


class ResourceLockManager:
    """
    One lock per (resource kind, resource id).

    Requests for different resources never wait on each other. A request that
    cannot get the lock within timeout_seconds fails with
    ConcurrencyConflictError instead of waiting forever.
    """

    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout_seconds = timeout_seconds
        self._locks = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key):
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, resource_kind, resource_id: int):
        lock = self._lock_for((resource_kind, resource_id))
        if not lock.acquire(timeout=self.timeout_seconds):
            logger.warning(
                f"Timed out after {self.timeout_seconds}s waiting for {resource_kind.value} {resource_id}"
            )
            raise ConcurrencyConflictError(resource_kind, resource_id)
        try:
            yield
        finally:
            lock.release()

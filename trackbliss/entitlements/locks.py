"""
Per-tenant lock registry.

Used by the resolver (single-flight cache fills) and by the credit ledger
(same-tenant draws in one process run one at a time). Locks are created on
first use and dropped when the last holder releases them.
"""

from contextlib import contextmanager
from threading import Lock
from typing import Dict, Iterator, Optional


class LockTimeout(Exception):
    """Raised when a tenant lock cannot be acquired in time."""
    pass


class TenantLockRegistry:

    def __init__(self):
        self._locks: Dict[str, Lock] = {}
        self._refcounts: Dict[str, int] = {}
        self._registry_lock = Lock()

    def _acquire_ref(self, key: str) -> Lock:
        with self._registry_lock:
            if key not in self._locks:
                self._locks[key] = Lock()
                self._refcounts[key] = 0
            self._refcounts[key] += 1
            return self._locks[key]

    def _release_ref(self, key: str) -> None:
        with self._registry_lock:
            self._refcounts[key] -= 1
            if self._refcounts[key] == 0:
                del self._refcounts[key]
                del self._locks[key]

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None) -> Iterator[None]:
        """
        Hold the lock for `key` for the duration of the block.

        Raises:
            LockTimeout: If timeout elapses before the lock is acquired
        """
        lock = self._acquire_ref(key)
        try:
            acquired = lock.acquire(timeout=timeout) if timeout is not None else lock.acquire()
            if not acquired:
                raise LockTimeout(f"Timed out waiting for lock on {key}")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._release_ref(key)

"""
Entitlement Cache - process-wide, TTL-bounded cache of resolved snapshots.

Provides:
- EntitlementCache: thread-safe map tenant_id -> (Entitlements, expires_at)
- Generation counters so a snapshot computed before an invalidation is
  never stored after it

CRITICAL: Every write that changes a subscription, a module subscription or
a credit account MUST invalidate the tenant synchronously, before reporting
success. No entry is ever served past its TTL, even if an invalidation was
missed.
"""

import logging
import time
from threading import Lock
from typing import Callable, Dict, Optional, Tuple

from trackbliss.entitlements.models import Entitlements
from trackbliss.entitlements.settings import DEFAULT_CACHE_TTL_SECONDS, DEFAULT_CACHE_MAX_SIZE

logger = logging.getLogger(__name__)

Generation = Tuple[int, int]


class EntitlementCache:
    """
    In-process cache for tenant entitlements.

    Constructed once per process and passed by reference to the resolver,
    enforcer and gate. Tests build a fresh instance per case.

    Usage:
        cache = EntitlementCache(ttl_seconds=30)

        generation = cache.generation(tenant_id)
        cached = cache.get(tenant_id)
        if cached is None:
            cached = compute(tenant_id)
            cache.put(tenant_id, cached, generation=generation)

        # On any billing write
        cache.invalidate(tenant_id)
    """

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        max_size: int = DEFAULT_CACHE_MAX_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_size <= 0:
            raise ValueError("max_size must be positive")

        self._ttl_seconds = ttl_seconds
        self._max_size = max_size
        self._clock = clock
        self._entries: Dict[str, Tuple[Entitlements, float]] = {}
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self._lock = Lock()

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def generation(self, tenant_id: str) -> Generation:
        """
        Snapshot of the invalidation counters for a tenant.

        Read it BEFORE loading billing rows and hand it to put(); if any
        invalidation happened in between, put() discards the stale snapshot.
        """
        with self._lock:
            return self._epoch, self._generations.get(tenant_id, 0)

    def get(self, tenant_id: str) -> Optional[Entitlements]:
        """
        Get cached entitlements for tenant.

        Returns:
            Entitlements or None if not cached/expired
        """
        with self._lock:
            entry = self._entries.get(tenant_id)
            if entry is None:
                logger.debug(f"Cache miss for tenant {tenant_id}")
                return None
            entitlements, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[tenant_id]
                logger.debug(f"Cache entry expired for tenant {tenant_id}")
                return None
            logger.debug(f"Cache hit for tenant {tenant_id}")
            return entitlements

    def put(
        self,
        tenant_id: str,
        entitlements: Entitlements,
        generation: Optional[Generation] = None,
    ) -> bool:
        """
        Cache entitlements for tenant, replacing any previous entry.

        Args:
            tenant_id: Tenant identifier
            entitlements: Snapshot to cache
            generation: Value of generation(tenant_id) read before the
                snapshot was computed

        Returns:
            True if cached, False if the snapshot was already stale
        """
        with self._lock:
            current = (self._epoch, self._generations.get(tenant_id, 0))
            if generation is not None and generation != current:
                logger.debug(
                    "Discarding entitlements computed before an invalidation",
                    extra={"tenant_id": tenant_id},
                )
                return False

            if tenant_id not in self._entries and len(self._entries) >= self._max_size:
                self._evict_oldest()

            self._entries[tenant_id] = (entitlements, self._clock() + self._ttl_seconds)
            return True

    def _evict_oldest(self) -> None:
        # Caller holds the lock
        oldest_key = min(self._entries, key=lambda k: self._entries[k][1])
        del self._entries[oldest_key]

    def invalidate(self, tenant_id: str, reason: Optional[str] = None) -> bool:
        """
        Invalidate cached entitlements for tenant.

        CRITICAL: Must be called whenever billing state changes.

        Returns:
            True if an entry was removed
        """
        with self._lock:
            self._generations[tenant_id] = self._generations.get(tenant_id, 0) + 1
            deleted = self._entries.pop(tenant_id, None) is not None

        logger.info(
            f"Invalidated entitlement cache for tenant {tenant_id}",
            extra={"tenant_id": tenant_id, "reason": reason, "cache_deleted": deleted},
        )
        return deleted

    def invalidate_all(self, reason: Optional[str] = None) -> int:
        """
        Invalidate all cached entitlements.

        Use for config reloads and in tests.

        Returns:
            Number of entries invalidated
        """
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._generations.clear()
            self._epoch += 1

        logger.warning(
            f"Mass invalidation of entitlement cache ({count} entries)",
            extra={"reason": reason or "mass_invalidation"},
        )
        return count

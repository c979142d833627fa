"""
Runtime settings for the entitlement engine, read from the environment.

ENTITLEMENT_CACHE_TTL         Seconds a resolved snapshot may be served (default 30)
ENTITLEMENT_CACHE_MAX_SIZE    Tenants kept in the process cache (default 10000)
ENTITLEMENT_ADVISORY_COUNT    Count usage even when the limit is unlimited (default true)
CREDIT_LEDGER_MAX_ATTEMPTS    Read-compute-write attempts per draw (default 2)
TRACKBLISS_PLANS_PATH         Override path of the plans.json catalog
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 30
DEFAULT_CACHE_MAX_SIZE = 10000
DEFAULT_LEDGER_MAX_ATTEMPTS = 2

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _env_int(name: str, default: int, minimum: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


@dataclass(frozen=True)
class EngineSettings:
    """Tunables shared by the cache, enforcer and ledger."""

    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS
    cache_max_size: int = DEFAULT_CACHE_MAX_SIZE
    advisory_count_unlimited: bool = True
    ledger_max_attempts: int = DEFAULT_LEDGER_MAX_ATTEMPTS
    plans_path: Optional[str] = None

    @classmethod
    def from_env(cls) -> "EngineSettings":
        settings = cls(
            cache_ttl_seconds=_env_int("ENTITLEMENT_CACHE_TTL", DEFAULT_CACHE_TTL_SECONDS, 1),
            cache_max_size=_env_int("ENTITLEMENT_CACHE_MAX_SIZE", DEFAULT_CACHE_MAX_SIZE, 1),
            advisory_count_unlimited=_env_bool("ENTITLEMENT_ADVISORY_COUNT", True),
            ledger_max_attempts=_env_int("CREDIT_LEDGER_MAX_ATTEMPTS", DEFAULT_LEDGER_MAX_ATTEMPTS, 1),
            plans_path=os.getenv("TRACKBLISS_PLANS_PATH") or None,
        )
        logger.debug("Loaded entitlement engine settings", extra={
            "cache_ttl_seconds": settings.cache_ttl_seconds,
            "ledger_max_attempts": settings.ledger_max_attempts,
        })
        return settings

"""
Entitlement Audit Logger - record every policy denial.

Provides:
- QuotaDenialEvent: Structured event for a quota, module or credit denial
- EntitlementAuditLogger: Writes events to the dedicated audit logger

Denials feed upsell analytics and support investigations ("why was I
blocked?"). Infrastructure failures are NOT denials and are logged by the
component that hit them.
"""

import json
import logging
import uuid
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Dedicated audit logger for structured logging
audit_logger = logging.getLogger("entitlements.audit")


@dataclass
class QuotaDenialEvent:
    """Structured event for a policy denial."""

    tenant_id: str
    kind: str  # "quota", "module", "credits"
    resource: str
    current: Optional[int] = None
    limit: Optional[int] = None
    plan: Optional[str] = None
    module_id: Optional[str] = None
    operation_type: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    extra_metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict())


class EntitlementAuditLogger:
    """
    Writes denial events to the `entitlements.audit` logger.

    Logging never raises into the enforcement path.
    """

    def __init__(self, enabled: bool = True):
        self._enabled = enabled
        self._denial_count = 0
        self._count_lock = Lock()

    @property
    def denial_count(self) -> int:
        return self._denial_count

    def log_denial(self, event: QuotaDenialEvent) -> None:
        if not self._enabled:
            return
        with self._count_lock:
            self._denial_count += 1
        try:
            audit_logger.info(event.to_json(), extra={
                "event_type": "entitlement_denial",
                "tenant_id": event.tenant_id,
                "kind": event.kind,
                "resource": event.resource,
            })
        except (TypeError, ValueError) as exc:
            logger.error("Failed to serialise denial event", extra={
                "tenant_id": event.tenant_id,
                "error": str(exc),
            })


_audit_instance: Optional[EntitlementAuditLogger] = None
_audit_lock = Lock()


def get_audit_logger() -> EntitlementAuditLogger:
    """Get the singleton EntitlementAuditLogger instance."""
    global _audit_instance
    if _audit_instance is None:
        with _audit_lock:
            if _audit_instance is None:
                _audit_instance = EntitlementAuditLogger()
    return _audit_instance

"""
Structured error classes for entitlement enforcement.

Two families, never to be confused by callers:
- Infrastructure failures (StoreUnavailableError): "try again", deny the
  guarded operation.
- Policy denials (EntitlementDeniedError): "upgrade", raised only by the
  caller-facing guards. Inside the engine a policy denial is a verdict,
  not an exception.
"""

from typing import Optional

from fastapi import status


class EntitlementError(Exception):
    """Base exception for entitlement errors."""
    pass


class StoreUnavailableError(EntitlementError):
    """
    Raised when the backing store cannot be read or written.

    Fail-closed: the guarded operation MUST be denied.
    """

    def __init__(
        self,
        tenant_id: str,
        operation: str,
        cause: Optional[Exception] = None,
    ):
        self.tenant_id = tenant_id
        self.operation = operation
        self.cause = cause
        self.error_code = "ENTITLEMENT_STORE_UNAVAILABLE"
        detail = f": {cause}" if cause is not None else ""
        super().__init__(
            f"Entitlement store unavailable during {operation} for {tenant_id}{detail}"
        )

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": "Billing data is temporarily unavailable. Please try again.",
            "tenant_id": self.tenant_id,
            "operation": self.operation,
        }


class ConcurrentWriteConflict(EntitlementError):
    """
    Raised when the credit account changed between read and conditional write.

    Retried once by the ledger; a second conflict surfaces as
    StoreUnavailableError.
    """

    def __init__(self, tenant_id: str, attempts: int):
        self.tenant_id = tenant_id
        self.attempts = attempts
        super().__init__(
            f"Credit account for {tenant_id} changed concurrently "
            f"({attempts} attempt(s))"
        )


class EntitlementDeniedError(EntitlementError):
    """
    Raised by guards when a policy check denies an operation.

    Includes machine-readable reason codes for programmatic handling.
    """

    MODULE_INACTIVE = "module_inactive"
    QUOTA_EXCEEDED = "quota_exceeded"
    INSUFFICIENT_CREDITS = "insufficient_credits"

    def __init__(
        self,
        code: str,
        message: str,
        resource: Optional[str] = None,
        current: Optional[int] = None,
        limit: Optional[int] = None,
        module_id: Optional[str] = None,
        http_status: int = status.HTTP_402_PAYMENT_REQUIRED,
    ):
        """
        Initialize entitlement denied error.

        Args:
            code: One of MODULE_INACTIVE, QUOTA_EXCEEDED, INSUFFICIENT_CREDITS
            message: Human-readable reason shown in the paywall
            resource: Resource or credit bucket that was exhausted
            current: Current usage (for "x/y" display)
            limit: Limit in force (-1 = unlimited)
            module_id: Module family when the denial is module-scoped
            http_status: HTTP status code (default 402)
        """
        self.code = code
        self.message = message
        self.resource = resource
        self.current = current
        self.limit = limit
        self.module_id = module_id
        self.http_status = http_status
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": "entitlement_denied",
            "message": self.message,
            "machine_readable": {
                "code": self.code,
                "resource": self.resource,
                "module_id": self.module_id,
                "current": self.current,
                "limit": self.limit,
            },
        }

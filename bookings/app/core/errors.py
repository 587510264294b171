"""Error taxonomy for the booking core.

Policy rejections are never raised: services return a result object with
``ok=False`` and a reason code. Exceptions cover the three remaining kinds:

* ``ConflictError`` - a storage guard found the precondition no longer holds;
  re-read and retry the whole operation.
* ``CollaboratorError`` - payment processor or store unavailable; retryable.
* ``ValueError`` / ``NotFoundError`` - bad input, surfaced immediately.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

__all__ = [
    "BookingCoreError",
    "ConflictError",
    "SlotUnavailableError",
    "SettlementConflictError",
    "RefundNotPendingError",
    "CollaboratorError",
    "PaymentGatewayError",
    "StoreUnavailableError",
    "NotFoundError",
    "InvalidPatternError",
    "PolicyResult",
]


class BookingCoreError(Exception):
    """Base class for errors raised by the booking core."""

    code: str = "booking_error"

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        if code:
            self.code = code
        super().__init__(message or self.code)


class ConflictError(BookingCoreError):
    code = "conflict"


class SlotUnavailableError(ConflictError):
    code = "slot_unavailable"


class SettlementConflictError(ConflictError):
    code = "settlement_conflict"

    def __init__(self, booking_id: int, current: Any, attempted: str) -> None:
        self.booking_id = booking_id
        self.current = current
        self.attempted = attempted
        super().__init__(f"booking {booking_id}: cannot {attempted} from state {current}")


class RefundNotPendingError(ConflictError):
    code = "refund_not_pending"


class CollaboratorError(BookingCoreError):
    code = "collaborator_unavailable"
    retryable = True


class PaymentGatewayError(CollaboratorError):
    code = "payment_failed"


class StoreUnavailableError(CollaboratorError):
    code = "store_unavailable"


class NotFoundError(BookingCoreError, LookupError):
    code = "not_found"


class InvalidPatternError(ValueError):
    """Recurrence pattern failed validation."""


@dataclass(frozen=True)
class PolicyResult:
    ok: bool
    reason: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def allow(cls, **details: Any) -> "PolicyResult":
        return cls(ok=True, details=details)

    @classmethod
    def reject(cls, reason: str, **details: Any) -> "PolicyResult":
        return cls(ok=False, reason=reason, details=details)

    def __bool__(self) -> bool:
        return self.ok

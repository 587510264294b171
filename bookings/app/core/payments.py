"""Payment processor seam.

The core only needs two idempotent operations from the processor: move an
authorized charge into platform custody and refund (part of) a captured
charge. Both are keyed by an external reference so retries never double-move
money.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Protocol

from .errors import PaymentGatewayError

logger = logging.getLogger(__name__)

__all__ = ["PaymentGateway", "OfflinePaymentGateway", "PaymentGatewayError", "refund_idempotency_key"]


class PaymentGateway(Protocol):
    async def capture(self, reference: str, amount_cents: int) -> str:
        """Capture ``amount_cents`` against ``reference``; return the processor charge id."""
        ...

    async def refund(self, reference: str, amount_cents: int, idempotency_key: str) -> str:
        """Refund ``amount_cents`` of the captured charge; return the processor refund id."""
        ...


def refund_idempotency_key(booking_id: int, purpose: str, amount_cents: int | None = None) -> str:
    """Stable key per (booking, purpose[, amount]); leave the amount out to get one key per purpose."""
    raw = f"{booking_id}:{purpose}" if amount_cents is None else f"{booking_id}:{purpose}:{amount_cents}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


class OfflinePaymentGateway:
    """Gateway for deployments that settle outside a card processor (cash/bank).

    Records nothing remotely and keeps no state; ids are derived from the
    reference/key, so repeated calls return the same id.
    """

    async def capture(self, reference: str, amount_cents: int) -> str:
        if amount_cents <= 0:
            raise PaymentGatewayError("capture amount must be positive", code="invalid_amount")
        charge_id = f"off_ch_{reference}"
        logger.info("Offline capture recorded: reference=%s amount_cents=%s", reference, amount_cents)
        return charge_id

    async def refund(self, reference: str, amount_cents: int, idempotency_key: str) -> str:
        if amount_cents <= 0:
            raise PaymentGatewayError("refund amount must be positive", code="invalid_amount")
        refund_id = f"off_re_{idempotency_key}"
        logger.info(
            "Offline refund recorded: reference=%s amount_cents=%s key=%s",
            reference,
            amount_cents,
            idempotency_key,
        )
        return refund_id

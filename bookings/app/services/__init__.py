"""Service package exports.

``build_services`` wires the services together around one session factory
and the external collaborators; the API and the workers both use it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from aiogram import Bot
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookings.app.core.notifications import LoggingNotifier, Notifier, TelegramNotifier
from bookings.app.core.payments import OfflinePaymentGateway, PaymentGateway
from bookings.config import get_setting

from .availability_services import AvailabilityResolver
from .booking_services import BookingService
from .escrow_services import EscrowSettlementService
from .recurrence_services import RecurrenceExpander
from .refund_services import RefundPolicyEngine
from .shared_services import make_chat_id_resolver
from .trust_services import TrustProfileService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    availability: AvailabilityResolver
    trust: TrustProfileService
    bookings: BookingService
    recurrence: RecurrenceExpander
    escrow: EscrowSettlementService
    refunds: RefundPolicyEngine


def default_notifier(session_factory: async_sessionmaker[AsyncSession]) -> Notifier | None:
    """Telegram delivery when a bot token is configured, log lines otherwise."""
    if not get_setting("notifications_enabled", True):
        return None
    token = get_setting("bot_token", "")
    if not token:
        return LoggingNotifier()
    logger.info("Notifications go through Telegram")
    return TelegramNotifier(Bot(token=token), make_chat_id_resolver(session_factory))


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: PaymentGateway | None = None,
    notifier: Notifier | None = None,
) -> Services:
    gateway = gateway or OfflinePaymentGateway()
    availability = AvailabilityResolver(session_factory)
    trust = TrustProfileService(session_factory)
    bookings = BookingService(session_factory, availability, trust, notifier)
    recurrence = RecurrenceExpander(session_factory, availability, bookings)
    escrow = EscrowSettlementService(session_factory, gateway, availability, trust, notifier)
    refunds = RefundPolicyEngine(session_factory, escrow, availability, trust, notifier)
    return Services(
        availability=availability,
        trust=trust,
        bookings=bookings,
        recurrence=recurrence,
        escrow=escrow,
        refunds=refunds,
    )


__all__ = [
    "Services",
    "build_services",
    "default_notifier",
    "AvailabilityResolver",
    "BookingService",
    "EscrowSettlementService",
    "RecurrenceExpander",
    "RefundPolicyEngine",
    "TrustProfileService",
]

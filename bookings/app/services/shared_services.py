from __future__ import annotations

import logging
import os
from datetime import UTC, date, datetime, time, timedelta
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookings.app.core.constants import DEFAULT_CURRENCY, REFUND_TIERS
from bookings.app.domain.models import TimelineEvent, User
from bookings.config import get_local_tz

logger = logging.getLogger(__name__)


def get_env_int(name: str, default: int) -> int:
    """Read an int from environment with a safe default.

    - Returns `default` if variable is missing/empty or not an int.
    - Logs a warning on invalid values to aid diagnostics.
    """
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, defaulting to %s", name, raw, default)
        return default


def utc_now() -> datetime:
    """Return current time as an aware UTC datetime."""
    return datetime.now(UTC)


def local_today() -> date:
    """Calendar date in the configured business timezone."""
    return datetime.now(get_local_tz()).date()


def local_date(moment: datetime) -> date:
    return ensure_utc(moment).astimezone(get_local_tz()).date()


def refund_percentage(days_until_booking: int) -> int:
    """Share of the price returned when cancelling this many days ahead."""
    for min_days, pct in REFUND_TIERS:
        if days_until_booking >= min_days:
            return pct
    return 0


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Convert given datetime to an aware UTC datetime.

    If `dt` is naive, interpret it as UTC (do not guess local timezone).
    Returns None when `dt` is None.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def time_to_minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def minutes_to_time(minutes: int) -> time:
    # datetime.time cannot express 24:00, so a day's last usable end is 23:59.
    if not 0 <= minutes < 24 * 60:
        raise ValueError(f"minutes out of range: {minutes}")
    return time(hour=minutes // 60, minute=minutes % 60)


def add_minutes(value: time, minutes: int) -> time:
    return minutes_to_time(time_to_minutes(value) + minutes)


def format_money_cents(cents: int | None, currency: str | None = None) -> str:
    """Render cents as e.g. ``100.00 USD``."""
    cur = currency or DEFAULT_CURRENCY
    if cents is None:
        return f"0.00 {cur}"
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(int(cents)), 100)
    return f"{sign}{whole}.{frac:02d} {cur}"


def append_timeline_event(
    session: AsyncSession,
    booking_id: int,
    event_type: str,
    description: str,
    *,
    actor_id: int | None = None,
    metadata: dict[str, Any] | None = None,
) -> TimelineEvent:
    """Add an immutable history row inside the caller's transaction."""
    event = TimelineEvent(
        booking_id=booking_id,
        event_type=event_type,
        actor_id=actor_id,
        description=description,
        event_metadata=dict(metadata or {}),
        created_at=utc_now(),
    )
    session.add(event)
    logger.debug("timeline booking=%s type=%s actor=%s", booking_id, event_type, actor_id)
    return event


async def list_timeline(session: AsyncSession, booking_id: int) -> list[TimelineEvent]:
    result = await session.execute(
        select(TimelineEvent)
        .where(TimelineEvent.booking_id == booking_id)
        .order_by(TimelineEvent.created_at, TimelineEvent.id)
    )
    return list(result.scalars().all())


def make_chat_id_resolver(session_factory: async_sessionmaker[AsyncSession]):
    """Build the ``resolve_chat_ids`` callable used by TelegramNotifier."""

    async def _resolve(user_ids: Iterable[int]) -> list[int]:
        ids = [int(u) for u in user_ids]
        if not ids:
            return []
        async with session_factory() as session:
            rows = await session.execute(select(User.chat_id).where(User.id.in_(ids), User.chat_id.is_not(None)))
            return [int(r) for r in rows.scalars().all()]

    return _resolve


def elapsed_since(moment: datetime | None, now: datetime | None = None) -> timedelta | None:
    moment = ensure_utc(moment)
    if moment is None:
        return None
    return (now or utc_now()) - moment


__all__ = [
    "get_env_int",
    "utc_now",
    "local_today",
    "ensure_utc",
    "local_date",
    "refund_percentage",
    "time_to_minutes",
    "minutes_to_time",
    "add_minutes",
    "format_money_cents",
    "append_timeline_event",
    "list_timeline",
    "make_chat_id_resolver",
    "elapsed_since",
]

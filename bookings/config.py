from __future__ import annotations

import logging
import os
from typing import Any, Dict
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

from bookings.app.core.constants import (
    DEFAULT_LOCAL_TIMEZONE,
    ESCROW_HOLD_DAYS,
    REFUND_QUEUE_MAX_ATTEMPTS,
    RECURRENCE_HORIZON_DAYS,
)

logger = logging.getLogger(__name__)

# Load environment variables from .env
load_dotenv()

# Runtime settings; admin tooling may overwrite keys at runtime.
SETTINGS: Dict[str, Any] = {
    "database_url": os.getenv(
        "DATABASE_URL",
        "postgresql+asyncpg://app_user:change_me@db:5432/bookings",
    ),
    # IANA timezone name for business dates (refund tiers, recurrence "today")
    "timezone": os.getenv("TIMEZONE", DEFAULT_LOCAL_TIMEZONE),
    # Days an escrow hold may stay unresolved before the expiry sweep acts
    "escrow_hold_days": int(os.getenv("ESCROW_HOLD_DAYS", str(ESCROW_HOLD_DAYS))),
    # Automatic refund retries before escalation to manual processing
    "refund_max_attempts": int(os.getenv("REFUND_QUEUE_MAX_ATTEMPTS", str(REFUND_QUEUE_MAX_ATTEMPTS))),
    # How far ahead the recurring worker materializes occurrences
    "recurrence_horizon_days": int(os.getenv("RECURRENCE_HORIZON_DAYS", str(RECURRENCE_HORIZON_DAYS))),
    "payments_provider": os.getenv("PAYMENTS_PROVIDER", "offline"),
    "notifications_enabled": os.getenv("NOTIFICATIONS_ENABLED", "True").lower() == "true",
    "bot_token": os.getenv("BOT_TOKEN", ""),
}

LOCAL_TZ = ZoneInfo("UTC")


def refresh_local_tz() -> None:
    """Refresh module-level LOCAL_TZ from SETTINGS['timezone'] with safe fallback."""
    global LOCAL_TZ
    try:
        LOCAL_TZ = ZoneInfo(str(SETTINGS.get("timezone") or "UTC"))
    except Exception:
        logger.warning("Unknown timezone %r, falling back to UTC", SETTINGS.get("timezone"))
        LOCAL_TZ = ZoneInfo("UTC")


refresh_local_tz()


def get_setting(key: str, default: Any = None) -> Any:
    """Safely read a runtime setting.

    Args:
        key: Setting name.
        default: Value returned when the key is absent.

    Returns:
        The setting value or ``default``.
    """
    value = SETTINGS.get(key, default)
    logger.debug("Setting read: key=%s, value=%s", key, value)
    return value


def get_local_tz() -> ZoneInfo:
    return LOCAL_TZ


def get_escrow_hold_days() -> int:
    """Unified accessor for escrow_hold_days with safe fallback."""
    try:
        val = SETTINGS.get("escrow_hold_days")
        return max(1, int(val)) if val is not None else ESCROW_HOLD_DAYS
    except Exception:
        return ESCROW_HOLD_DAYS


def get_refund_max_attempts() -> int:
    """Automatic refund retry bound (at least one attempt)."""
    try:
        val = SETTINGS.get("refund_max_attempts", REFUND_QUEUE_MAX_ATTEMPTS)
        return max(1, int(val))
    except Exception:
        return REFUND_QUEUE_MAX_ATTEMPTS


def get_recurrence_horizon_days() -> int:
    try:
        val = SETTINGS.get("recurrence_horizon_days", RECURRENCE_HORIZON_DAYS)
        return max(1, int(val))
    except Exception:
        return RECURRENCE_HORIZON_DAYS


__all__ = [
    "SETTINGS",
    "LOCAL_TZ",
    "refresh_local_tz",
    "get_setting",
    "get_local_tz",
    "get_escrow_hold_days",
    "get_refund_max_attempts",
    "get_recurrence_horizon_days",
]

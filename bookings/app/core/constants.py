from __future__ import annotations

import os


def _env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


def _env_int_list(name: str) -> list[int]:
    raw = os.getenv(name, "")
    vals: list[int] = []
    for token in raw.replace(";", ",").split(","):
        tok = token.strip()
        if not tok:
            continue
        try:
            vals.append(int(tok))
        except Exception:
            continue
    return vals


def _normalize_currency(code: str | None) -> str | None:
    if not code:
        return None
    cleaned = str(code).strip().upper()
    if len(cleaned) == 3 and cleaned.isalpha():
        return cleaned
    return None


# Slot grid
SLOT_STEP_MINUTES: int = 30

# Trust levels (0 = normal .. 3 = high risk) and the number of consecutive
# completed jobs needed to drop one level.
MAX_TRUST_LEVEL: int = 3
CUSTOMER_TRUST_RECOVERY_JOBS: int = _env_int("CUSTOMER_TRUST_RECOVERY_JOBS", 5)
PROVIDER_TRUST_RECOVERY_JOBS: int = _env_int("PROVIDER_TRUST_RECOVERY_JOBS", 10)

# Escrow
ESCROW_HOLD_DAYS: int = _env_int("ESCROW_HOLD_DAYS", 30)

# Refunds: (minimum days before service, percentage), evaluated top-down.
REFUND_TIERS: tuple[tuple[int, int], ...] = ((7, 100), (3, 50), (1, 25))
REFUND_QUEUE_MAX_ATTEMPTS: int = _env_int("REFUND_QUEUE_MAX_ATTEMPTS", 3)
REFUND_PROCESSING_HOURS: int = 72

# Recurrence
RECURRENCE_MAX_OCCURRENCES: int = _env_int("RECURRENCE_MAX_OCCURRENCES", 100)
RECURRENCE_MATERIALIZE_BATCH: int = _env_int("RECURRENCE_MATERIALIZE_BATCH", 4)
RECURRENCE_HORIZON_DAYS: int = _env_int("RECURRENCE_HORIZON_DAYS", 14)

# Locale / currency
DEFAULT_LOCAL_TIMEZONE: str = os.getenv("TIMEZONE", "UTC")
DEFAULT_CURRENCY: str = _normalize_currency(os.getenv("DEFAULT_CURRENCY") or os.getenv("CURRENCY")) or "USD"

# Admin IDs
ADMIN_IDS_LIST: list[int] = _env_int_list("ADMIN_IDS")

# Logging / workers
LOG_LEVEL_NAME: str = os.getenv("LOG_LEVEL", "INFO").strip().upper()
EXPIRE_CHECK_SECONDS: int = _env_int("ESCROW_EXPIRE_CHECK_SECONDS", 300)
RECURRING_CHECK_SECONDS: int = _env_int("RECURRING_CHECK_SECONDS", 3600)
WORKERS_ENABLED: bool = _env_bool("RUN_WORKERS", False)

# API
API_JWT_SECRET: str = os.getenv("API_JWT_SECRET", "")
API_JWT_ALGO: str = "HS256"

__all__ = [
    "SLOT_STEP_MINUTES",
    "MAX_TRUST_LEVEL",
    "CUSTOMER_TRUST_RECOVERY_JOBS",
    "PROVIDER_TRUST_RECOVERY_JOBS",
    "ESCROW_HOLD_DAYS",
    "REFUND_TIERS",
    "REFUND_QUEUE_MAX_ATTEMPTS",
    "REFUND_PROCESSING_HOURS",
    "RECURRENCE_MAX_OCCURRENCES",
    "RECURRENCE_MATERIALIZE_BATCH",
    "RECURRENCE_HORIZON_DAYS",
    "DEFAULT_LOCAL_TIMEZONE",
    "DEFAULT_CURRENCY",
    "ADMIN_IDS_LIST",
    "LOG_LEVEL_NAME",
    "EXPIRE_CHECK_SECONDS",
    "RECURRING_CHECK_SECONDS",
    "WORKERS_ENABLED",
    "API_JWT_SECRET",
    "API_JWT_ALGO",
]

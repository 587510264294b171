import importlib
import logging

import pytest

from bookings.app.core import constants


@pytest.fixture(autouse=True)
def _restore_constants(monkeypatch):
    yield
    monkeypatch.undo()
    importlib.reload(constants)


def _reload_constants(monkeypatch, **env) -> object:
    """Reload constants with a temporary env state."""
    for key, value in env.items():
        if value is None:
            monkeypatch.delenv(key, raising=False)
        else:
            monkeypatch.setenv(key, value)
    return importlib.reload(constants)


def test_env_helpers_parse_lists_and_bools(monkeypatch):
    module = _reload_constants(
        monkeypatch,
        ADMIN_IDS="1, 2;not-a-number",
        ESCROW_HOLD_DAYS="14",
        RUN_WORKERS="yes",
        DEFAULT_CURRENCY="eur",
    )
    assert module.ADMIN_IDS_LIST == [1, 2]
    assert module.ESCROW_HOLD_DAYS == 14
    assert module.WORKERS_ENABLED is True
    assert module.DEFAULT_CURRENCY == "EUR"


def test_env_helpers_fallbacks(monkeypatch):
    module = _reload_constants(
        monkeypatch,
        ESCROW_EXPIRE_CHECK_SECONDS="oops",
        ADMIN_IDS=";",
        RUN_WORKERS=None,
        DEFAULT_CURRENCY="euros",
        CURRENCY=None,
    )
    assert module.EXPIRE_CHECK_SECONDS == 300
    assert module.ADMIN_IDS_LIST == []
    assert module.WORKERS_ENABLED is False
    assert module.DEFAULT_CURRENCY == "USD"


def test_business_rules_are_fixed(monkeypatch):
    module = _reload_constants(monkeypatch, CUSTOMER_TRUST_RECOVERY_JOBS=None, PROVIDER_TRUST_RECOVERY_JOBS=None)
    assert module.SLOT_STEP_MINUTES == 30
    assert module.CUSTOMER_TRUST_RECOVERY_JOBS == 5
    assert module.PROVIDER_TRUST_RECOVERY_JOBS == 10
    assert module.REFUND_TIERS == ((7, 100), (3, 50), (1, 25))
    assert module.REFUND_PROCESSING_HOURS == 72


def test_currency_normalization(monkeypatch):
    module = _reload_constants(monkeypatch)
    assert module._normalize_currency("eur") == "EUR"
    assert module._normalize_currency(" usd ") == "USD"
    assert module._normalize_currency("too-long") is None
    assert module._normalize_currency("") is None


def test_configure_logging_resolves_levels(tmp_path):
    from bookings.app.core.logger import configure_logging, get_logger

    assert configure_logging("debug") == logging.DEBUG
    assert configure_logging("nonsense") == logging.INFO
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING

    log_file = tmp_path / "bookings.log"
    configure_logging(logging.INFO, log_file=str(log_file))
    get_logger("bookings.test").warning("disk almost full")
    for handler in logging.getLogger().handlers:
        handler.flush()
    assert "disk almost full" in log_file.read_text(encoding="utf-8")
    assert get_logger().name == "bookings"

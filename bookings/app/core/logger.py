"""Logger facade.

Modules keep using ``logging.getLogger(__name__)``; entrypoints call
``configure_logging`` once. Console output goes through Rich; an optional
log file keeps WARNING and above.
"""

import logging

from rich.logging import RichHandler

from .constants import LOG_LEVEL_NAME

__all__ = ["get_logger", "configure_logging", "LOG_FORMAT"]

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that are too chatty at INFO
_QUIET = {
    "aiogram": logging.INFO,
    "asyncpg": logging.WARNING,
    "alembic": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
}


def get_logger(name: str | None = None) -> logging.Logger:
    return logging.getLogger(name or "bookings")


def _resolve_level(level: str | int | None) -> int:
    resolved = level if level is not None else LOG_LEVEL_NAME
    if isinstance(resolved, int):
        return resolved
    value = getattr(logging, str(resolved).strip().upper(), None)
    return value if isinstance(value, int) else logging.INFO


def configure_logging(level: str | int | None = None, log_file: str | None = None) -> int:
    """Install Rich console logging (and a WARNING+ file handler if asked).

    Returns the effective root level.
    """
    resolved = _resolve_level(level)
    console_handler = RichHandler(
        rich_tracebacks=True,
        markup=False,
        show_time=True,
        show_level=True,
        show_path=False,
        log_time_format="%H:%M:%S",
    )
    handlers: list[logging.Handler] = [console_handler]
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.WARNING)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(file_handler)

    logging.basicConfig(level=resolved, format="%(message)s", handlers=handlers, force=True)
    for name, lvl in _QUIET.items():
        logging.getLogger(name).setLevel(max(lvl, resolved))
    return resolved

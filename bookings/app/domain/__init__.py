"""ORM models and lifecycle enums for bookings, settlements and refunds."""

from . import models  # noqa: F401

__all__ = ["models"]

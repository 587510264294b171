"""Application package for the booking scheduling and settlement core."""

from .core import db
from .domain import models

__all__ = ["db", "models"]

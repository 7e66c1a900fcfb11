"""SQLAlchemy models."""

from signaltiers.models.base import Base, TimestampMixin, UTCDateTime

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
]

"""Time source shared by the sync services.

All timestamps are naive UTC datetimes, matching what the SQLAlchemy
``DateTime`` columns store.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_epoch_ms(value: datetime) -> int:
    """Milliseconds since the epoch for a naive UTC datetime."""
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)


class Clock:
    """Wall clock. Services accept any object with ``now()`` so tests can freeze time."""

    def now(self) -> datetime:
        return utcnow()

    def now_ms(self) -> int:
        return to_epoch_ms(self.now())


system_clock = Clock()

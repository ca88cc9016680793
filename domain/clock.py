"""
domain/clock.py
Injectable time source. Every rule reads "now" through a ClockSource so
pricing is reproducible in tests and when replaying ledger snapshots.

All datetimes handled by the core are naive campus-local wall-clock times.
"""
from datetime import datetime, timedelta
from typing import Optional, Protocol
from zoneinfo import ZoneInfo

from config.settings import settings


class ClockSource(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in the campus timezone."""

    def __init__(self, timezone: Optional[str] = None) -> None:
        self._tz = ZoneInfo(timezone or settings.campus_timezone)

    def now(self) -> datetime:
        return datetime.now(self._tz).replace(tzinfo=None)


class FixedClock:
    """Clock frozen at a given instant. ``advance`` moves it forward."""

    def __init__(self, at: datetime) -> None:
        self._at = at

    def now(self) -> datetime:
        return self._at

    def advance(self, **delta) -> None:
        self._at = self._at + timedelta(**delta)


def is_weekend(dt: datetime) -> bool:
    return dt.weekday() in settings.weekend_days

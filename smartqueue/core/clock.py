"""
Wall-clock abstraction.

The service reads "now" and "today" only through a Clock so tests can move
time forward deterministically.
"""

from datetime import UTC, date, datetime, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo


class Clock(Protocol):
    def now(self) -> datetime: ...

    def today(self) -> date: ...


class SystemClock:
    """Real time; the calendar date is taken in the site's local timezone."""

    def __init__(self, timezone: str = "UTC"):
        self.tz = ZoneInfo(timezone)

    def now(self) -> datetime:
        return datetime.now(UTC)

    def today(self) -> date:
        return datetime.now(self.tz).date()


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime, timezone: str = "UTC"):
        if start.tzinfo is None:
            start = start.replace(tzinfo=UTC)
        self._now = start
        self.tz = ZoneInfo(timezone)

    def now(self) -> datetime:
        return self._now

    def today(self) -> date:
        return self._now.astimezone(self.tz).date()

    def advance(self, seconds: float = 0, minutes: float = 0, days: float = 0) -> datetime:
        self._now += timedelta(seconds=seconds, minutes=minutes, days=days)
        return self._now

    def set(self, moment: datetime) -> None:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        self._now = moment

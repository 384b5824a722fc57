"""
Calendar helpers for billing months and alert periods.

All dates are UTC. A month key is ``YYYY-MM``; a week key is the ISO week
``YYYY-Www``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Literal

AlertPeriod = Literal["monthly", "weekly"]


def _utc(now: datetime) -> datetime:
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


@dataclass(frozen=True, slots=True)
class MonthRange:
    """Half-open ``[start, end)`` window for one calendar month."""

    year: int
    month: int

    @property
    def key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def start(self) -> datetime:
        return datetime(self.year, self.month, 1, tzinfo=timezone.utc)

    @property
    def end(self) -> datetime:
        year, month = _shift_month(self.year, self.month, 1)
        return datetime(year, month, 1, tzinfo=timezone.utc)

    @property
    def timestamp_ms(self) -> int:
        return int(self.start.timestamp() * 1000)

    def shift(self, delta: int) -> MonthRange:
        year, month = _shift_month(self.year, self.month, delta)
        return MonthRange(year, month)

    def is_closed(self, now: datetime) -> bool:
        """A month is closed once the 2nd of the following month has begun."""
        return _utc(now) >= self.end + timedelta(days=1)

    def query_end(self, now: datetime) -> datetime:
        """Upper bound for upstream queries; open months stop at ``now``."""
        return min(self.end, _utc(now))

    @classmethod
    def containing(cls, now: datetime) -> MonthRange:
        now = _utc(now)
        return cls(now.year, now.month)

    @classmethod
    def from_key(cls, key: str) -> MonthRange:
        year, month = key.split("-", 1)
        return cls(int(year), int(month))


@dataclass(frozen=True, slots=True)
class UsageWindow:
    """The months one fetch covers: current, previous and closed history."""

    now: datetime
    current: MonthRange
    previous: MonthRange
    history: tuple[MonthRange, ...]

    @classmethod
    def for_date(cls, now: datetime, history_months: int = 12) -> UsageWindow:
        now = _utc(now)
        current = MonthRange.containing(now)
        history = tuple(
            current.shift(-offset) for offset in range(history_months, 0, -1)
        )
        return cls(now=now, current=current, previous=current.shift(-1), history=history)


def period_key(now: datetime, period: AlertPeriod = "monthly") -> str:
    now = _utc(now)
    if period == "weekly":
        iso_year, iso_week, _ = now.isocalendar()
        return f"{iso_year:04d}-W{iso_week:02d}"
    return MonthRange.containing(now).key

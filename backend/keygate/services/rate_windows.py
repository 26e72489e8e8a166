"""Rate limit window kinds and next-reset boundary arithmetic."""
from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum


class RateWindow(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @classmethod
    def parse(cls, value: object, default: "RateWindow | None" = None) -> "RateWindow":
        """Map a stored value onto a window kind; unknown values fall back to monthly."""

        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return default or cls.MONTHLY


_FIXED_SPANS = {
    RateWindow.HOURLY: timedelta(hours=1),
    RateWindow.DAILY: timedelta(days=1),
    RateWindow.WEEKLY: timedelta(days=7),
}


def add_months(moment: datetime, months: int) -> datetime:
    """Shift ``moment`` by whole calendar months.

    A day-of-month that does not exist in the target month rolls forward into
    the following month instead of being clamped: Jan 31 + 1 month is Mar 3
    (Mar 2 in a leap year) and Feb 29 + 12 months is Mar 1.
    """
    index = moment.month - 1 + months
    first = moment.replace(year=moment.year + index // 12, month=index % 12 + 1, day=1)
    return first + timedelta(days=moment.day - 1)


def calculate_next_reset(window: RateWindow | str | None, now: datetime) -> datetime:
    """Return the end of a window of kind ``window`` starting at ``now``."""

    kind = RateWindow.parse(window)
    span = _FIXED_SPANS.get(kind)
    if span is not None:
        return now + span
    if kind is RateWindow.YEARLY:
        return add_months(now, 12)
    return add_months(now, 1)


__all__ = ["RateWindow", "add_months", "calculate_next_reset"]

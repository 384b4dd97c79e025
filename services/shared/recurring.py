"""Recurrence arithmetic for recurring service contracts.

Computes the next occurrence of a weekly, biweekly or monthly pattern. The
monthly pattern keeps its anchor day and clamps it to the length of short
months (an anchor on the 31st lands on the 30th, 29th or 28th).
"""

from __future__ import annotations

import calendar
from datetime import date, timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta


WEEKLY = "weekly"
BIWEEKLY = "biweekly"
MONTHLY = "monthly"

FREQUENCIES = (WEEKLY, BIWEEKLY, MONTHLY)

_WEEKS_BETWEEN = {WEEKLY: 1, BIWEEKLY: 2}


def validate_recurring_pattern(
    frequency: str,
    day_of_week: Optional[int] = None,
    day_of_month: Optional[int] = None,
) -> bool:
    """Validate a recurrence pattern.

    Args:
        frequency: ``weekly``, ``biweekly`` or ``monthly``.
        day_of_week: 0 (Monday) to 6 (Sunday), required for weekly patterns.
        day_of_month: 1 to 31, required for monthly patterns.

    Returns:
        True when valid.

    Raises:
        ValueError: if the pattern is invalid.
    """
    if frequency not in FREQUENCIES:
        raise ValueError(f"Invalid frequency: {frequency}. Must be one of {', '.join(FREQUENCIES)}")

    if frequency in _WEEKS_BETWEEN:
        if day_of_week is None:
            raise ValueError(f"day_of_week is required for a {frequency} recurrence")
        if not 0 <= day_of_week <= 6:
            raise ValueError("day_of_week must be between 0 (Monday) and 6 (Sunday)")

    if frequency == MONTHLY:
        if day_of_month is None:
            raise ValueError("day_of_month is required for a monthly recurrence")
        if not 1 <= day_of_month <= 31:
            raise ValueError("day_of_month must be between 1 and 31")

    return True


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def get_next_occurrence(
    current: date,
    frequency: str,
    day_of_month: Optional[int] = None,
) -> date:
    """Compute the occurrence following ``current``.

    Args:
        current: Date of the current occurrence.
        frequency: Recurrence frequency.
        day_of_month: Anchor day for monthly recurrences.

    Returns:
        The next occurrence date.
    """
    if frequency in _WEEKS_BETWEEN:
        return current + timedelta(weeks=_WEEKS_BETWEEN[frequency])
    if frequency == MONTHLY:
        following = current + relativedelta(months=1)
        if day_of_month:
            last_day = days_in_month(following.year, following.month)
            following = following.replace(day=min(day_of_month, last_day))
        return following
    raise ValueError(f"Unsupported frequency: {frequency}")


def iter_occurrences(
    start: date,
    frequency: str,
    *,
    end: Optional[date] = None,
    day_of_month: Optional[int] = None,
    limit: int = 52,
):
    """Yield ``start`` and the following occurrences up to ``end`` or ``limit`` items."""
    current = start
    produced = 0
    while produced < limit:
        if end is not None and current > end:
            return
        yield current
        produced += 1
        current = get_next_occurrence(current, frequency, day_of_month)

"""
Due Date Arithmetic

Pure calendar functions; nothing here touches the store.

Month-based frequencies (monthly, quarterly, yearly) step towards an
anchor day-of-month and clamp to the last day of shorter months. The
clamp is applied on every step, so a rule anchored on the 31st goes
Jan 31 -> Feb 28 -> Mar 31 rather than drifting to the 28th forever.
"""

import calendar
from datetime import date, timedelta
from typing import Optional, Union

from dateutil.relativedelta import relativedelta

from budgetkeeper.models.entities import Frequency


DAY_STEPS = {
    Frequency.DAILY: 1,
    Frequency.WEEKLY: 7,
    Frequency.BIWEEKLY: 14,
}

MONTH_STEPS = {
    Frequency.MONTHLY: 1,
    Frequency.QUARTERLY: 3,
    Frequency.YEARLY: 12,
}


def is_month_based(frequency: Union[Frequency, str]) -> bool:
    return Frequency(frequency) in MONTH_STEPS


def anchor_day(start_date: date, due: date) -> int:
    """
    Day-of-month a month-based rule should aim for.

    That is the start date's day while the due date is still on that
    schedule (possibly clamped). A due date moved elsewhere by a user
    override becomes the new anchor.
    """
    last_day = calendar.monthrange(due.year, due.month)[1]
    if due.day == min(start_date.day, last_day):
        return start_date.day
    return due.day


def advance_due_date(
    due: date,
    frequency: Union[Frequency, str],
    anchor: Optional[int] = None,
) -> date:
    """
    Move a due date forward by one unit of frequency.

    Args:
        due: Current due date
        frequency: Step unit
        anchor: Day-of-month to aim for on month-based steps
                (defaults to due's own day)

    Returns:
        The next due date, always strictly after due
    """
    frequency = Frequency(frequency)

    if frequency in DAY_STEPS:
        return due + timedelta(days=DAY_STEPS[frequency])

    # relativedelta clamps an absolute day to the month's length
    return due + relativedelta(months=MONTH_STEPS[frequency], day=anchor or due.day)


def due_dates_between(
    first_due: date,
    until: date,
    frequency: Union[Frequency, str],
    anchor: Optional[int] = None,
) -> tuple[list[date], date]:
    """
    Every due date from first_due up to and including until.

    Returns:
        (due_dates, next_due_date) where next_due_date is the first
        date after until
    """
    dates = []
    due = first_due
    while due <= until:
        dates.append(due)
        due = advance_due_date(due, frequency, anchor)
    return dates, due

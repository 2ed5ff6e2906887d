# rentbilling/domain/due_dates.py
from __future__ import annotations

import calendar
from datetime import date
from typing import Optional

from ..errors import InvalidArgument


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(int(year), int(month))[1]


def month_bounds(year: int, month: int) -> tuple[date, date]:
    if not 1 <= int(month) <= 12:
        raise InvalidArgument(f"month must be in 1..12, got {month}")
    return date(int(year), int(month), 1), date(int(year), int(month), days_in_month(year, month))


def calculate_due_date(year: int, month: int, due_day: int) -> date:
    """
    Concrete due date for a rent-due day-of-month.

    Day 29/30/31 in a shorter month clamps to that month's last day
    (due day 31 in February -> Feb 28, or Feb 29 in a leap year).
    """
    if due_day is None or not 1 <= int(due_day) <= 31:
        raise InvalidArgument(f"due_day must be in 1..31, got {due_day}")
    if not 1 <= int(month) <= 12:
        raise InvalidArgument(f"month must be in 1..12, got {month}")

    day = min(int(due_day), days_in_month(year, month))
    return date(int(year), int(month), day)


def calculate_payment_period(due_date: date) -> tuple[date, date]:
    """The billing period is the calendar month the due date falls in."""
    return month_bounds(due_date.year, due_date.month)


def calculate_next_due_date(due_day: int, today: Optional[date] = None) -> date:
    """This month's due date, or next month's once today is past it."""
    today = today or date.today()
    this_month = calculate_due_date(today.year, today.month, due_day)
    if today <= this_month:
        return this_month

    if today.month == 12:
        return calculate_due_date(today.year + 1, 1, due_day)
    return calculate_due_date(today.year, today.month + 1, due_day)

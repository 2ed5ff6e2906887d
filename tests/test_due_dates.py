from __future__ import annotations

from datetime import date

import pytest

from rentbilling.domain.due_dates import (
    calculate_due_date,
    calculate_next_due_date,
    calculate_payment_period,
    month_bounds,
)
from rentbilling.errors import InvalidArgument


@pytest.mark.parametrize(
    "year,month,due_day,expected",
    [
        (2026, 2, 31, date(2026, 2, 28)),
        (2028, 2, 31, date(2028, 2, 29)),
        (2026, 4, 31, date(2026, 4, 30)),
        (2026, 2, 29, date(2026, 2, 28)),
        (2026, 1, 31, date(2026, 1, 31)),
        (2026, 6, 1, date(2026, 6, 1)),
    ],
)
def test_due_day_clamps_to_month_length(year, month, due_day, expected):
    assert calculate_due_date(year, month, due_day) == expected


def test_every_month_clamps_day_31_to_last_day():
    for month in range(1, 13):
        start, end = month_bounds(2026, month)
        assert calculate_due_date(2026, month, 31) == end


@pytest.mark.parametrize("bad", [0, 32, -1])
def test_due_day_out_of_range_is_rejected(bad):
    with pytest.raises(InvalidArgument):
        calculate_due_date(2026, 3, bad)


def test_bad_month_is_rejected():
    with pytest.raises(InvalidArgument):
        calculate_due_date(2026, 13, 1)


def test_payment_period_is_the_due_dates_calendar_month():
    assert calculate_payment_period(date(2026, 2, 28)) == (date(2026, 2, 1), date(2026, 2, 28))
    assert calculate_payment_period(date(2026, 12, 5)) == (date(2026, 12, 1), date(2026, 12, 31))


def test_next_due_date_rolls_over_after_due_day():
    assert calculate_next_due_date(5, today=date(2026, 3, 5)) == date(2026, 3, 5)
    assert calculate_next_due_date(5, today=date(2026, 3, 6)) == date(2026, 4, 5)
    assert calculate_next_due_date(31, today=date(2026, 12, 31)) == date(2026, 12, 31)
    assert calculate_next_due_date(1, today=date(2026, 12, 2)) == date(2027, 1, 1)
    assert calculate_next_due_date(31, today=date(2026, 1, 31)) == date(2026, 1, 31)

from datetime import date

import pytest

from errors import InvalidArgumentError
from periods import (
    EPOCH,
    LookbackWindow,
    add_months,
    compare_months,
    due_date_for_month,
    months_between,
    overlap_days_in_year,
    parse_month,
    resolve_lookback,
)


@pytest.mark.parametrize("value", ["2024-13", "2024-00", "24-01", "2024/01", "", "1899-12"])
def test_parse_month_rejects_malformed(value):
    with pytest.raises(InvalidArgumentError):
        parse_month(value)


def test_months_compare_numerically():
    assert compare_months("2024-09", "2024-10") == -1
    assert compare_months("2025-01", "2024-12") == 1
    assert compare_months("2024-03", "2024-03") == 0


def test_add_months_rolls_over_years():
    assert add_months("2024-11", 3) == "2025-02"
    assert add_months("2024-01", -1) == "2023-12"


def test_months_between_is_inclusive():
    assert months_between("2024-11", "2025-02") == ["2024-11", "2024-12", "2025-01", "2025-02"]
    assert months_between("2024-05", "2024-04") == []


def test_due_date_clamps_day():
    assert due_date_for_month("2023-02", 31) == date(2023, 2, 28)
    assert due_date_for_month("2024-04", 0) == date(2024, 4, 1)


def test_overlap_days_in_year():
    assert overlap_days_in_year(date(2024, 1, 1), date(2024, 1, 31), 2024) == 31
    assert overlap_days_in_year(date(2023, 7, 1), date(2025, 1, 1), 2024) == 366
    assert overlap_days_in_year(date(2025, 1, 1), date(2025, 2, 1), 2024) == 0


def test_resolve_lookback_windows():
    today = date(2025, 6, 15)
    assert resolve_lookback("all", today).start == EPOCH
    five = resolve_lookback(LookbackWindow.five, today)
    assert (five.start, five.end) == (date(2020, 6, 15), today)


def test_resolve_lookback_from_leap_day():
    period = resolve_lookback("1", date(2024, 2, 29))
    assert period.start == date(2023, 2, 28)


def test_resolve_lookback_rejects_unknown_window():
    with pytest.raises(InvalidArgumentError):
        resolve_lookback("7", date(2025, 1, 1))

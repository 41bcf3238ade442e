import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from errors import InvalidArgumentError

MONTH_RE = re.compile(r"^\d{4}-\d{2}$")
EPOCH = date(1970, 1, 1)


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


class LookbackWindow(str, Enum):
    one = "1"
    three = "3"
    five = "5"
    ten = "10"
    fifteen = "15"
    all = "all"


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def parse_month(value: str) -> tuple[int, int]:
    """Decompose a ``YYYY-MM`` string into ``(year, month)`` integers."""
    if not isinstance(value, str) or not MONTH_RE.match(value.strip()):
        raise InvalidArgumentError(f"Invalid month: {value!r} (expected YYYY-MM)")
    year_raw, month_raw = value.strip().split("-")
    year, month = int(year_raw), int(month_raw)
    if not 1900 <= year <= 2200 or not 1 <= month <= 12:
        raise InvalidArgumentError(f"Invalid month: {value!r}")
    return year, month


def format_month(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def normalize_month(value: str) -> str:
    return format_month(*parse_month(value))


def compare_months(a: str, b: str) -> int:
    ka, kb = parse_month(a), parse_month(b)
    if ka == kb:
        return 0
    return -1 if ka < kb else 1


def add_months(month: str, count: int) -> str:
    year, mon = parse_month(month)
    month_index = (year * 12) + (mon - 1) + count
    return format_month(month_index // 12, (month_index % 12) + 1)


def months_between(start: str, end: str) -> list[str]:
    """Inclusive chronological list of months from ``start`` to ``end``."""
    if compare_months(end, start) < 0:
        return []
    months: list[str] = []
    current = normalize_month(start)
    while compare_months(current, end) <= 0:
        months.append(current)
        current = add_months(current, 1)
    return months


def month_in_range(month: str, start: str, end: Optional[str]) -> bool:
    if compare_months(month, start) < 0:
        return False
    if end and compare_months(month, end) > 0:
        return False
    return True


def current_month(today: Optional[date] = None) -> str:
    today = today or utc_today()
    return format_month(today.year, today.month)


def due_date_for_month(month: str, day_of_month: int) -> date:
    year, mon = parse_month(month)
    day = min(max(day_of_month, 1), 28)
    return date(year, mon, day)


def year_period(year: int) -> Period:
    return Period(str(year), date(year, 1, 1), date(year, 12, 31))


def days_in_year(year: int) -> int:
    return (date(year + 1, 1, 1) - date(year, 1, 1)).days


def overlap_days_in_year(start: date, end: date, year: int) -> int:
    lo = max(start, date(year, 1, 1))
    hi = min(end, date(year, 12, 31))
    if lo > hi:
        return 0
    return (hi - lo).days + 1


def _years_back(today: date, years: int) -> date:
    try:
        return today.replace(year=today.year - years)
    except ValueError:
        # Feb 29 anchored in a leap year
        return today.replace(year=today.year - years, day=28)


def resolve_lookback(window: str, today: Optional[date] = None) -> Period:
    today = today or utc_today()
    try:
        raw = window.value if isinstance(window, LookbackWindow) else str(window)
        lookback = LookbackWindow(raw)
    except ValueError as exc:
        raise InvalidArgumentError(f"Unsupported lookback window: {window!r}") from exc
    if lookback == LookbackWindow.all:
        return Period("all", EPOCH, today)
    return Period(lookback.value, _years_back(today, int(lookback.value)), today)

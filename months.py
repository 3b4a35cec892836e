from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings

MAX_DISPLAY_DAY = 28
MIN_YEAR = 1970
MAX_YEAR = 3000


@dataclass(frozen=True, order=True)
class MonthRef:
    year: int
    month: int

    @property
    def index(self) -> int:
        return month_index(self.year, self.month)

    def shift(self, months: int) -> "MonthRef":
        return from_month_index(self.index + months)

    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


def month_index(year: int, month: int) -> int:
    """Linear month ordinal; differences give month distances."""
    return year * 12 + (month - 1)


def from_month_index(index: int) -> MonthRef:
    return MonthRef(index // 12, index % 12 + 1)


def months_between(start: date, end: date) -> int:
    return month_index(end.year, end.month) - month_index(start.year, start.month)


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def current_month() -> MonthRef:
    today = local_today()
    return MonthRef(today.year, today.month)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def month_bounds(year: int, month: int) -> tuple[date, date]:
    return date(year, month, 1), date(year, month, days_in_month(year, month))


def display_day(due_date: Optional[date], transaction_date: Optional[date]) -> int:
    if due_date is not None:
        day = due_date.day
    elif transaction_date is not None:
        day = transaction_date.day
    else:
        day = 1
    return min(max(day, 1), MAX_DISPLAY_DAY)


def project_date(year: int, month: int, day: int = 1) -> date:
    # Days past the 28th are pulled back so every month can hold them.
    safe_month = min(max(month, 1), 12)
    safe_day = min(max(day, 1), MAX_DISPLAY_DAY)
    return date(year, safe_month, safe_day)


def resolve_month(month: Optional[object], year: Optional[object]) -> MonthRef:
    if month in (None, "") or year in (None, ""):
        raise ValueError("Month and year are required")
    try:
        month_value = int(month)
        year_value = int(year)
    except (TypeError, ValueError) as exc:
        raise ValueError("Month and year must be integers") from exc
    if not 1 <= month_value <= 12:
        raise ValueError("Month must be between 1 and 12")
    if not MIN_YEAR <= year_value <= MAX_YEAR:
        raise ValueError(f"Year must be between {MIN_YEAR} and {MAX_YEAR}")
    return MonthRef(year_value, month_value)


def resolve_optional_month(
    month: Optional[object], year: Optional[object]
) -> Optional[MonthRef]:
    if month in (None, "") and year in (None, ""):
        return None
    return resolve_month(month, year)


def parse_month_token(value: str) -> MonthRef:
    try:
        year_raw, month_raw = value.strip().split("-", 1)
    except ValueError as exc:
        raise ValueError(f"Invalid month '{value}', expected YYYY-MM") from exc
    return resolve_month(month_raw, year_raw)

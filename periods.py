import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings

_YEAR_MONTH_RE = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


@dataclass(frozen=True)
class Period:
    """Half-open instant range ``[start, end)``."""

    slug: str
    start: datetime
    end: datetime

    def contains(self, value: datetime) -> bool:
        return self.start <= value < self.end


def _local_zone() -> ZoneInfo:
    return ZoneInfo(get_settings().timezone)


def local_today() -> date:
    return datetime.now(_local_zone()).date()


def local_month_start(year: int, month: int) -> datetime:
    """Local midnight on the 1st of the month, as a naive UTC instant."""
    local = datetime(year, month, 1, tzinfo=_local_zone())
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def parse_year_month(value: str) -> tuple[int, int]:
    match = _YEAR_MONTH_RE.match(value or "")
    if not match:
        raise ValueError(f"Invalid year-month {value!r}, expected YYYY-MM")
    return int(match.group(1)), int(match.group(2))


def format_year_month(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    total_months = year * 12 + (month - 1) + delta
    return total_months // 12, total_months % 12 + 1


def month_period(year: int, month: int) -> Period:
    next_year, next_month = shift_month(year, month, 1)
    return Period(
        format_year_month(year, month),
        local_month_start(year, month),
        local_month_start(next_year, next_month),
    )


def year_month_period(value: str) -> Period:
    return month_period(*parse_year_month(value))


def current_month_period(today: Optional[date] = None) -> Period:
    today = today or local_today()
    return month_period(today.year, today.month)


def trailing_month_periods(count: int, today: Optional[date] = None) -> list[Period]:
    today = today or local_today()
    return [
        month_period(*shift_month(today.year, today.month, -offset))
        for offset in range(count - 1, -1, -1)
    ]

import re
from dataclasses import dataclass
from datetime import date
from typing import Optional

MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
FIRST_INDEX = 0
LAST_INDEX = 9999 * 12 + 11
# longest range a dashboard query may span
MAX_RANGE_MONTHS = 1200


def is_month_token(value: str) -> bool:
    return bool(MONTH_PATTERN.match(value or ""))


def month_token(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def current_month(today: Optional[date] = None) -> str:
    return month_token(today or date.today())


def parse_month(token: str) -> tuple[int, int]:
    if not is_month_token(token):
        raise ValueError("Month must be in YYYY-MM format")
    year_str, month_str = token.split("-", 1)
    return int(year_str), int(month_str)


def month_index(token: str) -> int:
    year, month = parse_month(token)
    return (year * 12) + (month - 1)


def token_for_index(index: int) -> str:
    if not FIRST_INDEX <= index <= LAST_INDEX:
        raise ValueError("Month is outside the supported range")
    return f"{index // 12:04d}-{(index % 12) + 1:02d}"


def add_months(token: str, count: int) -> str:
    return token_for_index(month_index(token) + count)


def previous_month(token: str) -> str:
    return add_months(token, -1)


def months_between(start: str, end: str) -> list[str]:
    """Inclusive list of month tokens from start to end; empty when start > end."""
    first = month_index(start)
    last = month_index(end)
    return [token_for_index(index) for index in range(first, last + 1)]


@dataclass(frozen=True)
class MonthRange:
    start: str
    end: str

    @property
    def months(self) -> list[str]:
        return months_between(self.start, self.end)


def lookback_range(length: int, *, today: Optional[date] = None) -> MonthRange:
    if length < 1:
        raise ValueError("Lookback must be at least one month")
    if length > MAX_RANGE_MONTHS:
        raise ValueError(f"Lookback cannot exceed {MAX_RANGE_MONTHS} months")
    end = current_month(today)
    return MonthRange(add_months(end, -(length - 1)), end)


def resolve_range(
    start: Optional[str],
    end: Optional[str],
    lookback: Optional[str],
    *,
    today: Optional[date] = None,
) -> MonthRange:
    if start and end:
        span = month_index(end) - month_index(start) + 1
        if span > MAX_RANGE_MONTHS:
            raise ValueError(f"Range cannot exceed {MAX_RANGE_MONTHS} months")
        return MonthRange(start, end)
    if lookback:
        try:
            length = int(lookback)
        except ValueError as exc:
            raise ValueError("months must be a whole number") from exc
        return lookback_range(length, today=today)
    raise ValueError("Both from and to parameters are required")

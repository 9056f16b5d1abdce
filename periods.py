from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from errors import ValidationError


@dataclass(frozen=True)
class Period:
    start: datetime
    end: datetime


def month_period(month: int, year: int) -> Period:
    """Calendar month as a half-open range of naive timestamps."""
    if not 1 <= month <= 12:
        raise ValidationError("month must be between 1 and 12")
    if not 1000 <= year <= 9999:
        raise ValidationError("year must have four digits")
    start = datetime(year, month, 1)
    if month == 12:
        end = datetime(year + 1, 1, 1)
    else:
        end = datetime(year, month + 1, 1)
    return Period(start, end)


def resolve_period(month: Optional[int], year: Optional[int]) -> Optional[Period]:
    # A filter needs both parts; either one alone means "all time".
    if month is None or year is None:
        return None
    return month_period(month, year)

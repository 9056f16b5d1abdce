from datetime import datetime

import pytest

from errors import ValidationError
from periods import month_period, resolve_period


def test_month_period_is_half_open() -> None:
    period = month_period(2, 2024)

    assert period.start == datetime(2024, 2, 1)
    assert period.end == datetime(2024, 3, 1)


def test_december_rolls_into_next_year() -> None:
    period = month_period(12, 2025)

    assert period.end == datetime(2026, 1, 1)


def test_resolve_needs_both_parts() -> None:
    assert resolve_period(None, None) is None
    assert resolve_period(5, None) is None
    assert resolve_period(None, 2025) is None
    assert resolve_period(5, 2025) == month_period(5, 2025)


@pytest.mark.parametrize("month, year", [(0, 2025), (13, 2025), (1, 99)])
def test_rejects_out_of_range_values(month, year) -> None:
    with pytest.raises(ValidationError):
        month_period(month, year)

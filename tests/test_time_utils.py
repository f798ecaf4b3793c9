from datetime import datetime, timezone

import pytest

from consensus_engine.core.errors import InvalidMonth
from consensus_engine.core.time_utils import (
    ensure_utc,
    iso_week,
    month_bounds,
    parse_month,
    preceding_months,
    previous_week,
    shift_month,
    week_bounds,
)


class TestWeeks:
    def test_iso_week_across_new_year(self):
        assert iso_week(datetime(2026, 1, 1, tzinfo=timezone.utc)) == (2026, 1)
        assert iso_week(datetime(2027, 1, 1, tzinfo=timezone.utc)) == (2026, 53)

    def test_week_bounds(self):
        start, end = week_bounds(2026, 41)
        assert start == datetime(2026, 10, 5, tzinfo=timezone.utc)
        assert end == datetime(2026, 10, 12, tzinfo=timezone.utc)

    def test_previous_week(self):
        assert previous_week(datetime(2026, 10, 12, 0, 0, 1)) == (2026, 41)

    def test_naive_is_utc(self):
        assert ensure_utc(datetime(2026, 1, 1)).tzinfo == timezone.utc


class TestMonths:
    def test_shift(self):
        assert shift_month("2026-01", -1) == "2025-12"
        assert shift_month("2026-11", 3) == "2027-02"

    def test_preceding(self):
        assert preceding_months("2026-02", 3) == ["2026-01", "2025-12", "2025-11"]

    def test_bounds(self):
        start, end, award_ts = month_bounds("2024-02")
        assert start == datetime(2024, 2, 1, tzinfo=timezone.utc)
        assert end == datetime(2024, 3, 1, tzinfo=timezone.utc)
        assert award_ts == datetime(2024, 2, 29, 23, 59, 59, tzinfo=timezone.utc)

    @pytest.mark.parametrize("month", ["2026-13", "2026-00", "26-01", "2026/01", "latest"])
    def test_invalid(self, month):
        with pytest.raises(InvalidMonth):
            parse_month(month)

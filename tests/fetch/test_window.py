"""Tests for fetch window resolution."""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pytest
from pydantic import ValidationError

from mailtriage.domain.types import FetchMode
from mailtriage.fetch.window import FetchRequest, resolve_window

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


class TestFetchRequest:
    def test_defaults_to_days_mode(self) -> None:
        assert FetchRequest(account_id="a").mode == FetchMode.DAYS

    def test_range_requires_both_bounds(self) -> None:
        with pytest.raises(ValidationError):
            FetchRequest(account_id="a", use_days=False, start_date=date(2026, 1, 1))

    def test_range_rejects_reversed_bounds(self) -> None:
        with pytest.raises(ValidationError):
            FetchRequest(
                account_id="a",
                use_days=False,
                start_date=date(2026, 2, 1),
                end_date=date(2026, 1, 1),
            )


class TestResolveWindow:
    def test_days_mode_uses_request_days(self) -> None:
        window = resolve_window(FetchRequest(account_id="a", days=7), 30, NOW)

        assert window.mode == FetchMode.DAYS
        assert window.end == NOW
        assert window.start == NOW - timedelta(days=7)
        assert window.period_days == 7

    def test_days_mode_falls_back_to_default(self) -> None:
        window = resolve_window(FetchRequest(account_id="a"), 30, NOW)

        assert window.start == NOW - timedelta(days=30)

    def test_range_mode_is_inclusive_of_end_day(self) -> None:
        request = FetchRequest(
            account_id="a",
            use_days=False,
            start_date=date(2026, 1, 1),
            end_date=date(2026, 1, 31),
        )

        window = resolve_window(request, 30, NOW)

        assert window.mode == FetchMode.RANGE
        assert window.since_date == date(2026, 1, 1)
        assert window.before_date == date(2026, 2, 1)
        assert window.before == datetime(2026, 2, 1, tzinfo=UTC)

    def test_contains_day_is_day_granular(self) -> None:
        request = FetchRequest(
            account_id="a",
            use_days=False,
            start_date=date(2026, 1, 1),
            end_date=date(2026, 1, 1),
        )
        window = resolve_window(request, 30, NOW)

        assert window.contains_day(datetime(2026, 1, 1, 23, 59, tzinfo=UTC))
        assert not window.contains_day(datetime(2026, 1, 2, 0, 0, tzinfo=UTC))
        assert not window.contains_day(datetime(2025, 12, 31, 23, 59, tzinfo=UTC))
        assert window.period_days == 1

"""Fetch window resolution.

A window is either the last N days up to now (mode ``days``) or an explicit
inclusive day range (mode ``range``).  Both resolve to a half-open range
whose exclusive upper bound is one day past the end.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta

from pydantic import BaseModel, ConfigDict, model_validator

from mailtriage.domain.types import FetchMode
from mailtriage.grouping.senders import period_days

ONE_DAY = timedelta(days=1)


class FetchRequest(BaseModel):
    """What the caller asks a fetch to cover.

    ``use_days`` selects between the last ``days`` days (falling back to the
    fetch settings when ``days`` is omitted) and the explicit
    ``start_date``..``end_date`` range.  ``max_results`` falls back to the
    fetch settings too.
    """

    model_config = ConfigDict(frozen=True)

    account_id: str
    use_days: bool = True
    days: int | None = None
    start_date: date | None = None
    end_date: date | None = None
    max_results: int | None = None

    @model_validator(mode="after")
    def range_needs_both_bounds(self) -> "FetchRequest":
        """An explicit range must name both ends, in order."""
        if not self.use_days:
            if self.start_date is None or self.end_date is None:
                raise ValueError("start_date and end_date are required when use_days is false")
            if self.start_date > self.end_date:
                raise ValueError("start_date must not be after end_date")
        return self

    @property
    def mode(self) -> FetchMode:
        return FetchMode.DAYS if self.use_days else FetchMode.RANGE


@dataclass(frozen=True)
class FetchWindow:
    """A resolved, timezone-aware fetch window."""

    start: datetime
    end: datetime
    mode: FetchMode

    @property
    def before(self) -> datetime:
        """Exclusive upper bound: one day past ``end``."""
        return self.end + ONE_DAY

    @property
    def since_date(self) -> date:
        return self.start.date()

    @property
    def before_date(self) -> date:
        return self.end.date() + ONE_DAY

    @property
    def period_days(self) -> int:
        return period_days(self.start, self.end)

    def contains_day(self, moment: datetime) -> bool:
        """Day-granular membership test, matching server-side SENTSINCE/SENTBEFORE."""
        day = moment.astimezone(UTC).date()
        return self.since_date <= day < self.before_date


def resolve_window(
    request: FetchRequest, default_days: int, now: datetime | None = None
) -> FetchWindow:
    """Resolve a fetch request into concrete bounds.

    Args:
        request: The caller's request.
        default_days: Sampling days used when the request gives none.
        now: Current time; defaults to ``datetime.now(UTC)``.

    Returns:
        The resolved ``FetchWindow``.
    """
    now = now or datetime.now(tz=UTC)
    if request.use_days:
        days = request.days or default_days
        return FetchWindow(start=now - timedelta(days=days), end=now, mode=FetchMode.DAYS)
    assert request.start_date is not None and request.end_date is not None
    return FetchWindow(
        start=datetime.combine(request.start_date, time.min, tzinfo=UTC),
        end=datetime.combine(request.end_date, time.min, tzinfo=UTC),
        mode=FetchMode.RANGE,
    )

"""Tests for sender grouping."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from mailtriage.domain.models import AIJudgment, ScoreRange
from mailtriage.grouping.senders import (
    build_from_groups,
    extract_from_address,
    frequency,
    period_days,
    score_range,
)

JUDGED_AT = datetime(2026, 3, 1, tzinfo=UTC)


class TestExtractFromAddress:
    @pytest.mark.parametrize(
        ("header", "expected"),
        [
            ("Shop <News@Shop.Example>", "news@shop.example"),
            ("  plain@example.com ", "plain@example.com"),
            ('"Last, First" <first@example.com>', "first@example.com"),
            ("", ""),
        ],
    )
    def test_normalizes(self, header: str, expected: str) -> None:
        assert extract_from_address(header) == expected


class TestFrequency:
    def test_rounds_half_up_to_one_decimal(self) -> None:
        assert frequency(1, 4) == 0.3
        assert frequency(5, 4) == 1.3
        assert frequency(10, 30) == 0.3

    def test_period_days_never_below_one(self) -> None:
        moment = datetime(2026, 1, 1, tzinfo=UTC)
        assert period_days(moment, moment) == 1
        assert period_days(moment, datetime(2026, 1, 31, tzinfo=UTC)) == 30


class TestScoreRange:
    def test_unjudged_is_minus_one(self, make_message) -> None:
        assert score_range([make_message("a")]) == ScoreRange()

    def test_min_max_over_judged_only(self, make_message) -> None:
        messages = [
            make_message("a", ai_judgment=AIJudgment(marketing=2, spam=9, judged_at=JUDGED_AT)),
            make_message("b"),
            make_message("c", ai_judgment=AIJudgment(marketing=7, spam=1, judged_at=JUDGED_AT)),
        ]

        assert score_range(messages) == ScoreRange(marketing=(2, 7), spam=(1, 9))


class TestBuildFromGroups:
    def test_partitions_the_sampling(self, make_message) -> None:
        senders = ["a@x.com", "b@x.com", "c@x.com"]
        messages = [
            make_message(f"m{i}", sender=senders[i % 3], age_hours=i) for i in range(12)
        ]

        groups = build_from_groups(messages, 30)

        assert sum(g.count for g in groups) == len(messages)
        ids = [m.id for g in groups for m in g.messages]
        assert sorted(ids) == sorted(m.id for m in messages)
        assert [g.from_address for g in groups] == senders

    def test_group_fields(self, make_message) -> None:
        messages = [
            make_message("old", sender="a@x.com", subject="Old", age_hours=50),
            make_message("new", sender="a@x.com", subject="New", age_hours=2),
        ]

        (group,) = build_from_groups(messages, 7)

        assert group.latest_subject == "New"
        assert [m.id for m in group.messages] == ["new", "old"]
        assert group.frequency == 0.3
        assert group.from_names == ["Sender <a@x.com>"]

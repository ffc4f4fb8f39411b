"""Tests for rule evaluation, rule grouping and keyword extraction."""

from __future__ import annotations

import pytest

from mailtriage.domain.models import EmailBodyParts, RuleLine, RulePattern
from mailtriage.domain.types import PatternField
from mailtriage.grouping.matcher import (
    build_rule_groups,
    extract_search_keywords,
    find_matching_rule_index,
    literal_runs,
    matches_rule_line,
)
from mailtriage.grouping.rules import parse_rule_text
from mailtriage.grouping.senders import build_from_groups

EMPTY = EmailBodyParts()


def _line(*patterns: tuple[PatternField, str]) -> RuleLine:
    return RuleLine(
        patterns=[RulePattern(field=f, regex=r) for f, r in patterns], line_index=0, raw_text=""
    )


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


class TestMatching:
    def test_fields(self) -> None:
        body = EmailBodyParts(plain="Use code SAVE10", html="")

        assert matches_rule_line(_line((PatternField.SUBJECT, "sale")), "Big SALE", EMPTY)
        assert not matches_rule_line(_line((PatternField.SUBJECT, "save")), "Hi", body)
        assert matches_rule_line(_line((PatternField.BODY, "save\\d+")), "Hi", body)
        assert matches_rule_line(_line((PatternField.ANY, "save")), "Hi", body)

    def test_all_patterns_must_match(self) -> None:
        line = _line((PatternField.SUBJECT, "sale"), (PatternField.BODY, "unsubscribe"))

        assert not matches_rule_line(line, "sale", EMPTY)
        assert matches_rule_line(line, "sale", EmailBodyParts(html="<a>Unsubscribe</a>"))

    def test_invalid_regex_never_matches(self) -> None:
        assert not matches_rule_line(_line((PatternField.ANY, "[broken")), "[broken", EMPTY)

    def test_first_matching_line_wins(self) -> None:
        rules = parse_rule_text('"weekly"\n"sale"\n"weekly sale"')

        assert find_matching_rule_index(rules, "weekly sale", EMPTY) == 0
        assert find_matching_rule_index(rules, "sale", EMPTY) == 1
        assert find_matching_rule_index(rules, "other", EMPTY) == -1


# ---------------------------------------------------------------------------
# Rule groups
# ---------------------------------------------------------------------------


class TestBuildRuleGroups:
    def test_sale_scenario(self, make_message) -> None:
        """12 messages from 3 senders, 4 of them sales."""
        messages = []
        for i in range(12):
            sender = ["a@x.com", "b@x.com", "c@x.com"][i % 3]
            subject = f"Summer Sale #{i}" if i in (0, 3, 6, 4) else f"Update {i}"
            messages.append(make_message(f"m{i}", sender=sender, subject=subject, age_hours=i))
        rules = parse_rule_text('subject:"(?i)sale"')

        groups = build_rule_groups(messages, {}, rules, 30)
        from_groups = build_from_groups(messages, 30)

        assert len(groups) == 1
        group = groups[0]
        assert group.count == 4
        assert group.rule_key == "rule:0"
        assert group.ref_from == "a@x.com"
        assert group.ref_subject == "Summer Sale #0"
        assert len(from_groups) == 3
        assert sum(g.count for g in from_groups) == 12

    def test_members_satisfy_line_and_no_earlier_line(self, make_message) -> None:
        messages = [
            make_message("1", subject="weekly sale"),
            make_message("2", subject="sale"),
            make_message("3", subject="nothing"),
        ]
        rules = parse_rule_text('"weekly"\n"sale"')

        groups = build_rule_groups(messages, {}, rules, 7)

        assert [[m.id for m in g.messages] for g in groups] == [["1"], ["2"]]
        for group in groups:
            position = rules.lines.index(group.rule_line)
            for message in group.messages:
                assert matches_rule_line(group.rule_line, message.subject, EMPTY)
                for earlier in rules.lines[:position]:
                    assert not matches_rule_line(earlier, message.subject, EMPTY)

    def test_body_rules_use_supplied_bodies(self, make_message) -> None:
        messages = [make_message("1"), make_message("2")]
        bodies = {"2": EmailBodyParts(plain="click to unsubscribe")}

        groups = build_rule_groups(messages, bodies, parse_rule_text('body:"unsubscribe"'), 7)

        assert [m.id for m in groups[0].messages] == ["2"]


# ---------------------------------------------------------------------------
# Keyword extraction
# ---------------------------------------------------------------------------


class TestKeywords:
    @pytest.mark.parametrize(
        ("regex", "runs"),
        [
            ("(?i)sale", ["sale"]),
            ("big\\s+sale", ["big", "sale"]),
            ("colou?r", ["colo", "r"]),
            ("a|b", []),
            ("news[0-9]+letter", ["news", "letter"]),
            ("price \\$5", ["price $5"]),
        ],
    )
    def test_literal_runs(self, regex: str, runs: list[str]) -> None:
        assert literal_runs(regex) == runs

    def test_longest_run_per_pattern(self) -> None:
        line = _line((PatternField.SUBJECT, "(?i)weekly.*newsletter"), (PatternField.ANY, "ab"))

        keywords = extract_search_keywords(line)

        assert [(k.field, k.keyword) for k in keywords] == [
            (PatternField.SUBJECT, "newsletter")
        ]

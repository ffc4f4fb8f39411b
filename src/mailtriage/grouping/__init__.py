"""Sender grouping and the user-authored rule DSL."""

from mailtriage.grouping.matcher import (
    SearchKeyword,
    build_rule_groups,
    extract_search_keywords,
    find_matching_rule_index,
    matches_pattern,
    matches_rule_line,
)
from mailtriage.grouping.rules import (
    parse_rule_line,
    parse_rule_text,
    serialize_rules,
    validate_regex,
    validate_rules,
)
from mailtriage.grouping.senders import (
    build_from_groups,
    extract_from_address,
    frequency,
    newest_first,
    period_days,
    score_range,
)

__all__ = [
    "SearchKeyword",
    "build_from_groups",
    "build_rule_groups",
    "extract_from_address",
    "extract_search_keywords",
    "find_matching_rule_index",
    "frequency",
    "matches_pattern",
    "matches_rule_line",
    "newest_first",
    "parse_rule_line",
    "parse_rule_text",
    "period_days",
    "score_range",
    "serialize_rules",
    "validate_regex",
    "validate_rules",
]

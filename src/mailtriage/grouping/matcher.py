"""Rule evaluation and rule grouping.

A pattern is a case-insensitive regex tested against the field it names.  A
pattern that fails to compile simply never matches; compile errors are
reported separately by :func:`mailtriage.grouping.rules.validate_rules`.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass
from functools import lru_cache

from mailtriage.domain.models import (
    AccountRules,
    EmailBodyParts,
    EmailMessage,
    RuleGroup,
    RuleLine,
    RulePattern,
)
from mailtriage.domain.types import PatternField
from mailtriage.grouping.senders import frequency, newest_first, score_range

_EMPTY_BODY = EmailBodyParts()

# Characters that end a literal run when scanning a regex for keywords.
_RUN_BREAKERS = frozenset(".^$+")
_OPTIONAL_QUANTIFIERS = frozenset("*?{")
_MIN_KEYWORD_LENGTH = 3


@lru_cache(maxsize=512)
def _compile(regex: str) -> re.Pattern[str] | None:
    try:
        return re.compile(regex, re.IGNORECASE)
    except re.error:
        return None


def matches_pattern(pattern: RulePattern, subject: str, body: EmailBodyParts) -> bool:
    compiled = _compile(pattern.regex)
    if compiled is None:
        return False
    if pattern.field == PatternField.SUBJECT:
        return compiled.search(subject) is not None
    if pattern.field == PatternField.BODY:
        return compiled.search(body.html) is not None or compiled.search(body.plain) is not None
    return (
        compiled.search(subject) is not None
        or compiled.search(body.html) is not None
        or compiled.search(body.plain) is not None
    )


def matches_rule_line(line: RuleLine, subject: str, body: EmailBodyParts) -> bool:
    """True if every pattern of *line* matches (AND)."""
    return all(matches_pattern(p, subject, body) for p in line.patterns)


def find_matching_rule_index(rules: AccountRules, subject: str, body: EmailBodyParts) -> int:
    """Position in ``rules.lines`` of the first matching line, or ``-1``."""
    for position, line in enumerate(rules.lines):
        if matches_rule_line(line, subject, body):
            return position
    return -1


def build_rule_groups(
    messages: list[EmailMessage],
    body_parts: dict[str, EmailBodyParts],
    rules: AccountRules,
    days: int,
) -> list[RuleGroup]:
    """Assign each message to its first matching rule line.

    Unmatched messages are left out entirely.  Groups come back in rule
    order and only for lines with at least one message.

    Args:
        messages: The sampled messages.
        body_parts: Decoded bodies keyed by message id; missing ids match
            with empty bodies.
        rules: Parsed account rules.
        days: Length of the sampling window in days.

    Returns:
        One ``RuleGroup`` per rule line that matched something.
    """
    buckets: dict[int, list[EmailMessage]] = {}
    for message in messages:
        position = find_matching_rule_index(
            rules, message.subject, body_parts.get(message.id, _EMPTY_BODY)
        )
        if position >= 0:
            buckets.setdefault(position, []).append(message)

    groups: list[RuleGroup] = []
    for position in sorted(buckets):
        members = buckets[position]
        line = rules.lines[position]
        ordered = newest_first(members)
        # most_common keeps first-seen order among equal counts.
        ref_from = Counter(m.from_address for m in members).most_common(1)[0][0]
        groups.append(
            RuleGroup(
                rule_key=f"rule:{line.line_index}",
                rule_text=line.raw_text,
                rule_line=line,
                count=len(members),
                frequency=frequency(len(members), days),
                latest_date=ordered[0].date,
                ref_from=ref_from,
                ref_subject=ordered[0].subject,
                messages=ordered,
                ai_score_range=score_range(members),
            )
        )
    return groups


@dataclass(frozen=True)
class SearchKeyword:
    """A literal every match of a pattern must contain, usable as a server-side pre-filter."""

    field: PatternField
    keyword: str


def _skip_class(regex: str, i: int) -> int:
    """Index just past the character class starting at ``regex[i] == '['``."""
    i += 1
    if i < len(regex) and regex[i] == "^":
        i += 1
    if i < len(regex) and regex[i] == "]":
        i += 1
    while i < len(regex) and regex[i] != "]":
        i += 2 if regex[i] == "\\" else 1
    return i + 1


def _skip_group(regex: str, i: int) -> int:
    """Index just past the group starting at ``regex[i] == '('``."""
    depth = 0
    while i < len(regex):
        ch = regex[i]
        if ch == "\\":
            i += 2
            continue
        if ch == "[":
            i = _skip_class(regex, i)
            continue
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    return i


def _skip_quantifier(regex: str, i: int) -> int:
    if i < len(regex) and regex[i] == "{":
        end = regex.find("}", i)
        i = len(regex) if end == -1 else end + 1
    else:
        i += 1
    if i < len(regex) and regex[i] in "?+":
        i += 1
    return i


def literal_runs(regex: str) -> list[str]:
    """Literal substrings that every match of *regex* must contain.

    Groups and character classes are skipped wholesale, a character followed
    by an optional quantifier is dropped, and a top-level alternation yields
    nothing since no single literal is then required.
    """
    runs: list[str] = []
    current: list[str] = []

    def flush() -> None:
        if current:
            runs.append("".join(current))
            current.clear()

    i = 0
    while i < len(regex):
        ch = regex[i]
        if ch == "|":
            return []
        if ch == "\\":
            escaped = regex[i + 1 : i + 2]
            i += 2
            if escaped and not escaped.isalnum():
                current.append(escaped)
            else:
                flush()
            continue
        if ch == "[":
            flush()
            i = _skip_class(regex, i)
            continue
        if ch == "(":
            flush()
            i = _skip_group(regex, i)
            if i < len(regex) and (regex[i] in _OPTIONAL_QUANTIFIERS or regex[i] == "+"):
                i = _skip_quantifier(regex, i)
            continue
        if ch in _OPTIONAL_QUANTIFIERS:
            if current:
                current.pop()
            flush()
            i = _skip_quantifier(regex, i)
            continue
        if ch in _RUN_BREAKERS or ch == ")":
            if ch == "+":
                i = _skip_quantifier(regex, i)
            else:
                i += 1
            flush()
            continue
        current.append(ch)
        i += 1
    flush()
    return runs


def extract_search_keywords(line: RuleLine) -> list[SearchKeyword]:
    """Longest required literal of each pattern that has one of useful length."""
    keywords: list[SearchKeyword] = []
    for pattern in line.patterns:
        runs = [r.strip() for r in literal_runs(pattern.regex)]
        runs = [r for r in runs if len(r) >= _MIN_KEYWORD_LENGTH]
        if runs:
            keywords.append(SearchKeyword(field=pattern.field, keyword=max(runs, key=len)))
    return keywords

"""Parser for the rule DSL.

Rule syntax, one rule per line::

    subject:"regex"          match the subject only
    body:"regex"             match the HTML or plain body
    "regex"                  match subject or either body
    subject:["r1", "r2"]     array form; every entry must match
    "a" body:"b"             several patterns on one line are AND'ed

Separate lines are OR'ed; the first matching line wins.  Blank lines and
lines starting with ``#`` are ignored.  Inside quotes a backslash escapes the
next character.  A line that yields no pattern is dropped silently.
"""

from __future__ import annotations

import re

from mailtriage.domain.models import AccountRules, RuleLine, RulePattern
from mailtriage.domain.types import PatternField

_FIELD_PREFIX = re.compile(r"^(subject|body):", re.IGNORECASE)
_QUOTED = re.compile(r'"([^"\\]*(?:\\.[^"\\]*)*)"')
_ESCAPED_CHAR = re.compile(r"\\(.)", re.DOTALL)


def _unescape(text: str) -> str:
    return _ESCAPED_CHAR.sub(r"\1", text)


def _escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


def _closing_quote(text: str, start: int) -> int:
    """Index of the quote closing the one at *start*, or -1."""
    escaped = False
    for i in range(start + 1, len(text)):
        ch = text[i]
        if escaped:
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == '"':
            return i
    return -1


def _closing_bracket(text: str) -> int:
    """Index of the ``]`` closing the ``[`` at position 0, skipping quoted text."""
    depth = 0
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == '"':
            end = _closing_quote(text, i)
            if end == -1:
                return -1
            i = end + 1
            continue
        if ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return -1


def _parse_next(text: str) -> tuple[list[RulePattern], str] | None:
    """Parse one (optionally prefixed) literal or array from the start of *text*."""
    field = PatternField.ANY
    match = _FIELD_PREFIX.match(text)
    if match:
        field = PatternField(match.group(1).lower())
        text = text[match.end() :]

    if text.startswith("["):
        end = _closing_bracket(text)
        if end != -1:
            patterns = [
                RulePattern(field=field, regex=_unescape(m.group(1)))
                for m in _QUOTED.finditer(text[1:end])
            ]
            return patterns, text[end + 1 :]

    if text.startswith('"'):
        end = _closing_quote(text, 0)
        if end != -1:
            return [RulePattern(field=field, regex=_unescape(text[1:end]))], text[end + 1 :]

    return None


def parse_rule_line(text: str) -> list[RulePattern]:
    """Parse every pattern on one rule line; stops at the first unparseable token."""
    patterns: list[RulePattern] = []
    remaining = text
    while True:
        remaining = remaining.lstrip()
        if not remaining:
            break
        parsed = _parse_next(remaining)
        if parsed is None:
            break
        found, remaining = parsed
        patterns.extend(found)
    return patterns


def parse_rule_text(rule_text: str) -> AccountRules:
    """Parse free-form rule text into structured rules.

    Args:
        rule_text: The text as typed by the user.

    Returns:
        ``AccountRules`` carrying the text verbatim plus one ``RuleLine`` per
        line that produced at least one pattern.  ``line_index`` is the
        zero-based position of the line in *rule_text*.
    """
    lines: list[RuleLine] = []
    for index, raw in enumerate(rule_text.split("\n")):
        text = raw.strip()
        if not text or text.startswith("#"):
            continue
        patterns = parse_rule_line(text)
        if patterns:
            lines.append(RuleLine(patterns=patterns, line_index=index, raw_text=text))
    return AccountRules(rule_text=rule_text, lines=lines)


def render_patterns(patterns: list[RulePattern]) -> str:
    """Render patterns in canonical form, one quoted literal per pattern."""
    tokens = []
    for pattern in patterns:
        prefix = "" if pattern.field == PatternField.ANY else f"{pattern.field}:"
        tokens.append(f'{prefix}"{_escape(pattern.regex)}"')
    return " ".join(tokens)


def serialize_rules(rules: AccountRules) -> str:
    """Render structured rules back to rule text.

    Each line keeps its original position (gaps become blank lines) and its
    original text when that text still parses to the same patterns; otherwise
    the canonical rendering is used.  Parsing the result yields the same
    lines as *rules*.
    """
    rendered: dict[int, str] = {}
    for line in rules.lines:
        if parse_rule_line(line.raw_text) == line.patterns:
            rendered[line.line_index] = line.raw_text
        else:
            rendered[line.line_index] = render_patterns(line.patterns)
    if not rendered:
        return ""
    return "\n".join(rendered.get(i, "") for i in range(max(rendered) + 1))


def validate_regex(pattern: str) -> str | None:
    """Return ``None`` if *pattern* compiles case-insensitively, else the error text."""
    try:
        re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        return str(exc)
    return None


def validate_rules(rules: AccountRules) -> list[tuple[int, str]]:
    """Return ``(line_index, error)`` for every pattern that fails to compile."""
    errors: list[tuple[int, str]] = []
    for line in rules.lines:
        for pattern in line.patterns:
            error = validate_regex(pattern.regex)
            if error is not None:
                errors.append((line.line_index, error))
    return errors

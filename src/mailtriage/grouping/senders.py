"""Sender grouping: partition a sampling by normalized sender address."""

from __future__ import annotations

import math
import re
from collections.abc import Iterable
from datetime import UTC, datetime

from mailtriage.domain.models import EmailMessage, FromGroup, ScoreRange

_BRACKETED_ADDRESS = re.compile(r"<([^>]+)>")

_OLDEST = datetime.min.replace(tzinfo=UTC)


def extract_from_address(from_header: str) -> str:
    """Normalize a From header to the address used as the grouping key.

    Args:
        from_header: Raw header value, e.g. ``'Shop <news@shop.example>'``.

    Returns:
        The bracketed address if present, else the whole value; trimmed and
        case-folded.
    """
    match = _BRACKETED_ADDRESS.search(from_header)
    address = match.group(1) if match else from_header
    return address.strip().lower()


def period_days(start: datetime, end: datetime) -> int:
    """Whole days covered by a fetch window, never less than one."""
    return max(1, math.ceil((end - start).total_seconds() / 86400))


def frequency(count: int, days: int) -> float:
    """Messages per day rounded half-up to one decimal."""
    if days <= 0:
        return float(count)
    return math.floor(count / days * 10 + 0.5) / 10


def newest_first(messages: Iterable[EmailMessage]) -> list[EmailMessage]:
    """Sort by date descending; ties keep their input order, undated sort last."""
    return sorted(messages, key=lambda m: m.date or _OLDEST, reverse=True)


def score_range(messages: Iterable[EmailMessage]) -> ScoreRange:
    """Compute min/max AI scores over the judged messages.

    Returns:
        ``(-1, -1)`` per metric when no message carries a judgment.
    """
    judged = [m.ai_judgment for m in messages if m.ai_judgment is not None]
    if not judged:
        return ScoreRange()
    marketing = [j.marketing for j in judged]
    spam = [j.spam for j in judged]
    return ScoreRange(
        marketing=(min(marketing), max(marketing)),
        spam=(min(spam), max(spam)),
    )


def _group_key(message: EmailMessage) -> str:
    return message.from_address.strip().lower() or extract_from_address(message.from_header)


def build_from_groups(messages: list[EmailMessage], days: int) -> list[FromGroup]:
    """Group messages by sender.

    Every message lands in exactly one group.  Groups appear in the order
    their sender is first seen; messages within a group are newest first and
    the group's latest fields come from the first of them.

    Args:
        messages: The sampled messages.
        days: Length of the sampling window in days.

    Returns:
        One ``FromGroup`` per distinct normalized sender address.
    """
    buckets: dict[str, list[EmailMessage]] = {}
    for message in messages:
        buckets.setdefault(_group_key(message), []).append(message)

    groups: list[FromGroup] = []
    for address, members in buckets.items():
        # dict.fromkeys keeps first-seen order while de-duplicating.
        names = list(dict.fromkeys(m.from_header for m in members))
        ordered = newest_first(members)
        latest = ordered[0]
        groups.append(
            FromGroup(
                from_address=address,
                from_names=names,
                count=len(members),
                frequency=frequency(len(members), days),
                latest_subject=latest.subject,
                latest_date=latest.date,
                messages=ordered,
                ai_score_range=score_range(members),
            )
        )
    return groups

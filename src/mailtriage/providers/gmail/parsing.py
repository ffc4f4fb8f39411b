"""Decode Gmail API message resources into domain models."""

from __future__ import annotations

import base64
import re
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

from mailtriage.domain.models import EmailBodyParts, EmailMessage
from mailtriage.grouping.senders import extract_from_address

IMPORTANT_LABEL = "IMPORTANT"
STARRED_LABEL = "STARRED"

_CHARSET = re.compile(r"""charset\s*=\s*["']?([^"';\s]+)""", re.IGNORECASE)


def decode_base64url(data: str) -> bytes:
    """Decode unpadded base64url as returned by the Gmail API."""
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def _decode_text(data: str, charset: str) -> str:
    raw = decode_base64url(data)
    try:
        return raw.decode(charset, errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


def header_map(payload: dict[str, Any]) -> dict[str, str]:
    """Lower-cased header name to value; the first occurrence wins."""
    headers: dict[str, str] = {}
    for header in payload.get("headers", []):
        headers.setdefault(header.get("name", "").lower(), header.get("value", ""))
    return headers


def _message_date(headers: dict[str, str], internal_date: str | None) -> datetime | None:
    value = headers.get("date")
    if value:
        try:
            return parsedate_to_datetime(value)
        except (TypeError, ValueError):
            pass
    if internal_date:
        return datetime.fromtimestamp(int(internal_date) / 1000, tz=UTC)
    return None


def parse_gmail_message(data: dict[str, Any]) -> EmailMessage:
    """Build an ``EmailMessage`` from a ``format=metadata`` message resource.

    The date comes from the ``Date`` header, falling back to Gmail's
    ``internalDate`` when the header is missing or unparseable.
    """
    headers = header_map(data.get("payload", {}))
    label_ids: list[str] = data.get("labelIds", [])
    from_header = headers.get("from", "")
    return EmailMessage(
        id=data["id"],
        thread_id=data.get("threadId", ""),
        from_header=from_header,
        from_address=extract_from_address(from_header),
        to=headers.get("to", ""),
        subject=headers.get("subject", ""),
        date=_message_date(headers, data.get("internalDate")),
        snippet=data.get("snippet", ""),
        label_ids=label_ids,
        is_important=IMPORTANT_LABEL in label_ids,
        is_starred=STARRED_LABEL in label_ids,
    )


def _part_charset(part: dict[str, Any]) -> str:
    content_type = header_map(part).get("content-type", "")
    match = _CHARSET.search(content_type)
    return match.group(1) if match else "utf-8"


def extract_body_parts(payload: dict[str, Any]) -> EmailBodyParts:
    """Return the first inline ``text/plain`` and ``text/html`` bodies of a payload.

    Parts are visited depth-first in document order with an explicit stack.
    Parts carrying a filename are attachments and are skipped.
    """
    plain = ""
    html = ""
    stack = [payload]
    while stack and not (plain and html):
        part = stack.pop()
        children = part.get("parts") or []
        if children:
            stack.extend(reversed(children))
            continue
        data = (part.get("body") or {}).get("data")
        if not data or part.get("filename"):
            continue
        mime_type = part.get("mimeType", "")
        if mime_type == "text/html" and not html:
            html = _decode_text(data, _part_charset(part))
        elif mime_type != "text/html" and not plain and mime_type.startswith("text/"):
            plain = _decode_text(data, _part_charset(part))
    return EmailBodyParts(plain=plain, html=html)


def decode_raw(data: dict[str, Any]) -> str:
    """Full RFC 822 source of a ``format=raw`` message resource, or ``""``."""
    raw = data.get("raw")
    if not raw:
        return ""
    return decode_base64url(raw).decode("utf-8", errors="replace")

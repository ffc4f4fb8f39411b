"""Pick and normalize the text an AI judge sees for a message."""

from __future__ import annotations

import re

from mailtriage.domain.models import EmailBodyParts

MAX_BODY_CHARS = 1000

_BODY_RE = re.compile(r"<body[^>]*>(.*?)</body\s*>", re.IGNORECASE | re.DOTALL)
_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_SPACE_RE = re.compile(r"\s+")


def html_body_content(html: str) -> str:
    """Inner ``<body>`` markup (whole document if untagged), comments removed, whitespace collapsed.

    Tags are kept; the judge reads the markup as-is.
    """
    match = _BODY_RE.search(html)
    content = match.group(1) if match else html
    content = _COMMENT_RE.sub("", content)
    return _SPACE_RE.sub(" ", content).strip()


def select_body_text(parts: EmailBodyParts, limit: int = MAX_BODY_CHARS) -> str:
    """Return the judged body: HTML content, else plain text, else empty; truncated to *limit*.

    The truncated text is what gets hashed into the cache key, so changing
    *limit* invalidates existing cache entries.
    """
    text = html_body_content(parts.html) if parts.html else ""
    if not text:
        text = _SPACE_RE.sub(" ", parts.plain).strip()
    return text[:limit]

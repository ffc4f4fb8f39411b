"""Content hash used as the AI judgment cache key."""

from __future__ import annotations

import hashlib
import json

from mailtriage.domain.models import AttachmentInfo


def content_hash(
    subject: str,
    body: str,
    languages: list[str],
    attachments: list[AttachmentInfo] | None = None,
) -> str:
    """SHA-256 hex digest over everything that can change a judgment.

    Args:
        subject: Message subject.
        body: Already truncated body text.
        languages: Allowed-language codes; order does not matter.
        attachments: Attachment metadata, fingerprinted in given order.

    Returns:
        A 64-character hex digest.
    """
    document = {
        "subject": subject,
        "body": body,
        "languages": sorted(languages),
        "attachments": [a.fingerprint for a in attachments or []],
    }
    encoded = json.dumps(document, ensure_ascii=False, sort_keys=True)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

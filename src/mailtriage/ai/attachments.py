"""Attachment metadata from a raw RFC 822 source."""

from __future__ import annotations

from email import message_from_string, policy
from email.message import EmailMessage as MimeMessage

from mailtriage.domain.models import AttachmentInfo


def _payload_size(part: MimeMessage) -> int:
    payload = part.get_payload(decode=True)
    return len(payload) if isinstance(payload, bytes) else 0


def parse_attachments(raw: str) -> list[AttachmentInfo]:
    """List the attachments of a raw message.

    A part counts as an attachment when it carries a filename, whether its
    disposition is ``attachment`` or ``inline``.  Sizes are decoded byte
    counts.

    Args:
        raw: Complete message source; empty yields no attachments.

    Returns:
        Attachments in document order.
    """
    if not raw:
        return []
    message = message_from_string(raw, policy=policy.default)
    attachments: list[AttachmentInfo] = []
    for part in message.walk():
        if part.is_multipart():
            continue
        filename = part.get_filename()
        if not filename:
            continue
        attachments.append(
            AttachmentInfo(
                filename=filename,
                size=_payload_size(part),
                mime_type=part.get_content_type(),
            )
        )
    return attachments

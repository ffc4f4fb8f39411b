"""Prompt templates for AI judgment.

Templates use Python string placeholders ({variable_name}); the response
format line is what ``parse_judgment_response`` expects back.
"""

from __future__ import annotations

from mailtriage.domain.models import AttachmentInfo

JUDGMENT_SYSTEM_PROMPT = """You are an email triage assistant. Rate each email on two \
scales from 0 to 10:
- marketing: 0 = not marketing at all, 10 = pure marketing or promotional mail
- spam: 0 = legitimate email, 10 = clearly spam or junk

{language_rule}
Respond ONLY with one line in this exact format, nothing else:
marketing=<integer> spam=<integer>
"""

ALL_LANGUAGES_RULE = "Emails may be written in any language."

ALLOWED_LANGUAGES_RULE = """The recipient only reads these languages: {languages}. \
An email written in any other language is likely unwanted; raise its spam score."""

JUDGMENT_USER_PROMPT = """Email subject: {subject}
Attachments: {attachments}
Email body (first {limit} characters):
{body}"""


def _describe_attachments(attachments: list[AttachmentInfo]) -> str:
    if not attachments:
        return "none"
    return ", ".join(f"{a.filename} ({a.mime_type}, {a.size} bytes)" for a in attachments)


def build_system_prompt(languages: list[str]) -> str:
    if languages:
        rule = ALLOWED_LANGUAGES_RULE.format(languages=", ".join(sorted(languages)))
    else:
        rule = ALL_LANGUAGES_RULE
    return JUDGMENT_SYSTEM_PROMPT.format(language_rule=rule)


def build_user_prompt(
    subject: str, body: str, attachments: list[AttachmentInfo], limit: int
) -> str:
    return JUDGMENT_USER_PROMPT.format(
        subject=subject,
        attachments=_describe_attachments(attachments),
        limit=limit,
        body=body or "(empty)",
    )

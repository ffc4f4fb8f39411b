"""Pydantic v2 models for accounts, messages, groups, and cached samplings."""

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mailtriage.domain.types import (
    FetchMode,
    LabelType,
    PatternField,
    ProviderKind,
    TransportSecurity,
)

UNJUDGED_RANGE: tuple[int, int] = (-1, -1)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Account(BaseModel):
    """A mailbox the user has authorized.

    Only the profile fields (``email``, ``display_name``) change after
    creation; everything else the account owns lives in its own files.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    display_name: str = ""
    provider_kind: ProviderKind


class OAuthTokens(BaseModel):
    """OAuth token pair for the REST provider.

    ``expires_at`` is an epoch timestamp in milliseconds.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(default="", repr=False)
    refresh_token: str = Field(default="", repr=False)
    expires_at: int = 0


class ImapConnectionSettings(BaseModel):
    """Connection settings for the folder-protocol provider."""

    model_config = ConfigDict(frozen=True)

    host: str
    port: int = 993
    username: str
    secret: str = Field(default="", repr=False)
    transport_security: TransportSecurity = TransportSecurity.SSL


class MailLabel(BaseModel):
    """A Gmail label or an IMAP folder."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    type: LabelType = LabelType.USER


class AIJudgment(BaseModel):
    """Marketing and spam scores for one message, 0 (not at all) to 10."""

    model_config = ConfigDict(frozen=True)

    marketing: int = Field(ge=0, le=10)
    spam: int = Field(ge=0, le=10)
    judged_at: datetime

    @field_validator("judged_at")
    @classmethod
    def judged_at_is_aware(cls, v: datetime) -> datetime:
        """Treat naive timestamps as UTC."""
        return _as_utc(v)  # type: ignore[return-value]


class EmailMessage(BaseModel):
    """A fetched message in provider-agnostic shape.

    For the IMAP provider ``id`` is the ``folderPath:uid`` composite, which
    changes if the message is moved. Only ``ai_judgment`` is ever updated
    after a fetch, through ``model_copy``.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    thread_id: str = ""
    from_header: str = ""
    from_address: str = ""
    to: str = ""
    subject: str = ""
    date: datetime | None = None
    snippet: str = ""
    label_ids: list[str] = Field(default_factory=list)
    is_important: bool = False
    is_starred: bool = False
    ai_judgment: AIJudgment | None = None

    @field_validator("date")
    @classmethod
    def date_is_aware(cls, v: datetime | None) -> datetime | None:
        """Treat naive message dates as UTC so sorting never mixes kinds."""
        return _as_utc(v)


class EmailBodyParts(BaseModel):
    """Decoded text bodies of a message; either may be empty."""

    model_config = ConfigDict(frozen=True)

    plain: str = ""
    html: str = ""


class AttachmentInfo(BaseModel):
    """Attachment metadata extracted from a raw message source."""

    model_config = ConfigDict(frozen=True)

    filename: str
    size: int
    mime_type: str

    @property
    def fingerprint(self) -> str:
        """Return the ``filename:size:mimeType`` fingerprint used in cache keys."""
        return f"{self.filename}:{self.size}:{self.mime_type}"


class ScoreRange(BaseModel):
    """Min/max AI scores over the judged messages of a group.

    Each range is ``(-1, -1)`` when no message in the group has been judged.
    """

    model_config = ConfigDict(frozen=True)

    marketing: tuple[int, int] = UNJUDGED_RANGE
    spam: tuple[int, int] = UNJUDGED_RANGE


class FromGroup(BaseModel):
    """Messages sharing one normalized sender address."""

    model_config = ConfigDict(frozen=True)

    from_address: str
    from_names: list[str]
    count: int
    frequency: float
    latest_subject: str = ""
    latest_date: datetime | None = None
    messages: list[EmailMessage]
    ai_score_range: ScoreRange = Field(default_factory=ScoreRange)


class RulePattern(BaseModel):
    """One regex tested against a message field."""

    model_config = ConfigDict(frozen=True)

    field: PatternField = PatternField.ANY
    regex: str


class RuleLine(BaseModel):
    """All patterns of one rule line; they must all match (AND)."""

    model_config = ConfigDict(frozen=True)

    patterns: list[RulePattern]
    line_index: int
    raw_text: str


class AccountRules(BaseModel):
    """Rule text as typed by the user plus its parsed lines (OR'ed)."""

    model_config = ConfigDict(frozen=True)

    rule_text: str = ""
    lines: list[RuleLine] = Field(default_factory=list)


class RuleGroup(BaseModel):
    """Messages whose first matching rule line is ``rule_line``."""

    model_config = ConfigDict(frozen=True)

    rule_key: str
    rule_text: str
    rule_line: RuleLine
    count: int
    frequency: float
    latest_date: datetime | None = None
    ref_from: str = ""
    ref_subject: str = ""
    messages: list[EmailMessage]
    ai_score_range: ScoreRange = Field(default_factory=ScoreRange)


class SamplingResult(BaseModel):
    """Snapshot produced by one fetch; one per (account, mode)."""

    model_config = ConfigDict(frozen=True)

    messages: list[EmailMessage]
    from_groups: list[FromGroup]
    period_start: datetime
    period_end: datetime
    total_count: int
    body_parts: dict[str, EmailBodyParts] | None = None
    raw_bodies: dict[str, str] | None = None


class SamplingMeta(BaseModel):
    """Sidecar describing how a ``SamplingResult`` was produced."""

    model_config = ConfigDict(frozen=True)

    mode: FetchMode
    start_date: datetime
    end_date: datetime
    fetched_at: datetime
    label_ids: list[str] = Field(default_factory=list)
    total_count: int


class Progress(BaseModel):
    """A progress update: ``current`` of ``total`` plus a readable message."""

    model_config = ConfigDict(frozen=True)

    current: int = 0
    total: int = 0
    message: str = ""


class DeleteResult(BaseModel):
    """Outcome of a trash operation. Never persisted."""

    model_config = ConfigDict(frozen=True)

    trashed: int = 0
    excluded: int = 0
    errors: int = 0

    def __add__(self, other: "DeleteResult") -> "DeleteResult":
        return DeleteResult(
            trashed=self.trashed + other.trashed,
            excluded=self.excluded + other.excluded,
            errors=self.errors + other.errors,
        )

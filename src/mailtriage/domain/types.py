"""Domain enumerations shared across providers, stores, and the AI pipeline."""

from enum import StrEnum


class ProviderKind(StrEnum):
    """Mail providers an account can be bound to."""

    GMAIL = "gmail"
    IMAP = "imap"


class TransportSecurity(StrEnum):
    """How an IMAP connection is secured."""

    SSL = "ssl"
    STARTTLS = "starttls"
    NONE = "none"


class FetchMode(StrEnum):
    """Which windowing strategy produced a cached sampling."""

    DAYS = "days"
    RANGE = "range"


class ReadFilter(StrEnum):
    """Server-side read/unread filter applied during a fetch."""

    ALL = "all"
    UNREAD = "unread"
    READ = "read"


class PatternField(StrEnum):
    """Which part of a message a rule pattern is tested against."""

    SUBJECT = "subject"
    BODY = "body"
    ANY = "any"


class LabelType(StrEnum):
    """Whether a label/folder is provider-defined or user-created."""

    SYSTEM = "system"
    USER = "user"


class JudgmentState(StrEnum):
    """States of a single AI judgment run."""

    IDLE = "idle"
    PREPARING = "preparing"
    JUDGING = "judging"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class JudgeBackend(StrEnum):
    """Inference backends able to score a message."""

    OLLAMA = "ollama"
    ANTHROPIC = "anthropic"

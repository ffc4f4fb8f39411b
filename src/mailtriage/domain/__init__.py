"""Domain types, models, and errors for mailtriage."""

from mailtriage.domain.errors import (
    AuthFailed,
    CryptoError,
    FetchCancelled,
    InvalidTransitionError,
    JudgmentCancelled,
    MailTriageError,
    NotConfigured,
    OperationCancelled,
    ParseError,
    ProviderError,
)
from mailtriage.domain.models import (
    Account,
    AccountRules,
    AIJudgment,
    AttachmentInfo,
    DeleteResult,
    EmailBodyParts,
    EmailMessage,
    FromGroup,
    ImapConnectionSettings,
    MailLabel,
    OAuthTokens,
    Progress,
    RuleGroup,
    RuleLine,
    RulePattern,
    SamplingMeta,
    SamplingResult,
    ScoreRange,
)
from mailtriage.domain.types import (
    FetchMode,
    JudgeBackend,
    JudgmentState,
    LabelType,
    PatternField,
    ProviderKind,
    ReadFilter,
    TransportSecurity,
)

__all__ = [
    "AIJudgment",
    "Account",
    "AccountRules",
    "AttachmentInfo",
    "AuthFailed",
    "CryptoError",
    "DeleteResult",
    "EmailBodyParts",
    "EmailMessage",
    "FetchCancelled",
    "FetchMode",
    "FromGroup",
    "ImapConnectionSettings",
    "InvalidTransitionError",
    "JudgeBackend",
    "JudgmentCancelled",
    "JudgmentState",
    "LabelType",
    "MailLabel",
    "MailTriageError",
    "NotConfigured",
    "OAuthTokens",
    "OperationCancelled",
    "ParseError",
    "PatternField",
    "Progress",
    "ProviderError",
    "ProviderKind",
    "ReadFilter",
    "RuleGroup",
    "RuleLine",
    "RulePattern",
    "SamplingMeta",
    "SamplingResult",
    "ScoreRange",
    "TransportSecurity",
]

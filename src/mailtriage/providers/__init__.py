"""Mail provider adapters behind one capability protocol."""

from mailtriage.providers.base import (
    ExclusionPolicy,
    FetchOutcome,
    MailProvider,
    RuleFilter,
    SearchFilter,
    SenderFilter,
    SubjectFilter,
    trash_matching,
)
from mailtriage.providers.registry import open_provider

__all__ = [
    "ExclusionPolicy",
    "FetchOutcome",
    "MailProvider",
    "RuleFilter",
    "SearchFilter",
    "SenderFilter",
    "SubjectFilter",
    "open_provider",
    "trash_matching",
]

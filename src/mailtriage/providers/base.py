"""Provider adapter contract shared by the Gmail and IMAP variants.

The two adapters are plain classes that satisfy :class:`MailProvider`
structurally; there is no base class.  Search criteria and the exclusion
policy are small value objects so both adapters translate them into their
own query language.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import structlog

from mailtriage.domain.models import (
    Account,
    DeleteResult,
    EmailBodyParts,
    EmailMessage,
    MailLabel,
    RuleLine,
)
from mailtriage.domain.types import ReadFilter
from mailtriage.fetch.window import FetchWindow
from mailtriage.run import RunHandle
from mailtriage.settings.models import DeleteSettings

logger = structlog.get_logger()


@dataclass(frozen=True)
class SenderFilter:
    """Messages from one normalized sender address."""

    address: str


@dataclass(frozen=True)
class SubjectFilter:
    """Messages whose subject contains the given text."""

    subject: str


@dataclass(frozen=True)
class RuleFilter:
    """Messages matching every pattern of one rule line."""

    line: RuleLine


SearchFilter = SenderFilter | SubjectFilter | RuleFilter


@dataclass(frozen=True)
class ExclusionPolicy:
    """Which flagged messages a trash operation must leave alone."""

    exclude_important: bool = False
    exclude_starred: bool = False

    @classmethod
    def from_settings(cls, settings: DeleteSettings) -> "ExclusionPolicy":
        return cls(
            exclude_important=settings.exclude_important,
            exclude_starred=settings.exclude_starred,
        )

    @property
    def active(self) -> bool:
        return self.exclude_important or self.exclude_starred

    def excludes(self, message: EmailMessage) -> bool:
        """True if *message* must be kept under this policy."""
        return (self.exclude_important and message.is_important) or (
            self.exclude_starred and message.is_starred
        )


NO_EXCLUSION = ExclusionPolicy()


@dataclass
class FetchOutcome:
    """Messages from one fetch plus any bodies the provider downloaded alongside."""

    messages: list[EmailMessage] = field(default_factory=list)
    body_parts: dict[str, EmailBodyParts] | None = None
    raw_bodies: dict[str, str] | None = None


@runtime_checkable
class MailProvider(Protocol):
    """Capabilities every mail provider adapter offers."""

    account: Account

    async def check_connection(self) -> bool: ...

    async def list_folders(self) -> list[MailLabel]: ...

    async def fetch_messages(
        self,
        window: FetchWindow,
        label_ids: list[str],
        max_results: int,
        read_filter: ReadFilter,
        handle: RunHandle,
    ) -> FetchOutcome: ...

    async def read_body(self, message_id: str) -> EmailBodyParts: ...

    async def read_raw(self, message_id: str) -> str: ...

    async def search(
        self, criterion: SearchFilter, exclusion: ExclusionPolicy, handle: RunHandle
    ) -> list[str]: ...

    async def trash_by_filter(
        self, criterion: SearchFilter, exclusion: ExclusionPolicy, handle: RunHandle
    ) -> DeleteResult: ...

    async def trash_by_ids(self, message_ids: list[str], handle: RunHandle) -> DeleteResult: ...

    async def close(self) -> None: ...


async def trash_matching(
    provider: MailProvider,
    criterion: SearchFilter,
    exclusion: ExclusionPolicy,
    handle: RunHandle,
) -> DeleteResult:
    """Search for *criterion* and move every hit to trash.

    With an active exclusion two searches run: one honouring the exclusion
    and one without it.  The size difference is the excluded count; only the
    filtered hits are trashed.

    Args:
        provider: The adapter to search and trash with.
        criterion: What to match.
        exclusion: Flags that protect a message from deletion.
        handle: Run handle for cancellation and progress.

    Returns:
        The aggregated ``DeleteResult`` for this criterion.
    """
    filtered = await provider.search(criterion, exclusion, handle)
    excluded = 0
    if exclusion.active:
        unfiltered = await provider.search(criterion, NO_EXCLUSION, handle)
        excluded = max(0, len(set(unfiltered)) - len(set(filtered)))
    logger.info(
        "trash_search_done",
        account_id=provider.account.id,
        criterion=type(criterion).__name__,
        matched=len(filtered),
        excluded=excluded,
    )
    if not filtered:
        return DeleteResult(excluded=excluded)
    result = await provider.trash_by_ids(filtered, handle)
    return result + DeleteResult(excluded=excluded)

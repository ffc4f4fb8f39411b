"""Shared pytest fixtures for the mailtriage test suite."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import structlog

from mailtriage.accounts.store import AccountStore
from mailtriage.config import get_settings
from mailtriage.domain.models import (
    Account,
    DeleteResult,
    EmailBodyParts,
    EmailMessage,
    MailLabel,
)
from mailtriage.domain.types import ProviderKind, ReadFilter
from mailtriage.fetch.cache import SamplingCache
from mailtriage.fetch.window import FetchWindow
from mailtriage.providers.base import (
    ExclusionPolicy,
    FetchOutcome,
    SearchFilter,
    SenderFilter,
    SubjectFilter,
    trash_matching,
)
from mailtriage.run import RunHandle
from mailtriage.security.crypto import CryptoGateway
from mailtriage.settings.store import SettingsStore
from mailtriage.storage.paths import DataPaths

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _clear_settings_cache() -> None:
    """Clear get_settings lru_cache before each test."""
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _restore_structlog() -> Iterator[None]:
    """Undo any configure_logging() a test ran."""
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


@pytest.fixture
def paths(tmp_path: Path) -> DataPaths:
    return DataPaths(tmp_path / "data")


@pytest.fixture
def crypto(paths: DataPaths) -> CryptoGateway:
    return CryptoGateway(paths.key_file)


@pytest.fixture
def settings_store(paths: DataPaths, crypto: CryptoGateway) -> SettingsStore:
    return SettingsStore(paths, crypto)


@pytest.fixture
def account_store(paths: DataPaths, crypto: CryptoGateway) -> AccountStore:
    return AccountStore(paths, crypto)


@pytest.fixture
def sampling_cache(paths: DataPaths) -> SamplingCache:
    return SamplingCache(paths)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


MessageFactory = Callable[..., EmailMessage]


@pytest.fixture
def make_message() -> MessageFactory:
    """Build an ``EmailMessage`` with sensible defaults; ``age_hours`` sets the date."""

    def factory(
        message_id: str,
        sender: str = "news@shop.example",
        subject: str = "Hello",
        age_hours: int = 1,
        **overrides: Any,
    ) -> EmailMessage:
        fields: dict[str, Any] = {
            "id": message_id,
            "thread_id": f"t-{message_id}",
            "from_header": f"Sender <{sender}>",
            "from_address": sender,
            "subject": subject,
            "date": NOW - timedelta(hours=age_hours),
        }
        fields.update(overrides)
        return EmailMessage(**fields)

    return factory


# ---------------------------------------------------------------------------
# Fake provider
# ---------------------------------------------------------------------------


class FakeProvider:
    """In-memory ``MailProvider`` over a fixed message list.

    Searches match senders and subject substrings against ``messages``;
    trashing records the ids and fails for ids in ``failing``.
    """

    def __init__(
        self,
        account: Account,
        messages: list[EmailMessage] | None = None,
        bodies: dict[str, EmailBodyParts] | None = None,
        raws: dict[str, str] | None = None,
        failing: set[str] | None = None,
    ) -> None:
        self.account = account
        self.messages = list(messages or [])
        self.bodies = dict(bodies or {})
        self.raws = dict(raws or {})
        self.failing = set(failing or ())
        self.trashed: list[str] = []
        self.fetch_calls: list[tuple[FetchWindow, list[str], int, ReadFilter]] = []
        self.body_reads: list[str] = []
        self.raw_reads: list[str] = []
        self.closed = False

    async def check_connection(self) -> bool:
        return True

    async def list_folders(self) -> list[MailLabel]:
        return [MailLabel(id="INBOX", name="INBOX")]

    async def fetch_messages(
        self,
        window: FetchWindow,
        label_ids: list[str],
        max_results: int,
        read_filter: ReadFilter,
        handle: RunHandle,
    ) -> FetchOutcome:
        self.fetch_calls.append((window, label_ids, max_results, read_filter))
        handle.raise_if_cancelled()
        return FetchOutcome(messages=self.messages[:max_results])

    async def read_body(self, message_id: str) -> EmailBodyParts:
        self.body_reads.append(message_id)
        return self.bodies.get(message_id, EmailBodyParts())

    async def read_raw(self, message_id: str) -> str:
        self.raw_reads.append(message_id)
        return self.raws.get(message_id, "")

    async def search(
        self, criterion: SearchFilter, exclusion: ExclusionPolicy, handle: RunHandle
    ) -> list[str]:
        hits = []
        for message in self.messages:
            if isinstance(criterion, SenderFilter):
                matched = message.from_address == criterion.address
            elif isinstance(criterion, SubjectFilter):
                matched = criterion.subject.lower() in message.subject.lower()
            else:
                matched = False
            if matched and not exclusion.excludes(message):
                hits.append(message.id)
        return hits

    async def trash_by_filter(
        self, criterion: SearchFilter, exclusion: ExclusionPolicy, handle: RunHandle
    ) -> DeleteResult:
        return await trash_matching(self, criterion, exclusion, handle)

    async def trash_by_ids(self, message_ids: list[str], handle: RunHandle) -> DeleteResult:
        errors = [i for i in message_ids if i in self.failing]
        done = [i for i in message_ids if i not in self.failing]
        self.trashed.extend(done)
        return DeleteResult(trashed=len(done), errors=len(errors))

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def gmail_account() -> Account:
    return Account(id="acc1", email="me@example.com", provider_kind=ProviderKind.GMAIL)


@pytest.fixture
def fake_provider(gmail_account: Account) -> FakeProvider:
    return FakeProvider(gmail_account)

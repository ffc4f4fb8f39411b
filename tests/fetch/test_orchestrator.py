"""Tests for FetchOrchestrator."""

from __future__ import annotations

from datetime import UTC, date, datetime

import pytest

from mailtriage.accounts.store import AccountStore
from mailtriage.domain.errors import FetchCancelled, ProviderError
from mailtriage.domain.models import EmailBodyParts, Progress
from mailtriage.domain.types import FetchMode, ReadFilter
from mailtriage.fetch.cache import SamplingCache
from mailtriage.fetch.orchestrator import FetchOrchestrator
from mailtriage.fetch.window import FetchRequest
from mailtriage.providers.base import FetchOutcome
from mailtriage.run import RunHandle
from mailtriage.settings.models import FetchSettings
from mailtriage.settings.store import SettingsStore

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


@pytest.fixture
def orchestrator(
    account_store: AccountStore, settings_store: SettingsStore, sampling_cache: SamplingCache
) -> FetchOrchestrator:
    return FetchOrchestrator(account_store, settings_store, sampling_cache, clock=lambda: NOW)


class TestFetch:
    @pytest.mark.anyio()
    async def test_commits_sampling_for_mode(
        self, orchestrator, fake_provider, sampling_cache, make_message
    ) -> None:
        fake_provider.messages = [
            make_message("1", sender="a@x.com"),
            make_message("2", sender="b@x.com"),
            make_message("3", sender="a@x.com"),
        ]
        updates: list[Progress] = []

        result = await orchestrator.fetch(
            fake_provider,
            FetchRequest(account_id="acc1", days=7),
            RunHandle(on_progress=updates.append),
        )

        assert result.total_count == 3
        assert [g.count for g in result.from_groups] == [2, 1]
        cached, meta = await sampling_cache.load("acc1", FetchMode.DAYS)
        assert cached.total_count == 3
        assert meta.label_ids == ["INBOX"]
        assert meta.fetched_at == NOW
        assert updates[-1].message == "Fetched 3 messages"

    @pytest.mark.anyio()
    async def test_uses_settings_and_selected_labels(
        self, orchestrator, fake_provider, settings_store, account_store
    ) -> None:
        await settings_store.save_fetch_settings(
            FetchSettings(max_fetch_count=50, read_filter=ReadFilter.UNREAD)
        )
        await account_store.save_selected_labels("acc1", ["INBOX", "Label_1"])
        request = FetchRequest(
            account_id="acc1",
            use_days=False,
            start_date=date(2026, 1, 1),
            end_date=date(2026, 1, 31),
        )

        await orchestrator.fetch(fake_provider, request, RunHandle())

        window, labels, max_results, read_filter = fake_provider.fetch_calls[0]
        assert window.mode == FetchMode.RANGE
        assert labels == ["INBOX", "Label_1"]
        assert max_results == 50
        assert read_filter == ReadFilter.UNREAD

    @pytest.mark.anyio()
    async def test_cancelled_fetch_writes_nothing(
        self, orchestrator, fake_provider, sampling_cache, make_message
    ) -> None:
        fake_provider.messages = [make_message("1")]
        handle = RunHandle()
        handle.cancel()

        with pytest.raises(FetchCancelled):
            await orchestrator.fetch(fake_provider, FetchRequest(account_id="acc1"), handle)

        assert await sampling_cache.load("acc1", FetchMode.DAYS) is None

    @pytest.mark.anyio()
    async def test_provider_error_propagates(
        self, orchestrator, fake_provider, sampling_cache
    ) -> None:
        async def boom(*args, **kwargs):
            raise ProviderError("server down", status=503)

        fake_provider.fetch_messages = boom

        with pytest.raises(ProviderError):
            await orchestrator.fetch(fake_provider, FetchRequest(account_id="acc1"), RunHandle())

        assert await sampling_cache.load("acc1", FetchMode.DAYS) is None


class TestBodies:
    @pytest.mark.anyio()
    async def test_cached_body_skips_provider(
        self, orchestrator, fake_provider, make_message
    ) -> None:
        fake_provider.messages = [make_message("1")]
        fake_provider.bodies = {"1": EmailBodyParts(plain="live")}

        async def fetch_with_bodies(window, labels, max_results, read_filter, handle):
            return FetchOutcome(
                messages=fake_provider.messages,
                body_parts={"1": EmailBodyParts(plain="cached")},
            )

        fake_provider.fetch_messages = fetch_with_bodies
        await orchestrator.fetch(fake_provider, FetchRequest(account_id="acc1"), RunHandle())

        source = await orchestrator.body_source(fake_provider)

        assert (await source.body_parts("1")).plain == "cached"
        assert (await source.body_parts("2")).plain == ""
        assert fake_provider.body_reads == ["2"]
        assert (await orchestrator.body_parts(fake_provider, "1")).plain == "cached"
        assert await orchestrator.raw_source(fake_provider, "1") == ""
        assert fake_provider.raw_reads == ["1"]

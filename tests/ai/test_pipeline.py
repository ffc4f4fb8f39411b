"""Tests for the AI judgment pipeline."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from mailtriage.ai.cache import JudgmentCache
from mailtriage.ai.pipeline import JudgmentPipeline, exceeds_thresholds
from mailtriage.domain.errors import JudgmentCancelled, NotConfigured
from mailtriage.domain.models import (
    AIJudgment,
    EmailBodyParts,
    Progress,
    SamplingMeta,
    SamplingResult,
)
from mailtriage.domain.types import FetchMode, JudgmentState
from mailtriage.fetch.orchestrator import FetchOrchestrator
from mailtriage.grouping.senders import build_from_groups
from mailtriage.run import RunHandle
from mailtriage.settings.models import AIJudgmentSettings, OllamaSettings

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


class FakeJudge:
    name = "fake"

    def __init__(self, reply: str = "marketing=8 spam=1") -> None:
        self.complete = AsyncMock(return_value=reply)


@pytest.fixture
def judge() -> FakeJudge:
    return FakeJudge()


@pytest.fixture
def judgments(paths) -> JudgmentCache:
    return JudgmentCache(paths, clock=lambda: NOW)


@pytest.fixture
def pipeline(settings_store, account_store, sampling_cache, judgments, judge) -> JudgmentPipeline:
    orchestrator = FetchOrchestrator(account_store, settings_store, sampling_cache)
    return JudgmentPipeline(
        settings_store,
        orchestrator,
        sampling_cache,
        judgments,
        lambda ai, ollama: judge,
        clock=lambda: NOW,
    )


@pytest.fixture
def messages(make_message):
    return [
        make_message("1", subject="Weekly deals"),
        make_message("2", subject="Weekly deals"),
        make_message("3", subject="Team lunch", sender="colleague@example.com"),
    ]


async def _cache_sampling(sampling_cache, messages) -> None:
    start = NOW - timedelta(days=7)
    await sampling_cache.save(
        "acc1",
        FetchMode.DAYS,
        SamplingResult(
            messages=messages,
            from_groups=build_from_groups(messages, 7),
            period_start=start,
            period_end=NOW,
            total_count=len(messages),
        ),
        SamplingMeta(
            mode=FetchMode.DAYS,
            start_date=start,
            end_date=NOW,
            fetched_at=NOW,
            total_count=len(messages),
        ),
    )


# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------


class TestThresholds:
    def test_either_score_reaching_threshold(self) -> None:
        settings = AIJudgmentSettings(marketing_threshold=7, spam_threshold=5)

        assert exceeds_thresholds(AIJudgment(marketing=7, spam=0, judged_at=NOW), settings)
        assert exceeds_thresholds(AIJudgment(marketing=0, spam=5, judged_at=NOW), settings)
        assert not exceeds_thresholds(AIJudgment(marketing=6, spam=4, judged_at=NOW), settings)
        assert not exceeds_thresholds(None, settings)


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


class TestRun:
    @pytest.mark.anyio()
    async def test_identical_content_is_judged_once(
        self, pipeline, judge, fake_provider, messages
    ) -> None:
        report = await pipeline.run(fake_provider, messages, FetchMode.DAYS, RunHandle())

        assert judge.complete.await_count == 2
        assert report.judged == 2
        assert report.cache_hits == 1
        assert report.judgments["1"] == report.judgments["2"]
        assert set(report.judgments) == {"1", "2", "3"}
        assert report.state == JudgmentState.COMPLETED

    @pytest.mark.anyio()
    async def test_second_run_is_served_from_cache(
        self, pipeline, judge, fake_provider, messages, paths
    ) -> None:
        await pipeline.run(fake_provider, messages, FetchMode.DAYS, RunHandle())
        judge.complete.reset_mock()

        report = await pipeline.run(fake_provider, messages, FetchMode.DAYS, RunHandle())

        judge.complete.assert_not_awaited()
        assert report.cache_hits == 3
        assert paths.ai_cache_file.exists()

    @pytest.mark.anyio()
    async def test_language_settings_change_the_key(
        self, pipeline, judge, fake_provider, messages, settings_store
    ) -> None:
        await pipeline.run(fake_provider, messages, FetchMode.DAYS, RunHandle())
        await settings_store.save_ai_judgment_settings(AIJudgmentSettings(allowed_languages=["en"]))
        judge.complete.reset_mock()

        await pipeline.run(fake_provider, messages, FetchMode.DAYS, RunHandle())

        assert judge.complete.await_count == 2
        assert "these languages: en" in judge.complete.await_args.args[0]

    @pytest.mark.anyio()
    async def test_reads_bodies_and_updates_sampling(
        self, pipeline, judge, fake_provider, messages, sampling_cache
    ) -> None:
        fake_provider.bodies = {"3": EmailBodyParts(plain="Pizza at noon")}
        await _cache_sampling(sampling_cache, messages)

        await pipeline.run(fake_provider, messages, FetchMode.DAYS, RunHandle())

        result, _ = await sampling_cache.load("acc1", FetchMode.DAYS)
        assert all(m.ai_judgment is not None for m in result.messages)
        assert result.from_groups[0].ai_score_range.marketing == (8, 8)
        prompts = [call.args[1] for call in judge.complete.await_args_list]
        assert any("Pizza at noon" in p for p in prompts)

    @pytest.mark.anyio()
    async def test_unparseable_replies_count_as_failed(
        self, pipeline, judge, fake_provider, messages, judgments
    ) -> None:
        judge.complete.return_value = "I think it is fine."
        updates: list[Progress] = []

        report = await pipeline.run(
            fake_provider, messages, FetchMode.DAYS, RunHandle(on_progress=updates.append)
        )

        assert report.failed == 3
        assert report.judgments == {}
        assert judge.complete.await_count == 4
        assert len(judgments) == 0
        assert updates[-1].message.endswith("(3 failed)")

    @pytest.mark.anyio()
    async def test_batches_follow_concurrency(
        self, pipeline, judge, fake_provider, make_message, settings_store
    ) -> None:
        await settings_store.save_ollama_settings(OllamaSettings(model="m", concurrency=2))
        messages = [make_message(str(i), subject=f"Subject {i}") for i in range(5)]
        updates: list[Progress] = []

        await pipeline.run(
            fake_provider, messages, FetchMode.DAYS, RunHandle(on_progress=updates.append)
        )

        judging = [u.current for u in updates if u.message.startswith("AI judgment")]
        assert judging == [2, 4, 5]


# ---------------------------------------------------------------------------
# Cancellation and failure
# ---------------------------------------------------------------------------


class TestCancellation:
    @pytest.mark.anyio()
    async def test_cancel_after_preparing_persists_nothing(
        self, pipeline, judge, fake_provider, messages, sampling_cache, paths
    ) -> None:
        await _cache_sampling(sampling_cache, messages)

        def on_progress(update: Progress) -> None:
            if update.message == "Preparing 3/3":
                handle.cancel()

        handle = RunHandle(on_progress=on_progress)

        with pytest.raises(JudgmentCancelled):
            await pipeline.run(fake_provider, messages, FetchMode.DAYS, handle)

        judge.complete.assert_not_awaited()
        assert not paths.ai_cache_file.exists()
        result, _ = await sampling_cache.load("acc1", FetchMode.DAYS)
        assert all(m.ai_judgment is None for m in result.messages)

    @pytest.mark.anyio()
    async def test_missing_backend_settings(
        self, settings_store, account_store, sampling_cache, judgments, fake_provider, messages
    ) -> None:
        def factory(ai, ollama):
            raise NotConfigured("ollama.model")

        pipeline = JudgmentPipeline(
            settings_store,
            FetchOrchestrator(account_store, settings_store, sampling_cache),
            sampling_cache,
            judgments,
            factory,
        )

        with pytest.raises(NotConfigured):
            await pipeline.run(fake_provider, messages, FetchMode.DAYS, RunHandle())

"""Tests for two-phase batch processing."""

from __future__ import annotations

import asyncio
from collections import Counter

import pytest

from mailtriage.ai.batch import run_two_phase
from mailtriage.domain.errors import OperationCancelled


class FlakyWorker:
    """Fails the first ``failures[item]`` calls for each item."""

    def __init__(self, failures: dict[str, int]) -> None:
        self.failures = dict(failures)
        self.calls: Counter[str] = Counter()

    async def __call__(self, item: str) -> str:
        self.calls[item] += 1
        await asyncio.sleep(0)
        if self.calls[item] <= self.failures.get(item, 0):
            raise RuntimeError(f"{item} failed")
        return item.upper()


class TestRunTwoPhase:
    @pytest.mark.anyio()
    async def test_all_succeed_first_time(self) -> None:
        worker = FlakyWorker({})

        outcome = await run_two_phase(["a", "b", "c"], worker)

        assert outcome.succeeded == [("a", "A"), ("b", "B"), ("c", "C")]
        assert outcome.failed == []
        assert outcome.retried == 0

    @pytest.mark.anyio()
    async def test_failures_are_retried_once(self) -> None:
        worker = FlakyWorker({"b": 1, "c": 5})

        outcome = await run_two_phase(["a", "b", "c"], worker)

        assert outcome.succeeded == [("a", "A"), ("b", "B")]
        assert [(item, str(err)) for item, err in outcome.failed] == [("c", "c failed")]
        assert outcome.retried == 2
        assert worker.calls == Counter({"a": 1, "b": 2, "c": 2})

    @pytest.mark.anyio()
    async def test_cancellation_is_not_an_item_failure(self) -> None:
        async def worker(item: str) -> str:
            if item == "stop":
                raise OperationCancelled("cancelled")
            return item

        with pytest.raises(OperationCancelled):
            await run_two_phase(["a", "stop"], worker)

    @pytest.mark.anyio()
    async def test_empty_batch(self) -> None:
        outcome = await run_two_phase([], FlakyWorker({}))

        assert outcome.succeeded == []
        assert outcome.retried == 0

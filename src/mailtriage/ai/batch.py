"""Two-phase batch processing: attempt everything, retry the failures once."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

import structlog

from mailtriage.domain.errors import OperationCancelled

logger = structlog.get_logger()

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class BatchOutcome(Generic[T, R]):
    """Aggregated result of :func:`run_two_phase`.

    Attributes:
        succeeded: ``(item, result)`` pairs in input order.
        failed: ``(item, error)`` pairs still failing after the retry.
        retried: How many items needed the second phase.
    """

    succeeded: list[tuple[T, R]] = field(default_factory=list)
    failed: list[tuple[T, Exception]] = field(default_factory=list)
    retried: int = 0


def _raise_fatal(results: Sequence[object]) -> None:
    for result in results:
        if isinstance(result, OperationCancelled):
            raise result
        if isinstance(result, BaseException) and not isinstance(result, Exception):
            raise result


async def run_two_phase(
    items: Sequence[T], worker: Callable[[T], Awaitable[R]]
) -> BatchOutcome[T, R]:
    """Run *worker* over *items* concurrently, then once more for each failure.

    Cancellation is never treated as an item failure: an ``OperationCancelled``
    (or a non-``Exception`` such as ``CancelledError``) from any item is
    re-raised immediately.

    Args:
        items: One batch; every item is in flight at once.
        worker: Coroutine function applied to each item.

    Returns:
        Successes in input order, items that failed twice, and the retry count.
    """
    outcome: BatchOutcome[T, R] = BatchOutcome()
    first = await asyncio.gather(*(worker(item) for item in items), return_exceptions=True)
    _raise_fatal(first)

    results: dict[int, R] = {}
    pending: list[int] = []
    for index, result in enumerate(first):
        if isinstance(result, Exception):
            logger.debug("batch_item_failed", index=index, error=str(result))
            pending.append(index)
        else:
            results[index] = result  # type: ignore[assignment]

    errors: dict[int, Exception] = {}
    if pending:
        outcome.retried = len(pending)
        second = await asyncio.gather(
            *(worker(items[index]) for index in pending), return_exceptions=True
        )
        _raise_fatal(second)
        for index, result in zip(pending, second, strict=True):
            if isinstance(result, Exception):
                errors[index] = result
            else:
                results[index] = result  # type: ignore[assignment]

    for index, item in enumerate(items):
        if index in results:
            outcome.succeeded.append((item, results[index]))
        elif index in errors:
            outcome.failed.append((item, errors[index]))
    return outcome

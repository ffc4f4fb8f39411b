"""Explicit run handle: cancellation token plus progress sink.

Every long-running operation (fetch, AI judgment, bulk delete) receives its
own ``RunHandle`` instead of consulting module-wide flags, so independent
runs never interfere.  Cancellation is cooperative: the operation polls
:meth:`RunHandle.raise_if_cancelled` between batches and wraps network awaits
in :meth:`RunHandle.guard` so in-flight requests abort promptly.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable, Iterator
from typing import TypeVar

import structlog

from mailtriage.domain.errors import OperationCancelled
from mailtriage.domain.models import Progress

logger = structlog.get_logger()

T = TypeVar("T")

ProgressSink = Callable[[Progress], None]


class RunHandle:
    """Cancellation token and progress sink for one operation.

    Args:
        on_progress: Called with every progress update; optional.
    """

    def __init__(self, on_progress: ProgressSink | None = None) -> None:
        self._cancelled = asyncio.Event()
        self._on_progress = on_progress
        self._cancel_callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Request cancellation and run registered close callbacks (best effort)."""
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        for callback in list(self._cancel_callbacks):
            try:
                callback()
            except Exception:
                logger.warning("cancel_callback_failed", callback=repr(callback), exc_info=True)

    @contextlib.contextmanager
    def on_cancel(self, callback: Callable[[], None]) -> Iterator[None]:
        """Register *callback* to run on cancellation while the block is active."""
        self._cancel_callbacks.append(callback)
        try:
            yield
        finally:
            self._cancel_callbacks.remove(callback)

    def report(self, current: int, total: int, message: str) -> None:
        if self._on_progress is not None:
            self._on_progress(Progress(current=current, total=total, message=message))

    def raise_if_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise OperationCancelled("Operation cancelled")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable* unless the run is cancelled first.

        Args:
            awaitable: Usually a single network call.

        Returns:
            The awaitable's result.

        Raises:
            OperationCancelled: If cancellation is requested before it finishes;
                the underlying task is cancelled.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._cancelled.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        # The abandoned call's outcome is irrelevant once the run is cancelled.
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await task
        raise OperationCancelled("Operation cancelled")

"""Fetch orchestration: window, provider fetch, grouping, cache commit."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from mailtriage.accounts.store import AccountStore
from mailtriage.domain.errors import FetchCancelled, MailTriageError, OperationCancelled
from mailtriage.domain.models import EmailBodyParts, SamplingMeta, SamplingResult
from mailtriage.domain.types import FetchMode
from mailtriage.fetch.cache import SamplingCache
from mailtriage.fetch.window import FetchRequest, resolve_window
from mailtriage.grouping.senders import build_from_groups
from mailtriage.providers.base import MailProvider
from mailtriage.run import RunHandle
from mailtriage.settings.store import SettingsStore

logger = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


class BodySource:
    """Bodies and raw sources for one run: cached copies first, provider otherwise."""

    def __init__(
        self,
        provider: MailProvider,
        bodies: dict[str, EmailBodyParts],
        raws: dict[str, str],
    ) -> None:
        self._provider = provider
        self._bodies = bodies
        self._raws = raws

    async def body_parts(self, message_id: str) -> EmailBodyParts:
        cached = self._bodies.get(message_id)
        if cached is not None:
            return cached
        return await self._provider.read_body(message_id)

    async def raw_source(self, message_id: str) -> str:
        cached = self._raws.get(message_id)
        if cached is not None:
            return cached
        return await self._provider.read_raw(message_id)


class FetchOrchestrator:
    """Run sampling fetches and serve cached samplings.

    Args:
        accounts: Source of each account's selected labels.
        settings: Source of the fetch settings.
        cache: Dual-mode sampling cache.
        clock: Current time; injectable for tests.
    """

    def __init__(
        self,
        accounts: AccountStore,
        settings: SettingsStore,
        cache: SamplingCache,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._accounts = accounts
        self._settings = settings
        self._cache = cache
        self._clock = clock

    async def fetch(
        self, provider: MailProvider, request: FetchRequest, handle: RunHandle
    ) -> SamplingResult:
        """Fetch a sampling and commit it to the cache for the request's mode.

        Args:
            provider: Adapter for the account named in *request*.
            request: Window and cap.
            handle: Cancellation token and progress sink.

        Returns:
            The committed ``SamplingResult``.

        Raises:
            FetchCancelled: If *handle* is cancelled before the fetch completes.
            AuthFailed: If credentials are exhausted mid-fetch.
            ProviderError: If any provider call fails.
        Nothing is written to the cache on any of these.
        """
        account_id = provider.account.id
        fetch_settings = await self._settings.get_fetch_settings()
        window = resolve_window(request, fetch_settings.sampling_days, self._clock())
        label_ids = await self._accounts.get_selected_labels(account_id)
        max_results = request.max_results or fetch_settings.max_fetch_count
        log = logger.bind(account_id=account_id, mode=str(window.mode))
        log.info(
            "fetch_started",
            start=window.start.isoformat(),
            end=window.end.isoformat(),
            labels=label_ids,
            max_results=max_results,
        )

        try:
            outcome = await provider.fetch_messages(
                window, label_ids, max_results, fetch_settings.read_filter, handle
            )
        except OperationCancelled as exc:
            log.info("fetch_cancelled")
            raise FetchCancelled("Fetch cancelled") from exc
        except MailTriageError as exc:
            log.error("fetch_failed", error=str(exc))
            raise

        messages = outcome.messages
        result = SamplingResult(
            messages=messages,
            from_groups=build_from_groups(messages, window.period_days),
            period_start=window.start,
            period_end=window.end,
            total_count=len(messages),
            body_parts=outcome.body_parts,
            raw_bodies=outcome.raw_bodies,
        )
        meta = SamplingMeta(
            mode=window.mode,
            start_date=window.start,
            end_date=window.end,
            fetched_at=self._clock(),
            label_ids=label_ids,
            total_count=len(messages),
        )
        await self._cache.save(account_id, window.mode, result, meta)
        handle.report(len(messages), len(messages), f"Fetched {len(messages)} messages")
        log.info("fetch_completed", total=len(messages), groups=len(result.from_groups))
        return result

    async def get_cached_result(
        self, account_id: str, mode: FetchMode = FetchMode.DAYS
    ) -> tuple[SamplingResult, SamplingMeta] | None:
        return await self._cache.load(account_id, mode)

    async def body_parts(self, provider: MailProvider, message_id: str) -> EmailBodyParts:
        """Cached bodies for *message_id*, fetched live when neither cache has them."""
        cached = await self._cache.find_body_parts(provider.account.id, message_id)
        if cached is not None:
            return cached
        return await provider.read_body(message_id)

    async def raw_source(self, provider: MailProvider, message_id: str) -> str:
        """Cached raw source for *message_id*, fetched live when neither cache has it."""
        cached = await self._cache.find_raw(provider.account.id, message_id)
        if cached is not None:
            return cached
        return await provider.read_raw(message_id)

    async def body_source(self, provider: MailProvider) -> BodySource:
        """Snapshot both mode caches once for a run that reads many bodies."""
        bodies, raws = await self._cache.cached_bodies(provider.account.id)
        return BodySource(provider, bodies, raws)

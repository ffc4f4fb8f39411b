"""Bulk deletion: move messages to trash by sender, subject, rule, or id."""

from __future__ import annotations

from collections.abc import Sequence

import structlog

from mailtriage.domain.models import DeleteResult, RuleLine
from mailtriage.fetch.cache import SamplingCache
from mailtriage.grouping.senders import extract_from_address
from mailtriage.providers.base import (
    ExclusionPolicy,
    MailProvider,
    RuleFilter,
    SearchFilter,
    SenderFilter,
    SubjectFilter,
)
from mailtriage.run import RunHandle
from mailtriage.settings.store import SettingsStore

logger = structlog.get_logger()


class DeletionCoordinator:
    """Apply the delete exclusion policy and aggregate per-criterion results.

    Args:
        settings: Source of the delete settings (exclusion policy).
        sampling_cache: Known message flags for deletion by id.
    """

    def __init__(self, settings: SettingsStore, sampling_cache: SamplingCache) -> None:
        self._settings = settings
        self._sampling_cache = sampling_cache

    async def _policy(self) -> ExclusionPolicy:
        return ExclusionPolicy.from_settings(await self._settings.get_delete_settings())

    async def _by_criteria(
        self,
        provider: MailProvider,
        criteria: Sequence[SearchFilter],
        handle: RunHandle,
        kind: str,
    ) -> DeleteResult:
        exclusion = await self._policy()
        log = logger.bind(account_id=provider.account.id, kind=kind)
        log.info("delete_started", criteria=len(criteria), exclusion_active=exclusion.active)
        total = DeleteResult()
        for position, criterion in enumerate(criteria, start=1):
            handle.raise_if_cancelled()
            total = total + await provider.trash_by_filter(criterion, exclusion, handle)
            handle.report(position, len(criteria), f"Deleted {total.trashed} messages")
        log.info(
            "delete_completed", trashed=total.trashed, excluded=total.excluded, errors=total.errors
        )
        return total

    async def delete_by_senders(
        self, provider: MailProvider, senders: Sequence[str], handle: RunHandle
    ) -> DeleteResult:
        """Trash every message from each sender address (normalized, deduplicated)."""
        addresses = list(dict.fromkeys(extract_from_address(s) for s in senders if s.strip()))
        return await self._by_criteria(
            provider, [SenderFilter(a) for a in addresses], handle, "senders"
        )

    async def delete_by_subjects(
        self, provider: MailProvider, subjects: Sequence[str], handle: RunHandle
    ) -> DeleteResult:
        unique = list(dict.fromkeys(s for s in subjects if s))
        return await self._by_criteria(
            provider, [SubjectFilter(s) for s in unique], handle, "subjects"
        )

    async def delete_by_rules(
        self, provider: MailProvider, lines: Sequence[RuleLine], handle: RunHandle
    ) -> DeleteResult:
        return await self._by_criteria(
            provider, [RuleFilter(line) for line in lines], handle, "rules"
        )

    async def delete_by_ids(
        self, provider: MailProvider, message_ids: Sequence[str], handle: RunHandle
    ) -> DeleteResult:
        """Trash explicit messages, keeping those the policy protects.

        Flags are taken from the account's cached samplings; an id missing
        from both caches is treated as unflagged.
        """
        exclusion = await self._policy()
        ids = list(dict.fromkeys(message_ids))
        excluded = 0
        if exclusion.active:
            known = await self._sampling_cache.cached_messages(provider.account.id)
            kept = {i for i in ids if i in known and exclusion.excludes(known[i])}
            excluded = len(kept)
            ids = [i for i in ids if i not in kept]
        logger.info(
            "delete_started",
            account_id=provider.account.id,
            kind="ids",
            criteria=len(ids),
            excluded=excluded,
        )
        result = DeleteResult(excluded=excluded)
        if ids:
            handle.raise_if_cancelled()
            result = result + await provider.trash_by_ids(ids, handle)
        logger.info(
            "delete_completed",
            account_id=provider.account.id,
            kind="ids",
            trashed=result.trashed,
            excluded=result.excluded,
            errors=result.errors,
        )
        return result

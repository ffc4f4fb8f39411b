"""Dual-mode sampling cache.

Each account keeps one ``SamplingResult`` + ``SamplingMeta`` pair per fetch
mode.  The pair is written together and read together: a result without its
meta (or the reverse) is treated as no cache at all.  The two modes never
merge.  No locking is done here; callers serialize writes per
(account, mode).
"""

from __future__ import annotations

import structlog
from pydantic import ValidationError

from mailtriage.domain.models import (
    AIJudgment,
    EmailBodyParts,
    EmailMessage,
    SamplingMeta,
    SamplingResult,
)
from mailtriage.domain.types import FetchMode
from mailtriage.grouping.senders import build_from_groups, period_days
from mailtriage.storage.files import delete_file, load_json, save_json
from mailtriage.storage.paths import DataPaths

logger = structlog.get_logger()

# Lookup order when a message may live in either mode's cache.
LOOKUP_ORDER: tuple[FetchMode, ...] = (FetchMode.DAYS, FetchMode.RANGE)


class SamplingCache:
    """Read and write per-(account, mode) samplings.

    Args:
        paths: Data directory layout.
    """

    def __init__(self, paths: DataPaths) -> None:
        self._paths = paths

    async def save(
        self, account_id: str, mode: FetchMode, result: SamplingResult, meta: SamplingMeta
    ) -> None:
        """Write a result and its meta.

        The old meta is removed first so that an interrupted save leaves a
        result without meta, which readers treat as no cache.
        """
        meta_path = self._paths.sampling_meta_file(account_id, mode)
        delete_file(meta_path)
        await save_json(
            self._paths.sampling_result_file(account_id, mode), result.model_dump(mode="json")
        )
        await save_json(meta_path, meta.model_dump(mode="json"))
        logger.info(
            "sampling_cached", account_id=account_id, mode=str(mode), total=result.total_count
        )

    async def load(
        self, account_id: str, mode: FetchMode
    ) -> tuple[SamplingResult, SamplingMeta] | None:
        """Return the cached pair for ``(account_id, mode)`` or ``None``."""
        raw_result = await load_json(self._paths.sampling_result_file(account_id, mode), None)
        raw_meta = await load_json(self._paths.sampling_meta_file(account_id, mode), None)
        if raw_result is None or raw_meta is None:
            return None
        try:
            return SamplingResult.model_validate(raw_result), SamplingMeta.model_validate(raw_meta)
        except ValidationError:
            logger.warning("sampling_cache_invalid", account_id=account_id, mode=str(mode))
            return None

    async def update_with_judgments(
        self, account_id: str, mode: FetchMode, judgments: dict[str, AIJudgment]
    ) -> SamplingResult | None:
        """Attach judgments to the cached messages of one mode and rewrite the result.

        Only the *mode* cache is touched; a message also present in the other
        mode's cache keeps its previous annotation there.  Sender groups are
        rebuilt so their score ranges reflect the new judgments.

        Returns:
            The updated result, or ``None`` when there is no cache for *mode*.
        """
        cached = await self.load(account_id, mode)
        if cached is None:
            return None
        result, _meta = cached
        messages = [
            m.model_copy(update={"ai_judgment": judgments[m.id]}) if m.id in judgments else m
            for m in result.messages
        ]
        updated = result.model_copy(
            update={
                "messages": messages,
                "from_groups": build_from_groups(
                    messages, period_days(result.period_start, result.period_end)
                ),
            }
        )
        await save_json(
            self._paths.sampling_result_file(account_id, mode), updated.model_dump(mode="json")
        )
        return updated

    async def find_body_parts(self, account_id: str, message_id: str) -> EmailBodyParts | None:
        """Look a message's cached bodies up in either mode's cache."""
        for mode in LOOKUP_ORDER:
            cached = await self.load(account_id, mode)
            if cached and cached[0].body_parts and message_id in cached[0].body_parts:
                return cached[0].body_parts[message_id]
        return None

    async def find_raw(self, account_id: str, message_id: str) -> str | None:
        """Look a message's cached raw source up in either mode's cache."""
        for mode in LOOKUP_ORDER:
            cached = await self.load(account_id, mode)
            if cached and cached[0].raw_bodies and message_id in cached[0].raw_bodies:
                return cached[0].raw_bodies[message_id]
        return None

    async def clear(self, account_id: str, mode: FetchMode | None = None) -> None:
        """Drop one mode's cache, or both when *mode* is ``None``."""
        for m in (mode,) if mode is not None else tuple(FetchMode):
            delete_file(self._paths.sampling_meta_file(account_id, m))
            delete_file(self._paths.sampling_result_file(account_id, m))
        logger.info("sampling_cache_cleared", account_id=account_id, mode=str(mode or "all"))

    async def cached_bodies(
        self, account_id: str
    ) -> tuple[dict[str, EmailBodyParts], dict[str, str]]:
        """Every cached body and raw source of the account, ``days`` mode winning on overlap."""
        bodies: dict[str, EmailBodyParts] = {}
        raws: dict[str, str] = {}
        for mode in reversed(LOOKUP_ORDER):
            cached = await self.load(account_id, mode)
            if cached is None:
                continue
            bodies.update(cached[0].body_parts or {})
            raws.update(cached[0].raw_bodies or {})
        return bodies, raws

    async def cached_messages(self, account_id: str) -> dict[str, EmailMessage]:
        """Every cached message of the account by id, ``days`` mode winning on overlap."""
        messages: dict[str, EmailMessage] = {}
        for mode in reversed(LOOKUP_ORDER):
            cached = await self.load(account_id, mode)
            if cached is not None:
                messages.update({m.id: m for m in cached[0].messages})
        return messages

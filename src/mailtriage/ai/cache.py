"""Global AI judgment cache keyed by content hash."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog
from pydantic import ValidationError

from mailtriage.domain.models import AIJudgment
from mailtriage.storage.files import load_json, save_json
from mailtriage.storage.paths import DataPaths

logger = structlog.get_logger()

CACHE_TTL = timedelta(days=30)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class JudgmentCache:
    """In-memory view of ``cache/ai_judgments.json``.

    :meth:`load` reads the file and drops entries older than ``CACHE_TTL``;
    :meth:`save` writes the whole map back.  A run loads once and saves once.

    Args:
        paths: Data directory layout.
        clock: Current time; injectable for tests.
    """

    def __init__(self, paths: DataPaths, clock: Callable[[], datetime] = _utcnow) -> None:
        self._paths = paths
        self._clock = clock
        self._entries: dict[str, AIJudgment] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> AIJudgment | None:
        return self._entries.get(key)

    def put(self, key: str, judgment: AIJudgment) -> None:
        self._entries[key] = judgment

    async def load(self) -> None:
        """Replace the in-memory map with the file's live entries."""
        raw = await load_json(self._paths.ai_cache_file, {})
        if not isinstance(raw, dict):
            raw = {}
        cutoff = self._clock() - CACHE_TTL
        entries: dict[str, AIJudgment] = {}
        dropped = 0
        for key, value in raw.items():
            try:
                judgment = AIJudgment.model_validate(value)
            except ValidationError:
                dropped += 1
                continue
            if judgment.judged_at < cutoff:
                dropped += 1
                continue
            entries[key] = judgment
        self._entries = entries
        if dropped:
            logger.info("ai_cache_purged", dropped=dropped, kept=len(entries))

    async def save(self) -> None:
        await save_json(
            self._paths.ai_cache_file,
            {key: j.model_dump(mode="json") for key, j in self._entries.items()},
        )

    async def clear(self) -> None:
        """Forget every entry, in memory and on disk."""
        self._entries = {}
        await save_json(self._paths.ai_cache_file, {})
        logger.info("ai_cache_cleared")

"""Process wiring: logging setup and the service container.

Configures:
- **structlog** with JSON rendering (production) or colored console (development)
- **Stores** (accounts, settings) sharing one crypto gateway
- **Caches** (per-mode samplings, AI judgments) under the data directory
- **Coordinators** for fetch, AI judgment and bulk deletion
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
import structlog

from mailtriage.accounts.store import AccountStore
from mailtriage.ai.cache import JudgmentCache
from mailtriage.ai.inference import Judge, build_judge
from mailtriage.ai.pipeline import JudgmentPipeline
from mailtriage.config import Settings, get_settings
from mailtriage.deletion.coordinator import DeletionCoordinator
from mailtriage.domain.errors import NotConfigured
from mailtriage.domain.models import Account
from mailtriage.fetch.cache import SamplingCache
from mailtriage.fetch.orchestrator import FetchOrchestrator
from mailtriage.providers.base import MailProvider
from mailtriage.providers.registry import open_provider
from mailtriage.security.crypto import CryptoGateway
from mailtriage.settings.models import AIJudgmentSettings, OllamaSettings
from mailtriage.settings.store import SettingsStore
from mailtriage.storage.paths import DataPaths

logger = structlog.get_logger()


def configure_logging(production: bool = False, level: str | None = None) -> None:
    """Configure structlog for production (JSON) or development (console).

    Production mode renders JSON at INFO, development mode renders to a
    colored console at DEBUG.  An explicit *level* overrides either default.

    Args:
        production: Enable production mode if ``True``.
        level: Log level name such as ``"WARNING"``; optional.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if production:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
        log_level = logging.INFO
    else:
        renderer = structlog.dev.ConsoleRenderer()
        log_level = logging.DEBUG
    if level:
        log_level = logging.getLevelNamesMapping().get(level.upper(), log_level)

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(service="mailtriage")


@dataclass
class Services:
    """Everything a command needs, built once per process."""

    config: Settings
    paths: DataPaths
    crypto: CryptoGateway
    settings: SettingsStore
    accounts: AccountStore
    sampling_cache: SamplingCache
    judgments: JudgmentCache
    orchestrator: FetchOrchestrator
    pipeline: JudgmentPipeline
    deletion: DeletionCoordinator
    http: httpx.AsyncClient

    async def require_account(self, account_id: str) -> Account:
        """Return the account or raise ``NotConfigured`` for an unknown id."""
        account = await self.accounts.get_account(account_id)
        if account is None:
            raise NotConfigured("account", f"no account with id '{account_id}'")
        return account

    @asynccontextmanager
    async def provider(self, account_id: str) -> AsyncIterator[MailProvider]:
        """Open the account's provider adapter and close it afterwards."""
        account = await self.require_account(account_id)
        adapter = await open_provider(account, self.accounts, self.settings, self.config, self.http)
        try:
            yield adapter
        finally:
            await adapter.close()


@asynccontextmanager
async def build_services(config: Settings | None = None) -> AsyncIterator[Services]:
    """Assemble the service container and release its HTTP client on exit.

    Args:
        config: Process settings.  If ``None``, ``get_settings()`` is used.

    Yields:
        The ready ``Services``.
    """
    if config is None:
        config = get_settings()

    paths = DataPaths(config.resolved_data_dir())
    crypto = CryptoGateway(paths.key_file)
    settings = SettingsStore(paths, crypto)
    accounts = AccountStore(paths, crypto)
    sampling_cache = SamplingCache(paths)
    judgments = JudgmentCache(paths)
    orchestrator = FetchOrchestrator(accounts, settings, sampling_cache)

    async with httpx.AsyncClient() as http:

        def judge_factory(ai: AIJudgmentSettings, ollama: OllamaSettings) -> Judge:
            return build_judge(ai, ollama, config, http)

        pipeline = JudgmentPipeline(
            settings, orchestrator, sampling_cache, judgments, judge_factory
        )
        deletion = DeletionCoordinator(settings, sampling_cache)
        logger.debug("services_initialized", data_dir=str(paths.root))
        yield Services(
            config=config,
            paths=paths,
            crypto=crypto,
            settings=settings,
            accounts=accounts,
            sampling_cache=sampling_cache,
            judgments=judgments,
            orchestrator=orchestrator,
            pipeline=pipeline,
            deletion=deletion,
            http=http,
        )

"""Centralized, typed process configuration using pydantic-settings.

Provides a single ``Settings`` class backed by ``.env`` file and environment
variables and a cached ``get_settings()`` accessor.  User-editable settings
(fetch window, delete exclusions, inference host, ...) are not configured here;
they live in the JSON settings store under ``data_dir``.

IMPORTANT: This module has ZERO imports from the ``mailtriage`` package to
prevent circular imports.  Only stdlib, pydantic, pydantic_settings, and
structlog are used.
"""

from __future__ import annotations

import sys
from functools import lru_cache
from pathlib import Path

import structlog
from pydantic import AliasChoices, Field, SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger()


class Settings(BaseSettings):
    """Process settings loaded from environment variables and ``.env`` file.

    Variables carry the ``MAILTRIAGE_`` prefix.  The Anthropic key is also
    read from ``ANTHROPIC_API_KEY``, the name the SDK documents.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="MAILTRIAGE_",
        case_sensitive=False,
        extra="ignore",
    )

    # -- General ---------------------------------------------------------------
    production: bool = False
    log_level: str = "INFO"
    data_dir: Path = Path("~/.mailtriage")

    # -- OAuth callback listener -----------------------------------------------
    oauth_callback_port: int = 0
    oauth_timeout_seconds: float = 300.0

    # -- IMAP ------------------------------------------------------------------
    imap_probe_attempts: int = 5

    # -- LLM / Anthropic -------------------------------------------------------
    anthropic_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias=AliasChoices("MAILTRIAGE_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY"),
    )
    anthropic_model: str = "claude-3-5-haiku-latest"

    def resolved_data_dir(self) -> Path:
        """Return ``data_dir`` with ``~`` expanded."""
        return self.data_dir.expanduser()


@lru_cache
def get_settings() -> Settings:
    """Return a cached ``Settings`` instance.

    The ``@lru_cache`` decorator ensures environment variables are parsed
    exactly once.  Call ``get_settings.cache_clear()`` in tests to reset.

    Returns:
        The application ``Settings``.
    """
    try:
        return Settings()
    except ValidationError as exc:
        # Log only the structured errors list; the full exception may contain
        # raw SecretStr values.
        logger.error("settings_validation_failed", errors=exc.errors())
        sys.exit(1)

"""Tests for centralized Settings and the get_settings cache."""

from __future__ import annotations

from pathlib import Path

import pytest

from mailtriage.config import Settings, get_settings

# ---------------------------------------------------------------------------
# Settings defaults
# ---------------------------------------------------------------------------


class TestSettingsDefaults:
    """Verify that Settings fields have the expected default values."""

    def test_settings_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        monkeypatch.delenv("MAILTRIAGE_ANTHROPIC_API_KEY", raising=False)

        s = Settings(_env_file=None)  # type: ignore[call-arg]

        assert s.production is False
        assert s.log_level == "INFO"
        assert s.data_dir == Path("~/.mailtriage")
        assert s.oauth_callback_port == 0
        assert s.imap_probe_attempts == 5
        assert s.anthropic_api_key.get_secret_value() == ""

    def test_settings_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MAILTRIAGE_PRODUCTION", "true")
        monkeypatch.setenv("MAILTRIAGE_DATA_DIR", "/tmp/mt")
        monkeypatch.setenv("MAILTRIAGE_OAUTH_TIMEOUT_SECONDS", "12.5")

        s = Settings(_env_file=None)  # type: ignore[call-arg]

        assert s.production is True
        assert s.data_dir == Path("/tmp/mt")
        assert s.oauth_timeout_seconds == 12.5

    def test_anthropic_key_accepts_sdk_variable(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")

        s = Settings(_env_file=None)  # type: ignore[call-arg]

        assert s.anthropic_api_key.get_secret_value() == "sk-test"
        assert "sk-test" not in repr(s)

    def test_resolved_data_dir_expands_home(self) -> None:
        s = Settings(_env_file=None, data_dir=Path("~/x"))  # type: ignore[call-arg]

        assert s.resolved_data_dir() == Path.home() / "x"


# ---------------------------------------------------------------------------
# get_settings
# ---------------------------------------------------------------------------


class TestGetSettings:
    def test_get_settings_is_cached(self) -> None:
        assert get_settings() is get_settings()

    def test_invalid_settings_exit(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MAILTRIAGE_IMAP_PROBE_ATTEMPTS", "not-a-number")

        with pytest.raises(SystemExit) as exc_info:
            get_settings()

        assert exc_info.value.code == 1

"""User-editable settings kinds and their JSON store."""

from mailtriage.settings.models import (
    AIJudgmentSettings,
    DeleteSettings,
    FetchSettings,
    GcpSettings,
    GeneralSettings,
    OllamaSettings,
)
from mailtriage.settings.store import SettingsStore

__all__ = [
    "AIJudgmentSettings",
    "DeleteSettings",
    "FetchSettings",
    "GcpSettings",
    "GeneralSettings",
    "OllamaSettings",
    "SettingsStore",
]

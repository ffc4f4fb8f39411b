"""JSON-backed settings store with one document per settings kind.

Each kind follows the same contract: ``get_<kind>_settings()`` returns the
stored value or the kind's defaults when the file is missing, corrupt, or no
longer validates; ``save_<kind>_settings(settings)`` overwrites the file.
The OAuth client secret is the only encrypted field.
"""

from __future__ import annotations

import json
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from mailtriage.domain.errors import CryptoError
from mailtriage.security.crypto import CryptoGateway
from mailtriage.settings.models import (
    AIJudgmentSettings,
    DeleteSettings,
    FetchSettings,
    GcpSettings,
    GeneralSettings,
    OllamaSettings,
)
from mailtriage.storage.files import load_json, save_json
from mailtriage.storage.paths import DataPaths

logger = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)

# Kinds included in settings export/import; OAuth client settings travel
# with the account export instead.
PORTABLE_KINDS: dict[str, type[BaseModel]] = {
    "general": GeneralSettings,
    "fetch": FetchSettings,
    "delete": DeleteSettings,
    "ollama": OllamaSettings,
    "ai_judgment": AIJudgmentSettings,
}


class SettingsStore:
    """Read and write settings kinds under ``<data_dir>/settings``.

    Args:
        paths: Data directory layout.
        crypto: Gateway used for the OAuth client secret.
    """

    def __init__(self, paths: DataPaths, crypto: CryptoGateway) -> None:
        self._paths = paths
        self._crypto = crypto

    async def _get(self, kind: str, model: type[M]) -> M:
        raw = await load_json(self._paths.settings_file(kind), None)
        if raw is None:
            return model()
        try:
            return model.model_validate(raw)
        except ValidationError as exc:
            logger.warning("settings_invalid_using_defaults", kind=kind, errors=exc.errors())
            return model()

    async def _save(self, kind: str, settings: BaseModel) -> None:
        await save_json(self._paths.settings_file(kind), settings.model_dump(mode="json"))

    # -- General ---------------------------------------------------------------
    async def get_general_settings(self) -> GeneralSettings:
        return await self._get("general", GeneralSettings)

    async def save_general_settings(self, settings: GeneralSettings) -> None:
        await self._save("general", settings)

    # -- Fetch -----------------------------------------------------------------
    async def get_fetch_settings(self) -> FetchSettings:
        return await self._get("fetch", FetchSettings)

    async def save_fetch_settings(self, settings: FetchSettings) -> None:
        await self._save("fetch", settings)

    # -- Delete ----------------------------------------------------------------
    async def get_delete_settings(self) -> DeleteSettings:
        return await self._get("delete", DeleteSettings)

    async def save_delete_settings(self, settings: DeleteSettings) -> None:
        await self._save("delete", settings)

    # -- Ollama ----------------------------------------------------------------
    async def get_ollama_settings(self) -> OllamaSettings:
        return await self._get("ollama", OllamaSettings)

    async def save_ollama_settings(self, settings: OllamaSettings) -> None:
        await self._save("ollama", settings)

    # -- AI judgment -----------------------------------------------------------
    async def get_ai_judgment_settings(self) -> AIJudgmentSettings:
        return await self._get("ai_judgment", AIJudgmentSettings)

    async def save_ai_judgment_settings(self, settings: AIJudgmentSettings) -> None:
        await self._save("ai_judgment", settings)

    # -- GCP (client secret encrypted) -----------------------------------------
    async def get_gcp_settings(self) -> GcpSettings:
        """Return the OAuth client settings with the secret decrypted.

        A secret that no longer decrypts (e.g. after a key change) comes back
        empty rather than failing the whole lookup.
        """
        raw: dict[str, Any] | None = await load_json(self._paths.settings_file("gcp"), None)
        if not raw:
            return GcpSettings()
        secret = ""
        if raw.get("client_secret"):
            try:
                secret = self._crypto.decrypt(raw["client_secret"])
            except CryptoError:
                logger.warning("gcp_secret_undecryptable")
        return GcpSettings(
            client_id=raw.get("client_id", ""),
            client_secret=secret,
            project_id=raw.get("project_id", ""),
        )

    async def save_gcp_settings(self, settings: GcpSettings) -> None:
        document = {
            "client_id": settings.client_id,
            "client_secret": self._crypto.encrypt(settings.client_secret)
            if settings.client_secret
            else "",
            "project_id": settings.project_id,
        }
        await save_json(self._paths.settings_file("gcp"), document)

    # -- Export / import -------------------------------------------------------
    async def export_settings(self) -> str:
        """Return every portable kind as one JSON document (no secrets)."""
        document = {
            kind: (await self._get(kind, model)).model_dump(mode="json")
            for kind, model in PORTABLE_KINDS.items()
        }
        return json.dumps(document, indent=2)

    async def import_settings(self, payload: str) -> list[str]:
        """Save every portable kind present in an exported document.

        Args:
            payload: JSON produced by :meth:`export_settings`.

        Returns:
            The kinds that were imported.

        Raises:
            ValueError: If *payload* is not a JSON object.
            pydantic.ValidationError: If a present kind does not validate.
        """
        data = json.loads(payload)
        if not isinstance(data, dict):
            raise ValueError("Settings export must be a JSON object")
        imported: list[str] = []
        for kind, model in PORTABLE_KINDS.items():
            if kind in data:
                await self._save(kind, model.model_validate(data[kind]))
                imported.append(kind)
        logger.info("settings_imported", kinds=imported)
        return imported

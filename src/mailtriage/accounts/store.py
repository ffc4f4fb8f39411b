"""Credential store: per-account profile, credentials, labels, and rules.

Each account owns a directory under ``<data_dir>/accounts/<id>``.  Secrets
(OAuth tokens, the IMAP password) are encrypted field-by-field through the
crypto gateway; everything else is plain JSON.  Removing an account deletes
its directory, including its sampling caches.
"""

from __future__ import annotations

import json
import secrets
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import ValidationError

from mailtriage.domain.errors import CryptoError
from mailtriage.domain.models import Account, AccountRules, ImapConnectionSettings, OAuthTokens
from mailtriage.domain.types import ProviderKind, TransportSecurity
from mailtriage.security.crypto import CryptoGateway
from mailtriage.settings.models import GcpSettings
from mailtriage.settings.store import SettingsStore
from mailtriage.storage.files import delete_dir, list_directories, load_json, save_json
from mailtriage.storage.paths import DataPaths

logger = structlog.get_logger()

DEFAULT_LABELS: list[str] = ["INBOX"]
EXPORT_VERSION = 1


def generate_account_id() -> str:
    return secrets.token_hex(8)


class AccountStore:
    """Persist accounts and everything they own.

    Args:
        paths: Data directory layout.
        crypto: Gateway used for credential fields.
    """

    def __init__(self, paths: DataPaths, crypto: CryptoGateway) -> None:
        self._paths = paths
        self._crypto = crypto

    # -- Profiles --------------------------------------------------------------
    async def list_accounts(self) -> list[Account]:
        """Return every account with a readable profile, ordered by id."""
        accounts: list[Account] = []
        for account_id in list_directories(self._paths.accounts_dir):
            account = await self.get_account(account_id)
            if account is not None:
                accounts.append(account)
        return accounts

    async def get_account(self, account_id: str) -> Account | None:
        raw = await load_json(self._paths.profile_file(account_id), None)
        if not raw:
            return None
        try:
            return Account.model_validate({**raw, "id": account_id})
        except ValidationError:
            logger.warning("account_profile_invalid", account_id=account_id)
            return None

    async def find_by_email(self, email: str) -> Account | None:
        wanted = email.strip().lower()
        for account in await self.list_accounts():
            if account.email.lower() == wanted:
                return account
        return None

    async def create_account(
        self,
        email: str,
        display_name: str,
        provider_kind: ProviderKind,
        *,
        tokens: OAuthTokens | None = None,
        imap: ImapConnectionSettings | None = None,
        account_id: str | None = None,
    ) -> Account:
        """Create an account and write its initial state.

        Args:
            email: Mailbox address.
            display_name: Human-readable name.
            provider_kind: Which provider the account is bound to.
            tokens: OAuth token pair, for Gmail accounts.
            imap: Connection settings, for IMAP accounts.
            account_id: Reuse a specific id (account import); generated otherwise.

        Returns:
            The created ``Account``.
        """
        account = Account(
            id=account_id or generate_account_id(),
            email=email,
            display_name=display_name or email,
            provider_kind=provider_kind,
        )
        self._paths.account_cache_dir(account.id).mkdir(parents=True, exist_ok=True)
        await self._write_profile(account)
        if tokens is not None:
            await self.save_tokens(account.id, tokens)
        if imap is not None:
            await self.save_imap_settings(account.id, imap)
        await self.save_selected_labels(account.id, list(DEFAULT_LABELS))
        logger.info("account_created", account_id=account.id, provider=provider_kind)
        return account

    async def _write_profile(self, account: Account) -> None:
        await save_json(
            self._paths.profile_file(account.id), account.model_dump(mode="json", exclude={"id"})
        )

    async def update_profile(
        self, account_id: str, email: str | None = None, display_name: str | None = None
    ) -> Account | None:
        """Change the mutable profile fields; returns ``None`` if the account is unknown."""
        account = await self.get_account(account_id)
        if account is None:
            return None
        updates: dict[str, Any] = {}
        if email is not None:
            updates["email"] = email
        if display_name is not None:
            updates["display_name"] = display_name
        updated = account.model_copy(update=updates)
        await self._write_profile(updated)
        return updated

    async def remove_account(self, account_id: str) -> None:
        delete_dir(self._paths.account_dir(account_id))
        logger.info("account_removed", account_id=account_id)

    # -- OAuth tokens ----------------------------------------------------------
    async def get_tokens(self, account_id: str) -> OAuthTokens | None:
        raw = await load_json(self._paths.tokens_file(account_id), None)
        if not raw:
            return None
        try:
            return OAuthTokens(
                access_token=self._reveal(raw.get("access_token", "")),
                refresh_token=self._reveal(raw.get("refresh_token", "")),
                expires_at=int(raw.get("expires_at", 0)),
            )
        except CryptoError:
            logger.error("tokens_undecryptable", account_id=account_id)
            return None

    async def save_tokens(self, account_id: str, tokens: OAuthTokens) -> None:
        await save_json(
            self._paths.tokens_file(account_id),
            {
                "access_token": self._seal(tokens.access_token),
                "refresh_token": self._seal(tokens.refresh_token),
                "expires_at": tokens.expires_at,
            },
        )

    # -- IMAP connection settings ----------------------------------------------
    async def get_imap_settings(self, account_id: str) -> ImapConnectionSettings | None:
        raw = await load_json(self._paths.imap_file(account_id), None)
        if not raw:
            return None
        try:
            return ImapConnectionSettings(
                host=raw.get("host", ""),
                port=int(raw.get("port", 993)),
                username=raw.get("username", ""),
                secret=self._reveal(raw.get("secret", "")),
                transport_security=raw.get("transport_security", TransportSecurity.SSL),
            )
        except CryptoError:
            logger.error("imap_settings_undecryptable", account_id=account_id)
            return None

    async def save_imap_settings(self, account_id: str, settings: ImapConnectionSettings) -> None:
        await save_json(
            self._paths.imap_file(account_id),
            {
                "host": settings.host,
                "port": settings.port,
                "username": settings.username,
                "secret": self._seal(settings.secret),
                "transport_security": str(settings.transport_security),
            },
        )

    # -- Label / folder selection ----------------------------------------------
    async def get_selected_labels(self, account_id: str) -> list[str]:
        raw = await load_json(self._paths.labels_file(account_id), None)
        if not isinstance(raw, dict) or not isinstance(raw.get("selected_label_ids"), list):
            return list(DEFAULT_LABELS)
        return [str(label) for label in raw["selected_label_ids"]]

    async def save_selected_labels(self, account_id: str, label_ids: list[str]) -> None:
        await save_json(self._paths.labels_file(account_id), {"selected_label_ids": label_ids})

    # -- Rules -----------------------------------------------------------------
    async def get_rules(self, account_id: str) -> AccountRules:
        raw = await load_json(self._paths.rules_file(account_id), None)
        if raw is None:
            return AccountRules()
        try:
            return AccountRules.model_validate(raw)
        except ValidationError:
            logger.warning("account_rules_invalid", account_id=account_id)
            return AccountRules()

    async def save_rules(self, account_id: str, rules: AccountRules) -> None:
        """Persist the rule text verbatim alongside its parsed form."""
        await save_json(self._paths.rules_file(account_id), rules.model_dump(mode="json"))

    # -- Export / import -------------------------------------------------------
    async def export_accounts(self, settings: SettingsStore) -> str:
        """Serialize every account for transfer to another machine.

        Credentials are exported in plaintext together with the encryption
        key; the import side re-encrypts them.

        Args:
            settings: Settings store supplying the OAuth client settings.

        Returns:
            The export document as JSON text.
        """
        exported: list[dict[str, Any]] = []
        for account in await self.list_accounts():
            entry: dict[str, Any] = {
                **account.model_dump(mode="json"),
                "labels": await self.get_selected_labels(account.id),
                "rules": (await self.get_rules(account.id)).model_dump(mode="json"),
            }
            if account.provider_kind == ProviderKind.IMAP:
                imap = await self.get_imap_settings(account.id)
                if imap is not None:
                    entry["imap"] = imap.model_dump(mode="json")
            else:
                tokens = await self.get_tokens(account.id)
                if tokens is not None:
                    entry["tokens"] = tokens.model_dump(mode="json")
            exported.append(entry)

        gcp = await settings.get_gcp_settings()
        document = {
            "version": EXPORT_VERSION,
            "exported_at": datetime.now(tz=UTC).isoformat(),
            "encryption_key": self._crypto.export_key(),
            "gcp": gcp.model_dump(mode="json") if gcp.client_id or gcp.client_secret else None,
            "accounts": exported,
        }
        return json.dumps(document, indent=2)

    async def import_accounts(self, payload: str, settings: SettingsStore) -> tuple[int, list[str]]:
        """Import an export document.

        The encryption key is replaced first so that re-encrypted credentials
        and previously stored ones agree.  An account whose email already
        exists keeps its id and is overwritten.  Per-account failures are
        collected rather than raised.

        Args:
            payload: JSON produced by :meth:`export_accounts`.
            settings: Settings store receiving the OAuth client settings.

        Returns:
            ``(imported_count, errors)``.
        """
        errors: list[str] = []
        try:
            data = json.loads(payload)
        except ValueError as exc:
            return 0, [f"Parse error: {exc}"]
        if not isinstance(data, dict) or not data.get("version") or not isinstance(
            data.get("accounts"), list
        ):
            return 0, ["Invalid export data format"]

        if data.get("encryption_key"):
            try:
                self._crypto.import_key(data["encryption_key"])
            except CryptoError as exc:
                errors.append(f"Encryption key: {exc}")

        if data.get("gcp"):
            try:
                await settings.save_gcp_settings(GcpSettings.model_validate(data["gcp"]))
            except ValidationError as exc:
                errors.append(f"GCP settings: {exc.error_count()} invalid fields")

        imported = 0
        for entry in data["accounts"]:
            email = str(entry.get("email", ""))
            try:
                existing = await self.find_by_email(email)
                kind = ProviderKind(entry.get("provider_kind", ProviderKind.GMAIL))
                raw_tokens = entry.get("tokens")
                raw_imap = entry.get("imap")
                tokens = OAuthTokens.model_validate(raw_tokens) if raw_tokens else None
                imap = ImapConnectionSettings.model_validate(raw_imap) if raw_imap else None
                account = await self.create_account(
                    email,
                    str(entry.get("display_name", "")),
                    kind,
                    tokens=tokens if kind == ProviderKind.GMAIL else None,
                    imap=imap if kind == ProviderKind.IMAP else None,
                    account_id=existing.id if existing else None,
                )
                if isinstance(entry.get("labels"), list):
                    await self.save_selected_labels(account.id, [str(x) for x in entry["labels"]])
                if entry.get("rules"):
                    await self.save_rules(account.id, AccountRules.model_validate(entry["rules"]))
                imported += 1
            except (ValidationError, ValueError, KeyError) as exc:
                errors.append(f"{email or '<unknown>'}: {exc}")

        logger.info("accounts_imported", imported=imported, errors=len(errors))
        return imported, errors

    # -- Helpers ---------------------------------------------------------------
    def _seal(self, value: str) -> str:
        return self._crypto.encrypt(value) if value else ""

    def _reveal(self, value: str) -> str:
        return self._crypto.decrypt(value) if value else ""

"""Tests for the account store: profiles, credentials, selections, export."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from mailtriage.accounts.store import AccountStore
from mailtriage.domain.models import ImapConnectionSettings, OAuthTokens
from mailtriage.domain.types import ProviderKind, TransportSecurity
from mailtriage.grouping.rules import parse_rule_text
from mailtriage.security.crypto import CryptoGateway
from mailtriage.settings.models import GcpSettings
from mailtriage.settings.store import SettingsStore
from mailtriage.storage.paths import DataPaths

TOKENS = OAuthTokens(access_token="at", refresh_token="rt", expires_at=1_700_000_000_000)
IMAP = ImapConnectionSettings(
    host="imap.example.com",
    port=993,
    username="me",
    secret="pw",
    transport_security=TransportSecurity.SSL,
)

# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


class TestProfiles:
    @pytest.mark.anyio()
    async def test_create_list_and_get(self, account_store: AccountStore) -> None:
        account = await account_store.create_account("a@example.com", "", ProviderKind.GMAIL)

        assert account.display_name == "a@example.com"
        assert await account_store.list_accounts() == [account]
        assert await account_store.get_account(account.id) == account

    @pytest.mark.anyio()
    async def test_new_account_selects_inbox(self, account_store: AccountStore) -> None:
        account = await account_store.create_account("a@example.com", "A", ProviderKind.IMAP)

        assert await account_store.get_selected_labels(account.id) == ["INBOX"]

    @pytest.mark.anyio()
    async def test_update_profile(self, account_store: AccountStore) -> None:
        account = await account_store.create_account("a@example.com", "A", ProviderKind.GMAIL)

        updated = await account_store.update_profile(account.id, display_name="Alice")

        assert updated is not None
        assert (await account_store.get_account(account.id)) == updated
        assert updated.display_name == "Alice"
        assert await account_store.update_profile("missing", display_name="x") is None

    @pytest.mark.anyio()
    async def test_remove_deletes_owned_state(
        self, account_store: AccountStore, paths: DataPaths
    ) -> None:
        account = await account_store.create_account(
            "a@example.com", "A", ProviderKind.GMAIL, tokens=TOKENS
        )

        await account_store.remove_account(account.id)

        assert await account_store.list_accounts() == []
        assert not paths.account_dir(account.id).exists()

    @pytest.mark.anyio()
    async def test_find_by_email_is_case_insensitive(self, account_store: AccountStore) -> None:
        account = await account_store.create_account("Me@Example.com", "", ProviderKind.GMAIL)

        assert await account_store.find_by_email("me@example.COM") == account


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class TestCredentials:
    @pytest.mark.anyio()
    async def test_tokens_encrypted_at_rest(
        self, account_store: AccountStore, paths: DataPaths
    ) -> None:
        account = await account_store.create_account(
            "a@example.com", "", ProviderKind.GMAIL, tokens=TOKENS
        )

        raw = json.loads(paths.tokens_file(account.id).read_text(encoding="utf-8"))
        assert raw["access_token"] != "at"
        assert raw["expires_at"] == TOKENS.expires_at
        assert await account_store.get_tokens(account.id) == TOKENS

    @pytest.mark.anyio()
    async def test_imap_secret_encrypted_at_rest(
        self, account_store: AccountStore, paths: DataPaths
    ) -> None:
        account = await account_store.create_account(
            "a@example.com", "", ProviderKind.IMAP, imap=IMAP
        )

        raw = json.loads(paths.imap_file(account.id).read_text(encoding="utf-8"))
        assert raw["secret"] != "pw"
        assert await account_store.get_imap_settings(account.id) == IMAP

    @pytest.mark.anyio()
    async def test_undecryptable_tokens_read_as_missing(
        self, account_store: AccountStore, paths: DataPaths
    ) -> None:
        account = await account_store.create_account(
            "a@example.com", "", ProviderKind.GMAIL, tokens=TOKENS
        )
        paths.key_file.unlink()
        fresh = AccountStore(paths, CryptoGateway(paths.key_file))

        assert await fresh.get_tokens(account.id) is None


# ---------------------------------------------------------------------------
# Labels and rules
# ---------------------------------------------------------------------------


class TestSelections:
    @pytest.mark.anyio()
    async def test_labels_round_trip(self, account_store: AccountStore) -> None:
        account = await account_store.create_account("a@example.com", "", ProviderKind.GMAIL)

        await account_store.save_selected_labels(account.id, ["INBOX", "Label_7"])

        assert await account_store.get_selected_labels(account.id) == ["INBOX", "Label_7"]

    @pytest.mark.anyio()
    async def test_rules_keep_text_verbatim(self, account_store: AccountStore) -> None:
        account = await account_store.create_account("a@example.com", "", ProviderKind.GMAIL)
        text = '# promos\nsubject:"(?i)sale"\n\n"newsletter" body:"unsubscribe"'

        await account_store.save_rules(account.id, parse_rule_text(text))

        rules = await account_store.get_rules(account.id)
        assert rules.rule_text == text
        assert [line.line_index for line in rules.lines] == [1, 3]


# ---------------------------------------------------------------------------
# Export / import
# ---------------------------------------------------------------------------


class TestExportImport:
    @pytest.mark.anyio()
    async def test_export_then_import_on_fresh_machine(
        self,
        account_store: AccountStore,
        settings_store: SettingsStore,
        tmp_path: Path,
    ) -> None:
        gmail = await account_store.create_account(
            "g@example.com", "G", ProviderKind.GMAIL, tokens=TOKENS
        )
        await account_store.create_account("i@example.com", "I", ProviderKind.IMAP, imap=IMAP)
        await account_store.save_selected_labels(gmail.id, ["Label_1"])
        await settings_store.save_gcp_settings(GcpSettings(client_id="cid", client_secret="cs"))

        payload = await account_store.export_accounts(settings_store)

        document = json.loads(payload)
        assert document["version"] == 1
        assert len(document["accounts"]) == 2

        other_paths = DataPaths(tmp_path / "other")
        other_crypto = CryptoGateway(other_paths.key_file)
        other_accounts = AccountStore(other_paths, other_crypto)
        other_settings = SettingsStore(other_paths, other_crypto)

        imported, errors = await other_accounts.import_accounts(payload, other_settings)

        assert (imported, errors) == (2, [])
        restored = await other_accounts.find_by_email("g@example.com")
        assert restored is not None
        assert await other_accounts.get_tokens(restored.id) == TOKENS
        assert await other_accounts.get_selected_labels(restored.id) == ["Label_1"]
        assert (await other_settings.get_gcp_settings()).client_secret == "cs"

    @pytest.mark.anyio()
    async def test_import_reuses_id_for_known_email(
        self, account_store: AccountStore, settings_store: SettingsStore
    ) -> None:
        account = await account_store.create_account(
            "g@example.com", "Old", ProviderKind.GMAIL, tokens=TOKENS
        )
        payload = await account_store.export_accounts(settings_store)

        imported, _ = await account_store.import_accounts(payload, settings_store)

        assert imported == 1
        assert [a.id for a in await account_store.list_accounts()] == [account.id]

    @pytest.mark.anyio()
    @pytest.mark.parametrize("payload", ["not json", "{}", '{"version": 1, "accounts": 3}'])
    async def test_invalid_documents_reported(
        self, account_store: AccountStore, settings_store: SettingsStore, payload: str
    ) -> None:
        imported, errors = await account_store.import_accounts(payload, settings_store)

        assert imported == 0
        assert len(errors) == 1

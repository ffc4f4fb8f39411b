"""Select and build the provider adapter for an account."""

from __future__ import annotations

import httpx

from mailtriage.accounts.store import AccountStore
from mailtriage.config import Settings
from mailtriage.domain.errors import AuthFailed, NotConfigured
from mailtriage.domain.models import Account
from mailtriage.domain.types import ProviderKind
from mailtriage.providers.base import MailProvider
from mailtriage.providers.gmail.client import GmailApi
from mailtriage.providers.gmail.oauth import Clock, now_ms
from mailtriage.providers.gmail.provider import GmailProvider
from mailtriage.providers.imap.provider import ImapProvider
from mailtriage.settings.store import SettingsStore


async def open_provider(
    account: Account,
    accounts: AccountStore,
    settings: SettingsStore,
    config: Settings,
    http: httpx.AsyncClient,
    clock: Clock = now_ms,
) -> MailProvider:
    """Build the adapter matching ``account.provider_kind``.

    Args:
        account: The account to serve.
        accounts: Store holding the account's credentials.
        settings: User settings (fetch timeout, OAuth client).
        config: Process settings.
        http: Shared HTTP client for the REST provider.
        clock: Epoch-millisecond clock for token expiry checks.

    Returns:
        A ready adapter; IMAP connections open lazily.

    Raises:
        AuthFailed: If a Gmail account has no stored tokens.
        NotConfigured: If the OAuth client or the IMAP settings are missing.
    """
    fetch = await settings.get_fetch_settings()
    timeout = fetch.request_timeout_seconds or None
    if account.provider_kind == ProviderKind.GMAIL:
        tokens = await accounts.get_tokens(account.id)
        if tokens is None:
            raise AuthFailed(f"No usable tokens stored for {account.email}; authorize again")
        gcp = await settings.get_gcp_settings()
        if not gcp.is_configured:
            raise NotConfigured("gcp", "client_id and client_secret are required")
        api = GmailApi(account.id, tokens, gcp, accounts, http, clock=clock, timeout=timeout)
        return GmailProvider(account, api)

    imap = await accounts.get_imap_settings(account.id)
    if imap is None:
        raise NotConfigured("imap", f"no connection settings stored for {account.email}")
    return ImapProvider(account, imap, timeout=timeout, probe_attempts=config.imap_probe_attempts)

"""Authorized Gmail REST requests with token refresh.

Every Gmail call goes through :meth:`GmailApi.request`.  A token within
60 seconds of expiry (boundary inclusive) is refreshed before the call; a
401 response triggers one refresh and one retry.  Refreshed tokens are
persisted through the account store.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from mailtriage.accounts.store import AccountStore
from mailtriage.domain.errors import AuthFailed, ProviderError
from mailtriage.domain.models import OAuthTokens
from mailtriage.providers.gmail.oauth import Clock, now_ms, refresh_access_token
from mailtriage.settings.models import GcpSettings

logger = structlog.get_logger()

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"
REFRESH_MARGIN_MS = 60_000


class GmailApi:
    """Thin authorized client over the Gmail v1 REST API.

    Args:
        account_id: Account whose tokens are used and updated.
        tokens: The account's current token pair.
        gcp: OAuth client registration used for refreshes.
        accounts: Store that persists refreshed tokens.
        http: Shared async HTTP client.
        clock: Epoch-millisecond clock.
        timeout: Per-request timeout in seconds; ``None`` is unbounded.
    """

    def __init__(
        self,
        account_id: str,
        tokens: OAuthTokens,
        gcp: GcpSettings,
        accounts: AccountStore,
        http: httpx.AsyncClient,
        clock: Clock = now_ms,
        timeout: float | None = None,
    ) -> None:
        self._account_id = account_id
        self._tokens = tokens
        self._gcp = gcp
        self._accounts = accounts
        self._http = http
        self._clock = clock
        self._timeout = timeout

    @property
    def tokens(self) -> OAuthTokens:
        return self._tokens

    def needs_refresh(self) -> bool:
        return self._clock() >= self._tokens.expires_at - REFRESH_MARGIN_MS

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | list[tuple[str, Any]] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send one authorized request and return the decoded JSON body.

        Args:
            method: HTTP method.
            path: Path below the ``users/me`` base, starting with ``/``.
            params: Query parameters.
            json: JSON request body.

        Returns:
            The decoded response body; ``{}`` when the body is empty.

        Raises:
            AuthFailed: If a refresh fails or the request is still
                unauthorized after one refresh.
            ProviderError: For any other non-2xx status or a transport error.
        """
        if self.needs_refresh():
            await self._refresh()
        response = await self._send(method, path, params, json)
        if response.status_code == 401:
            logger.info("gmail_unauthorized_retry", account_id=self._account_id, path=path)
            await self._refresh()
            response = await self._send(method, path, params, json)
            if response.status_code == 401:
                raise AuthFailed("Gmail request still unauthorized after token refresh")
        if not response.is_success:
            raise ProviderError(
                f"Gmail API {method} {path} failed with status {response.status_code}",
                status=response.status_code,
            )
        if not response.content:
            return {}
        result: dict[str, Any] = response.json()
        return result

    async def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | list[tuple[str, Any]] | None,
        json: dict[str, Any] | None,
    ) -> httpx.Response:
        try:
            return await self._http.request(
                method,
                f"{GMAIL_API_BASE}{path}",
                params=params,
                json=json,
                headers={"Authorization": f"Bearer {self._tokens.access_token}"},
                timeout=self._timeout,
            )
        except httpx.TransportError as exc:
            raise ProviderError(
                f"Gmail API {method} {path} transport error: {exc}", code="transport"
            ) from exc

    async def _refresh(self) -> None:
        self._tokens = await refresh_access_token(self._http, self._gcp, self._tokens, self._clock)
        await self._accounts.save_tokens(self._account_id, self._tokens)
        logger.info("gmail_token_refreshed", account_id=self._account_id)

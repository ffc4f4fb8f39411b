"""Tests for the authorized Gmail REST client."""

from __future__ import annotations

import json
from urllib.parse import parse_qs

import httpx
import pytest

from mailtriage.accounts.store import AccountStore
from mailtriage.domain.errors import AuthFailed, ProviderError
from mailtriage.domain.models import OAuthTokens
from mailtriage.providers.gmail.client import REFRESH_MARGIN_MS, GmailApi
from mailtriage.providers.gmail.oauth import TOKEN_URL
from mailtriage.settings.models import GcpSettings

NOW_MS = 1_700_000_000_000
GCP = GcpSettings(client_id="cid", client_secret="secret")


class GoogleStub:
    """Answers the token endpoint and the Gmail API, recording every request."""

    def __init__(self, api_statuses: list[int] | None = None) -> None:
        self.api_statuses = list(api_statuses or [])
        self.requests: list[httpx.Request] = []
        self.refreshes = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if str(request.url) == TOKEN_URL:
            self.refreshes += 1
            form = parse_qs(request.content.decode())
            assert form["grant_type"] == ["refresh_token"]
            return httpx.Response(
                200, json={"access_token": f"fresh-{self.refreshes}", "expires_in": 3600}
            )
        status = self.api_statuses.pop(0) if self.api_statuses else 200
        return httpx.Response(status, json={"ok": True} if status == 200 else {})

    @property
    def api_auth_headers(self) -> list[str]:
        return [
            r.headers["Authorization"] for r in self.requests if str(r.url) != TOKEN_URL
        ]


def _api(
    stub: GoogleStub, account_store: AccountStore, expires_at: int
) -> tuple[GmailApi, httpx.AsyncClient]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(stub))
    tokens = OAuthTokens(access_token="old", refresh_token="refresh", expires_at=expires_at)
    api = GmailApi("acc1", tokens, GCP, account_store, http, clock=lambda: NOW_MS)
    return api, http


# ---------------------------------------------------------------------------
# Refresh boundary
# ---------------------------------------------------------------------------


class TestRefreshBoundary:
    @pytest.mark.anyio()
    async def test_exact_margin_refreshes(self, account_store: AccountStore) -> None:
        stub = GoogleStub()
        api, http = _api(stub, account_store, NOW_MS + REFRESH_MARGIN_MS)

        async with http:
            await api.request("GET", "/profile")

        assert stub.refreshes == 1
        assert stub.api_auth_headers == ["Bearer fresh-1"]

    @pytest.mark.anyio()
    async def test_one_ms_outside_margin_does_not_refresh(
        self, account_store: AccountStore
    ) -> None:
        stub = GoogleStub()
        api, http = _api(stub, account_store, NOW_MS + REFRESH_MARGIN_MS + 1)

        async with http:
            await api.request("GET", "/profile")

        assert stub.refreshes == 0
        assert stub.api_auth_headers == ["Bearer old"]

    @pytest.mark.anyio()
    async def test_token_expiring_in_30_seconds_is_refreshed_and_saved(
        self, account_store: AccountStore
    ) -> None:
        stub = GoogleStub()
        api, http = _api(stub, account_store, NOW_MS + 30_000)

        async with http:
            await api.request("GET", "/profile")

        saved = await account_store.get_tokens("acc1")
        assert saved is not None
        assert saved.access_token == "fresh-1"
        assert saved.refresh_token == "refresh"
        assert saved.expires_at == NOW_MS + 3_600_000


# ---------------------------------------------------------------------------
# Status handling
# ---------------------------------------------------------------------------


class TestStatusHandling:
    @pytest.mark.anyio()
    async def test_401_refreshes_and_retries_once(self, account_store: AccountStore) -> None:
        stub = GoogleStub(api_statuses=[401, 200])
        api, http = _api(stub, account_store, NOW_MS + 3_600_000)

        async with http:
            body = await api.request("GET", "/profile")

        assert body == {"ok": True}
        assert stub.refreshes == 1
        assert stub.api_auth_headers == ["Bearer old", "Bearer fresh-1"]

    @pytest.mark.anyio()
    async def test_second_401_is_auth_failure(self, account_store: AccountStore) -> None:
        stub = GoogleStub(api_statuses=[401, 401])
        api, http = _api(stub, account_store, NOW_MS + 3_600_000)

        async with http:
            with pytest.raises(AuthFailed):
                await api.request("GET", "/profile")

    @pytest.mark.anyio()
    async def test_other_status_is_provider_error(self, account_store: AccountStore) -> None:
        stub = GoogleStub(api_statuses=[500])
        api, http = _api(stub, account_store, NOW_MS + 3_600_000)

        async with http:
            with pytest.raises(ProviderError) as exc_info:
                await api.request("POST", "/messages/batchModify", json={"ids": []})

        assert exc_info.value.status == 500
        assert json.loads(stub.requests[0].content) == {"ids": []}

    @pytest.mark.anyio()
    async def test_missing_refresh_token_fails(self, account_store: AccountStore) -> None:
        stub = GoogleStub()
        http = httpx.AsyncClient(transport=httpx.MockTransport(stub))
        tokens = OAuthTokens(access_token="old", refresh_token="", expires_at=0)
        api = GmailApi("acc1", tokens, GCP, account_store, http, clock=lambda: NOW_MS)

        async with http:
            with pytest.raises(AuthFailed):
                await api.request("GET", "/profile")

        assert stub.requests == []

"""Interactive OAuth authorization-code flow for Gmail.

A throwaway FastAPI app is served by uvicorn on ``127.0.0.1`` to receive the
redirect.  The browser is opened on the consent URL; the flow then waits for
the callback to deliver the authorization code, exchanges it for a token
pair and reads the user's identity from the userinfo endpoint.
"""

from __future__ import annotations

import asyncio
import secrets
import socket
import time
import webbrowser
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx
import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.responses import HTMLResponse

from mailtriage.config import Settings
from mailtriage.domain.errors import AuthFailed, NotConfigured
from mailtriage.domain.models import OAuthTokens
from mailtriage.resilience.retry import resilient_api_call
from mailtriage.settings.models import GcpSettings

logger = structlog.get_logger()

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GMAIL_SCOPES: list[str] = [
    "https://mail.google.com/",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
]
CALLBACK_HOST = "127.0.0.1"
DEFAULT_EXPIRES_IN = 3600

Clock = Callable[[], int]
CallbackSink = Callable[[str | AuthFailed], None]

_SUCCESS_PAGE = (
    "<html><body><h2>Authentication successful. You can close this window.</h2>"
    "<script>window.close()</script></body></html>"
)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class AuthorizedIdentity:
    """Outcome of a successful authorization."""

    tokens: OAuthTokens
    email: str
    display_name: str


def build_auth_url(client_id: str, redirect_uri: str, state: str) -> str:
    """Consent URL requesting offline access so a refresh token is issued."""
    query = urlencode(
        {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(GMAIL_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
    )
    return f"{AUTH_URL}?{query}"


def build_callback_app(expected_state: str, deliver: CallbackSink) -> FastAPI:
    """Create the redirect receiver.

    The first request that carries a matching ``state`` and a ``code``
    delivers the code; any other first request delivers an ``AuthFailed``.
    Later requests are answered but ignored.

    Args:
        expected_state: The ``state`` value sent with the consent URL.
        deliver: Receives the code or the failure exactly once.

    Returns:
        The FastAPI application.
    """
    app = FastAPI(title="mailtriage OAuth callback", docs_url=None, redoc_url=None)
    delivered = False

    @app.get("/", response_class=HTMLResponse)
    async def callback(
        code: str | None = None, state: str | None = None, error: str | None = None
    ) -> HTMLResponse:
        nonlocal delivered
        if delivered:
            return HTMLResponse("Authorization already handled.", status_code=409)
        delivered = True
        if error:
            deliver(AuthFailed(f"Authorization was denied: {error}"))
            return HTMLResponse("Authentication failed", status_code=400)
        if state != expected_state:
            deliver(AuthFailed("OAuth state mismatch"))
            return HTMLResponse("Authentication failed", status_code=400)
        if not code:
            deliver(AuthFailed("OAuth callback carried no authorization code"))
            return HTMLResponse("Authentication failed", status_code=400)
        deliver(code)
        return HTMLResponse(_SUCCESS_PAGE)

    return app


@resilient_api_call("google_oauth_token")
async def _post_token(client: httpx.AsyncClient, data: dict[str, str]) -> httpx.Response:
    return await client.post(TOKEN_URL, data=data)


async def _token_request(client: httpx.AsyncClient, data: dict[str, str]) -> dict[str, Any]:
    try:
        response = await _post_token(client, data)
    except httpx.TransportError as exc:
        raise AuthFailed(f"Token endpoint unreachable: {exc}") from exc
    try:
        payload: dict[str, Any] = response.json()
    except ValueError:
        payload = {}
    if not response.is_success or not payload.get("access_token"):
        raise AuthFailed(
            f"Token endpoint returned no access token (status {response.status_code})"
        )
    return payload


async def exchange_code(
    client: httpx.AsyncClient,
    gcp: GcpSettings,
    code: str,
    redirect_uri: str,
    clock: Clock = now_ms,
) -> OAuthTokens:
    """Exchange an authorization code for a token pair."""
    payload = await _token_request(
        client,
        {
            "code": code,
            "client_id": gcp.client_id,
            "client_secret": gcp.client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        },
    )
    return OAuthTokens(
        access_token=payload["access_token"],
        refresh_token=payload.get("refresh_token", ""),
        expires_at=clock() + int(payload.get("expires_in", DEFAULT_EXPIRES_IN)) * 1000,
    )


async def refresh_access_token(
    client: httpx.AsyncClient,
    gcp: GcpSettings,
    tokens: OAuthTokens,
    clock: Clock = now_ms,
) -> OAuthTokens:
    """Trade the refresh token for a new access token.

    The refresh token is kept unless the endpoint rotates it.

    Raises:
        AuthFailed: If there is no refresh token or the endpoint yields no
            access token.
    """
    if not tokens.refresh_token:
        raise AuthFailed("No refresh token stored for this account")
    payload = await _token_request(
        client,
        {
            "refresh_token": tokens.refresh_token,
            "client_id": gcp.client_id,
            "client_secret": gcp.client_secret,
            "grant_type": "refresh_token",
        },
    )
    return OAuthTokens(
        access_token=payload["access_token"],
        refresh_token=payload.get("refresh_token") or tokens.refresh_token,
        expires_at=clock() + int(payload.get("expires_in", DEFAULT_EXPIRES_IN)) * 1000,
    )


async def fetch_userinfo(client: httpx.AsyncClient, access_token: str) -> tuple[str, str]:
    """Return ``(email, display_name)`` for the token's owner."""
    try:
        response = await client.get(
            USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"}
        )
    except httpx.TransportError as exc:
        raise AuthFailed(f"Userinfo endpoint unreachable: {exc}") from exc
    if not response.is_success:
        raise AuthFailed(f"Userinfo request failed (status {response.status_code})")
    info = response.json()
    email = info.get("email", "")
    return email, info.get("name") or email


def _bind_callback_socket(port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((CALLBACK_HOST, port))
    except OSError:
        sock.close()
        raise
    return sock


async def authorize_gmail(
    gcp: GcpSettings,
    settings: Settings,
    client: httpx.AsyncClient,
    open_browser: Callable[[str], Any] = webbrowser.open,
    clock: Clock = now_ms,
) -> AuthorizedIdentity:
    """Run the interactive OAuth flow.

    Args:
        gcp: OAuth client registration.
        settings: Process settings (callback port and timeout).
        client: HTTP client for the token and userinfo endpoints.
        open_browser: Opens the consent URL for the user.
        clock: Epoch-millisecond clock used for ``expires_at``.

    Returns:
        The token pair plus the user's email and display name.

    Raises:
        NotConfigured: If the OAuth client id or secret is missing.
        AuthFailed: On timeout, state mismatch, a missing code, or a token
            response without an access token.
    """
    if not gcp.is_configured:
        raise NotConfigured("gcp", "client_id and client_secret are required")

    loop = asyncio.get_running_loop()
    outcome: asyncio.Future[str] = loop.create_future()

    def settle(value: str | AuthFailed) -> None:
        if outcome.done():
            return
        if isinstance(value, AuthFailed):
            outcome.set_exception(value)
        else:
            outcome.set_result(value)

    state = secrets.token_hex(16)
    sock = _bind_callback_socket(settings.oauth_callback_port)
    port = sock.getsockname()[1]
    redirect_uri = f"http://{CALLBACK_HOST}:{port}"
    app = build_callback_app(state, lambda value: loop.call_soon_threadsafe(settle, value))
    server = uvicorn.Server(uvicorn.Config(app, log_level="warning", lifespan="off"))
    serve_task = asyncio.create_task(server.serve(sockets=[sock]))

    try:
        logger.info("oauth_flow_started", port=port)
        open_browser(build_auth_url(gcp.client_id, redirect_uri, state))
        try:
            code = await asyncio.wait_for(outcome, timeout=settings.oauth_timeout_seconds)
        except TimeoutError:
            raise AuthFailed("Timed out waiting for the OAuth callback") from None
    finally:
        server.should_exit = True
        await serve_task
        sock.close()

    tokens = await exchange_code(client, gcp, code, redirect_uri, clock)
    email, display_name = await fetch_userinfo(client, tokens.access_token)
    logger.info("oauth_flow_completed", email=email)
    return AuthorizedIdentity(tokens=tokens, email=email, display_name=display_name)

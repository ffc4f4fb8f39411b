"""Async wrapper around one ``IMAPClient`` connection.

``imapclient`` is blocking, so every protocol call runs on a worker thread
through ``asyncio.to_thread``.  One connection can only have one mailbox
selected at a time: :meth:`ImapSession.mailbox` holds the mailbox lock for
the whole SELECT-scoped sequence, and a separate wire lock keeps individual
calls from interleaving on the socket.
"""

from __future__ import annotations

import asyncio
import contextlib
import ssl
from collections.abc import AsyncIterator, Callable
from typing import Any, TypeVar

import structlog
from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError, LoginError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from mailtriage.domain.errors import AuthFailed, ProviderError
from mailtriage.domain.models import ImapConnectionSettings
from mailtriage.domain.types import TransportSecurity

logger = structlog.get_logger()

T = TypeVar("T")

ClientFactory = Callable[..., Any]

PROBE_TIMEOUT_SECONDS = 2.0
PROBE_DELAY_SECONDS = 2.0


class ImapSession:
    """One logged-in IMAP connection.

    Args:
        settings: Host, credentials and transport security.
        timeout: Socket timeout in seconds; ``None`` is unbounded.
        client_factory: Builds the underlying client; ``IMAPClient`` by default.
    """

    def __init__(
        self,
        settings: ImapConnectionSettings,
        timeout: float | None = None,
        client_factory: ClientFactory = IMAPClient,
    ) -> None:
        self._settings = settings
        self._timeout = timeout
        self._factory = client_factory
        self._client: Any = None
        self._mailbox_lock = asyncio.Lock()
        self._wire_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def _call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        async with self._wire_lock:
            try:
                return await asyncio.to_thread(func, *args, **kwargs)
            except LoginError as exc:
                raise AuthFailed(f"IMAP login rejected: {exc}") from exc
            except (IMAPClientError, OSError) as exc:
                raise ProviderError(f"IMAP error: {exc}", code="imap") from exc

    def _open(self) -> Any:
        s = self._settings
        client = self._factory(
            s.host,
            port=s.port,
            ssl=s.transport_security == TransportSecurity.SSL,
            timeout=self._timeout,
        )
        # Keep INTERNALDATE and envelope dates timezone-aware.
        client.normalise_times = False
        try:
            if s.transport_security == TransportSecurity.STARTTLS:
                client.starttls(ssl.create_default_context())
            client.login(s.username, s.secret)
        except BaseException:
            with contextlib.suppress(OSError, IMAPClientError):
                client.shutdown()
            raise
        return client

    async def connect(self) -> None:
        """Open the connection and log in.

        Raises:
            AuthFailed: If the server rejects the credentials.
            ProviderError: On any transport or protocol failure.
        """
        self._client = await self._call(self._open)
        logger.info("imap_connected", host=self._settings.host, port=self._settings.port)

    def _require(self) -> Any:
        if self._client is None:
            raise ProviderError("IMAP session is not connected", code="imap")
        return self._client

    async def list_folders(self) -> list[tuple[tuple[bytes, ...], bytes | None, str]]:
        result: list[tuple[tuple[bytes, ...], bytes | None, str]] = await self._call(
            self._require().list_folders
        )
        return result

    @contextlib.asynccontextmanager
    async def mailbox(self, folder: str, readonly: bool = True) -> AsyncIterator[int]:
        """Hold the mailbox lock with *folder* selected.

        Yields:
            The folder's message count (``EXISTS``).
        """
        async with self._mailbox_lock:
            response = await self._call(self._require().select_folder, folder, readonly=readonly)
            yield int(response.get(b"EXISTS", 0))

    async def search(self, criteria: list[Any]) -> list[int]:
        needs_utf8 = any(isinstance(c, str) and not c.isascii() for c in criteria)
        charset = "UTF-8" if needs_utf8 else None
        result = await self._call(self._require().search, criteria, charset=charset)
        return list(result)

    async def fetch(self, uids: list[int], items: list[str]) -> dict[int, dict[bytes, Any]]:
        if not uids:
            return {}
        result: dict[int, dict[bytes, Any]] = await self._call(self._require().fetch, uids, items)
        return result

    def _move(self, uids: list[int], destination: str) -> None:
        client = self._require()
        if client.has_capability("MOVE"):
            client.move(uids, destination)
            return
        client.copy(uids, destination)
        client.delete_messages(uids)
        client.expunge()

    async def move(self, uids: list[int], destination: str) -> None:
        """Move *uids* of the selected folder to *destination*.

        Uses MOVE when advertised, else COPY followed by delete and expunge.
        """
        await self._call(self._move, uids, destination)

    def abort(self) -> None:
        """Tear the socket down immediately; safe to call from a cancel callback."""
        client = self._client
        if client is None:
            return
        with contextlib.suppress(OSError, IMAPClientError):
            client.shutdown()

    async def logout(self) -> None:
        """Log out and forget the connection; failures are logged, not raised."""
        client = self._client
        if client is None:
            return
        self._client = None
        try:
            await asyncio.to_thread(client.logout)
        except (IMAPClientError, OSError) as exc:
            logger.warning("imap_logout_failed", host=self._settings.host, error=str(exc))
            with contextlib.suppress(OSError, IMAPClientError):
                client.shutdown()


async def authorize_imap(settings: ImapConnectionSettings, timeout: float | None = None) -> None:
    """Connect, log in and log out once to prove the settings work.

    Raises:
        AuthFailed: If the server rejects the credentials.
        ProviderError: On transport failure.
    """
    session = ImapSession(settings, timeout=timeout)
    await session.connect()
    await session.logout()


def _log_probe_retry(retry_state: RetryCallState) -> None:
    exception = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "imap_probe_failed",
        attempt=retry_state.attempt_number,
        error=str(exception),
    )


async def _probe(host: str, port: int) -> None:
    _reader, writer = await asyncio.wait_for(
        asyncio.open_connection(host, port), timeout=PROBE_TIMEOUT_SECONDS
    )
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()


async def wait_for_host(
    host: str, port: int, attempts: int = 5, delay: float = PROBE_DELAY_SECONDS
) -> bool:
    """Wait until ``host:port`` accepts TCP connections.

    Args:
        host: Server name or address.
        port: Server port.
        attempts: Probes before giving up.
        delay: Seconds between probes.

    Returns:
        ``True`` once a probe connects, ``False`` if every probe fails.
    """
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(delay),
            retry=retry_if_exception_type(OSError),
            before_sleep=_log_probe_retry,
            reraise=True,
        ):
            with attempt:
                await _probe(host, port)
    except OSError as exc:
        logger.error("imap_host_unreachable", host=host, port=port, error=str(exc))
        return False
    return True

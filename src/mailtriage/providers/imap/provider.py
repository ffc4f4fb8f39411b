"""IMAP adapter: folder-by-folder search, fetch and move-to-trash.

Message ids are ``folderPath:uid`` composites.  ``\\Flagged`` is the only
flag the protocol offers for both "important" and "starred".
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from email.errors import HeaderParseError
from email.header import decode_header, make_header
from typing import Any

import structlog

from mailtriage.domain.errors import AuthFailed, ProviderError
from mailtriage.domain.models import (
    Account,
    DeleteResult,
    EmailBodyParts,
    EmailMessage,
    ImapConnectionSettings,
    MailLabel,
    RuleLine,
)
from mailtriage.domain.types import LabelType, PatternField, ReadFilter
from mailtriage.fetch.window import FetchWindow
from mailtriage.grouping.matcher import extract_search_keywords, matches_rule_line
from mailtriage.grouping.senders import extract_from_address
from mailtriage.providers.base import (
    ExclusionPolicy,
    FetchOutcome,
    RuleFilter,
    SearchFilter,
    SenderFilter,
    SubjectFilter,
    trash_matching,
)
from mailtriage.providers.imap.mime import build_mime_tree, decode_part, select_text_parts
from mailtriage.providers.imap.session import ImapSession, wait_for_host
from mailtriage.run import RunHandle

logger = structlog.get_logger()

DEFAULT_FOLDER = "INBOX"
FETCH_BATCH_SIZE = 10
DATE_SCAN_CHUNK = 500
FLAGGED = b"\\Flagged"
TRASH_FLAG = b"\\Trash"
JUNK_FLAG = b"\\Junk"
SPECIAL_USE = frozenset(
    {b"\\All", b"\\Archive", b"\\Drafts", b"\\Flagged", b"\\Important", b"\\Sent"}
    | {JUNK_FLAG, TRASH_FLAG}
)
TRASH_NAMES = ("Trash", "Deleted Items", "Deleted Messages", "Deleted")
FALLBACK_TRASH = "Trash"
SUMMARY_ITEMS = ["ENVELOPE", "FLAGS", "BODYSTRUCTURE", "INTERNALDATE"]
RAW_ITEM = "BODY.PEEK[]"
RAW_KEY = b"BODY[]"

FolderListing = list[tuple[tuple[bytes, ...], bytes | None, str]]
SessionFactory = Callable[[ImapConnectionSettings, float | None], ImapSession]


def parse_message_id(message_id: str) -> tuple[str, int]:
    """Split a ``folderPath:uid`` id on its last colon; a bare uid means INBOX."""
    folder, sep, uid = message_id.rpartition(":")
    if not sep:
        return DEFAULT_FOLDER, int(message_id)
    return folder, int(uid)


def resolve_trash_folder(folders: FolderListing) -> str:
    """Pick the folder deleted messages are moved to.

    The server-advertised ``\\Trash`` folder wins; otherwise a
    case-insensitive match against common trash names; otherwise ``"Trash"``.
    """
    for flags, _delimiter, name in folders:
        if TRASH_FLAG in flags:
            return name
    by_name = {name.lower(): name for _flags, _delimiter, name in folders}
    for candidate in TRASH_NAMES:
        if candidate.lower() in by_name:
            logger.warning("imap_trash_by_name", folder=by_name[candidate.lower()])
            return by_name[candidate.lower()]
    logger.error("imap_trash_not_found", available=sorted(by_name.values()))
    return FALLBACK_TRASH


def searchable_folders(folders: FolderListing) -> list[str]:
    """Every folder except those advertised as trash or junk."""
    return [
        name
        for flags, _delimiter, name in folders
        if TRASH_FLAG not in flags and JUNK_FLAG not in flags and b"\\Noselect" not in flags
    ]


def decode_header_value(raw: bytes | str | None) -> str:
    """Decode an RFC 2047 encoded header value."""
    if not raw:
        return ""
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    try:
        return str(make_header(decode_header(text)))
    except (HeaderParseError, LookupError, UnicodeDecodeError):
        return text


def format_address(address: Any) -> str:
    """Render an envelope ``Address`` as ``Name <mailbox@host>``."""
    if address is None:
        return ""
    name = decode_header_value(address.name)
    mailbox = decode_header_value(address.mailbox)
    host = decode_header_value(address.host)
    email = f"{mailbox}@{host}" if mailbox and host else mailbox
    if name and email:
        return f"{name} <{email}>"
    return email or name


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def parse_imap_message(folder: str, uid: int, data: dict[bytes, Any]) -> EmailMessage:
    """Build an ``EmailMessage`` from ENVELOPE/FLAGS/INTERNALDATE fetch data."""
    envelope = data.get(b"ENVELOPE")
    flags = data.get(b"FLAGS", ())
    from_header = format_address(envelope.from_[0]) if envelope and envelope.from_ else ""
    to = format_address(envelope.to[0]) if envelope and envelope.to else ""
    date = _aware(envelope.date if envelope else None) or _aware(data.get(b"INTERNALDATE"))
    flagged = FLAGGED in flags
    return EmailMessage(
        id=f"{folder}:{uid}",
        from_header=from_header,
        from_address=extract_from_address(from_header),
        to=to,
        subject=decode_header_value(envelope.subject if envelope else None),
        date=date,
        label_ids=[folder],
        is_important=flagged,
        is_starred=flagged,
    )


def read_filter_criteria(read_filter: ReadFilter) -> list[str]:
    if read_filter == ReadFilter.UNREAD:
        return ["UNSEEN"]
    if read_filter == ReadFilter.READ:
        return ["SEEN"]
    return []


def rule_prefilter_criteria(line: RuleLine) -> list[str]:
    """SEARCH keys narrowing the candidates for *line*; ``ALL`` when none apply.

    Only the first keyword per key is used since repeating a key would
    narrow the search beyond what the rule requires.
    """
    criteria: dict[str, str] = {}
    for keyword in extract_search_keywords(line):
        key = {PatternField.SUBJECT: "SUBJECT", PatternField.BODY: "BODY"}.get(
            keyword.field, "TEXT"
        )
        criteria.setdefault(key, keyword.keyword)
    if not criteria:
        return ["ALL"]
    flattened: list[str] = []
    for key, value in criteria.items():
        flattened.extend([key, value])
    return flattened


def _default_session_factory(
    settings: ImapConnectionSettings, timeout: float | None
) -> ImapSession:
    return ImapSession(settings, timeout=timeout)


class ImapProvider:
    """Provider adapter for an IMAP account.

    Fetches open a dedicated connection; searches, body reads and moves
    share a second, lazily opened one.

    Args:
        account: The account this adapter serves.
        settings: Connection settings with the decrypted secret.
        timeout: Socket timeout in seconds; ``None`` is unbounded.
        probe_attempts: TCP probes made by :meth:`check_connection`.
        session_factory: Builds sessions; injectable for tests.
    """

    def __init__(
        self,
        account: Account,
        settings: ImapConnectionSettings,
        timeout: float | None = None,
        probe_attempts: int = 5,
        session_factory: SessionFactory = _default_session_factory,
    ) -> None:
        self.account = account
        self._settings = settings
        self._timeout = timeout
        self._probe_attempts = probe_attempts
        self._session_factory = session_factory
        self._session: ImapSession | None = None
        self._rule_matches: dict[tuple[int, str], bool] = {}

    async def _shared(self) -> ImapSession:
        if self._session is None or not self._session.connected:
            session = self._session_factory(self._settings, self._timeout)
            await session.connect()
            self._session = session
        return self._session

    async def check_connection(self) -> bool:
        """TCP probe followed by a login/logout round trip."""
        if not await wait_for_host(
            self._settings.host, self._settings.port, attempts=self._probe_attempts
        ):
            return False
        session = self._session_factory(self._settings, self._timeout)
        try:
            await session.connect()
        except (AuthFailed, ProviderError) as exc:
            logger.warning("imap_connection_failed", account_id=self.account.id, error=str(exc))
            return False
        await session.logout()
        return True

    async def list_folders(self) -> list[MailLabel]:
        session = await self._shared()
        labels = []
        for flags, delimiter, name in await session.list_folders():
            separator = delimiter.decode() if isinstance(delimiter, bytes) else delimiter
            leaf = name.rsplit(separator, 1)[-1] if separator else name
            is_system = name.upper() == DEFAULT_FOLDER or any(f in SPECIAL_USE for f in flags)
            label_type = LabelType.SYSTEM if is_system else LabelType.USER
            labels.append(MailLabel(id=name, name=leaf, type=label_type))
        return labels

    # -- Fetch -----------------------------------------------------------------
    async def fetch_messages(
        self,
        window: FetchWindow,
        label_ids: list[str],
        max_results: int,
        read_filter: ReadFilter,
        handle: RunHandle,
    ) -> FetchOutcome:
        """Fetch messages in *window* from each selected folder in turn.

        Folders are visited sequentially and the walk stops at
        *max_results*.  Every message's text bodies and raw source are
        downloaded alongside its summary.  Any protocol error aborts the
        whole fetch.
        """
        outcome = FetchOutcome(body_parts={}, raw_bodies={})
        folders = label_ids or [DEFAULT_FOLDER]
        session = self._session_factory(self._settings, self._timeout)
        handle.report(0, 0, "Connecting to IMAP server...")
        with handle.on_cancel(session.abort):
            try:
                await handle.guard(session.connect())
                for folder in folders:
                    handle.raise_if_cancelled()
                    if len(outcome.messages) >= max_results:
                        break
                    await self._fetch_folder(
                        session, folder, window, read_filter, max_results, outcome, handle
                    )
            finally:
                await session.logout()
        logger.info(
            "imap_fetch_done",
            account_id=self.account.id,
            count=len(outcome.messages),
            folders=len(folders),
        )
        return outcome

    async def _fetch_folder(
        self,
        session: ImapSession,
        folder: str,
        window: FetchWindow,
        read_filter: ReadFilter,
        max_results: int,
        outcome: FetchOutcome,
        handle: RunHandle,
    ) -> None:
        assert outcome.body_parts is not None and outcome.raw_bodies is not None
        async with session.mailbox(folder) as exists:
            uids = await handle.guard(
                self._window_uids(session, folder, window, read_filter, exists)
            )
            targets = uids[: max_results - len(outcome.messages)]
            if not targets:
                logger.debug("imap_folder_empty", folder=folder)
                return
            base = len(outcome.messages)
            total = base + len(targets)
            handle.report(base, total, f"Fetching from {folder}...")
            for start in range(0, len(targets), FETCH_BATCH_SIZE):
                handle.raise_if_cancelled()
                batch = targets[start : start + FETCH_BATCH_SIZE]
                summaries = await handle.guard(session.fetch(batch, SUMMARY_ITEMS))
                raws = await handle.guard(session.fetch(batch, [RAW_ITEM]))
                for uid in batch:
                    data = summaries.get(uid)
                    if data is None:
                        continue
                    message = parse_imap_message(folder, uid, data)
                    outcome.messages.append(message)
                    outcome.body_parts[message.id] = await handle.guard(
                        self._download_bodies(session, uid, data.get(b"BODYSTRUCTURE"))
                    )
                    raw = raws.get(uid, {}).get(RAW_KEY)
                    if raw:
                        outcome.raw_bodies[message.id] = raw.decode("utf-8", errors="replace")
                handle.report(
                    len(outcome.messages),
                    total,
                    f"Fetched {len(outcome.messages)}/{total} messages",
                )

    async def _window_uids(
        self,
        session: ImapSession,
        folder: str,
        window: FetchWindow,
        read_filter: ReadFilter,
        exists: int,
    ) -> list[int]:
        """UIDs whose sent date (``Date`` header) falls inside *window*.

        Some servers answer date searches with nothing at all; when a
        non-empty folder yields no hits, every UID is fetched and dated
        client-side from its envelope, or its INTERNALDATE if undated.
        """
        flags = read_filter_criteria(read_filter)
        uids = await session.search(
            ["SENTSINCE", window.since_date, "SENTBEFORE", window.before_date, *flags]
        )
        if uids or exists == 0:
            return uids

        candidates = await session.search(["ALL", *flags])
        dated: list[tuple[datetime, int]] = []
        for start in range(0, len(candidates), DATE_SCAN_CHUNK):
            chunk = candidates[start : start + DATE_SCAN_CHUNK]
            fetched = await session.fetch(chunk, ["ENVELOPE", "INTERNALDATE"])
            for uid, data in fetched.items():
                envelope = data.get(b"ENVELOPE")
                sent = _aware(envelope.date if envelope else None)
                when = sent or _aware(data.get(b"INTERNALDATE"))
                if when is not None and window.contains_day(when):
                    dated.append((when, uid))
        dated.sort(key=lambda pair: pair[0], reverse=True)
        logger.info(
            "imap_search_fallback", folder=folder, scanned=len(candidates), matched=len(dated)
        )
        return [uid for _when, uid in dated]

    async def _download_bodies(
        self, session: ImapSession, uid: int, structure: Any
    ) -> EmailBodyParts:
        plain_node, html_node = select_text_parts(build_mime_tree(structure))
        nodes = [n for n in (plain_node, html_node) if n is not None]
        if not nodes:
            return EmailBodyParts()
        data = (await session.fetch([uid], [f"BODY.PEEK[{n.part}]" for n in nodes])).get(uid, {})

        def text(node: Any) -> str:
            if node is None:
                return ""
            return decode_part(node, data.get(f"BODY[{node.part}]".encode()))

        return EmailBodyParts(plain=text(plain_node), html=text(html_node))

    async def read_body(self, message_id: str) -> EmailBodyParts:
        folder, uid = parse_message_id(message_id)
        session = await self._shared()
        async with session.mailbox(folder):
            data = (await session.fetch([uid], ["BODYSTRUCTURE"])).get(uid)
            if data is None:
                return EmailBodyParts()
            return await self._download_bodies(session, uid, data.get(b"BODYSTRUCTURE"))

    async def read_raw(self, message_id: str) -> str:
        folder, uid = parse_message_id(message_id)
        session = await self._shared()
        async with session.mailbox(folder):
            data = (await session.fetch([uid], [RAW_ITEM])).get(uid, {})
        raw = data.get(RAW_KEY)
        return raw.decode("utf-8", errors="replace") if raw else ""

    # -- Search and trash ------------------------------------------------------
    async def search(
        self, criterion: SearchFilter, exclusion: ExclusionPolicy, handle: RunHandle
    ) -> list[str]:
        """Ids matching *criterion* in every searchable folder."""
        if isinstance(criterion, SenderFilter):
            criteria: list[Any] = ["FROM", criterion.address]
        elif isinstance(criterion, SubjectFilter):
            criteria = ["SUBJECT", criterion.subject]
        else:
            criteria = rule_prefilter_criteria(criterion.line)
        if exclusion.active:
            criteria.append("UNFLAGGED")

        session = await self._shared()
        ids: list[str] = []
        for folder in searchable_folders(await session.list_folders()):
            handle.raise_if_cancelled()
            async with session.mailbox(folder):
                uids = await handle.guard(session.search(criteria))
                if isinstance(criterion, RuleFilter):
                    uids = await self._confirm_rule_matches(
                        session, folder, criterion.line, uids, handle
                    )
            ids.extend(f"{folder}:{uid}" for uid in uids)
        return ids

    async def _confirm_rule_matches(
        self,
        session: ImapSession,
        folder: str,
        line: RuleLine,
        uids: list[int],
        handle: RunHandle,
    ) -> list[int]:
        """Keep the candidates whose subject and bodies satisfy *line*.

        Called with *folder* selected.  Results are memoized so the
        unfiltered pass of an exclusion count does not download bodies again.
        """
        seen = self._rule_matches
        pending = [u for u in uids if (line.line_index, f"{folder}:{u}") not in seen]
        for start in range(0, len(pending), FETCH_BATCH_SIZE):
            handle.raise_if_cancelled()
            batch = pending[start : start + FETCH_BATCH_SIZE]
            summaries = await handle.guard(session.fetch(batch, ["ENVELOPE", "BODYSTRUCTURE"]))
            for uid in batch:
                data = summaries.get(uid, {})
                envelope = data.get(b"ENVELOPE")
                subject = decode_header_value(envelope.subject if envelope else None)
                body = await handle.guard(
                    self._download_bodies(session, uid, data.get(b"BODYSTRUCTURE"))
                )
                self._rule_matches[(line.line_index, f"{folder}:{uid}")] = matches_rule_line(
                    line, subject, body
                )
        return [u for u in uids if self._rule_matches[(line.line_index, f"{folder}:{u}")]]

    async def trash_by_filter(
        self, criterion: SearchFilter, exclusion: ExclusionPolicy, handle: RunHandle
    ) -> DeleteResult:
        return await trash_matching(self, criterion, exclusion, handle)

    async def trash_by_ids(self, message_ids: list[str], handle: RunHandle) -> DeleteResult:
        """Move messages to trash with one move per folder.

        A failed move counts every uid of that folder as an error and the
        remaining folders are still attempted.
        """
        by_folder: dict[str, list[int]] = {}
        for message_id in message_ids:
            folder, uid = parse_message_id(message_id)
            by_folder.setdefault(folder, []).append(uid)

        session = await self._shared()
        trash = resolve_trash_folder(await session.list_folders())
        trashed = 0
        errors = 0
        processed = 0
        total = len(message_ids)
        for folder, uids in by_folder.items():
            handle.raise_if_cancelled()
            try:
                async with session.mailbox(folder, readonly=False):
                    await handle.guard(session.move(uids, trash))
                trashed += len(uids)
            except ProviderError as exc:
                errors += len(uids)
                logger.error(
                    "imap_move_failed", folder=folder, trash=trash, count=len(uids), error=str(exc)
                )
            processed += len(uids)
            handle.report(processed, total, f"Deleting: {processed}/{total}")
        return DeleteResult(trashed=trashed, errors=errors)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.logout()
            self._session = None

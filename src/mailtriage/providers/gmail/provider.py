"""Gmail adapter: REST search, batched detail retrieval and trash."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from mailtriage.domain.errors import ProviderError
from mailtriage.domain.models import (
    Account,
    DeleteResult,
    EmailBodyParts,
    EmailMessage,
    MailLabel,
    RuleLine,
)
from mailtriage.domain.types import LabelType, PatternField, ReadFilter
from mailtriage.fetch.window import FetchWindow
from mailtriage.grouping.matcher import matches_rule_line
from mailtriage.providers.base import (
    ExclusionPolicy,
    FetchOutcome,
    RuleFilter,
    SearchFilter,
    SenderFilter,
    SubjectFilter,
    trash_matching,
)
from mailtriage.providers.gmail.client import GmailApi
from mailtriage.providers.gmail.parsing import (
    decode_raw,
    extract_body_parts,
    header_map,
    parse_gmail_message,
)
from mailtriage.run import RunHandle

logger = structlog.get_logger()

PAGE_SIZE = 500
DETAIL_BATCH_SIZE = 10
TRASH_BATCH_SIZE = 20
METADATA_HEADERS = ("From", "To", "Subject", "Date")
SECONDS_PER_DAY = 86400


def build_gmail_query(window: FetchWindow, read_filter: ReadFilter, label_ids: list[str]) -> str:
    """Server-side query for a sampling fetch.

    ``before`` is the end bound plus one day, so the end day is included.
    """
    after = int(window.start.timestamp())
    before = int(window.end.timestamp()) + SECONDS_PER_DAY
    query = f"after:{after} before:{before}"
    if read_filter == ReadFilter.UNREAD:
        query += " is:unread"
    elif read_filter == ReadFilter.READ:
        query += " is:read"
    if label_ids:
        query += " {" + " OR ".join(f"label:{label}" for label in label_ids) + "}"
    return query


def _quote(text: str) -> str:
    return '"' + text.replace('"', " ") + '"'


def exclusion_terms(exclusion: ExclusionPolicy) -> list[str]:
    terms = []
    if exclusion.exclude_important:
        terms.append("-is:important")
    if exclusion.exclude_starred:
        terms.append("-is:starred")
    return terms


class GmailProvider:
    """Provider adapter for a Gmail account.

    Args:
        account: The account this adapter serves.
        api: Authorized REST client for the account.
    """

    def __init__(self, account: Account, api: GmailApi) -> None:
        self.account = account
        self._api = api
        self._rule_matches: dict[tuple[int, str], bool] = {}

    async def check_connection(self) -> bool:
        try:
            await self._api.request("GET", "/profile")
        except ProviderError as exc:
            logger.warning("gmail_connection_failed", account_id=self.account.id, error=str(exc))
            return False
        return True

    async def list_folders(self) -> list[MailLabel]:
        data = await self._api.request("GET", "/labels")
        return [
            MailLabel(
                id=label["id"],
                name=label.get("name", label["id"]),
                type=LabelType.SYSTEM if label.get("type") == "system" else LabelType.USER,
            )
            for label in data.get("labels", [])
        ]

    async def fetch_messages(
        self,
        window: FetchWindow,
        label_ids: list[str],
        max_results: int,
        read_filter: ReadFilter,
        handle: RunHandle,
    ) -> FetchOutcome:
        """Fetch message metadata inside *window*, newest first as Gmail returns it.

        Ids are listed page by page up to *max_results*; details are then
        retrieved in batches of ten with progress after each batch.
        """
        query = build_gmail_query(window, read_filter, label_ids)
        handle.report(0, 0, "Fetching message list...")
        ids: list[str] = []
        page_token: str | None = None
        while len(ids) < max_results:
            handle.raise_if_cancelled()
            params: dict[str, Any] = {
                "q": query,
                "maxResults": min(PAGE_SIZE, max_results - len(ids)),
            }
            if page_token:
                params["pageToken"] = page_token
            data = await handle.guard(self._api.request("GET", "/messages", params=params))
            ids.extend(m["id"] for m in data.get("messages", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        ids = ids[:max_results]

        total = len(ids)
        handle.report(0, total, f"Fetching {total} messages...")
        messages: list[EmailMessage] = []
        for start in range(0, total, DETAIL_BATCH_SIZE):
            handle.raise_if_cancelled()
            batch = ids[start : start + DETAIL_BATCH_SIZE]
            details = await handle.guard(
                asyncio.gather(*(self._get_metadata(message_id) for message_id in batch))
            )
            messages.extend(parse_gmail_message(d) for d in details)
            handle.report(len(messages), total, f"Fetched {len(messages)}/{total} messages")
        logger.info("gmail_fetch_done", account_id=self.account.id, count=len(messages))
        return FetchOutcome(messages=messages)

    async def _get_metadata(self, message_id: str) -> dict[str, Any]:
        params: list[tuple[str, Any]] = [("format", "metadata")]
        params.extend(("metadataHeaders", h) for h in METADATA_HEADERS)
        return await self._api.request("GET", f"/messages/{message_id}", params=params)

    async def read_body(self, message_id: str) -> EmailBodyParts:
        data = await self._api.request(
            "GET", f"/messages/{message_id}", params={"format": "full"}
        )
        return extract_body_parts(data.get("payload", {}))

    async def read_raw(self, message_id: str) -> str:
        data = await self._api.request("GET", f"/messages/{message_id}", params={"format": "raw"})
        return decode_raw(data)

    async def _search_ids(self, query: str, handle: RunHandle) -> list[str]:
        ids: list[str] = []
        page_token: str | None = None
        while True:
            handle.raise_if_cancelled()
            params: dict[str, Any] = {"maxResults": PAGE_SIZE}
            if query:
                params["q"] = query
            if page_token:
                params["pageToken"] = page_token
            data = await handle.guard(self._api.request("GET", "/messages", params=params))
            ids.extend(m["id"] for m in data.get("messages", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                return ids

    async def search(
        self, criterion: SearchFilter, exclusion: ExclusionPolicy, handle: RunHandle
    ) -> list[str]:
        """Ids of every message matching *criterion*, across the whole mailbox.

        Rule lines are regexes, which Gmail's word-based query language cannot
        express, so every message passing the exclusion terms is a candidate
        and is matched client-side.
        """
        terms = exclusion_terms(exclusion)
        if isinstance(criterion, SenderFilter):
            terms.insert(0, f"from:{criterion.address}")
        elif isinstance(criterion, SubjectFilter):
            terms.insert(0, f"subject:{_quote(criterion.subject)}")
        ids = await self._search_ids(" ".join(terms), handle)
        if isinstance(criterion, RuleFilter):
            logger.info(
                "gmail_rule_scan",
                account_id=self.account.id,
                line_index=criterion.line.line_index,
                candidates=len(ids),
            )
            ids = await self._confirm_rule_matches(criterion.line, ids, handle)
        return ids

    async def _confirm_rule_matches(
        self, line: RuleLine, candidate_ids: list[str], handle: RunHandle
    ) -> list[str]:
        # Subject-only lines never need the body.
        needs_body = any(p.field != PatternField.SUBJECT for p in line.patterns)
        if needs_body:
            params: Any = {"format": "full"}
        else:
            params = [("format", "metadata"), ("metadataHeaders", "Subject")]
        pending = [i for i in candidate_ids if (line.line_index, i) not in self._rule_matches]
        for start in range(0, len(pending), DETAIL_BATCH_SIZE):
            handle.raise_if_cancelled()
            batch = pending[start : start + DETAIL_BATCH_SIZE]
            details = await handle.guard(
                asyncio.gather(
                    *(self._api.request("GET", f"/messages/{i}", params=params) for i in batch)
                )
            )
            for message_id, data in zip(batch, details, strict=True):
                payload = data.get("payload", {})
                subject = header_map(payload).get("subject", "")
                body = extract_body_parts(payload) if needs_body else EmailBodyParts()
                self._rule_matches[(line.line_index, message_id)] = matches_rule_line(
                    line, subject, body
                )
            handle.report(
                min(start + DETAIL_BATCH_SIZE, len(pending)),
                len(pending),
                f"Matching rule line {line.line_index}",
            )
        return [i for i in candidate_ids if self._rule_matches[(line.line_index, i)]]

    async def trash_by_filter(
        self, criterion: SearchFilter, exclusion: ExclusionPolicy, handle: RunHandle
    ) -> DeleteResult:
        return await trash_matching(self, criterion, exclusion, handle)

    async def trash_by_ids(self, message_ids: list[str], handle: RunHandle) -> DeleteResult:
        """Move messages to trash in batches of twenty; failures are counted, not raised."""
        trashed = 0
        errors = 0
        total = len(message_ids)
        for start in range(0, total, TRASH_BATCH_SIZE):
            handle.raise_if_cancelled()
            batch = message_ids[start : start + TRASH_BATCH_SIZE]
            outcomes = await handle.guard(
                asyncio.gather(
                    *(self._api.request("POST", f"/messages/{i}/trash") for i in batch),
                    return_exceptions=True,
                )
            )
            for message_id, outcome in zip(batch, outcomes, strict=True):
                if isinstance(outcome, BaseException):
                    errors += 1
                    logger.warning(
                        "gmail_trash_failed",
                        account_id=self.account.id,
                        message_id=message_id,
                        error=str(outcome),
                    )
                else:
                    trashed += 1
            handle.report(
                min(start + TRASH_BATCH_SIZE, total), total, f"Trashed {trashed}/{total} messages"
            )
        return DeleteResult(trashed=trashed, errors=errors)

    async def close(self) -> None:
        """The shared HTTP client is owned by the caller; nothing to release."""

"""IMAP provider: blocking imapclient session bridged to asyncio, and adapter."""

from mailtriage.providers.imap.mime import MimeNode, build_mime_tree
from mailtriage.providers.imap.provider import (
    ImapProvider,
    parse_message_id,
    resolve_trash_folder,
)
from mailtriage.providers.imap.session import ImapSession, authorize_imap, wait_for_host

__all__ = [
    "ImapProvider",
    "ImapSession",
    "MimeNode",
    "authorize_imap",
    "build_mime_tree",
    "parse_message_id",
    "resolve_trash_folder",
    "wait_for_host",
]

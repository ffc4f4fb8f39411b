"""Gmail provider: OAuth authorization, REST client and adapter."""

from mailtriage.providers.gmail.client import GmailApi
from mailtriage.providers.gmail.oauth import AuthorizedIdentity, authorize_gmail
from mailtriage.providers.gmail.provider import GmailProvider, build_gmail_query

__all__ = [
    "AuthorizedIdentity",
    "GmailApi",
    "GmailProvider",
    "authorize_gmail",
    "build_gmail_query",
]

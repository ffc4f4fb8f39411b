"""Domain-specific exception classes for mailtriage."""

from __future__ import annotations

from mailtriage.domain.types import JudgmentState


class MailTriageError(Exception):
    """Base class for all domain errors in mailtriage."""


class AuthFailed(MailTriageError):
    """Raised when credential exchange or refresh is exhausted.

    Covers a failed OAuth authorization flow, a refresh that did not yield an
    access token, a request still unauthorized after one refresh, and an IMAP
    login the server rejected.
    """


class ProviderError(MailTriageError):
    """Raised on a non-auth API or protocol failure.

    Attributes:
        status: HTTP status for the REST provider, when known.
        code: Short protocol-level code (e.g. ``"imap"``), when known.
    """

    def __init__(self, message: str, status: int | None = None, code: str | None = None) -> None:
        self.status = status
        self.code = code
        super().__init__(message)


class OperationCancelled(MailTriageError):
    """Raised when a run observes its cancellation token."""


class FetchCancelled(OperationCancelled):
    """Raised when a fetch is cancelled before it completes."""


class JudgmentCancelled(OperationCancelled):
    """Raised when an AI judgment run is cancelled; partial results are discarded."""


class ParseError(MailTriageError):
    """Raised when a rule regex or an AI response is malformed."""


class NotConfigured(MailTriageError):
    """Raised when required settings are missing.

    Attributes:
        setting: Name of the missing setting.
    """

    def __init__(self, setting: str, detail: str = "") -> None:
        self.setting = setting
        message = f"Required setting '{setting}' is not configured"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class CryptoError(MailTriageError):
    """Raised when ciphertext is tampered with or has the wrong format."""


class InvalidTransitionError(MailTriageError):
    """Raised when an invalid judgment-run state transition is attempted.

    Attributes:
        current_state: The state the machine was in when the transition was attempted.
        event: The event that was rejected.
    """

    def __init__(self, current_state: JudgmentState, event: str) -> None:
        self.current_state = current_state
        self.event = event
        super().__init__(f"Cannot apply event '{event}' in state '{current_state}'")

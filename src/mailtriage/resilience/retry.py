"""Transport-level retry decorator built on tenacity.

Only idempotent auxiliary calls use it (inference-server health and model
listing, OAuth token endpoint transport errors).  The single token refresh and
the single AI re-attempt per failed item are explicit in the calling code and
are never stacked on top of this.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

import httpx
import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

logger = structlog.get_logger()

F = TypeVar("F", bound=Callable[..., Any])

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (httpx.TransportError,)


def _before_sleep_log(retry_state: RetryCallState) -> None:
    """Log a warning before each retry attempt.

    Args:
        retry_state: Tenacity retry state with attempt info.
    """
    api_name = getattr(retry_state.fn, "_api_name", "unknown") if retry_state.fn else "unknown"
    exception = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "retrying_api_call",
        api_name=api_name,
        attempt=retry_state.attempt_number,
        wait=retry_state.next_action.sleep if retry_state.next_action else 0,
        error=str(exception),
    )


def resilient_api_call(api_name: str, attempts: int = 3) -> Callable[[F], F]:
    """Create a retry decorator for a transport-flaky API call.

    Returns a tenacity retry decorator configured with:
    - *attempts* attempts maximum
    - Exponential backoff with jitter (0.5s initial, 10s max, 1s jitter)
    - Retries only on ``httpx.TransportError`` (connection/timeouts), never on
      HTTP status errors
    - Warning log before each retry
    - Original exception re-raised after exhaustion

    Args:
        api_name: Human-readable name for the API (used in logs).
        attempts: Total attempts including the first.

    Returns:
        A decorator that wraps the function with retry logic.
    """

    def decorator(func: F) -> F:
        # Store api_name on function for before_sleep_log access
        func._api_name = api_name  # type: ignore[attr-defined]

        wrapped = retry(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential_jitter(initial=0.5, max=10, jitter=1),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            before_sleep=_before_sleep_log,
            reraise=True,
        )(func)

        return wrapped  # type: ignore[return-value]

    return decorator

"""Inference backends that score one prompt, and the response parser.

Two judges implement the same ``complete(system, prompt)`` call: a local
Ollama server over its REST API and Anthropic's Messages API through the
``anthropic`` SDK.  Both translate library errors into ``ProviderError`` so
the pipeline's retry logic sees one failure type.
"""

from __future__ import annotations

import math
import re
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog
from anthropic import APIError, AsyncAnthropic

from mailtriage.config import Settings
from mailtriage.domain.errors import NotConfigured, ParseError, ProviderError
from mailtriage.domain.types import JudgeBackend
from mailtriage.resilience.retry import resilient_api_call
from mailtriage.settings.models import AIJudgmentSettings, OllamaSettings

logger = structlog.get_logger()

MAX_RESPONSE_TOKENS = 64

_MARKETING_RE = re.compile(r"marketing\s*=\s*(-?\d+(?:\.\d+)?)", re.IGNORECASE)
_SPAM_RE = re.compile(r"spam\s*=\s*(-?\d+(?:\.\d+)?)", re.IGNORECASE)


def _clamp_score(token: str) -> int:
    # Half-up: 6.5 scores 7.
    return max(0, min(10, math.floor(float(token) + 0.5)))


def parse_judgment_response(text: str) -> tuple[int, int]:
    """Extract ``(marketing, spam)`` from a model response.

    Both ``marketing=`` and ``spam=`` must be present, in either order and
    any letter case.  Values are rounded half-up and clamped to ``[0, 10]``.

    Raises:
        ParseError: If either score is missing.
    """
    marketing = _MARKETING_RE.search(text)
    spam = _SPAM_RE.search(text)
    if marketing is None or spam is None:
        raise ParseError(f"AI response lacks marketing=/spam= scores: {text[:200]!r}")
    return _clamp_score(marketing.group(1)), _clamp_score(spam.group(1))


@runtime_checkable
class Judge(Protocol):
    """A backend able to answer one judgment prompt."""

    name: str

    async def complete(self, system: str, prompt: str) -> str: ...


class OllamaJudge:
    """Judge backed by a local Ollama server.

    Args:
        http: Shared async HTTP client.
        settings: Host, model, per-request timeout (``0`` = unbounded).
    """

    name = "ollama"

    def __init__(self, http: httpx.AsyncClient, settings: OllamaSettings) -> None:
        self._http = http
        self._settings = settings

    @property
    def _host(self) -> str:
        return self._settings.host.rstrip("/")

    async def complete(self, system: str, prompt: str) -> str:
        timeout = self._settings.timeout_seconds or None
        try:
            response = await self._http.post(
                f"{self._host}/api/generate",
                json={
                    "model": self._settings.model,
                    "system": system,
                    "prompt": prompt,
                    "stream": False,
                },
                timeout=timeout,
            )
        except httpx.TransportError as exc:
            raise ProviderError(f"Ollama unreachable: {exc}", code="transport") from exc
        if response.status_code >= 400:
            raise ProviderError(
                f"Ollama API error: {response.status_code}", status=response.status_code
            )
        data: dict[str, Any] = response.json()
        return str(data.get("response", ""))

    @resilient_api_call("ollama_tags")
    async def _tags(self) -> dict[str, Any]:
        response = await self._http.get(f"{self._host}/api/tags", timeout=10.0)
        response.raise_for_status()
        data: dict[str, Any] = response.json()
        return data

    async def list_models(self) -> list[str]:
        """Names of the models installed on the server; empty when unreachable."""
        try:
            data = await self._tags()
        except httpx.HTTPError as exc:
            logger.warning("ollama_list_models_failed", host=self._host, error=str(exc))
            return []
        return [m.get("name") or m.get("model", "") for m in data.get("models", [])]

    async def check_connection(self) -> bool:
        try:
            await self._tags()
        except httpx.HTTPError as exc:
            logger.warning("ollama_unreachable", host=self._host, error=str(exc))
            return False
        return True


class AnthropicJudge:
    """Judge backed by the Anthropic Messages API.

    Args:
        client: An ``AsyncAnthropic`` instance (or compatible mock).
        model: Anthropic model ID.
    """

    name = "anthropic"

    def __init__(self, client: AsyncAnthropic, model: str) -> None:
        self._client = client
        self._model = model

    async def complete(self, system: str, prompt: str) -> str:
        try:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=MAX_RESPONSE_TOKENS,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
        except APIError as exc:
            status = getattr(exc, "status_code", None)
            raise ProviderError(f"Anthropic API error: {exc}", status=status) from exc
        return "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )


def build_judge(
    ai: AIJudgmentSettings,
    ollama: OllamaSettings,
    config: Settings,
    http: httpx.AsyncClient,
) -> OllamaJudge | AnthropicJudge:
    """Return the judge selected by *ai*'s backend.

    Raises:
        NotConfigured: If the Ollama host/model or the Anthropic API key is
            missing.
    """
    if ai.backend == JudgeBackend.ANTHROPIC:
        api_key = config.anthropic_api_key.get_secret_value()
        if not api_key:
            raise NotConfigured("anthropic_api_key")
        return AnthropicJudge(AsyncAnthropic(api_key=api_key), config.anthropic_model)
    if not ollama.host:
        raise NotConfigured("ollama.host")
    if not ollama.model:
        raise NotConfigured("ollama.model")
    return OllamaJudge(http, ollama)

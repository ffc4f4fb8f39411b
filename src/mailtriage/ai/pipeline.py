"""AI judgment run: prepare prompts, judge in batches, commit to the caches."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from mailtriage.ai.attachments import parse_attachments
from mailtriage.ai.batch import run_two_phase
from mailtriage.ai.body import MAX_BODY_CHARS, select_body_text
from mailtriage.ai.cache import JudgmentCache
from mailtriage.ai.hashing import content_hash
from mailtriage.ai.inference import Judge, parse_judgment_response
from mailtriage.ai.prompts import build_system_prompt, build_user_prompt
from mailtriage.ai.state_machine import JudgmentEvent, JudgmentStateMachine
from mailtriage.domain.errors import JudgmentCancelled, MailTriageError, OperationCancelled
from mailtriage.domain.models import AIJudgment, EmailMessage
from mailtriage.domain.types import FetchMode, JudgmentState
from mailtriage.fetch.cache import SamplingCache
from mailtriage.fetch.orchestrator import FetchOrchestrator
from mailtriage.providers.base import MailProvider
from mailtriage.run import RunHandle
from mailtriage.settings.models import AIJudgmentSettings, OllamaSettings
from mailtriage.settings.store import SettingsStore

logger = structlog.get_logger()

JudgeFactory = Callable[[AIJudgmentSettings, OllamaSettings], Judge]


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def exceeds_thresholds(judgment: AIJudgment | None, settings: AIJudgmentSettings) -> bool:
    """True when either score reaches its configured threshold."""
    if judgment is None:
        return False
    return (
        judgment.marketing >= settings.marketing_threshold
        or judgment.spam >= settings.spam_threshold
    )


@dataclass
class PendingJudgment:
    """A prompt queued for inference and every message of the run sharing its content."""

    key: str
    prompt: str
    message_ids: list[str] = field(default_factory=list)


@dataclass
class JudgmentReport:
    """What one completed run produced.

    Attributes:
        judgments: Message id to judgment, cache hits included.
        cache_hits: Messages resolved without an inference call of their own.
        judged: Successful inference calls in this run.
        failed: Messages that failed inference twice.
        state: Final state of the run.
    """

    judgments: dict[str, AIJudgment] = field(default_factory=dict)
    cache_hits: int = 0
    judged: int = 0
    failed: int = 0
    state: JudgmentState = JudgmentState.IDLE


class JudgmentPipeline:
    """Score messages for marketing and spam content.

    Args:
        settings: Source of the AI judgment and Ollama settings.
        orchestrator: Body and raw-source lookups (sampling cache first).
        sampling_cache: Receives the judgments for the run's mode.
        judgments: Global content-hash cache.
        judge_factory: Builds the inference backend from the settings.
        clock: Current time stamped onto new judgments.
    """

    def __init__(
        self,
        settings: SettingsStore,
        orchestrator: FetchOrchestrator,
        sampling_cache: SamplingCache,
        judgments: JudgmentCache,
        judge_factory: JudgeFactory,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings
        self._orchestrator = orchestrator
        self._sampling_cache = sampling_cache
        self._judgments = judgments
        self._judge_factory = judge_factory
        self._clock = clock

    async def run(
        self,
        provider: MailProvider,
        messages: list[EmailMessage],
        mode: FetchMode,
        handle: RunHandle,
    ) -> JudgmentReport:
        """Judge *messages* and attach the results to the *mode* sampling cache.

        Args:
            provider: Adapter for the messages' account.
            messages: Messages to judge, in the order progress is reported.
            mode: Which sampling cache receives the judgments.
            handle: Cancellation token and progress sink.

        Returns:
            The run's ``JudgmentReport``.

        Raises:
            JudgmentCancelled: If *handle* is cancelled; nothing is persisted.
            NotConfigured: If the selected backend lacks its settings.
            ProviderError: If a body or raw source cannot be read.
        """
        account_id = provider.account.id
        log = logger.bind(account_id=account_id, mode=str(mode))
        machine = JudgmentStateMachine()
        machine.trigger(JudgmentEvent.START)
        report = JudgmentReport()
        try:
            ai_settings = await self._settings.get_ai_judgment_settings()
            ollama = await self._settings.get_ollama_settings()
            judge = self._judge_factory(ai_settings, ollama)
            await self._judgments.load()
            log.info("judgment_started", total=len(messages), backend=judge.name)

            queue = await self._prepare(provider, messages, ai_settings, report, handle)
            machine.trigger(JudgmentEvent.PREPARED)

            system = build_system_prompt(ai_settings.allowed_languages)
            await self._judge(judge, system, queue, ollama.concurrency, report, handle)
        except OperationCancelled as exc:
            machine.trigger(JudgmentEvent.CANCEL)
            log.info("judgment_cancelled", state=str(machine.state))
            raise JudgmentCancelled("AI judgment cancelled") from exc
        except MailTriageError as exc:
            machine.trigger(JudgmentEvent.FAIL)
            log.error("judgment_failed", error=str(exc))
            raise

        await self._judgments.save()
        await self._sampling_cache.update_with_judgments(account_id, mode, report.judgments)
        report.state = machine.trigger(JudgmentEvent.FINISH)
        log.info(
            "judgment_completed",
            cache_hits=report.cache_hits,
            judged=report.judged,
            failed=report.failed,
        )
        return report

    async def _prepare(
        self,
        provider: MailProvider,
        messages: list[EmailMessage],
        ai_settings: AIJudgmentSettings,
        report: JudgmentReport,
        handle: RunHandle,
    ) -> list[PendingJudgment]:
        # Sequential: bodies may come over the same connection the fetch used.
        source = await self._orchestrator.body_source(provider)
        queued: dict[str, PendingJudgment] = {}
        total = len(messages)
        for position, message in enumerate(messages, start=1):
            handle.raise_if_cancelled()
            parts = await handle.guard(source.body_parts(message.id))
            raw = await handle.guard(source.raw_source(message.id))
            attachments = parse_attachments(raw)
            body = select_body_text(parts)
            key = content_hash(message.subject, body, ai_settings.allowed_languages, attachments)
            cached = self._judgments.get(key)
            if cached is not None:
                report.judgments[message.id] = cached
                report.cache_hits += 1
            elif key in queued:
                queued[key].message_ids.append(message.id)
            else:
                prompt = build_user_prompt(message.subject, body, attachments, MAX_BODY_CHARS)
                queued[key] = PendingJudgment(key, prompt, [message.id])
            handle.report(position, total, f"Preparing {position}/{total}")
        return list(queued.values())

    async def _judge(
        self,
        judge: Judge,
        system: str,
        queue: list[PendingJudgment],
        concurrency: int,
        report: JudgmentReport,
        handle: RunHandle,
    ) -> None:
        async def judge_one(item: PendingJudgment) -> AIJudgment:
            text = await handle.guard(judge.complete(system, item.prompt))
            marketing, spam = parse_judgment_response(text)
            return AIJudgment(marketing=marketing, spam=spam, judged_at=self._clock())

        total = len(queue)
        done = 0
        for start in range(0, total, concurrency):
            handle.raise_if_cancelled()
            batch = queue[start : start + concurrency]
            outcome = await run_two_phase(batch, judge_one)
            for item, judgment in outcome.succeeded:
                for message_id in item.message_ids:
                    report.judgments[message_id] = judgment
                self._judgments.put(item.key, judgment)
                report.judged += 1
                report.cache_hits += len(item.message_ids) - 1
            for item, error in outcome.failed:
                logger.warning(
                    "judgment_item_failed", message_ids=item.message_ids, error=str(error)
                )
                report.failed += len(item.message_ids)
            done += len(batch)
            message = f"AI judgment {done}/{total}"
            if report.failed:
                message = f"{message} ({report.failed} failed)"
            handle.report(done, total, message)

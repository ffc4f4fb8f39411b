"""AI judgment: body selection, content-hash cache, inference backends, run pipeline."""

from mailtriage.ai.attachments import parse_attachments
from mailtriage.ai.batch import BatchOutcome, run_two_phase
from mailtriage.ai.body import select_body_text
from mailtriage.ai.cache import JudgmentCache
from mailtriage.ai.hashing import content_hash
from mailtriage.ai.inference import (
    AnthropicJudge,
    Judge,
    OllamaJudge,
    build_judge,
    parse_judgment_response,
)
from mailtriage.ai.pipeline import JudgmentPipeline, JudgmentReport, exceeds_thresholds
from mailtriage.ai.state_machine import JudgmentEvent, JudgmentStateMachine

__all__ = [
    "AnthropicJudge",
    "BatchOutcome",
    "Judge",
    "JudgmentCache",
    "JudgmentEvent",
    "JudgmentPipeline",
    "JudgmentReport",
    "JudgmentStateMachine",
    "OllamaJudge",
    "build_judge",
    "content_hash",
    "exceeds_thresholds",
    "parse_attachments",
    "parse_judgment_response",
    "run_two_phase",
    "select_body_text",
]

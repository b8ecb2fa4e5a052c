"""
Completion Service - turns structured stage context into typed stage output.

Wraps the LLM chat adapter with:
- a hard timeout per call
- JSON parsing tolerant of markdown fences and surrounding prose
- normalisation into the project item models
- typed failures (RATE_LIMITED, UPSTREAM_ERROR, TIMEOUT)

Never touches the database and never charges credits.
"""
import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from google.api_core import exceptions as google_exceptions
from pydantic import ValidationError

from models.pipeline import CompletionFailureReason, StageId
from models.projects import (
    Competitor,
    Feature,
    FeatureStatus,
    MarketGap,
    Priority,
    ValidationStep,
    new_ai_item_id,
)
from services.stage_prompts import build_user_prompt, get_prompt_for_stage
from utils import llm_chat

logger = logging.getLogger(__name__)

COMPLETION_TIMEOUT_SECONDS = float(os.getenv("COMPLETION_TIMEOUT_SECONDS", "60"))

_JSON_BLOCK = re.compile(r"\{.*\}", re.DOTALL)


@dataclass
class CompletionResult:
    """Result of one stage generation."""
    ok: bool
    output: List[Any] = field(default_factory=list)
    failure_reason: Optional[CompletionFailureReason] = None
    error_message: Optional[str] = None


def parse_json_response(raw_output: str) -> Dict[str, Any]:
    """Parse LLM output, handling markdown code blocks and chatter around the JSON."""
    if not raw_output or not raw_output.strip():
        raise ValueError("Empty response from LLM")

    text = raw_output.strip()
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_BLOCK.search(text)
        if not match:
            raise ValueError("LLM output not valid JSON")
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise ValueError("LLM output not valid JSON") from e

    if not isinstance(parsed, dict):
        raise ValueError("LLM output is not a JSON object")
    return parsed


def _normalise_priority(value: Any) -> Priority:
    if isinstance(value, str):
        for priority in Priority:
            if value.strip().lower() == priority.value.lower():
                return priority
    return Priority.MEDIUM


def _clamp_score(value: Any) -> int:
    try:
        score = int(round(float(value)))
    except (TypeError, ValueError):
        return 0
    return max(0, min(10, score))


def _text(item: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = item.get(key)
        if value:
            return str(value).strip()
    return ""


def _to_competitor(item: Dict[str, Any]) -> Optional[Competitor]:
    name = _text(item, "name")
    if not name:
        return None
    return Competitor(
        id=new_ai_item_id(),
        name=name,
        website=_text(item, "website", "url"),
        description=_text(item, "description"),
        is_ai_generated=True,
    )


def _to_market_gap(item: Dict[str, Any]) -> Optional[MarketGap]:
    gap = _text(item, "gap")
    if not gap:
        return None
    return MarketGap(
        gap=gap,
        positioning_suggestion=_text(item, "positioningSuggestion", "positioning_suggestion"),
        score=_clamp_score(item.get("score")),
        rationale=_text(item, "rationale"),
    )


def _to_feature(item: Dict[str, Any]) -> Optional[Feature]:
    title = _text(item, "title")
    if not title:
        return None
    return Feature(
        id=new_ai_item_id(),
        title=title,
        description=_text(item, "description"),
        status=FeatureStatus.PLANNED,
        priority=_normalise_priority(item.get("priority")),
        is_ai_generated=True,
    )


def _to_validation_step(item: Dict[str, Any]) -> Optional[ValidationStep]:
    title = _text(item, "title")
    if not title:
        return None
    return ValidationStep(
        id=new_ai_item_id(),
        title=title,
        goal=_text(item, "goal"),
        method=_text(item, "method"),
        priority=_normalise_priority(item.get("priority")),
        is_ai_generated=True,
    )


_CONVERTERS = {
    StageId.COMPETITORS: _to_competitor,
    StageId.MARKET_GAPS: _to_market_gap,
    StageId.FEATURES: _to_feature,
    StageId.VALIDATION_PLAN: _to_validation_step,
}


def normalise_output(stage: StageId, parsed: Dict[str, Any]) -> List[Any]:
    """Convert the parsed JSON payload into item models for `stage`.

    Raises ValueError if the payload carries no usable items.
    """
    prompt = get_prompt_for_stage(stage)
    items = parsed.get(prompt.output_key)
    if not isinstance(items, list):
        raise ValueError(f"LLM output missing '{prompt.output_key}' list")

    converter = _CONVERTERS[stage]
    output = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            model = converter(item)
        except ValidationError as e:
            logger.warning(f"Dropping malformed {stage.value} item: {e}")
            continue
        if model is not None:
            output.append(model)

    if not output:
        raise ValueError(f"LLM output contained no usable {stage.value} items")
    if prompt.expected_items and len(output) != prompt.expected_items:
        logger.info(f"Expected {prompt.expected_items} {stage.value} items, got {len(output)}")
    return output


def _classify_error(error: Exception) -> CompletionFailureReason:
    if isinstance(error, (asyncio.TimeoutError, google_exceptions.DeadlineExceeded)):
        return CompletionFailureReason.TIMEOUT
    if isinstance(error, (google_exceptions.ResourceExhausted, google_exceptions.TooManyRequests)):
        return CompletionFailureReason.RATE_LIMITED
    if "429" in str(error):
        return CompletionFailureReason.RATE_LIMITED
    return CompletionFailureReason.UPSTREAM_ERROR


class CompletionService:
    """Generates stage output through the LLM."""

    def __init__(self, timeout_seconds: float = COMPLETION_TIMEOUT_SECONDS):
        self.timeout_seconds = timeout_seconds
        self.model_name = llm_chat.DEFAULT_MODEL

    async def generate(self, stage_id: StageId, context: Dict[str, Any]) -> CompletionResult:
        stage_id = StageId(stage_id)
        prompt = get_prompt_for_stage(stage_id)
        if prompt is None:
            return CompletionResult(
                ok=False,
                failure_reason=CompletionFailureReason.UPSTREAM_ERROR,
                error_message=f"No prompt registered for stage {stage_id.value}",
            )

        user_prompt = build_user_prompt(prompt, context)
        logger.info(f"Generating {stage_id.value} ({prompt.name}) with {self.model_name}")

        try:
            raw_output = await asyncio.wait_for(
                llm_chat.chat(
                    system_prompt=prompt.system_prompt,
                    user_text=user_prompt,
                    model=self.model_name,
                    json_output=True,
                    temperature=prompt.temperature,
                ),
                timeout=self.timeout_seconds,
            )
        except Exception as e:
            reason = _classify_error(e)
            message = str(e) or f"Completion timed out after {self.timeout_seconds}s"
            logger.error(f"Completion for {stage_id.value} failed ({reason.value}): {message}")
            return CompletionResult(ok=False, failure_reason=reason, error_message=message)

        try:
            output = normalise_output(stage_id, parse_json_response(raw_output))
        except ValueError as e:
            logger.error(f"Unusable completion for {stage_id.value}: {e}")
            logger.debug(f"Response text: {(raw_output or '')[:500]}")
            return CompletionResult(
                ok=False,
                failure_reason=CompletionFailureReason.UPSTREAM_ERROR,
                error_message=str(e),
            )

        logger.info(f"Generated {len(output)} {stage_id.value} items")
        return CompletionResult(ok=True, output=output)


# Singleton instance
completion_service = CompletionService()

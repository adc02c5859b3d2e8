"""
Work Item External Service Adapters
===================================

Content-service adapter over the LLM client.

Implements the ``IContentService`` interface defined in the application
layer. Every failure (transport error, open circuit, unparseable or
invalid JSON) surfaces as ``CollaboratorUnavailable`` so callers can apply
their local fallback.
"""

import json
import re
from typing import Any, Dict, Optional

from pydantic import ValidationError

from hawkops.config import get_settings
from hawkops.core import CollaboratorUnavailable, LLMException
from hawkops.infrastructure.llm import ILLMClient, build_llm_client
from hawkops.shared.infrastructure import CircuitBreaker
from hawkops.shared.infrastructure.logging import get_logger
from hawkops.workitems.application import IContentService, PlanDraft, PlanEvaluation, ReviewGrade
from hawkops.workitems.domain.prompts import (
    PlanEvaluationPromptBuilder, PlanGenerationPromptBuilder, ReviewGradingPromptBuilder,
)

logger = get_logger(__name__)

SERVICE_NAME = "content"

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def extract_json(content_text: str) -> Dict[str, Any]:
    """
    Pull a JSON object out of a model response.

    Handles fenced ```json blocks, bare fences and prose around an object.

    Raises:
        ValueError: If no JSON object can be parsed
    """
    text = content_text or ""
    if "```json" in text:
        text = text.split("```json")[1].split("```")[0].strip()
    elif "```" in text:
        text = text.split("```")[1].split("```")[0].strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(text)
        if not match:
            raise ValueError("No JSON object found in response")
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in response: {e}")

    if not isinstance(data, dict):
        raise ValueError("Response JSON is not an object")
    return data


def _feedback_text(value: Any) -> str:
    """Feedback may come back as a string or a nested object with an overall summary."""
    if isinstance(value, dict):
        return str(value.get("overall") or value.get("summary") or "")
    return str(value or "")


class LLMContentService(IContentService):
    """
    Content service backed by a chat-completion model.

    Usage:
        content = LLMContentService(build_llm_client())
        draft = await content.generate_plan({...})
    """

    def __init__(
        self,
        llm_client: Optional[ILLMClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ):
        settings = get_settings()
        self._llm = llm_client or build_llm_client()
        self._breaker = circuit_breaker or CircuitBreaker(SERVICE_NAME, failure_threshold=5, recovery_timeout=60)
        self._temperature = settings.llm_temperature if temperature is None else temperature
        self._max_tokens = max_tokens or settings.llm_max_tokens

    async def _complete_json(self, system_prompt: str, user_prompt: str, operation: str) -> Dict[str, Any]:
        if not self._breaker.allow_request():
            raise CollaboratorUnavailable(SERVICE_NAME, "circuit breaker open", {"operation": operation})

        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        try:
            response = await self._llm.chat_completion(
                messages=messages,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
                operation=operation,
            )
            data = extract_json(response.content)
        except (LLMException, ValueError) as e:
            self._breaker.record_failure()
            logger.warning("Content service call failed", extra={"operation": operation, "error": str(e)})
            raise CollaboratorUnavailable(SERVICE_NAME, str(e), {"operation": operation})

        self._breaker.record_success()
        logger.info(
            "Content service call succeeded",
            extra={"operation": operation, "model": response.model, "latency_ms": response.latency_ms}
        )
        return data

    async def generate_plan(self, incident_summary: Dict[str, Any]) -> PlanDraft:
        data = await self._complete_json(
            PlanGenerationPromptBuilder.get_system_prompt(),
            PlanGenerationPromptBuilder.build_prompt(incident_summary),
            "plan_generation",
        )
        steps = data.get("implementation_steps") or []
        data["implementation_steps"] = [
            {"order": step.get("order") or step.get("step") or index, **{k: v for k, v in step.items() if k not in ("order", "step")}}
            for index, step in enumerate(steps, start=1)
            if isinstance(step, dict)
        ]
        try:
            return PlanDraft.model_validate(data)
        except ValidationError as e:
            raise CollaboratorUnavailable(SERVICE_NAME, f"invalid plan draft: {e}", {"operation": "plan_generation"})

    async def evaluate_plan(
        self,
        plan_snapshot: Dict[str, Any],
        incident_context: Dict[str, Any]
    ) -> PlanEvaluation:
        data = await self._complete_json(
            PlanEvaluationPromptBuilder.get_system_prompt(),
            PlanEvaluationPromptBuilder.build_prompt(plan_snapshot, incident_context),
            "plan_evaluation",
        )
        try:
            return PlanEvaluation(
                score=int(round(float(data.get("score", 0)))),
                decision=data.get("decision"),
                feedback=_feedback_text(data.get("feedback") or data.get("overallFeedback")),
                strengths=list(data.get("strengths") or []),
                improvements=list(data.get("improvements") or data.get("suggestions") or []),
            )
        except (TypeError, ValueError, ValidationError) as e:
            raise CollaboratorUnavailable(SERVICE_NAME, f"invalid plan evaluation: {e}", {"operation": "plan_evaluation"})

    async def grade_review(self, review_snapshot: Dict[str, Any]) -> ReviewGrade:
        data = await self._complete_json(
            ReviewGradingPromptBuilder.get_system_prompt(),
            ReviewGradingPromptBuilder.build_prompt(review_snapshot),
            "review_grading",
        )
        try:
            return ReviewGrade(
                score=int(round(float(data.get("score", 0)))),
                feedback=_feedback_text(data.get("feedback")),
            )
        except (TypeError, ValueError, ValidationError) as e:
            raise CollaboratorUnavailable(SERVICE_NAME, f"invalid review grade: {e}", {"operation": "review_grading"})

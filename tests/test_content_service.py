import asyncio
import json

import pytest

from hawkops.core import CollaboratorUnavailable, LLMException
from hawkops.infrastructure.llm import ChatCompletionResult, ILLMClient, MockLLMClient
from hawkops.shared.infrastructure import CircuitBreaker
from hawkops.workitems.infrastructure.external import LLMContentService, extract_json


class ScriptedLLM(ILLMClient):
    """Replays canned replies; an exception in the script is raised instead."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.operations = []

    async def chat_completion(self, messages, temperature=0.3, max_tokens=1000, operation="chat_completion"):
        self.operations.append(operation)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return ChatCompletionResult(
            content=reply, model="scripted", prompt_tokens=10, completion_tokens=10, latency_ms=1
        )


INCIDENT = {
    "incident_number": "INC00001",
    "title": "Checkout latency",
    "description": "p99 above 4s",
    "priority": "high",
    "affected_services": ["checkout"],
}


# ========== JSON extraction ==========

def test_extract_json_from_fenced_block():
    text = 'Here you go:\n```json\n{"score": 70, "decision": "approve"}\n```\nThanks'
    assert extract_json(text) == {"score": 70, "decision": "approve"}


def test_extract_json_from_bare_fence_and_prose():
    assert extract_json('```\n{"a": 1}\n```') == {"a": 1}
    assert extract_json('The grade is {"score": 55} overall.') == {"score": 55}


@pytest.mark.parametrize("text", ["", "no json here", "[1, 2, 3]", '{"score": }'])
def test_extract_json_rejects_garbage(text):
    with pytest.raises(ValueError):
        extract_json(text)


# ========== Content service ==========

def test_mock_client_drives_every_operation():
    async def main():
        content = LLMContentService(MockLLMClient())

        draft = await content.generate_plan(INCIDENT)
        assert draft.risk_level == "medium"
        assert [s.order for s in draft.implementation_steps] == [1, 2, 3]

        evaluation = await content.evaluate_plan(draft.model_dump(), INCIDENT)
        assert evaluation.score == 82
        assert evaluation.decision == "approve"
        assert not evaluation.fallback

        grade = await content.grade_review({"summary": "Checkout recovered"})
        assert grade.score == 78

    asyncio.run(main())


def test_loose_model_output_is_normalised():
    async def main():
        llm = ScriptedLLM(
            json.dumps({
                "title": "Roll back",
                "risk_level": "HIGH",
                "implementation_steps": [{"step": 4, "title": "Drain"}, {"title": "Revert"}, "junk"],
            }),
            json.dumps({"score": "71.6", "decision": "Maybe", "overallFeedback": {"overall": "Thin rollback"}}),
        )
        content = LLMContentService(llm)

        draft = await content.generate_plan(INCIDENT)
        assert draft.risk_level == "high"
        assert [(s.order, s.title) for s in draft.implementation_steps] == [(4, "Drain"), (2, "Revert")]

        evaluation = await content.evaluate_plan(draft.model_dump(), INCIDENT)
        assert evaluation.score == 72
        assert evaluation.decision == "needs_revision"
        assert evaluation.feedback == "Thin rollback"
        assert llm.operations == ["plan_generation", "plan_evaluation"]

    asyncio.run(main())


def test_failures_surface_as_collaborator_unavailable():
    async def main():
        content = LLMContentService(ScriptedLLM(
            LLMException("rate limited"),
            "I cannot grade this.",
            json.dumps({"score": 140}),
        ))

        for _ in range(3):
            with pytest.raises(CollaboratorUnavailable):
                await content.grade_review({"summary": "x"})

    asyncio.run(main())


def test_open_breaker_skips_the_model():
    async def main():
        llm = ScriptedLLM(LLMException("down"), LLMException("down"))
        breaker = CircuitBreaker("content", failure_threshold=2, recovery_timeout=60)
        content = LLMContentService(llm, circuit_breaker=breaker)

        for _ in range(3):
            with pytest.raises(CollaboratorUnavailable):
                await content.grade_review({"summary": "x"})

        assert len(llm.operations) == 2
        assert not breaker.allow_request()

    asyncio.run(main())

"""
Content Prompts
===============

Prompt builders for the generative content service.

All prompt text lives here; the adapter only sends it and parses the JSON
that comes back.
"""

import json
from typing import Any, Dict


class PlanGenerationPromptBuilder:
    """Builds prompts for drafting an implementation plan from an incident."""

    SYSTEM_PROMPT = """You are a senior site reliability engineer drafting remediation plans during a live IT service management exercise.

Plans must be practical and short: a handful of ordered steps, a realistic
risk level, a rollback plan and a testing plan.

Respond ONLY in JSON format:
{
    "title": "short plan title",
    "description": "one paragraph summary",
    "root_cause_analysis": "most likely root cause",
    "implementation_steps": [
        {"order": 1, "title": "step title", "description": "what to do", "duration_minutes": 10}
    ],
    "risk_level": "low|medium|high|critical",
    "risk_mitigation": "how risk is contained",
    "rollback_plan": "how to undo the change",
    "testing_plan": "how success is verified",
    "estimated_effort_hours": 2
}"""

    @classmethod
    def build_prompt(cls, incident_summary: Dict[str, Any]) -> str:
        services = ", ".join(incident_summary.get("affected_services") or []) or "Not specified"
        return f"""INCIDENT:
Number: {incident_summary.get('incident_number', 'n/a')}
Title: {incident_summary.get('title', '')}
Description: {incident_summary.get('description') or 'No description'}
Priority: {incident_summary.get('priority', 'medium')}
Severity: {incident_summary.get('severity', 'medium')}
Affected Services: {services}

Draft an implementation plan for this incident (respond with JSON only):"""

    @classmethod
    def get_system_prompt(cls) -> str:
        return cls.SYSTEM_PROMPT


class PlanEvaluationPromptBuilder:
    """Builds prompts for grading a submitted plan revision."""

    SYSTEM_PROMPT = """You are an ITSM expert evaluating implementation plans submitted by teams to resolve incidents.

Score each plan from 0 to 100 and decide:
- approve: the plan is safe to implement as written
- needs_revision: the plan is on the right track but has gaps
- reject: the plan is unsafe or does not address the incident

Respond ONLY in JSON format:
{
    "score": 0,
    "decision": "approve|needs_revision|reject",
    "strengths": ["..."],
    "improvements": ["..."],
    "feedback": "short overall feedback"
}"""

    @classmethod
    def build_prompt(cls, plan_snapshot: Dict[str, Any], incident_context: Dict[str, Any]) -> str:
        steps = json.dumps(plan_snapshot.get("implementation_steps") or [], indent=2)
        return f"""INCIDENT CONTEXT:
Title: {incident_context.get('title', 'General problem')}
Description: {incident_context.get('description') or 'No specific incident'}
Priority: {incident_context.get('priority', 'medium')}
Severity: {incident_context.get('severity', 'medium')}

SUBMITTED PLAN:
Title: {plan_snapshot.get('title', '')}
Description: {plan_snapshot.get('description', '')}
Root Cause Analysis: {plan_snapshot.get('root_cause_analysis') or 'Not provided'}
Implementation Steps: {steps}
Estimated Effort: {plan_snapshot.get('estimated_effort_hours') or 'Not specified'} hours
Risk Level: {plan_snapshot.get('risk_level', 'medium')}
Mitigation Strategy: {plan_snapshot.get('risk_mitigation') or 'Not provided'}
Rollback Plan: {plan_snapshot.get('rollback_plan') or 'Not provided'}
Testing Plan: {plan_snapshot.get('testing_plan') or 'Not provided'}

Evaluate this plan (respond with JSON only):"""

    @classmethod
    def get_system_prompt(cls) -> str:
        return cls.SYSTEM_PROMPT


class ReviewGradingPromptBuilder:
    """Builds prompts for grading a post-incident review."""

    SYSTEM_PROMPT = """You are an ITSM instructor grading Post-Incident Reviews (PIRs) submitted by teams.

GRADING CRITERIA:
1. Timeline (25 points): clear, factual sequence of events
2. Root Cause (35 points): underlying cause, not just symptoms
3. Action Items (20 points): specific and actionable
4. Lessons Learned (20 points): reflection and learning transfer

Be constructive but honest. Respond ONLY in JSON format:
{
    "score": 0,
    "feedback": "2-3 sentence overall assessment"
}"""

    @classmethod
    def build_prompt(cls, review_snapshot: Dict[str, Any]) -> str:
        actions = json.dumps(review_snapshot.get("action_items") or [], indent=2)
        return f"""PIR SUBMISSION:

Timeline:
{review_snapshot.get('timeline') or 'Not provided'}

Root Cause Analysis:
{review_snapshot.get('root_cause') or 'Not provided'}

Impact:
{review_snapshot.get('impact') or 'Not provided'}

Action Items:
{actions}

Lessons Learned:
{review_snapshot.get('lessons_learned') or 'Not provided'}

Grade this PIR (respond with JSON only):"""

    @classmethod
    def get_system_prompt(cls) -> str:
        return cls.SYSTEM_PROMPT

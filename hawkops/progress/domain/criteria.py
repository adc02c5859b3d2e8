"""
Progress Criteria
=================

Named counting and threshold rules behind challenges and achievements.

Everything here is pure: challenge criteria look at one event plus the
challenge, achievement criteria look at a snapshot of a team's history.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional

from hawkops.config import ChallengeStatus, IncidentStatus, Priority, ReviewStatus, Severity
from hawkops.core import EventType, GameEvent, InvariantViolation
from hawkops.progress.domain.entities import ChallengeType, Challenge
from hawkops.workitems.domain import Incident, PostIncidentReview, StateMachine, TransitionContext, EmitEvent

RESPONSE_MINUTES_LIMIT = 2
PIR_QUALITY_SCORE = 75
STAKEHOLDER_SCORE = 80
HIGH_STAKES_STAKEHOLDERS = frozenset({"executive", "media"})

FAST_RESOLUTION_MINUTES = 10
EXCELLENT_REVIEW_SCORE = 90


# ========== Challenges ==========

class ChallengeCriteria:
    """
    Maps an event to the next ``current_value`` of a challenge.

    ``next_value`` returns None when the event does not move the challenge.
    """

    TRIGGERS: Dict[ChallengeType, FrozenSet[EventType]] = {
        ChallengeType.SPEED: frozenset({EventType.INCIDENT_RESOLVED}),
        ChallengeType.RESPONSE_TIME: frozenset({EventType.INCIDENT_STARTED}),
        ChallengeType.SLA_STREAK: frozenset({EventType.SLA_TICK, EventType.SLA_BREACHED}),
        ChallengeType.PIR_QUALITY: frozenset({EventType.PIR_GRADED}),
        ChallengeType.PIR_EXCELLENCE: frozenset({EventType.PIR_GRADED}),
        ChallengeType.STAKEHOLDER_SATISFACTION: frozenset({EventType.STAKEHOLDER_RESPONSE}),
        ChallengeType.HIGH_STAKES_COMM: frozenset({EventType.STAKEHOLDER_RESPONSE}),
        ChallengeType.CLEAR_QUEUE: frozenset({EventType.INCIDENT_RESOLVED}),
        ChallengeType.COLLABORATION: frozenset({EventType.INCIDENT_TRANSFERRED}),
    }

    @classmethod
    def all_triggers(cls) -> FrozenSet[EventType]:
        return frozenset().union(*cls.TRIGGERS.values())

    @classmethod
    def is_triggered_by(cls, challenge_type: ChallengeType, event_type: EventType) -> bool:
        return event_type in cls.TRIGGERS.get(ChallengeType(challenge_type), frozenset())

    @classmethod
    def breaks(cls, challenge: Challenge, event: GameEvent) -> bool:
        """A breach for the team ends an SLA streak early."""
        return challenge.challenge_type == ChallengeType.SLA_STREAK and event.event_type == EventType.SLA_BREACHED

    @classmethod
    def next_value(
        cls,
        challenge: Challenge,
        event: GameEvent,
        active_incident_count: int = 0
    ) -> Optional[int]:
        kind = challenge.challenge_type
        payload = event.payload
        current = challenge.current_value

        if not cls.is_triggered_by(kind, event.event_type):
            return None

        if kind == ChallengeType.SPEED:
            return current + 1

        if kind == ChallengeType.RESPONSE_TIME:
            response = payload.get("response_minutes")
            if response is not None and response <= RESPONSE_MINUTES_LIMIT:
                return current + 1
            return None

        if kind == ChallengeType.SLA_STREAK:
            if event.event_type != EventType.SLA_TICK:
                return None
            elapsed = (event.created_at - challenge.start_time).total_seconds() // 60
            return max(0, int(elapsed))

        if kind == ChallengeType.PIR_QUALITY:
            return current + 1 if (payload.get("score") or 0) >= PIR_QUALITY_SCORE else None

        if kind == ChallengeType.PIR_EXCELLENCE:
            return challenge.target_value if (payload.get("score") or 0) >= challenge.target_value else None

        if kind == ChallengeType.STAKEHOLDER_SATISFACTION:
            return current + 1 if (payload.get("score") or 0) >= STAKEHOLDER_SCORE else None

        if kind == ChallengeType.HIGH_STAKES_COMM:
            score = payload.get("score") or 0
            if payload.get("stakeholder_type") in HIGH_STAKES_STAKEHOLDERS and score >= challenge.target_value:
                return int(score)
            return None

        if kind == ChallengeType.CLEAR_QUEUE:
            return 0 if active_incident_count == 0 else None

        if kind == ChallengeType.COLLABORATION:
            return current + 1

        return None

    @classmethod
    def is_complete(cls, challenge_type: ChallengeType, value: int, target: int) -> bool:
        if challenge_type == ChallengeType.CLEAR_QUEUE:
            return value == 0
        return value >= target


class ChallengeStateMachine(StateMachine):
    """active -> completed | expired. Both targets are terminal."""

    entity_type = "challenge"
    transitions = {
        ChallengeStatus.ACTIVE.value: frozenset({ChallengeStatus.COMPLETED.value, ChallengeStatus.EXPIRED.value}),
        ChallengeStatus.COMPLETED.value: frozenset(),
        ChallengeStatus.EXPIRED.value: frozenset(),
    }

    @classmethod
    def status_type(cls, value) -> ChallengeStatus:
        return ChallengeStatus(value)

    @classmethod
    def _on_edge(cls, challenge: Challenge, previous: ChallengeStatus, ctx: TransitionContext) -> List:
        base = {
            "challenge_type": challenge.challenge_type.value,
            "title": challenge.title,
            "target_value": challenge.target_value,
            "current_value": challenge.current_value,
        }
        if challenge.status == ChallengeStatus.COMPLETED:
            challenge.completed_at = ctx.at
            challenge.completed_by_team_id = ctx.data.get("team_id")
            return [EmitEvent(EventType.CHALLENGE_COMPLETED, {**base, "reward_points": challenge.reward_points})]
        return [EmitEvent(EventType.CHALLENGE_EXPIRED, {**base, "reason": ctx.reason})]

    @classmethod
    def _check_invariants(cls, before: Challenge, after: Challenge) -> None:
        if after.current_value < before.current_value:
            raise InvariantViolation(
                f"Challenge {after.id} value went backwards",
                {"challenge_id": after.id, "before": before.current_value, "after": after.current_value},
            )


# ========== Achievements ==========

@dataclass(frozen=True)
class TeamHistory:
    """Snapshot of one team's incidents, reviews and events."""
    incidents: List[Incident] = field(default_factory=list)
    reviews: List[PostIncidentReview] = field(default_factory=list)
    events: List[GameEvent] = field(default_factory=list)

    def resolved(self) -> List[Incident]:
        return [i for i in self.incidents if i.status in (IncidentStatus.RESOLVED, IncidentStatus.CLOSED)]

    def graded(self) -> List[PostIncidentReview]:
        return [r for r in self.reviews if r.status == ReviewStatus.GRADED]


def fast_responses(history: TeamHistory) -> int:
    count = 0
    for incident in history.incidents:
        response = incident.response_minutes()
        if response is not None and response <= RESPONSE_MINUTES_LIMIT:
            count += 1
    return count


def fast_resolutions(history: TeamHistory) -> int:
    return sum(1 for i in history.resolved() if i.resolution_minutes() <= FAST_RESOLUTION_MINUTES)


def resolved_within_sla(history: TeamHistory) -> int:
    return sum(1 for i in history.resolved() if i.resolved_within_sla() and not i.sla_breached)


def resolved_without_reopen(history: TeamHistory) -> int:
    return sum(1 for i in history.resolved() if i.reopen_count == 0)


def critical_without_escalation(history: TeamHistory) -> int:
    return sum(
        1 for i in history.resolved()
        if i.priority == Priority.CRITICAL and i.severity == Severity.CRITICAL and i.escalation_level == 0
    )


def concurrent_incidents(history: TeamHistory) -> int:
    """Largest number of incidents open at the same moment."""
    points = []
    for incident in history.incidents:
        points.append((incident.created_at, 1))
        if incident.resolved_at is not None:
            points.append((incident.resolved_at, -1))
    # Ends sort before starts at the same instant
    points.sort(key=lambda p: (p[0], p[1]))
    current = peak = 0
    for _, delta in points:
        current += delta
        peak = max(peak, current)
    return peak


def excellent_reviews(history: TeamHistory) -> int:
    return sum(1 for r in history.graded() if (r.score or 0) >= EXCELLENT_REVIEW_SCORE)


def complete_reviews(history: TeamHistory) -> int:
    return sum(1 for r in history.graded() if r.is_complete)


def action_items(history: TeamHistory) -> int:
    return sum(len(r.action_items) for r in history.graded())


def review_completion(history: TeamHistory) -> int:
    """1 once every resolved incident that owes a PIR has a graded one."""
    owed = {i.id for i in history.resolved() if i.requires_pir}
    if not owed:
        return 0
    graded = {r.incident_id for r in history.graded()}
    return 1 if owed <= graded else 0


def handoffs(history: TeamHistory) -> int:
    return sum(1 for e in history.events if e.event_type == EventType.INCIDENT_TRANSFERRED)


def stakeholder_responses(history: TeamHistory) -> int:
    return sum(
        1 for e in history.events
        if e.event_type == EventType.STAKEHOLDER_RESPONSE and (e.payload.get("score") or 0) >= STAKEHOLDER_SCORE
    )


ACHIEVEMENT_CRITERIA: Dict[str, Callable[[TeamHistory], int]] = {
    "fast_responses": fast_responses,
    "fast_resolutions": fast_resolutions,
    "resolved_within_sla": resolved_within_sla,
    "resolved_without_reopen": resolved_without_reopen,
    "critical_without_escalation": critical_without_escalation,
    "concurrent_incidents": concurrent_incidents,
    "excellent_reviews": excellent_reviews,
    "complete_reviews": complete_reviews,
    "action_items": action_items,
    "review_completion": review_completion,
    "handoffs": handoffs,
    "stakeholder_responses": stakeholder_responses,
}

# Events after which a team's achievements are re-evaluated
ACHIEVEMENT_TRIGGERS = frozenset({
    EventType.INCIDENT_CREATED,
    EventType.INCIDENT_STARTED,
    EventType.INCIDENT_RESOLVED,
    EventType.INCIDENT_TRANSFERRED,
    EventType.PIR_GRADED,
    EventType.STAKEHOLDER_RESPONSE,
})

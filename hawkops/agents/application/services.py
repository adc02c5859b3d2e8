"""
Agent Application Services
==========================

The perceive-decide-act loop for one simulated role.

- ``SnapshotBuilder`` reads a team's work items once per cycle
- ``Perceiver`` classifies them against the scaled SLA thresholds
- ``DecisionEngine`` runs the role's rule table
- ``ActionExecutor`` carries out the decision through the work item services

Act is idempotent: every handler first checks whether its target already
reached the state the decision asks for, and skips if so. Errors from Act
are logged and reported as a failed outcome; only ``ConcurrentModification``
is re-raised so the caller can retry the whole cycle.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from hawkops.config import (
    AgentRole, ChangeStatus, IncidentStatus, Personality, PlanStatus, Priority,
)
from hawkops.core import (
    ApplicationException, Clock, ConcurrentModification, EntityNotFound,
    EventType, IEventLog, InvariantViolation, utc_now,
)
from hawkops.agents.domain import (
    ROLE_RULES, AgentAction, AgentProfile, Decision, GameSnapshot, Perception,
    RuleTable, build_recommendations, cab_review, classify_workload,
)
from hawkops.shared.infrastructure.logging import get_logger
from hawkops.timing.application import TimingService
from hawkops.workitems.application import (
    ChangeService, IChangeRepository, IGameRepository, IIncidentRepository,
    IncidentService, IPlanRepository, PlanService, TransitionRunner,
)

logger = get_logger(__name__)

URGENT_PRIORITIES = (Priority.CRITICAL, Priority.HIGH)
ATTENTION_PLAN_STATUSES = (PlanStatus.DRAFT, PlanStatus.AI_NEEDS_REVISION, PlanStatus.AI_APPROVED)
READY_CHANGE_STATUSES = (ChangeStatus.APPROVED, ChangeStatus.IN_PROGRESS)


# ========== Perceive ==========

class SnapshotBuilder:
    """Reads everything a team's roles look at, once per cycle."""

    def __init__(
        self,
        games: IGameRepository,
        incidents: IIncidentRepository,
        plans: IPlanRepository,
        changes: IChangeRepository,
        event_log: IEventLog,
        clock: Clock = utc_now
    ):
        self._games = games
        self._incidents = incidents
        self._plans = plans
        self._changes = changes
        self._event_log = event_log
        self._clock = clock

    async def build(self, game_id: str, team_id: str) -> GameSnapshot:
        """
        Take a snapshot of a team's work items.

        Raises:
            EntityNotFound: If the game does not exist
        """
        game = await self._games.get(game_id)
        if game is None:
            raise EntityNotFound("game", game_id)

        incidents = await self._incidents.list_for_team(game_id, team_id)
        plans = await self._plans.list_for_team(game_id, team_id)
        changes = await self._changes.list_for_team(game_id, team_id)
        escalations = await self._event_log.list_for_team(
            game_id, team_id, [EventType.MANAGEMENT_ESCALATED]
        )

        return GameSnapshot(
            game=game,
            team_id=team_id,
            taken_at=self._clock(),
            incidents=tuple(incidents),
            plans=tuple(plans),
            changes=tuple(changes),
            escalated_breach_count=max(
                (int(e.payload.get("breach_count", 0)) for e in escalations), default=0
            ),
        )


class Perceiver:
    """
    Turns a snapshot into a role's perception.

    An item is at risk when it has time left but no more than the scaled
    at-risk threshold for its priority.
    """

    def __init__(self, timing: TimingService):
        self._timing = timing

    def perceive(self, snapshot: GameSnapshot, role: AgentRole) -> Perception:
        now = snapshot.taken_at
        duration = snapshot.duration_minutes
        active = snapshot.active_incidents()

        breached = frozenset(i.id for i in active if i.is_sla_breached(now))
        at_risk = frozenset(
            i.id for i in active
            if i.id not in breached
            and 0 < i.remaining_sla_minutes(now) <= self._timing.at_risk_threshold(i.priority, duration)
        )
        urgent = tuple(
            i for i in active
            if i.priority in URGENT_PRIORITIES or i.id in at_risk or i.id in breached
        )

        plans = tuple(p for p in snapshot.plans if p.status in ATTENTION_PLAN_STATUSES)
        pending_changes = tuple(c for c in snapshot.changes if c.status == ChangeStatus.PENDING)
        ready_changes = tuple(c for c in snapshot.changes if c.status in READY_CHANGE_STATUSES)

        workload_count = len(active) + (len(plans) if role == AgentRole.TECH_OPS else 0)
        workload = classify_workload(role, workload_count)

        return Perception(
            snapshot=snapshot,
            role=role,
            urgent=urgent,
            pending=active,
            plans_needing_attention=plans,
            changes_needing_review=pending_changes,
            changes_ready=ready_changes,
            at_risk_ids=at_risk,
            breached_ids=breached,
            workload=workload,
            recommendations=build_recommendations(
                role,
                urgent_count=len(urgent),
                breached_count=len(breached),
                workload=workload,
                pending_changes=len(pending_changes),
                plans_needing_revision=sum(1 for p in plans if p.status == PlanStatus.AI_NEEDS_REVISION),
            ),
        )


# ========== Decide ==========

class DecisionEngine:
    """First matching rule wins; no match is a valid outcome."""

    def __init__(self, tables: Optional[Dict[AgentRole, RuleTable]] = None):
        self._tables = dict(tables or ROLE_RULES)

    def table_for(self, role: AgentRole) -> RuleTable:
        return self._tables[role]

    def decide(self, perception: Perception, personality: Personality) -> Optional[Decision]:
        decision = self.table_for(perception.role).evaluate(perception, personality)
        if decision is None:
            logger.debug(
                "No rule matched",
                extra={"team_id": perception.snapshot.team_id, "role": perception.role.value}
            )
            return None

        logger.info(
            "Decision made",
            extra={
                "team_id": perception.snapshot.team_id,
                "role": perception.role.value,
                "rule": decision.rule,
                "priority": decision.priority,
                "action": decision.action.value,
                "target": decision.target,
            }
        )
        return decision


# ========== Act ==========

class ActStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ActionOutcome:
    """What happened when a decision was carried out."""
    decision: Decision
    status: ActStatus
    detail: str = ""

    @property
    def applied(self) -> bool:
        return self.status == ActStatus.APPLIED

    def to_dict(self) -> Dict[str, Any]:
        return {"decision": self.decision.to_dict(), "status": self.status.value, "detail": self.detail}


Handler = Callable[[AgentProfile, Decision], Awaitable[ActionOutcome]]


class ActionExecutor:
    """
    Carries out decisions through the work item services.
    """

    def __init__(
        self,
        incident_service: IncidentService,
        plan_service: PlanService,
        change_service: ChangeService,
        runner: TransitionRunner,
        event_log: IEventLog,
        clock: Clock = utc_now
    ):
        self._incidents = incident_service
        self._plans = plan_service
        self._changes = change_service
        self._runner = runner
        self._event_log = event_log
        self._clock = clock
        self._handlers: Dict[AgentAction, Handler] = {
            AgentAction.START_WORK: self._start_work,
            AgentAction.RESOLVE: self._resolve,
            AgentAction.EMERGENCY_RESOLVE: self._resolve,
            AgentAction.ESCALATE: self._escalate,
            AgentAction.CREATE_PLAN: self._create_plan,
            AgentAction.SUBMIT_PLAN: self._submit_plan,
            AgentAction.REVISE_PLAN: self._revise_plan,
            AgentAction.CREATE_CHANGE: self._create_change,
            AgentAction.REVIEW_CHANGE: self._review_change,
            AgentAction.IMPLEMENT_CHANGE: self._implement_change,
            AgentAction.ESCALATE_MANAGEMENT: self._escalate_management,
        }

    async def act(self, profile: AgentProfile, decision: Decision) -> ActionOutcome:
        """
        Execute one decision.

        Returns:
            The outcome; failures are reported, never raised

        Raises:
            ConcurrentModification: If a compare-and-set lost a race
        """
        log_extra = {
            "team_id": profile.team_id,
            "role": profile.role.value,
            "action": decision.action.value,
            "target": decision.target,
            "rule": decision.rule,
        }

        try:
            outcome = await self._handlers[decision.action](profile, decision)
        except ConcurrentModification:
            raise
        except InvariantViolation as e:
            logger.error("Action violated an invariant", extra={**log_extra, "error": e.message, "details": e.details})
            return ActionOutcome(decision, ActStatus.FAILED, e.message)
        except ApplicationException as e:
            logger.warning("Action failed", extra={**log_extra, "error": e.message})
            return ActionOutcome(decision, ActStatus.FAILED, e.message)

        logger.info("Action executed", extra={**log_extra, "status": outcome.status.value, "detail": outcome.detail})
        return outcome

    @staticmethod
    def _skip(decision: Decision, detail: str) -> ActionOutcome:
        return ActionOutcome(decision, ActStatus.SKIPPED, detail)

    @staticmethod
    def _done(decision: Decision, detail: str) -> ActionOutcome:
        return ActionOutcome(decision, ActStatus.APPLIED, detail)

    # ========== Incident actions ==========

    async def _start_work(self, profile: AgentProfile, decision: Decision) -> ActionOutcome:
        incident = await self._incidents.get(decision.target)
        if incident.status != IncidentStatus.OPEN:
            return self._skip(decision, f"{incident.incident_number} already {incident.status.value}")
        await self._incidents.start_work(incident.id, actor=profile.name)
        return self._done(decision, f"{incident.incident_number} in progress")

    async def _resolve(self, profile: AgentProfile, decision: Decision) -> ActionOutcome:
        incident = await self._incidents.get(decision.target)
        if incident.status in (IncidentStatus.RESOLVED, IncidentStatus.CLOSED):
            return self._skip(decision, f"{incident.incident_number} already {incident.status.value}")
        await self._incidents.resolve(incident.id, resolution=decision.params.get("resolution"), actor=profile.name)
        return self._done(decision, f"{incident.incident_number} resolved")

    async def _escalate(self, profile: AgentProfile, decision: Decision) -> ActionOutcome:
        incident = await self._incidents.get(decision.target)
        from_level = decision.params.get("from_level", incident.escalation_level)
        if not incident.is_active or incident.escalation_level != from_level:
            return self._skip(decision, f"{incident.incident_number} already at L{incident.escalation_level}")
        updated = await self._incidents.escalate(incident.id, reason=decision.params.get("reason"), actor=profile.name)
        return self._done(decision, f"{incident.incident_number} escalated to L{updated.escalation_level}")

    # ========== Plan actions ==========

    async def _create_plan(self, profile: AgentProfile, decision: Decision) -> ActionOutcome:
        try:
            plan = await self._plans.create_plan(
                profile.game_id, profile.team_id, incident_id=decision.target, actor=profile.name
            )
        except InvariantViolation as e:
            # Another cycle already planned this incident
            logger.info("Plan already exists", extra={"incident_id": decision.target, "details": e.details})
            return self._skip(decision, e.message)
        return self._done(decision, f"{plan.plan_number} drafted")

    async def _submit_plan(self, profile: AgentProfile, decision: Decision) -> ActionOutcome:
        plan = await self._plans.get(decision.target)
        if plan.status != PlanStatus.DRAFT:
            return self._skip(decision, f"{plan.plan_number} already {plan.status.value}")
        await self._plans.submit_for_review(plan.id, actor=profile.name)
        return self._done(decision, f"{plan.plan_number} submitted")

    async def _revise_plan(self, profile: AgentProfile, decision: Decision) -> ActionOutcome:
        plan = await self._plans.get(decision.target)
        if plan.status != PlanStatus.AI_NEEDS_REVISION:
            return self._skip(decision, f"{plan.plan_number} already {plan.status.value}")
        await self._plans.revise_and_resubmit(plan.id, actor=profile.name)
        return self._done(decision, f"{plan.plan_number} resubmitted")

    # ========== Change actions ==========

    async def _create_change(self, profile: AgentProfile, decision: Decision) -> ActionOutcome:
        plan = await self._plans.get(decision.target)
        if plan.status != PlanStatus.AI_APPROVED:
            return self._skip(decision, f"{plan.plan_number} already {plan.status.value}")
        change = await self._changes.create_from_plan(
            plan.id, change_type=decision.params.get("change_type", "normal"), actor=profile.name
        )
        return self._done(decision, f"{change.change_number} raised")

    async def _review_change(self, profile: AgentProfile, decision: Decision) -> ActionOutcome:
        change = await self._changes.get(decision.target)
        if change.status != ChangeStatus.PENDING:
            return self._skip(decision, f"{change.change_number} already {change.status.value}")
        verdict = cab_review(change, profile.personality, bool(decision.params.get("thorough_review")))
        await self._changes.review(change.id, verdict.approve, verdict.notes, actor=profile.name)
        return self._done(decision, f"{change.change_number} {'approved' if verdict.approve else 'rejected'}")

    async def _implement_change(self, profile: AgentProfile, decision: Decision) -> ActionOutcome:
        change = await self._changes.get(decision.target)
        if change.status not in READY_CHANGE_STATUSES:
            return self._skip(decision, f"{change.change_number} already {change.status.value}")
        result = await self._changes.implement(change.id, actor=profile.name)
        return self._done(decision, f"{result.change_number} {result.status.value}")

    # ========== Management ==========

    async def _escalate_management(self, profile: AgentProfile, decision: Decision) -> ActionOutcome:
        count = int(decision.params.get("breach_count", 0))
        previous = await self._event_log.list_for_team(
            profile.game_id, profile.team_id, [EventType.MANAGEMENT_ESCALATED]
        )
        if any(int(e.payload.get("breach_count", 0)) >= count for e in previous):
            return self._skip(decision, f"management already alerted for {count} breaches")

        await self._runner.emit_for_team(
            profile.game_id,
            profile.team_id,
            EventType.MANAGEMENT_ESCALATED,
            {
                "reason": decision.params.get("reason"),
                "breach_count": count,
                "incident_ids": list(decision.params.get("incident_ids", [])),
                "actor": profile.name,
            },
            at=self._clock(),
        )
        logger.warning(
            "Management alert raised",
            extra={"team_id": profile.team_id, "breach_count": count}
        )
        return self._done(decision, f"management alerted for {count} breaches")


# ========== Agent ==========

class Agent:
    """
    One simulated role acting for a team.

    Holds only the profile and counters for status reporting; everything
    it acts on is re-read every cycle.
    """

    def __init__(self, profile: AgentProfile):
        self.profile = profile
        self.cycles = 0
        self.actions_applied = 0
        self.actions_failed = 0
        self.last_decision: Optional[Decision] = None
        self.last_outcome: Optional[ActionOutcome] = None

    def record(self, decision: Optional[Decision], outcome: Optional[ActionOutcome]) -> None:
        self.cycles += 1
        self.last_decision = decision
        self.last_outcome = outcome
        if outcome is None:
            return
        if outcome.status == ActStatus.APPLIED:
            self.actions_applied += 1
        elif outcome.status == ActStatus.FAILED:
            self.actions_failed += 1

    def status(self) -> Dict[str, Any]:
        return {
            "name": self.profile.name,
            "role": self.profile.role.value,
            "personality": self.profile.personality.value,
            "team_id": self.profile.team_id,
            "game_id": self.profile.game_id,
            "cycles": self.cycles,
            "actions_applied": self.actions_applied,
            "actions_failed": self.actions_failed,
            "last_decision": self.last_decision.to_dict() if self.last_decision else None,
            "last_outcome": self.last_outcome.status.value if self.last_outcome else None,
        }


class AgentCycle:
    """Perceive, decide and act for one agent."""

    def __init__(
        self,
        snapshots: SnapshotBuilder,
        perceiver: Perceiver,
        engine: DecisionEngine,
        executor: ActionExecutor
    ):
        self._snapshots = snapshots
        self._perceiver = perceiver
        self._engine = engine
        self._executor = executor

    async def perceive(self, profile: AgentProfile) -> Perception:
        snapshot = await self._snapshots.build(profile.game_id, profile.team_id)
        return self._perceiver.perceive(snapshot, profile.role)

    def decide(self, profile: AgentProfile, perception: Perception) -> Optional[Decision]:
        return self._engine.decide(perception, profile.personality)

    async def act(self, profile: AgentProfile, decision: Decision) -> ActionOutcome:
        return await self._executor.act(profile, decision)

    async def run(self, agent: Agent) -> Optional[ActionOutcome]:
        """
        One perceive-decide-act pass for ``agent``.

        Returns:
            The action outcome, or None when no rule matched

        Raises:
            ConcurrentModification: If the act step lost a race
        """
        perception = await self.perceive(agent.profile)
        decision = self.decide(agent.profile, perception)
        outcome = await self.act(agent.profile, decision) if decision is not None else None
        agent.record(decision, outcome)
        return outcome

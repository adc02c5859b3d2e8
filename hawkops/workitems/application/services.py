"""
Work Item Application Services
==============================

Application services apply state-machine transitions against the
repositories and carry out the effects attached to each edge.

Every status change follows the same shape:
1. take the per-entity lock
2. load, run the pure ``attempt``, compare-and-set on the previous status
3. release the lock
4. emit events and run cross-entity effects

Calls to the content service never happen inside step 1-3.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional
from uuid import uuid4

from hawkops.config import (
    ChangeStatus, ChangeType, DEFAULT_COST_PER_MINUTE, IncidentStatus, PlanStatus,
    Priority, ReviewStatus, RiskLevel, Severity,
)
from hawkops.core import (
    Clock, CollaboratorUnavailable, ConcurrentModification, EntityNotFound,
    EventType, GameEvent, InvalidTransition, InvariantViolation, utc_now,
)
from hawkops.shared.infrastructure import EventDispatcher, KeyedLockRegistry
from hawkops.shared.infrastructure.logging import get_logger
from hawkops.timing.application import TimingService
from hawkops.workitems.application.dto import PlanDraft, PlanEvaluation, ReviewGrade
from hawkops.workitems.domain import (
    ChangeOutcomeModel, ChangeRequest, ChangeStateMachine, EmitEvent, GameSession,
    ImplementationPlan, Incident, IncidentStateMachine, PlanStateMachine,
    PostIncidentReview, RequestPlanEvaluation, RequestReviewGrading,
    RequirePostIncidentReview, ReviewStateMachine, SpawnFailureIncident,
    StateMachine, SyncRelatedPlan, Team, TransitionContext, TransitionResult,
)

logger = get_logger(__name__)

FAILURE_INCIDENT_SLA_MINUTES = 60
FAILURE_INCIDENT_COST_PER_MINUTE = 75.0

# Priority raised one tier when an SLA is breached
BREACH_PRIORITY_BUMP = {
    Priority.LOW: Priority.MEDIUM,
    Priority.MEDIUM: Priority.HIGH,
    Priority.HIGH: Priority.CRITICAL,
    Priority.CRITICAL: Priority.CRITICAL,
}

MAX_ESCALATION_LEVEL = 3


# ========== Repository Interfaces (Dependency Inversion) ==========

class IGameRepository(ABC):
    """Interface for game session data access."""

    @abstractmethod
    async def get(self, game_id: str) -> Optional[GameSession]:
        """Get game by ID."""

    @abstractmethod
    async def add(self, game: GameSession) -> GameSession:
        """Store a new game."""

    @abstractmethod
    async def list_active(self) -> List[GameSession]:
        """List games currently running."""


class ITeamRepository(ABC):
    """Interface for team data access."""

    @abstractmethod
    async def get(self, team_id: str) -> Optional[Team]:
        """Get team by ID."""

    @abstractmethod
    async def add(self, team: Team) -> Team:
        """Store a new team."""

    @abstractmethod
    async def list_for_game(self, game_id: str) -> List[Team]:
        """List the teams of a game."""


class IWorkItemRepository(ABC):
    """
    Common interface for status-bearing work items.

    ``compare_and_set`` is the only write path for an existing item: it
    stores the item only if the stored status still equals
    ``expected_status`` and raises ``ConcurrentModification`` otherwise.
    """

    @abstractmethod
    async def get(self, item_id: str) -> Optional[Any]:
        """Get item by ID."""

    @abstractmethod
    async def add(self, item: Any) -> Any:
        """Store a new item."""

    @abstractmethod
    async def compare_and_set(self, item: Any, expected_status: str) -> Any:
        """Store ``item`` if the stored status equals ``expected_status``."""

    @abstractmethod
    async def list_for_team(
        self,
        game_id: str,
        team_id: str,
        statuses: Optional[Iterable[str]] = None
    ) -> List[Any]:
        """List a team's items, oldest first."""

    @abstractmethod
    async def list_for_game(
        self,
        game_id: str,
        statuses: Optional[Iterable[str]] = None
    ) -> List[Any]:
        """List a game's items, oldest first."""

    @abstractmethod
    async def next_sequence(self, game_id: str) -> int:
        """Next sequence number for display numbers within a game."""


class IIncidentRepository(IWorkItemRepository):
    """Interface for incident data access."""

    @abstractmethod
    async def find_by_source_change(self, change_id: str) -> Optional[Incident]:
        """Incident spawned by a failed change, if any."""


class IPlanRepository(IWorkItemRepository):
    """Interface for implementation plan data access."""

    @abstractmethod
    async def get_active_for_incident(self, incident_id: str) -> Optional[ImplementationPlan]:
        """The non-terminal plan for an incident, if any."""

    @abstractmethod
    async def list_for_incident(self, incident_id: str) -> List[ImplementationPlan]:
        """Every plan raised for an incident, oldest first."""

    @abstractmethod
    async def list_reviewing_since(self, cutoff: datetime) -> List[ImplementationPlan]:
        """Plans in ai_reviewing whose review was requested at or before ``cutoff``."""


class IChangeRepository(IWorkItemRepository):
    """Interface for change request data access."""

    @abstractmethod
    async def get_for_plan(self, plan_id: str) -> Optional[ChangeRequest]:
        """Most recent change raised from a plan, if any."""


class IReviewRepository(IWorkItemRepository):
    """Interface for post-incident review data access."""

    @abstractmethod
    async def get_for_incident(self, incident_id: str) -> Optional[PostIncidentReview]:
        """The review owed for an incident, if any."""

    @abstractmethod
    async def list_submitted_since(self, cutoff: datetime) -> List[PostIncidentReview]:
        """Reviews still submitted (ungraded) since at or before ``cutoff``."""


# ========== Collaborator Interfaces ==========

class IContentService(ABC):
    """
    Interface for the generative content service.

    Implementations raise ``CollaboratorUnavailable`` on any failure.
    """

    @abstractmethod
    async def generate_plan(self, incident_summary: Dict[str, Any]) -> PlanDraft:
        """Draft a plan body for an incident."""

    @abstractmethod
    async def evaluate_plan(
        self,
        plan_snapshot: Dict[str, Any],
        incident_context: Dict[str, Any]
    ) -> PlanEvaluation:
        """Grade one plan revision."""

    @abstractmethod
    async def grade_review(self, review_snapshot: Dict[str, Any]) -> ReviewGrade:
        """Grade a post-incident review."""


EffectHandler = Callable[[Any], Awaitable[Any]]


# ========== Transition Runner ==========

class TransitionRunner:
    """
    Applies transitions and field updates under per-entity locks.

    Effects other than events are routed to handlers registered with
    ``on_effect``; the wiring layer connects them to the owning services.
    """

    def __init__(
        self,
        dispatcher: EventDispatcher,
        locks: Optional[KeyedLockRegistry] = None
    ):
        self._dispatcher = dispatcher
        self.locks = locks or KeyedLockRegistry("entities")
        self._handlers: Dict[type, EffectHandler] = {}

    def on_effect(self, effect_type: type, handler: EffectHandler) -> None:
        """Route effects of ``effect_type`` to ``handler``."""
        self._handlers[effect_type] = handler

    async def apply(
        self,
        machine: StateMachine,
        repository: IWorkItemRepository,
        entity_id: str,
        target_status: str,
        context: Optional[TransitionContext] = None,
        guard: Optional[Callable[[Any], bool]] = None
    ) -> TransitionResult:
        """
        Take one edge for a stored entity.

        Args:
            machine: State machine of the entity type
            repository: Repository holding the entity
            entity_id: Entity ID
            target_status: Status to move to
            context: Transition inputs
            guard: Extra check on the freshly loaded entity; a False result
                raises ``ConcurrentModification``

        Raises:
            EntityNotFound: If the entity does not exist
            InvalidTransition: If the edge is illegal; nothing is stored
            ConcurrentModification: If the stored status moved underneath us
        """
        context = context or TransitionContext()

        async with self.locks.hold(machine.entity_type, entity_id):
            entity = await repository.get(entity_id)
            if entity is None:
                raise EntityNotFound(machine.entity_type, entity_id)
            if guard is not None and not guard(entity):
                raise ConcurrentModification(machine.entity_type, entity_id, entity.status.value)
            result = machine.attempt(entity, target_status, context)
            await repository.compare_and_set(result.entity, result.previous_status)

        logger.info(
            "Transition applied",
            extra={
                "entity_type": machine.entity_type,
                "entity_id": entity_id,
                "from_status": result.previous_status,
                "to_status": result.entity.status.value,
                "actor": context.actor,
            }
        )

        await self.run_effects(machine.entity_type, result.entity, result.effects, context.at)
        return result

    async def update(
        self,
        entity_type: str,
        repository: IWorkItemRepository,
        entity_id: str,
        mutate: Callable[[Any], Optional[List[Any]]],
        at: Optional[datetime] = None
    ) -> Any:
        """
        Change non-status fields of a stored entity.

        ``mutate`` receives a copy and returns the effects to run. The
        write is a compare-and-set on the unchanged status.
        """
        at = at or utc_now()

        async with self.locks.hold(entity_type, entity_id):
            entity = await repository.get(entity_id)
            if entity is None:
                raise EntityNotFound(entity_type, entity_id)
            updated = copy.deepcopy(entity)
            effects = mutate(updated) or []
            if updated.status != entity.status:
                raise InvariantViolation(
                    f"Field update on {entity_type} {entity_id} attempted a status change",
                    {"entity_type": entity_type, "entity_id": entity_id},
                )
            updated.updated_at = at
            await repository.compare_and_set(updated, entity.status.value)

        await self.run_effects(entity_type, updated, effects, at)
        return updated

    async def emit(
        self,
        entity_type: Optional[str],
        entity: Any,
        event_type: EventType,
        payload: Optional[Dict[str, Any]] = None,
        at: Optional[datetime] = None
    ) -> GameEvent:
        """Emit an event about ``entity`` for its owning team."""
        return await self._dispatcher.emit(GameEvent(
            game_id=entity.game_id,
            team_id=getattr(entity, "team_id", None),
            event_type=event_type,
            entity_type=entity_type,
            entity_id=getattr(entity, "id", None),
            payload=payload or {},
            created_at=at or utc_now(),
        ))

    async def emit_for_team(
        self,
        game_id: str,
        team_id: Optional[str],
        event_type: EventType,
        payload: Optional[Dict[str, Any]] = None,
        at: Optional[datetime] = None
    ) -> GameEvent:
        """Emit an event not tied to a single entity."""
        return await self._dispatcher.emit(GameEvent(
            game_id=game_id,
            team_id=team_id,
            event_type=event_type,
            payload=payload or {},
            created_at=at or utc_now(),
        ))

    async def run_effects(
        self,
        entity_type: str,
        entity: Any,
        effects: Iterable[Any],
        at: Optional[datetime] = None
    ) -> None:
        """
        Emit events and dispatch the remaining effects in order.

        The transition is already stored, so a failing effect does not stop
        the ones after it. The first failure is re-raised once every effect
        has been tried; ``ChangeService.reconcile_outcomes`` repairs the
        follow-ups of changes later.
        """
        failures: List[Exception] = []

        for effect in effects:
            try:
                if isinstance(effect, EmitEvent):
                    await self.emit(entity_type, entity, effect.event_type, effect.payload, at)
                    continue

                handler = self._handlers.get(type(effect))
                if handler is None:
                    logger.warning(
                        "No handler registered for effect",
                        extra={"effect": type(effect).__name__, "entity_id": getattr(entity, "id", None)}
                    )
                    continue
                await handler(effect)
            except Exception as e:
                logger.error(
                    "Effect failed",
                    extra={
                        "effect": type(effect).__name__,
                        "entity_type": entity_type,
                        "entity_id": getattr(entity, "id", None),
                        "error": str(e),
                    },
                    exc_info=True,
                )
                failures.append(e)

        if failures:
            raise failures[0]


async def _with_timeout(awaitable: Awaitable[Any], timeout_seconds: Optional[float], service: str) -> Any:
    """Await a content-service call, turning a timeout into CollaboratorUnavailable."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError:
        raise CollaboratorUnavailable(service, f"timed out after {timeout_seconds}s")


# ========== Incidents ==========

class IncidentService:
    """
    Service for incident lifecycle, SLA breach processing and escalation.
    """

    def __init__(
        self,
        incidents: IIncidentRepository,
        games: IGameRepository,
        teams: ITeamRepository,
        timing: TimingService,
        runner: TransitionRunner,
        clock: Clock = utc_now
    ):
        self._incidents = incidents
        self._games = games
        self._teams = teams
        self._timing = timing
        self._runner = runner
        self._clock = clock

    async def _get_game(self, game_id: str) -> GameSession:
        game = await self._games.get(game_id)
        if game is None:
            raise EntityNotFound("game", game_id)
        return game

    async def get(self, incident_id: str) -> Incident:
        incident = await self._incidents.get(incident_id)
        if incident is None:
            raise EntityNotFound("incident", incident_id)
        return incident

    async def create_incident(
        self,
        game_id: str,
        team_id: str,
        title: str,
        description: str = "",
        priority: str = Priority.MEDIUM,
        severity: Optional[str] = None,
        affected_services: Optional[List[str]] = None,
        requires_pir: bool = True,
        cost_per_minute: Optional[float] = None,
        source_change_id: Optional[str] = None,
        sla_minutes: Optional[int] = None
    ) -> Incident:
        """
        Raise a new open incident.

        The SLA deadline comes from the scaled target for the priority
        unless ``sla_minutes`` fixes it explicitly.

        Returns:
            The stored incident
        """
        game = await self._get_game(game_id)
        now = self._clock()
        priority = Priority(priority)

        if sla_minutes is None:
            deadline = self._timing.sla_deadline(now, priority, game.duration_minutes)
        else:
            deadline = now + timedelta(minutes=sla_minutes)

        sequence = await self._incidents.next_sequence(game_id)
        incident = Incident(
            id=str(uuid4()),
            game_id=game_id,
            team_id=team_id,
            incident_number=f"INC{sequence:05d}",
            title=title,
            description=description,
            priority=priority,
            severity=Severity(severity or priority.value),
            status=IncidentStatus.OPEN,
            created_at=now,
            sla_deadline=deadline,
            cost_per_minute=DEFAULT_COST_PER_MINUTE[priority] if cost_per_minute is None else cost_per_minute,
            requires_pir=requires_pir,
            affected_services=list(affected_services or []),
            source_change_id=source_change_id,
            updated_at=now,
        )
        await self._incidents.add(incident)

        await self._runner.emit("incident", incident, EventType.INCIDENT_CREATED, {
            "incident_number": incident.incident_number,
            "priority": incident.priority.value,
            "severity": incident.severity.value,
            "sla_minutes": round(incident.sla_minutes, 2),
            "source_change_id": source_change_id,
        }, at=now)

        logger.info(
            "Incident created",
            extra={
                "incident_id": incident.id,
                "incident_number": incident.incident_number,
                "priority": priority.value,
                "game_id": game_id,
                "team_id": team_id,
            }
        )
        return incident

    async def transition(
        self,
        incident_id: str,
        target_status: str,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
        **data: Any
    ) -> Incident:
        context = TransitionContext(at=self._clock(), actor=actor, reason=reason, data=data)
        result = await self._runner.apply(IncidentStateMachine, self._incidents, incident_id, target_status, context)
        return result.entity

    async def start_work(self, incident_id: str, actor: Optional[str] = None) -> Incident:
        return await self.transition(incident_id, IncidentStatus.IN_PROGRESS, actor=actor)

    async def resolve(
        self,
        incident_id: str,
        resolution: Optional[str] = None,
        actor: Optional[str] = None
    ) -> Incident:
        return await self.transition(incident_id, IncidentStatus.RESOLVED, actor=actor, resolution=resolution)

    async def close(self, incident_id: str, actor: Optional[str] = None) -> Incident:
        return await self.transition(incident_id, IncidentStatus.CLOSED, actor=actor)

    async def reopen(self, incident_id: str, reason: Optional[str] = None, actor: Optional[str] = None) -> Incident:
        return await self.transition(incident_id, IncidentStatus.OPEN, actor=actor, reason=reason)

    async def escalate(
        self,
        incident_id: str,
        reason: Optional[str] = None,
        actor: Optional[str] = None
    ) -> Incident:
        """
        Raise the escalation level by one and hand the incident up a tier.

        Raises:
            InvalidTransition: If the incident is not active or already at L3
        """
        now = self._clock()

        def mutate(incident: Incident) -> List[Any]:
            if not incident.is_active or incident.escalation_level >= MAX_ESCALATION_LEVEL:
                raise InvalidTransition(
                    "incident",
                    incident.id,
                    f"{incident.status.value}/L{incident.escalation_level}",
                    f"L{incident.escalation_level + 1}",
                )
            previous = incident.escalation_level
            incident.escalation_level = previous + 1
            payload = {
                "incident_number": incident.incident_number,
                "from_level": previous,
                "to_level": incident.escalation_level,
                "reason": reason,
                "actor": actor,
            }
            return [
                EmitEvent(EventType.INCIDENT_ESCALATED, {**payload, "automatic": False}),
                EmitEvent(EventType.INCIDENT_TRANSFERRED, payload),
            ]

        return await self._runner.update("incident", self._incidents, incident_id, mutate, at=now)

    async def process_sla_breaches(self, game_id: str) -> List[Incident]:
        """
        Flag active incidents past their deadline, once each.

        A breached incident has its priority raised one tier. Teams without
        a fresh breach receive an ``sla_tick``.

        Returns:
            Incidents newly flagged as breached
        """
        now = self._clock()
        active = await self._incidents.list_for_game(
            game_id, statuses=[IncidentStatus.OPEN.value, IncidentStatus.IN_PROGRESS.value]
        )

        def mark_breached(incident: Incident) -> List[Any]:
            if incident.sla_breached:
                return []
            previous = incident.priority
            incident.sla_breached = True
            incident.priority = BREACH_PRIORITY_BUMP[previous]
            escalated = incident.priority != previous
            effects: List[Any] = [EmitEvent(EventType.SLA_BREACHED, {
                "incident_number": incident.incident_number,
                "previous_priority": previous.value,
                "new_priority": incident.priority.value,
                "escalated": escalated,
                "sla_deadline": incident.sla_deadline.isoformat(),
            })]
            if escalated:
                effects.append(EmitEvent(EventType.INCIDENT_ESCALATED, {
                    "incident_number": incident.incident_number,
                    "reason": "SLA breach auto-escalation",
                    "previous_priority": previous.value,
                    "new_priority": incident.priority.value,
                    "automatic": True,
                }))
            return effects

        breached: List[Incident] = []
        for incident in active:
            if incident.sla_breached or now <= incident.sla_deadline:
                continue
            try:
                breached.append(
                    await self._runner.update("incident", self._incidents, incident.id, mark_breached, at=now)
                )
            except ConcurrentModification:
                logger.info("Incident changed during breach check, skipping", extra={"incident_id": incident.id})

        breached_teams = {i.team_id for i in breached}
        for team in await self._teams.list_for_game(game_id):
            if team.id in breached_teams:
                continue
            await self._runner.emit_for_team(game_id, team.id, EventType.SLA_TICK, {"at": now.isoformat()}, at=now)

        if breached:
            logger.info("SLA breaches processed", extra={"game_id": game_id, "breached_count": len(breached)})
        return breached

    async def auto_escalate(self, game_id: str) -> List[Incident]:
        """
        Raise escalation levels of active incidents whose age passed the
        scaled L1/L2/L3 threshold for their priority.
        """
        game = await self._get_game(game_id)
        now = self._clock()
        active = await self._incidents.list_for_game(
            game_id, statuses=[IncidentStatus.OPEN.value, IncidentStatus.IN_PROGRESS.value]
        )

        escalated: List[Incident] = []
        for incident in active:
            reached = self._timing.escalation_level_for_age(
                incident.priority, incident.age_minutes(now), game.duration_minutes
            )
            if reached <= incident.escalation_level:
                continue

            def raise_level(item: Incident, level: int = reached) -> List[Any]:
                if level <= item.escalation_level:
                    return []
                previous = item.escalation_level
                item.escalation_level = level
                return [EmitEvent(EventType.INCIDENT_ESCALATED, {
                    "incident_number": item.incident_number,
                    "from_level": previous,
                    "to_level": level,
                    "reason": "age threshold reached",
                    "automatic": True,
                })]

            try:
                escalated.append(await self._runner.update("incident", self._incidents, incident.id, raise_level, at=now))
            except ConcurrentModification:
                logger.info("Incident changed during auto-escalation, skipping", extra={"incident_id": incident.id})

        return escalated


# ========== Post-Incident Reviews ==========

class ReviewService:
    """Service for post-incident reviews (PIRs)."""

    EDITABLE_FIELDS = ("timeline", "root_cause", "impact", "lessons_learned", "action_items")

    def __init__(
        self,
        reviews: IReviewRepository,
        incidents: IIncidentRepository,
        runner: TransitionRunner,
        clock: Clock = utc_now
    ):
        self._reviews = reviews
        self._incidents = incidents
        self._runner = runner
        self._clock = clock

    async def get(self, review_id: str) -> PostIncidentReview:
        review = await self._reviews.get(review_id)
        if review is None:
            raise EntityNotFound("post_incident_review", review_id)
        return review

    async def open_review(self, incident_id: str) -> PostIncidentReview:
        """Create the review owed for an incident. Idempotent per incident."""
        async with self._runner.locks.hold("incident_review", incident_id):
            existing = await self._reviews.get_for_incident(incident_id)
            if existing is not None:
                return existing

            incident = await self._incidents.get(incident_id)
            if incident is None:
                raise EntityNotFound("incident", incident_id)

            now = self._clock()
            review = PostIncidentReview(
                id=str(uuid4()),
                game_id=incident.game_id,
                team_id=incident.team_id,
                incident_id=incident_id,
                status=ReviewStatus.DRAFT,
                created_at=now,
                updated_at=now,
            )
            await self._reviews.add(review)

        await self._runner.emit("post_incident_review", review, EventType.PIR_CREATED, {
            "incident_id": incident_id,
            "incident_number": incident.incident_number,
        }, at=now)
        return review

    async def handle_review_required(self, effect: RequirePostIncidentReview) -> None:
        await self.open_review(effect.incident_id)

    async def update_review(self, review_id: str, **fields: Any) -> PostIncidentReview:
        """Edit the narrative of a draft review."""
        unknown = set(fields) - set(self.EDITABLE_FIELDS)
        if unknown:
            raise InvariantViolation(f"Unknown review fields: {sorted(unknown)}", {"fields": sorted(unknown)})

        def mutate(review: PostIncidentReview) -> List[Any]:
            if review.status != ReviewStatus.DRAFT:
                raise InvalidTransition("post_incident_review", review.id, review.status.value, "draft edit")
            for name, value in fields.items():
                setattr(review, name, list(value) if name == "action_items" else value)
            return []

        return await self._runner.update("post_incident_review", self._reviews, review_id, mutate, at=self._clock())

    async def submit(self, review_id: str, actor: Optional[str] = None) -> PostIncidentReview:
        context = TransitionContext(at=self._clock(), actor=actor)
        result = await self._runner.apply(ReviewStateMachine, self._reviews, review_id, ReviewStatus.SUBMITTED, context)
        return result.entity

    async def apply_grade(self, review_id: str, grade: ReviewGrade) -> Optional[PostIncidentReview]:
        """Record a grade. A result for a review no longer submitted is discarded."""
        context = TransitionContext(
            at=self._clock(),
            actor="grader",
            data={"score": grade.score, "feedback": grade.feedback},
        )
        try:
            result = await self._runner.apply(
                ReviewStateMachine, self._reviews, review_id, ReviewStatus.GRADED, context,
                guard=lambda r: r.status == ReviewStatus.SUBMITTED,
            )
        except ConcurrentModification:
            logger.info("Discarding grade for review no longer submitted", extra={"review_id": review_id})
            return None
        return result.entity

    async def return_to_draft(self, review_id: str, reason: str) -> Optional[PostIncidentReview]:
        """Send a submitted review back to draft after a grading failure."""
        context = TransitionContext(at=self._clock(), actor="grader", reason=reason)
        try:
            result = await self._runner.apply(
                ReviewStateMachine, self._reviews, review_id, ReviewStatus.DRAFT, context,
                guard=lambda r: r.status == ReviewStatus.SUBMITTED,
            )
        except ConcurrentModification:
            return None
        logger.warning("Review returned to draft", extra={"review_id": review_id, "reason": reason})
        return result.entity

    async def release_stuck_reviews(self, older_than_seconds: float) -> List[PostIncidentReview]:
        """Return reviews left ungraded for too long to draft."""
        cutoff = self._clock() - timedelta(seconds=older_than_seconds)
        released = []
        for review in await self._reviews.list_submitted_since(cutoff):
            reverted = await self.return_to_draft(review.id, "grading did not complete in time")
            if reverted is not None:
                released.append(reverted)
        return released


# ========== Implementation Plans ==========

_RISK_BY_PRIORITY = {
    Priority.CRITICAL: RiskLevel.HIGH,
    Priority.HIGH: RiskLevel.MEDIUM,
    Priority.MEDIUM: RiskLevel.MEDIUM,
    Priority.LOW: RiskLevel.LOW,
}


def fallback_plan_draft(incident: Optional[Incident]) -> PlanDraft:
    """Local plan body used when the content service cannot draft one."""
    if incident is None:
        return PlanDraft(
            title="Remediation plan",
            description="Plan drafted locally.",
            implementation_steps=[
                {"order": 1, "title": "Investigate", "description": "Confirm scope and impact"},
                {"order": 2, "title": "Apply fix", "description": "Apply the remediation"},
                {"order": 3, "title": "Verify", "description": "Confirm service is restored"},
            ],
        )

    services = ", ".join(incident.affected_services) or "affected services"
    return PlanDraft(
        title=f"Remediation plan for {incident.incident_number}",
        description=f"Restore service for: {incident.title}",
        root_cause_analysis=f"Initial assessment of {incident.title}; root cause to be confirmed during investigation.",
        implementation_steps=[
            {"order": 1, "title": "Investigate", "description": f"Collect logs and metrics from {services}"},
            {"order": 2, "title": "Apply fix", "description": "Apply the identified remediation in a controlled window"},
            {"order": 3, "title": "Verify", "description": "Confirm service health and close monitoring alerts"},
        ],
        risk_level=_RISK_BY_PRIORITY[incident.priority].value,
        risk_mitigation="Apply changes incrementally and monitor after each step.",
        rollback_plan=f"Revert the applied changes on {services} and restore the last known good configuration.",
        testing_plan="Run smoke tests against the affected services after each step.",
        estimated_effort_hours=2.0,
    )


class PlanService:
    """
    Service for implementation plans and their asynchronous review.
    """

    EDITABLE_FIELDS = (
        "title", "description", "root_cause_analysis", "implementation_steps",
        "risk_level", "risk_mitigation", "rollback_plan", "testing_plan", "estimated_effort_hours",
    )

    def __init__(
        self,
        plans: IPlanRepository,
        incidents: IIncidentRepository,
        content: IContentService,
        runner: TransitionRunner,
        clock: Clock = utc_now,
        content_timeout_seconds: Optional[float] = None
    ):
        self._plans = plans
        self._incidents = incidents
        self._content = content
        self._runner = runner
        self._clock = clock
        self._content_timeout = content_timeout_seconds

    async def get(self, plan_id: str) -> ImplementationPlan:
        plan = await self._plans.get(plan_id)
        if plan is None:
            raise EntityNotFound("implementation_plan", plan_id)
        return plan

    async def draft_plan(self, incident: Optional[Incident]) -> PlanDraft:
        """Ask the content service for a plan body, falling back to a local one."""
        if incident is None:
            return fallback_plan_draft(None)
        summary = {
            "incident_number": incident.incident_number,
            "title": incident.title,
            "description": incident.description,
            "priority": incident.priority.value,
            "severity": incident.severity.value,
            "affected_services": list(incident.affected_services),
        }
        try:
            return await _with_timeout(self._content.generate_plan(summary), self._content_timeout, "content")
        except CollaboratorUnavailable as e:
            logger.warning(
                "Plan generation unavailable, using local draft",
                extra={"incident_id": incident.id, "error": str(e)}
            )
            return fallback_plan_draft(incident)

    async def create_plan(
        self,
        game_id: str,
        team_id: str,
        incident_id: Optional[str] = None,
        draft: Optional[PlanDraft] = None,
        actor: Optional[str] = None
    ) -> ImplementationPlan:
        """
        Create a draft plan, generating its body when none is given.

        Raises:
            EntityNotFound: If ``incident_id`` does not exist
            InvariantViolation: If the incident already has an active plan
        """
        incident = None
        if incident_id is not None:
            incident = await self._incidents.get(incident_id)
            if incident is None:
                raise EntityNotFound("incident", incident_id)
            await self._ensure_no_active_plan(incident_id)

        if draft is None:
            draft = await self.draft_plan(incident)

        now = self._clock()
        lock_key = incident_id or str(uuid4())
        async with self._runner.locks.hold("incident_plan", lock_key):
            if incident_id is not None:
                await self._ensure_no_active_plan(incident_id)

            sequence = await self._plans.next_sequence(game_id)
            plan = ImplementationPlan(
                id=str(uuid4()),
                game_id=game_id,
                team_id=team_id,
                plan_number=f"PLN{sequence:05d}",
                title=draft.title,
                description=draft.description,
                status=PlanStatus.DRAFT,
                risk_level=RiskLevel(draft.risk_level),
                created_at=now,
                incident_id=incident_id,
                root_cause_analysis=draft.root_cause_analysis,
                implementation_steps=[step.model_dump() for step in draft.implementation_steps],
                risk_mitigation=draft.risk_mitigation,
                rollback_plan=draft.rollback_plan,
                testing_plan=draft.testing_plan,
                estimated_effort_hours=draft.estimated_effort_hours,
                updated_at=now,
            )
            await self._plans.add(plan)

        await self._runner.emit("implementation_plan", plan, EventType.PLAN_CREATED, {
            "plan_number": plan.plan_number,
            "incident_id": incident_id,
            "risk_level": plan.risk_level.value,
            "actor": actor,
        }, at=now)

        logger.info(
            "Plan created",
            extra={"plan_id": plan.id, "plan_number": plan.plan_number, "incident_id": incident_id}
        )
        return plan

    async def _ensure_no_active_plan(self, incident_id: str) -> None:
        active = await self._plans.get_active_for_incident(incident_id)
        if active is not None:
            raise InvariantViolation(
                f"Incident {incident_id} already has active plan {active.plan_number}",
                {"incident_id": incident_id, "plan_id": active.id, "status": active.status.value},
            )

    async def update_plan(self, plan_id: str, **fields: Any) -> ImplementationPlan:
        """Edit a plan body while it is a draft or needs revision."""
        unknown = set(fields) - set(self.EDITABLE_FIELDS)
        if unknown:
            raise InvariantViolation(f"Unknown plan fields: {sorted(unknown)}", {"fields": sorted(unknown)})

        def mutate(plan: ImplementationPlan) -> List[Any]:
            if plan.status not in (PlanStatus.DRAFT, PlanStatus.AI_NEEDS_REVISION):
                raise InvalidTransition("implementation_plan", plan.id, plan.status.value, "edit")
            for name, value in fields.items():
                if name == "risk_level":
                    value = RiskLevel(value)
                setattr(plan, name, copy.deepcopy(value))
            return []

        return await self._runner.update("implementation_plan", self._plans, plan_id, mutate, at=self._clock())

    async def submit_for_review(self, plan_id: str, actor: Optional[str] = None) -> ImplementationPlan:
        """Snapshot the plan and hand it to the grader; returns without waiting."""
        context = TransitionContext(at=self._clock(), actor=actor)
        result = await self._runner.apply(PlanStateMachine, self._plans, plan_id, PlanStatus.AI_REVIEWING, context)
        return result.entity

    async def revise_and_resubmit(self, plan_id: str, actor: Optional[str] = None) -> ImplementationPlan:
        """Fold the last feedback into the plan body and resubmit it."""

        def mutate(plan: ImplementationPlan) -> List[Any]:
            if plan.status != PlanStatus.AI_NEEDS_REVISION:
                raise InvalidTransition("implementation_plan", plan.id, plan.status.value, "revise")
            if plan.ai_feedback:
                note = f"Revision {len(plan.revisions) + 1}: addressed review feedback: {plan.ai_feedback}"
                plan.risk_mitigation = f"{plan.risk_mitigation}\n{note}".strip()
            return []

        await self._runner.update("implementation_plan", self._plans, plan_id, mutate, at=self._clock())
        return await self.submit_for_review(plan_id, actor=actor)

    async def apply_evaluation(
        self,
        plan_id: str,
        revision_number: int,
        evaluation: PlanEvaluation
    ) -> Optional[ImplementationPlan]:
        """
        Apply a grading result to the revision it was produced for.

        Results for a plan that has left ai_reviewing, or for an older
        revision, are discarded.
        """
        target = PlanStateMachine.status_for_decision(evaluation.decision)
        context = TransitionContext(
            at=self._clock(),
            actor="grader",
            data={
                "score": evaluation.score,
                "decision": evaluation.decision,
                "feedback": evaluation.feedback,
                "fallback": evaluation.fallback,
            },
        )

        def is_current(plan: ImplementationPlan) -> bool:
            return plan.status == PlanStatus.AI_REVIEWING and len(plan.revisions) == revision_number

        try:
            result = await self._runner.apply(PlanStateMachine, self._plans, plan_id, target, context, guard=is_current)
        except ConcurrentModification:
            logger.info(
                "Discarding stale plan evaluation",
                extra={"plan_id": plan_id, "revision_number": revision_number}
            )
            return None
        return result.entity

    async def release_stuck_reviews(self, older_than_seconds: float) -> List[ImplementationPlan]:
        """Force plans stuck in ai_reviewing back to ai_needs_revision."""
        now = self._clock()
        cutoff = now - timedelta(seconds=older_than_seconds)
        released = []

        for plan in await self._plans.list_reviewing_since(cutoff):
            context = TransitionContext(
                at=now,
                actor="review_sweeper",
                reason="review timed out",
                data={
                    "score": None,
                    "decision": "needs_revision",
                    "feedback": "Review did not complete in time. Please resubmit.",
                    "fallback": True,
                },
            )

            def still_stuck(current: ImplementationPlan) -> bool:
                return (
                    current.status == PlanStatus.AI_REVIEWING
                    and current.review_requested_at is not None
                    and current.review_requested_at <= cutoff
                )

            try:
                result = await self._runner.apply(
                    PlanStateMachine, self._plans, plan.id, PlanStatus.AI_NEEDS_REVISION, context, guard=still_stuck
                )
            except ConcurrentModification:
                continue
            released.append(result.entity)
            logger.warning("Released stuck plan review", extra={"plan_id": plan.id, "plan_number": plan.plan_number})

        return released

    async def mark_implementing(self, plan_id: str, change_id: str, actor: Optional[str] = None) -> ImplementationPlan:
        context = TransitionContext(at=self._clock(), actor=actor, data={"change_id": change_id})
        result = await self._runner.apply(PlanStateMachine, self._plans, plan_id, PlanStatus.IMPLEMENTING, context)
        return result.entity

    async def sync_from_change(self, effect: SyncRelatedPlan) -> Optional[ImplementationPlan]:
        """Follow the outcome of the plan's change request."""
        plan = await self._plans.get(effect.plan_id)
        if plan is None:
            logger.warning("Related plan not found", extra={"plan_id": effect.plan_id})
            return None
        if plan.status == effect.target_status:
            return plan

        context = TransitionContext(at=self._clock(), actor="change_outcome", reason="change request finished")
        try:
            result = await self._runner.apply(PlanStateMachine, self._plans, plan.id, effect.target_status, context)
        except InvalidTransition as e:
            logger.info("Plan not synced with change outcome", extra={"plan_id": plan.id, "error": e.message})
            return None
        return result.entity


# ========== Change Requests ==========

class ChangeService:
    """
    Service for change requests: creation, CAB review and implementation.
    """

    def __init__(
        self,
        changes: IChangeRepository,
        plans: IPlanRepository,
        incidents: IIncidentRepository,
        runner: TransitionRunner,
        plan_service: PlanService,
        incident_service: IncidentService,
        outcome_model: Optional[ChangeOutcomeModel] = None,
        clock: Clock = utc_now
    ):
        self._changes = changes
        self._plans = plans
        self._incidents = incidents
        self._runner = runner
        self._plan_service = plan_service
        self._incident_service = incident_service
        self._outcome = outcome_model or ChangeOutcomeModel()
        self._clock = clock

    async def get(self, change_id: str) -> ChangeRequest:
        change = await self._changes.get(change_id)
        if change is None:
            raise EntityNotFound("change_request", change_id)
        return change

    def _build(
        self,
        game_id: str,
        team_id: str,
        sequence: int,
        title: str,
        description: str,
        change_type: ChangeType,
        risk_level: RiskLevel,
        now: datetime,
        **fields: Any
    ) -> ChangeRequest:
        # Emergency changes skip CAB review
        status = ChangeStatus.APPROVED if change_type == ChangeType.EMERGENCY else ChangeStatus.PENDING
        return ChangeRequest(
            id=str(uuid4()),
            game_id=game_id,
            team_id=team_id,
            change_number=f"CHG{sequence:05d}",
            title=title,
            description=description,
            change_type=change_type,
            risk_level=risk_level,
            status=status,
            created_at=now,
            updated_at=now,
            **fields,
        )

    async def _announce(self, change: ChangeRequest, actor: Optional[str]) -> None:
        await self._runner.emit("change_request", change, EventType.CHANGE_CREATED, {
            "change_number": change.change_number,
            "change_type": change.change_type.value,
            "risk_level": change.risk_level.value,
            "status": change.status.value,
            "related_plan_id": change.related_plan_id,
            "actor": actor,
        }, at=change.created_at)
        logger.info(
            "Change request created",
            extra={
                "change_id": change.id,
                "change_number": change.change_number,
                "change_type": change.change_type.value,
                "status": change.status.value,
            }
        )

    async def create_change(
        self,
        game_id: str,
        team_id: str,
        title: str,
        description: str = "",
        change_type: str = ChangeType.NORMAL,
        risk_level: str = RiskLevel.MEDIUM,
        affected_services: Optional[List[str]] = None,
        implementation_plan: Optional[str] = None,
        rollback_plan: Optional[str] = None,
        test_plan: Optional[str] = None,
        tech_review_notes: Optional[str] = None,
        actor: Optional[str] = None
    ) -> ChangeRequest:
        """Raise a change request not tied to a plan."""
        now = self._clock()
        sequence = await self._changes.next_sequence(game_id)
        change = self._build(
            game_id, team_id, sequence, title, description,
            ChangeType(change_type), RiskLevel(risk_level), now,
            affected_services=list(affected_services or []),
            implementation_plan=implementation_plan,
            rollback_plan=rollback_plan,
            test_plan=test_plan,
            tech_review_notes=tech_review_notes,
        )
        await self._changes.add(change)
        await self._announce(change, actor)
        return change

    async def create_from_plan(
        self,
        plan_id: str,
        change_type: str = ChangeType.NORMAL,
        actor: Optional[str] = None
    ) -> ChangeRequest:
        """
        Raise a change request implementing an approved plan.

        The change is stored first, then the plan moves to implementing.
        Replaying the call after the plan has moved returns the change
        already raised; replaying after a failed plan move adopts the
        stored change.

        Raises:
            EntityNotFound: If the plan does not exist
            InvalidTransition: If the plan is not ai_approved
        """
        async with self._runner.locks.hold("plan_change", plan_id):
            plan = await self._plan_service.get(plan_id)

            if plan.status != PlanStatus.AI_APPROVED:
                existing = await self._changes.get_for_plan(plan_id)
                if existing is not None and existing.id == plan.related_change_id and not existing.is_terminal:
                    return existing
                raise InvalidTransition(
                    "implementation_plan", plan_id, plan.status.value, PlanStatus.IMPLEMENTING.value
                )

            orphan = await self._changes.get_for_plan(plan_id)
            if orphan is not None and not orphan.is_terminal:
                # Stored on an earlier call that failed before the plan moved
                await self._plan_service.mark_implementing(plan_id, orphan.id, actor=actor)
                logger.warning(
                    "Adopted change raised before its plan moved",
                    extra={"plan_id": plan_id, "change_id": orphan.id}
                )
                await self._announce(orphan, actor)
                return orphan

            affected: List[str] = []
            if plan.incident_id:
                incident = await self._incidents.get(plan.incident_id)
                if incident is not None:
                    affected = list(incident.affected_services)

            now = self._clock()
            sequence = await self._changes.next_sequence(plan.game_id)
            change = self._build(
                plan.game_id, plan.team_id, sequence,
                title=f"Implement {plan.plan_number}: {plan.title}",
                description=plan.description,
                change_type=ChangeType(change_type),
                risk_level=plan.risk_level,
                now=now,
                affected_services=affected,
                related_plan_id=plan.id,
                related_incident_id=plan.incident_id,
                implementation_plan=plan.steps_as_text() or None,
                rollback_plan=plan.rollback_plan or None,
                test_plan=plan.testing_plan or None,
                tech_review_notes=plan.ai_feedback,
            )
            await self._changes.add(change)
            await self._plan_service.mark_implementing(plan_id, change.id, actor=actor)

        await self._announce(change, actor)
        return change

    async def review(
        self,
        change_id: str,
        approve: bool,
        notes: Optional[str] = None,
        actor: Optional[str] = None
    ) -> ChangeRequest:
        """CAB decision on a pending change."""
        target = ChangeStatus.APPROVED if approve else ChangeStatus.REJECTED
        context = TransitionContext(at=self._clock(), actor=actor, data={"notes": notes})
        result = await self._runner.apply(ChangeStateMachine, self._changes, change_id, target, context)
        return result.entity

    async def start(self, change_id: str, actor: Optional[str] = None) -> ChangeRequest:
        context = TransitionContext(at=self._clock(), actor=actor)
        result = await self._runner.apply(ChangeStateMachine, self._changes, change_id, ChangeStatus.IN_PROGRESS, context)
        return result.entity

    async def implement(self, change_id: str, actor: Optional[str] = None) -> ChangeRequest:
        """
        Carry out an approved change and record how it ended.

        Raises:
            InvalidTransition: If the change is neither approved nor in progress
        """
        change = await self.get(change_id)
        if change.status == ChangeStatus.APPROVED:
            change = await self.start(change_id, actor=actor)
        elif change.status != ChangeStatus.IN_PROGRESS:
            raise InvalidTransition(
                "change_request", change_id, change.status.value, ChangeStatus.IN_PROGRESS.value
            )

        outcome = self._outcome.draw(change)
        data: Dict[str, Any] = {"failure_probability": round(outcome.failure_probability, 4)}
        if not outcome.success:
            data["failure_reason"] = "Implementation did not achieve the expected result"

        context = TransitionContext(at=self._clock(), actor=actor, data=data)
        result = await self._runner.apply(
            ChangeStateMachine, self._changes, change_id, outcome.status, context,
            guard=lambda c: c.status == ChangeStatus.IN_PROGRESS,
        )

        logger.info(
            "Change implemented",
            extra={
                "change_id": change_id,
                "status": outcome.status.value,
                "failure_probability": outcome.failure_probability,
                "points": outcome.points,
            }
        )
        return result.entity

    async def spawn_failure_incident(self, effect: SpawnFailureIncident) -> Incident:
        """Raise the follow-up incident for a failed change. Idempotent per change."""
        change = await self.get(effect.change_id)

        async with self._runner.locks.hold("failure_incident", change.id):
            existing = await self._incidents.find_by_source_change(change.id)
            if existing is not None:
                return existing

            incident = await self._incident_service.create_incident(
                game_id=change.game_id,
                team_id=change.team_id,
                title=f"Failed Change: {change.title}",
                description=(
                    f"Change {change.change_number} failed during implementation "
                    f"and no rollback plan was available. {change.failure_reason or ''}"
                ).strip(),
                priority=Priority.HIGH,
                severity=Severity.HIGH,
                affected_services=list(change.affected_services),
                cost_per_minute=FAILURE_INCIDENT_COST_PER_MINUTE,
                source_change_id=change.id,
                sla_minutes=FAILURE_INCIDENT_SLA_MINUTES,
            )

        logger.warning(
            "Incident raised for failed change",
            extra={"change_id": change.id, "incident_id": incident.id}
        )
        return incident

    async def reconcile_outcomes(self, game_id: str) -> List[ChangeRequest]:
        """
        Re-run the follow-ups of finished changes whose effects did not land.

        A failed change without a rollback plan gets its incident, and a plan
        still implementing a finished change is moved on. Both steps are
        idempotent, so settled changes are left alone.

        Returns:
            Changes that needed repair
        """
        finished = await self._changes.list_for_game(game_id, ChangeRequest.TERMINAL_STATUSES)
        repaired: List[ChangeRequest] = []

        for change in finished:
            touched = False

            if (
                change.status == ChangeStatus.FAILED
                and not change.has_rollback_plan
                and await self._incidents.find_by_source_change(change.id) is None
            ):
                await self.spawn_failure_incident(SpawnFailureIncident(change.id))
                touched = True

            if change.related_plan_id:
                plan = await self._plans.get(change.related_plan_id)
                if (
                    plan is not None
                    and plan.status == PlanStatus.IMPLEMENTING
                    and plan.related_change_id == change.id
                ):
                    target = (
                        PlanStatus.COMPLETED if change.status == ChangeStatus.COMPLETED
                        else PlanStatus.AI_NEEDS_REVISION
                    )
                    await self._plan_service.sync_from_change(SyncRelatedPlan(plan.id, target))
                    touched = True

            if touched:
                repaired.append(change)
                logger.warning(
                    "Reconciled change outcome",
                    extra={"change_id": change.id, "change_number": change.change_number, "status": change.status.value}
                )

        return repaired


# ========== Effect Wiring ==========

def register_effect_handlers(
    runner: TransitionRunner,
    review_service: ReviewService,
    plan_service: PlanService,
    change_service: ChangeService,
    grading_queue: Any
) -> None:
    """Connect edge effects to the services that carry them out."""
    runner.on_effect(RequirePostIncidentReview, review_service.handle_review_required)
    runner.on_effect(RequestPlanEvaluation, grading_queue.handle_plan_evaluation_request)
    runner.on_effect(RequestReviewGrading, grading_queue.handle_review_grading_request)
    runner.on_effect(SpawnFailureIncident, change_service.spawn_failure_incident)
    runner.on_effect(SyncRelatedPlan, plan_service.sync_from_change)

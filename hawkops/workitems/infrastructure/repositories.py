"""
Work Item Infrastructure Repositories
=====================================

Concrete implementations of repository interfaces using SQLAlchemy.

The status guard is a single ``UPDATE ... WHERE id = :id AND status =
:expected``; zero affected rows means another writer got there first.
"""

from dataclasses import fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Type

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from hawkops.config import (
    ChangeStatus, ChangeType, IncidentStatus, PlanStatus, Priority,
    ReviewStatus, RiskLevel, Severity,
)
from hawkops.core import ConcurrentModification, RepositoryException, ensure_utc
from hawkops.workitems.application.services import (
    IChangeRepository, IGameRepository, IIncidentRepository, IPlanRepository,
    IReviewRepository, ITeamRepository, IWorkItemRepository,
)
from hawkops.workitems.domain import (
    ChangeRequest, GameSession, ImplementationPlan, Incident, PlanRevision,
    PostIncidentReview, Team,
)
from hawkops.workitems.infrastructure.models import (
    ChangeRequestModel, GameModel, IncidentModel, PlanModel, ReviewModel,
    SequenceModel, TeamModel,
)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _column_values(entity: Any, skip: Iterable[str] = ()) -> Dict[str, Any]:
    """Dataclass fields as column values, enums flattened to strings."""
    skipped = set(skip)
    return {f.name: _plain(getattr(entity, f.name)) for f in fields(entity) if f.name not in skipped}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return ensure_utc(datetime.fromisoformat(value)) if value else None


# ========== Games & Teams ==========

class SQLAlchemyGameRepository(IGameRepository):
    """Game sessions in the 'games' table."""

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _to_entity(model: GameModel) -> GameSession:
        return GameSession(
            id=model.id,
            name=model.name,
            duration_minutes=model.duration_minutes,
            started_at=ensure_utc(model.started_at),
            status=model.status,
        )

    async def get(self, game_id: str) -> Optional[GameSession]:
        model = await self._session.get(GameModel, game_id)
        return self._to_entity(model) if model else None

    async def add(self, game: GameSession) -> GameSession:
        self._session.add(GameModel(**_column_values(game)))
        await self._session.flush()
        return game

    async def list_active(self) -> List[GameSession]:
        result = await self._session.execute(select(GameModel).where(GameModel.status == "active"))
        return [self._to_entity(m) for m in result.scalars().all()]


class SQLAlchemyTeamRepository(ITeamRepository):
    """Teams in the 'teams' table."""

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _to_entity(model: TeamModel) -> Team:
        return Team(id=model.id, game_id=model.game_id, name=model.name, roles=list(model.roles or []))

    async def get(self, team_id: str) -> Optional[Team]:
        model = await self._session.get(TeamModel, team_id)
        return self._to_entity(model) if model else None

    async def add(self, team: Team) -> Team:
        self._session.add(TeamModel(**_column_values(team)))
        await self._session.flush()
        return team

    async def list_for_game(self, game_id: str) -> List[Team]:
        result = await self._session.execute(
            select(TeamModel).where(TeamModel.game_id == game_id).order_by(TeamModel.name)
        )
        return [self._to_entity(m) for m in result.scalars().all()]


# ========== Work Items ==========

class SQLAlchemyWorkItemRepository(IWorkItemRepository):
    """
    Shared SQLAlchemy behaviour for every work item kind.

    Subclasses set ``model``, ``entity_type`` and ``sequence_kind`` and
    implement the entity/row mapping.
    """

    model: Type[Any]
    entity_type = "work_item"
    sequence_kind = "work_item"

    def __init__(self, session: AsyncSession):
        self._session = session

    def _to_entity(self, model: Any) -> Any:
        raise NotImplementedError

    def _to_values(self, entity: Any) -> Dict[str, Any]:
        return _column_values(entity)

    async def get(self, item_id: str) -> Optional[Any]:
        model = await self._session.get(self.model, item_id, populate_existing=True)
        return self._to_entity(model) if model else None

    async def add(self, item: Any) -> Any:
        try:
            self._session.add(self.model(**self._to_values(item)))
            await self._session.flush()
        except IntegrityError as e:
            raise RepositoryException(f"Failed to store {self.entity_type} {item.id}: {e.orig}")
        return item

    async def compare_and_set(self, item: Any, expected_status: str) -> Any:
        values = self._to_values(item)
        values.pop("id")
        stmt = (
            update(self.model)
            .where(self.model.id == item.id, self.model.status == _plain(expected_status))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise ConcurrentModification(self.entity_type, item.id, _plain(expected_status))
        return item

    async def _list(self, *conditions: Any) -> List[Any]:
        stmt = select(self.model).where(*conditions).order_by(self.model.created_at)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return [self._to_entity(m) for m in result.scalars().all()]

    async def list_for_team(
        self,
        game_id: str,
        team_id: str,
        statuses: Optional[Iterable[str]] = None
    ) -> List[Any]:
        conditions = [self.model.game_id == game_id, self.model.team_id == team_id]
        if statuses is not None:
            conditions.append(self.model.status.in_([_plain(s) for s in statuses]))
        return await self._list(*conditions)

    async def list_for_game(
        self,
        game_id: str,
        statuses: Optional[Iterable[str]] = None
    ) -> List[Any]:
        conditions = [self.model.game_id == game_id]
        if statuses is not None:
            conditions.append(self.model.status.in_([_plain(s) for s in statuses]))
        return await self._list(*conditions)

    async def next_sequence(self, game_id: str) -> int:
        key = (SequenceModel.game_id == game_id, SequenceModel.kind == self.sequence_kind)
        result = await self._session.execute(
            update(SequenceModel).where(*key).values(value=SequenceModel.value + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self._session.add(SequenceModel(game_id=game_id, kind=self.sequence_kind, value=1))
            await self._session.flush()
            return 1
        return await self._session.scalar(select(SequenceModel.value).where(*key))


class SQLAlchemyIncidentRepository(SQLAlchemyWorkItemRepository, IIncidentRepository):
    model = IncidentModel
    entity_type = "incident"
    sequence_kind = "incident"

    def _to_entity(self, model: IncidentModel) -> Incident:
        return Incident(
            id=model.id,
            game_id=model.game_id,
            team_id=model.team_id,
            incident_number=model.incident_number,
            title=model.title,
            description=model.description,
            priority=Priority(model.priority),
            severity=Severity(model.severity),
            status=IncidentStatus(model.status),
            created_at=ensure_utc(model.created_at),
            sla_deadline=ensure_utc(model.sla_deadline),
            cost_per_minute=model.cost_per_minute,
            requires_pir=model.requires_pir,
            affected_services=list(model.affected_services or []),
            source_change_id=model.source_change_id,
            started_at=ensure_utc(model.started_at),
            resolved_at=ensure_utc(model.resolved_at),
            closed_at=ensure_utc(model.closed_at),
            resolution=model.resolution,
            sla_breached=model.sla_breached,
            escalation_level=model.escalation_level,
            reopen_count=model.reopen_count,
            updated_at=ensure_utc(model.updated_at),
        )

    def _to_values(self, entity: Incident) -> Dict[str, Any]:
        values = _column_values(entity)
        values["affected_services"] = list(entity.affected_services)
        return values

    async def find_by_source_change(self, change_id: str) -> Optional[Incident]:
        matches = await self._list(IncidentModel.source_change_id == change_id)
        return matches[0] if matches else None


class SQLAlchemyPlanRepository(SQLAlchemyWorkItemRepository, IPlanRepository):
    model = PlanModel
    entity_type = "implementation_plan"
    sequence_kind = "plan"

    @staticmethod
    def _revision_to_dict(revision: PlanRevision) -> Dict[str, Any]:
        return {
            "revision_number": revision.revision_number,
            "snapshot": revision.snapshot,
            "submitted_at": _iso(revision.submitted_at),
            "ai_score": revision.ai_score,
            "ai_decision": revision.ai_decision,
            "ai_feedback": revision.ai_feedback,
        }

    @staticmethod
    def _revision_from_dict(data: Dict[str, Any]) -> PlanRevision:
        return PlanRevision(
            revision_number=data["revision_number"],
            snapshot=dict(data.get("snapshot") or {}),
            submitted_at=_parse_dt(data.get("submitted_at")),
            ai_score=data.get("ai_score"),
            ai_decision=data.get("ai_decision"),
            ai_feedback=data.get("ai_feedback"),
        )

    def _to_entity(self, model: PlanModel) -> ImplementationPlan:
        return ImplementationPlan(
            id=model.id,
            game_id=model.game_id,
            team_id=model.team_id,
            plan_number=model.plan_number,
            title=model.title,
            description=model.description,
            status=PlanStatus(model.status),
            risk_level=RiskLevel(model.risk_level),
            created_at=ensure_utc(model.created_at),
            incident_id=model.incident_id,
            root_cause_analysis=model.root_cause_analysis,
            implementation_steps=[dict(s) for s in (model.implementation_steps or [])],
            risk_mitigation=model.risk_mitigation,
            rollback_plan=model.rollback_plan,
            testing_plan=model.testing_plan,
            estimated_effort_hours=model.estimated_effort_hours,
            revisions=[self._revision_from_dict(r) for r in (model.revisions or [])],
            ai_score=model.ai_score,
            ai_feedback=model.ai_feedback,
            review_requested_at=ensure_utc(model.review_requested_at),
            related_change_id=model.related_change_id,
            updated_at=ensure_utc(model.updated_at),
        )

    def _to_values(self, entity: ImplementationPlan) -> Dict[str, Any]:
        values = _column_values(entity, skip=("revisions",))
        values["implementation_steps"] = [dict(s) for s in entity.implementation_steps]
        values["revisions"] = [self._revision_to_dict(r) for r in entity.revisions]
        return values

    async def get_active_for_incident(self, incident_id: str) -> Optional[ImplementationPlan]:
        terminal = [s.value for s in ImplementationPlan.TERMINAL_STATUSES]
        matches = await self._list(PlanModel.incident_id == incident_id, PlanModel.status.not_in(terminal))
        return matches[-1] if matches else None

    async def list_for_incident(self, incident_id: str) -> List[ImplementationPlan]:
        return await self._list(PlanModel.incident_id == incident_id)

    async def list_reviewing_since(self, cutoff: datetime) -> List[ImplementationPlan]:
        return await self._list(
            PlanModel.status == PlanStatus.AI_REVIEWING.value,
            PlanModel.review_requested_at.is_not(None),
            PlanModel.review_requested_at <= cutoff,
        )


class SQLAlchemyChangeRepository(SQLAlchemyWorkItemRepository, IChangeRepository):
    model = ChangeRequestModel
    entity_type = "change_request"
    sequence_kind = "change"

    def _to_entity(self, model: ChangeRequestModel) -> ChangeRequest:
        return ChangeRequest(
            id=model.id,
            game_id=model.game_id,
            team_id=model.team_id,
            change_number=model.change_number,
            title=model.title,
            description=model.description,
            change_type=ChangeType(model.change_type),
            risk_level=RiskLevel(model.risk_level),
            status=ChangeStatus(model.status),
            created_at=ensure_utc(model.created_at),
            affected_services=list(model.affected_services or []),
            related_plan_id=model.related_plan_id,
            related_incident_id=model.related_incident_id,
            implementation_plan=model.implementation_plan,
            rollback_plan=model.rollback_plan,
            test_plan=model.test_plan,
            tech_review_notes=model.tech_review_notes,
            approval_notes=model.approval_notes,
            failure_reason=model.failure_reason,
            actual_start=ensure_utc(model.actual_start),
            actual_end=ensure_utc(model.actual_end),
            updated_at=ensure_utc(model.updated_at),
        )

    def _to_values(self, entity: ChangeRequest) -> Dict[str, Any]:
        values = _column_values(entity)
        values["affected_services"] = list(entity.affected_services)
        return values

    async def get_for_plan(self, plan_id: str) -> Optional[ChangeRequest]:
        matches = await self._list(ChangeRequestModel.related_plan_id == plan_id)
        return matches[-1] if matches else None


class SQLAlchemyReviewRepository(SQLAlchemyWorkItemRepository, IReviewRepository):
    model = ReviewModel
    entity_type = "post_incident_review"
    sequence_kind = "review"

    def _to_entity(self, model: ReviewModel) -> PostIncidentReview:
        return PostIncidentReview(
            id=model.id,
            game_id=model.game_id,
            team_id=model.team_id,
            incident_id=model.incident_id,
            status=ReviewStatus(model.status),
            created_at=ensure_utc(model.created_at),
            timeline=model.timeline,
            root_cause=model.root_cause,
            impact=model.impact,
            lessons_learned=model.lessons_learned,
            action_items=list(model.action_items or []),
            submitted_at=ensure_utc(model.submitted_at),
            graded_at=ensure_utc(model.graded_at),
            score=model.score,
            feedback=model.feedback,
            updated_at=ensure_utc(model.updated_at),
        )

    def _to_values(self, entity: PostIncidentReview) -> Dict[str, Any]:
        values = _column_values(entity)
        values["action_items"] = list(entity.action_items)
        return values

    async def get_for_incident(self, incident_id: str) -> Optional[PostIncidentReview]:
        matches = await self._list(ReviewModel.incident_id == incident_id)
        return matches[0] if matches else None

    async def list_submitted_since(self, cutoff: datetime) -> List[PostIncidentReview]:
        return await self._list(
            ReviewModel.status == ReviewStatus.SUBMITTED.value,
            ReviewModel.submitted_at.is_not(None),
            ReviewModel.submitted_at <= cutoff,
        )

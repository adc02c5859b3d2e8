"""
Progress Infrastructure Repositories
====================================

SQLAlchemy implementations of the progress repository interfaces.

Uniqueness of awards and ledger keys is enforced by the database; a
duplicate insert runs inside a savepoint so the surrounding transaction
survives it.
"""

from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from hawkops.config import ChallengeStatus, ChallengeWindowType
from hawkops.core import ConcurrentModification, RepositoryException, ensure_utc
from hawkops.progress.application.services import (
    IAchievementRepository, IChallengeRepository, IScoreLedger,
)
from hawkops.progress.domain import AchievementAward, Challenge, ChallengeType, ScoreEntry
from hawkops.progress.infrastructure.models import (
    ChallengeModel, ScoreEntryModel, TeamAchievementModel,
)


class SQLAlchemyChallengeRepository(IChallengeRepository):
    """Challenges in the 'team_challenges' table."""

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _to_entity(model: ChallengeModel) -> Challenge:
        return Challenge(
            id=model.id,
            game_id=model.game_id,
            title=model.title,
            description=model.description,
            challenge_type=ChallengeType(model.challenge_type),
            target_value=model.target_value,
            reward_points=model.reward_points,
            window_type=ChallengeWindowType(model.window_type),
            start_time=ensure_utc(model.start_time),
            end_time=ensure_utc(model.end_time),
            status=ChallengeStatus(model.status),
            current_value=model.current_value,
            assigned_team_id=model.assigned_team_id,
            completed_by_team_id=model.completed_by_team_id,
            completed_at=ensure_utc(model.completed_at),
            reward_badge_code=model.reward_badge_code,
            updated_at=ensure_utc(model.updated_at),
        )

    @staticmethod
    def _to_values(challenge: Challenge) -> dict:
        return {
            "id": challenge.id,
            "game_id": challenge.game_id,
            "title": challenge.title,
            "description": challenge.description,
            "challenge_type": challenge.challenge_type.value,
            "target_value": challenge.target_value,
            "current_value": challenge.current_value,
            "reward_points": challenge.reward_points,
            "window_type": challenge.window_type.value,
            "status": challenge.status.value,
            "start_time": challenge.start_time,
            "end_time": challenge.end_time,
            "assigned_team_id": challenge.assigned_team_id,
            "completed_by_team_id": challenge.completed_by_team_id,
            "completed_at": challenge.completed_at,
            "reward_badge_code": challenge.reward_badge_code,
            "updated_at": challenge.updated_at,
        }

    async def get(self, challenge_id: str) -> Optional[Challenge]:
        model = await self._session.get(ChallengeModel, challenge_id, populate_existing=True)
        return self._to_entity(model) if model else None

    async def add(self, challenge: Challenge) -> Challenge:
        try:
            self._session.add(ChallengeModel(**self._to_values(challenge)))
            await self._session.flush()
        except IntegrityError as e:
            raise RepositoryException(f"Failed to store challenge {challenge.id}: {e.orig}")
        return challenge

    async def compare_and_set(self, challenge: Challenge, expected_status: str) -> Challenge:
        values = self._to_values(challenge)
        values.pop("id")
        expected = getattr(expected_status, "value", expected_status)
        result = await self._session.execute(
            update(ChallengeModel)
            .where(ChallengeModel.id == challenge.id, ChallengeModel.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConcurrentModification("challenge", challenge.id, expected)
        return challenge

    async def list_for_game(self, game_id: str, status: Optional[str] = None) -> List[Challenge]:
        stmt = select(ChallengeModel).where(ChallengeModel.game_id == game_id)
        if status is not None:
            stmt = stmt.where(ChallengeModel.status == getattr(status, "value", status))
        stmt = stmt.order_by(ChallengeModel.start_time.desc()).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return [self._to_entity(m) for m in result.scalars().all()]


class SQLAlchemyAchievementRepository(IAchievementRepository):
    """Earned achievements in the 'team_achievements' table."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def add(self, award: AchievementAward) -> bool:
        try:
            async with self._session.begin_nested():
                self._session.add(TeamAchievementModel(
                    id=award.id,
                    game_id=award.game_id,
                    team_id=award.team_id,
                    achievement_code=award.achievement_code,
                    points=award.points,
                    earned_at=award.earned_at,
                    context=dict(award.context),
                ))
        except IntegrityError:
            return False
        return True

    async def list_for_team(self, game_id: str, team_id: str) -> List[AchievementAward]:
        result = await self._session.execute(
            select(TeamAchievementModel)
            .where(TeamAchievementModel.game_id == game_id, TeamAchievementModel.team_id == team_id)
            .order_by(TeamAchievementModel.earned_at)
        )
        return [
            AchievementAward(
                id=m.id,
                game_id=m.game_id,
                team_id=m.team_id,
                achievement_code=m.achievement_code,
                points=m.points,
                earned_at=ensure_utc(m.earned_at),
                context=dict(m.context or {}),
            )
            for m in result.scalars().all()
        ]


class SQLAlchemyScoreLedger(IScoreLedger):
    """Score entries in the 'score_ledger' table."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def record(self, entry: ScoreEntry) -> bool:
        try:
            async with self._session.begin_nested():
                self._session.add(ScoreEntryModel(
                    id=entry.id,
                    game_id=entry.game_id,
                    team_id=entry.team_id,
                    points=entry.points,
                    reason=entry.reason,
                    idempotency_key=entry.idempotency_key,
                    created_at=entry.created_at,
                ))
        except IntegrityError:
            return False
        return True

    async def total(self, game_id: str, team_id: str) -> int:
        value = await self._session.scalar(
            select(func.coalesce(func.sum(ScoreEntryModel.points), 0))
            .where(ScoreEntryModel.game_id == game_id, ScoreEntryModel.team_id == team_id)
        )
        return int(value or 0)

    async def list_for_team(self, game_id: str, team_id: str) -> List[ScoreEntry]:
        result = await self._session.execute(
            select(ScoreEntryModel)
            .where(ScoreEntryModel.game_id == game_id, ScoreEntryModel.team_id == team_id)
            .order_by(ScoreEntryModel.created_at)
        )
        return [
            ScoreEntry(
                id=m.id,
                game_id=m.game_id,
                team_id=m.team_id,
                points=m.points,
                reason=m.reason,
                idempotency_key=m.idempotency_key,
                created_at=ensure_utc(m.created_at),
            )
            for m in result.scalars().all()
        ]

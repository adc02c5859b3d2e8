"""
Progress Application Services
=============================

Challenge, achievement and score services, plus the subscriber that feeds
them from the game event stream.

Progress never mutates work items. It reads them through the work item
repositories and writes only challenges, awards and ledger entries.
"""

import copy
import random
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from hawkops.config import ChallengeStatus, IncidentStatus
from hawkops.core import (
    Clock, EntityNotFound, EventType, GameEvent, IEventLog, utc_now,
)
from hawkops.progress.domain import (
    ACHIEVEMENT_CRITERIA, ACHIEVEMENT_TRIGGERS, ACHIEVEMENTS, ACHIEVEMENTS_BY_CODE,
    CHALLENGE_TEMPLATES, AchievementAward, AchievementProgress, Challenge, ChallengeCriteria,
    ChallengeStateMachine, ChallengeTemplate, ChallengeType, ScoreEntry, TeamHistory,
)
from hawkops.shared.infrastructure import EventDispatcher, KeyedLockRegistry
from hawkops.shared.infrastructure.logging import get_logger
from hawkops.timing.application import TimingService
from hawkops.workitems.application import IGameRepository, IIncidentRepository, IReviewRepository
from hawkops.workitems.domain import EmitEvent, GameSession, TransitionContext

logger = get_logger(__name__)

# Remaining time assumed never to drop below this when sizing a window
MIN_REMAINING_MINUTES = 5


# ========== Repository Interfaces (Dependency Inversion) ==========

class IChallengeRepository(ABC):
    """Interface for challenge data access."""

    @abstractmethod
    async def get(self, challenge_id: str) -> Optional[Challenge]:
        """Get challenge by ID."""

    @abstractmethod
    async def add(self, challenge: Challenge) -> Challenge:
        """Store a new challenge."""

    @abstractmethod
    async def compare_and_set(self, challenge: Challenge, expected_status: str) -> Challenge:
        """Store ``challenge`` if the stored status equals ``expected_status``."""

    @abstractmethod
    async def list_for_game(self, game_id: str, status: Optional[str] = None) -> List[Challenge]:
        """List a game's challenges, newest first."""


class IAchievementRepository(ABC):
    """Interface for earned achievements."""

    @abstractmethod
    async def add(self, award: AchievementAward) -> bool:
        """
        Record an award. Returns False, storing nothing, if the team already
        holds the achievement in that game.
        """

    @abstractmethod
    async def list_for_team(self, game_id: str, team_id: str) -> List[AchievementAward]:
        """Awards held by a team, oldest first."""


class IScoreLedger(ABC):
    """Interface for the append-only score ledger."""

    @abstractmethod
    async def record(self, entry: ScoreEntry) -> bool:
        """
        Append an entry. Returns False, storing nothing, if an entry with the
        same idempotency key exists in the game.
        """

    @abstractmethod
    async def total(self, game_id: str, team_id: str) -> int:
        """Sum of a team's entries."""

    @abstractmethod
    async def list_for_team(self, game_id: str, team_id: str) -> List[ScoreEntry]:
        """A team's entries in append order."""


async def _emit(
    dispatcher: EventDispatcher,
    game_id: str,
    team_id: Optional[str],
    event_type: EventType,
    payload: Dict[str, Any],
    at: datetime,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None
) -> GameEvent:
    return await dispatcher.emit(GameEvent(
        game_id=game_id,
        team_id=team_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload,
        created_at=at,
    ))


# ========== Scores ==========

class ScoreService:
    """
    Awards and penalties against the score ledger.

    A team's total never drops below zero: a penalty larger than the
    current total is recorded at the size of the total.
    """

    def __init__(
        self,
        ledger: IScoreLedger,
        dispatcher: EventDispatcher,
        locks: Optional[KeyedLockRegistry] = None,
        clock: Clock = utc_now
    ):
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._locks = locks or KeyedLockRegistry("scores")
        self._clock = clock

    async def award(
        self,
        game_id: str,
        team_id: str,
        points: int,
        reason: str,
        idempotency_key: str
    ) -> Optional[ScoreEntry]:
        """
        Record points once per idempotency key.

        Returns:
            The recorded entry, or None when the key was already used
        """
        now = self._clock()
        async with self._locks.hold("score", game_id, team_id):
            total = await self._ledger.total(game_id, team_id)
            applied = max(int(points), -total)
            entry = ScoreEntry(
                id=str(uuid4()),
                game_id=game_id,
                team_id=team_id,
                points=applied,
                reason=reason,
                idempotency_key=idempotency_key,
                created_at=now,
            )
            if not await self._ledger.record(entry):
                logger.debug("Score award already recorded", extra={"idempotency_key": idempotency_key})
                return None

        await _emit(self._dispatcher, game_id, team_id, EventType.POINTS_AWARDED, {
            "points": applied,
            "requested_points": int(points),
            "reason": reason,
            "total": total + applied,
        }, now)
        logger.info(
            "Points awarded",
            extra={"team_id": team_id, "points": applied, "reason": reason, "idempotency_key": idempotency_key}
        )
        return entry

    async def total(self, game_id: str, team_id: str) -> int:
        return await self._ledger.total(game_id, team_id)

    async def history(self, game_id: str, team_id: str) -> List[ScoreEntry]:
        return await self._ledger.list_for_team(game_id, team_id)


# ========== Achievements ==========

class AchievementService:
    """
    Computes achievement progress from a team's history and awards each
    achievement at most once per (team, game).
    """

    def __init__(
        self,
        awards: IAchievementRepository,
        incidents: IIncidentRepository,
        reviews: IReviewRepository,
        event_log: IEventLog,
        scores: ScoreService,
        dispatcher: EventDispatcher,
        clock: Clock = utc_now
    ):
        self._awards = awards
        self._incidents = incidents
        self._reviews = reviews
        self._event_log = event_log
        self._scores = scores
        self._dispatcher = dispatcher
        self._clock = clock

    async def history(self, game_id: str, team_id: str) -> TeamHistory:
        return TeamHistory(
            incidents=await self._incidents.list_for_team(game_id, team_id),
            reviews=await self._reviews.list_for_team(game_id, team_id),
            events=await self._event_log.list_for_team(
                game_id, team_id, [EventType.INCIDENT_TRANSFERRED, EventType.STAKEHOLDER_RESPONSE]
            ),
        )

    async def progress(self, game_id: str, team_id: str) -> List[AchievementProgress]:
        """Progress towards every achievement in the catalogue."""
        history = await self.history(game_id, team_id)
        earned = {a.achievement_code: a for a in await self._awards.list_for_team(game_id, team_id)}
        return [
            AchievementProgress(
                definition=definition,
                current=ACHIEVEMENT_CRITERIA[definition.criterion](history),
                earned=definition.code in earned,
                earned_at=earned[definition.code].earned_at if definition.code in earned else None,
            )
            for definition in ACHIEVEMENTS
        ]

    async def evaluate(self, game_id: str, team_id: str) -> List[AchievementAward]:
        """Award every achievement whose criterion the team now meets."""
        awarded = []
        for item in await self.progress(game_id, team_id):
            if item.earned or item.current < item.definition.target:
                continue
            award = await self.award(game_id, team_id, item.definition.code, {"progress": item.current})
            if award is not None:
                awarded.append(award)
        return awarded

    async def award(
        self,
        game_id: str,
        team_id: str,
        code: str,
        context: Optional[Dict[str, Any]] = None
    ) -> Optional[AchievementAward]:
        """
        Grant one achievement.

        Returns:
            The award, or None if the team already holds it

        Raises:
            EntityNotFound: If the code is not in the catalogue
        """
        definition = ACHIEVEMENTS_BY_CODE.get(code)
        if definition is None:
            raise EntityNotFound("achievement", code)

        now = self._clock()
        award = AchievementAward(
            id=str(uuid4()),
            game_id=game_id,
            team_id=team_id,
            achievement_code=code,
            points=definition.points,
            earned_at=now,
            context=dict(context or {}),
        )
        if not await self._awards.add(award):
            return None

        await self._scores.award(
            game_id, team_id, definition.points,
            reason=f"achievement {code}",
            idempotency_key=f"achievement:{team_id}:{code}",
        )
        await _emit(self._dispatcher, game_id, team_id, EventType.ACHIEVEMENT_EARNED, {
            "code": code,
            "name": definition.name,
            "points": definition.points,
            "rarity": definition.rarity,
        }, now, entity_type="achievement", entity_id=award.id)

        logger.info("Achievement earned", extra={"team_id": team_id, "game_id": game_id, "code": code})
        return award

    async def earned(self, game_id: str, team_id: str) -> List[AchievementAward]:
        return await self._awards.list_for_team(game_id, team_id)


# ========== Challenges ==========

class ChallengeService:
    """
    Creates challenges and advances them from events.

    Each challenge update holds the challenge's lock and is written with a
    compare-and-set on ``active``, so completion and its point award happen
    once even when events race. A reward that fails after completion is
    paid by ``settle_rewards``.
    """

    def __init__(
        self,
        challenges: IChallengeRepository,
        games: IGameRepository,
        incidents: IIncidentRepository,
        timing: TimingService,
        scores: ScoreService,
        achievements: AchievementService,
        dispatcher: EventDispatcher,
        locks: Optional[KeyedLockRegistry] = None,
        clock: Clock = utc_now,
        rng: Optional[random.Random] = None
    ):
        self._challenges = challenges
        self._games = games
        self._incidents = incidents
        self._timing = timing
        self._scores = scores
        self._achievements = achievements
        self._dispatcher = dispatcher
        self._locks = locks or KeyedLockRegistry("challenges")
        self._clock = clock
        self._rng = rng or random.Random()

    async def get(self, challenge_id: str) -> Challenge:
        challenge = await self._challenges.get(challenge_id)
        if challenge is None:
            raise EntityNotFound("challenge", challenge_id)
        return challenge

    async def _get_game(self, game_id: str) -> GameSession:
        game = await self._games.get(game_id)
        if game is None:
            raise EntityNotFound("game", game_id)
        return game

    async def create_challenge(
        self,
        game_id: str,
        template: ChallengeTemplate,
        assigned_team_id: Optional[str] = None
    ) -> Challenge:
        """
        Instantiate a template with a window sized for the session and
        capped to the time the session has left.
        """
        game = await self._get_game(game_id)
        now = self._clock()
        remaining = max(MIN_REMAINING_MINUTES, game.remaining_minutes(now))
        window = self._timing.challenge_window(template.window_type, game.duration_minutes, remaining)

        target = template.target_value
        if template.challenge_type == ChallengeType.SLA_STREAK:
            target = window

        challenge = Challenge(
            id=str(uuid4()),
            game_id=game_id,
            title=template.title,
            description=template.describe(window),
            challenge_type=template.challenge_type,
            target_value=target,
            reward_points=template.reward_points,
            window_type=template.window_type,
            start_time=now,
            end_time=now + timedelta(minutes=window),
            assigned_team_id=assigned_team_id,
            reward_badge_code=template.reward_badge_code,
            updated_at=now,
        )
        await self._challenges.add(challenge)

        await _emit(self._dispatcher, game_id, assigned_team_id, EventType.CHALLENGE_CREATED, {
            "challenge_type": challenge.challenge_type.value,
            "title": challenge.title,
            "target_value": challenge.target_value,
            "window_minutes": window,
            "reward_points": challenge.reward_points,
        }, now, entity_type="challenge", entity_id=challenge.id)

        logger.info(
            "Challenge created",
            extra={
                "challenge_id": challenge.id,
                "challenge_type": challenge.challenge_type.value,
                "window_minutes": window,
                "game_id": game_id,
                "team_id": assigned_team_id,
            }
        )
        return challenge

    async def create_random_challenge(self, game_id: str, assigned_team_id: Optional[str] = None) -> Challenge:
        template = self._rng.choice(CHALLENGE_TEMPLATES)
        return await self.create_challenge(game_id, template, assigned_team_id)

    async def maybe_spawn(self, game_id: str) -> Optional[Challenge]:
        """
        Start a random challenge when none is active and the shortest
        challenge interval has passed since the last one started.
        """
        game = await self._get_game(game_id)
        now = self._clock()
        if game.remaining_minutes(now) <= MIN_REMAINING_MINUTES:
            return None

        existing = await self._challenges.list_for_game(game_id)
        if any(c.is_active for c in existing):
            return None

        low, _ = self._timing.challenge_interval(game.duration_minutes)
        last_start = existing[0].start_time if existing else game.started_at
        if now - last_start < timedelta(minutes=low):
            return None
        return await self.create_random_challenge(game_id)

    async def list_active(self, game_id: str, team_id: Optional[str] = None) -> List[Challenge]:
        active = await self._challenges.list_for_game(game_id, ChallengeStatus.ACTIVE.value)
        return [c for c in active if team_id is None or c.applies_to(team_id)]

    async def list_for_game(self, game_id: str) -> List[Challenge]:
        return await self._challenges.list_for_game(game_id)

    async def handle_event(self, event: GameEvent) -> List[Challenge]:
        """
        Advance every active challenge the event's team can work on.

        Returns:
            Challenges whose stored state changed
        """
        if event.team_id is None:
            return []

        changed = []
        for challenge in await self.list_active(event.game_id, event.team_id):
            if not ChallengeCriteria.is_triggered_by(challenge.challenge_type, event.event_type):
                continue

            active_count = 0
            if challenge.challenge_type == ChallengeType.CLEAR_QUEUE:
                active_count = len(await self._incidents.list_for_team(
                    event.game_id, event.team_id,
                    statuses=[IncidentStatus.OPEN.value, IncidentStatus.IN_PROGRESS.value],
                ))

            updated = await self._advance(challenge.id, event, active_count)
            if updated is not None:
                changed.append(updated)
        return changed

    async def _advance(self, challenge_id: str, event: GameEvent, active_count: int) -> Optional[Challenge]:
        team_id = event.team_id
        at = self._clock()

        async with self._locks.hold("challenge", challenge_id):
            challenge = await self._challenges.get(challenge_id)
            if challenge is None or not challenge.is_active or not challenge.applies_to(team_id):
                return None
            if challenge.has_ended(event.created_at):
                return None

            if ChallengeCriteria.breaks(challenge, event):
                context = TransitionContext(at=at, reason=event.event_type.value, data={"team_id": team_id})
                result = ChallengeStateMachine.attempt(challenge, ChallengeStatus.EXPIRED, context)
                await self._challenges.compare_and_set(result.entity, result.previous_status)
                updated, effects = result.entity, list(result.effects)
            else:
                value = ChallengeCriteria.next_value(challenge, event, active_count)
                if value is None:
                    return None

                updated = copy.deepcopy(challenge)
                updated.current_value = max(value, challenge.current_value)
                updated.updated_at = at

                if ChallengeCriteria.is_complete(updated.challenge_type, updated.current_value, updated.target_value):
                    context = TransitionContext(at=at, data={"team_id": team_id})
                    result = ChallengeStateMachine.attempt(updated, ChallengeStatus.COMPLETED, context)
                    updated, effects = result.entity, list(result.effects)
                elif updated.current_value == challenge.current_value:
                    return None
                else:
                    effects = [EmitEvent(EventType.CHALLENGE_PROGRESS, {
                        "challenge_type": updated.challenge_type.value,
                        "current_value": updated.current_value,
                        "target_value": updated.target_value,
                        "progress": updated.progress,
                    })]
                await self._challenges.compare_and_set(updated, ChallengeStatus.ACTIVE.value)

        for effect in effects:
            await _emit(
                self._dispatcher, updated.game_id, team_id, effect.event_type, effect.payload, at,
                entity_type="challenge", entity_id=updated.id,
            )

        if updated.status == ChallengeStatus.COMPLETED:
            await self._reward(updated, team_id)
        elif updated.status == ChallengeStatus.EXPIRED:
            logger.info(
                "Challenge ended early",
                extra={"challenge_id": updated.id, "team_id": team_id, "reason": event.event_type.value}
            )
        return updated

    @staticmethod
    def _reward_key(challenge: Challenge) -> str:
        return f"challenge:{challenge.id}"

    async def _reward(self, challenge: Challenge, team_id: str) -> None:
        await self._scores.award(
            challenge.game_id, team_id, challenge.reward_points,
            reason=f"challenge {challenge.title}",
            idempotency_key=self._reward_key(challenge),
        )
        if challenge.reward_badge_code:
            await self._achievements.award(
                challenge.game_id, team_id, challenge.reward_badge_code, {"challenge_id": challenge.id}
            )
        logger.info(
            "Challenge completed",
            extra={
                "challenge_id": challenge.id,
                "challenge_type": challenge.challenge_type.value,
                "team_id": team_id,
                "reward_points": challenge.reward_points,
            }
        )

    async def settle_rewards(self, game_id: str) -> List[Challenge]:
        """
        Pay completed challenges whose reward never landed.

        Completion is stored before the reward is paid, so a failed award
        leaves a completed challenge without points. The ledger and the
        badge store both dedupe, so challenges already paid are skipped.

        Returns:
            Challenges paid by this call
        """
        paid = []
        for challenge in await self._challenges.list_for_game(game_id, ChallengeStatus.COMPLETED):
            team_id = challenge.completed_by_team_id
            if team_id is None:
                continue

            keys = {entry.idempotency_key for entry in await self._scores.history(game_id, team_id)}
            missing_badge = False
            if challenge.reward_badge_code:
                earned = {a.achievement_code for a in await self._achievements.earned(game_id, team_id)}
                missing_badge = challenge.reward_badge_code not in earned
            if self._reward_key(challenge) in keys and not missing_badge:
                continue

            await self._reward(challenge, team_id)
            paid.append(challenge)

        if paid:
            logger.warning(
                "Paid outstanding challenge rewards",
                extra={"game_id": game_id, "challenges": [c.id for c in paid]}
            )
        return paid

    async def expire_challenges(self, game_id: str) -> List[Challenge]:
        """Move active challenges whose window has closed to expired."""
        now = self._clock()
        expired = []
        for challenge in await self.list_active(game_id):
            if not challenge.has_ended(now):
                continue
            async with self._locks.hold("challenge", challenge.id):
                current = await self._challenges.get(challenge.id)
                if current is None or not current.is_active:
                    continue
                result = ChallengeStateMachine.attempt(
                    current, ChallengeStatus.EXPIRED, TransitionContext(at=now, reason="window closed")
                )
                await self._challenges.compare_and_set(result.entity, result.previous_status)

            for effect in result.effects:
                await _emit(
                    self._dispatcher, game_id, current.assigned_team_id, effect.event_type, effect.payload, now,
                    entity_type="challenge", entity_id=current.id,
                )
            expired.append(result.entity)

        if expired:
            logger.info("Challenges expired", extra={"game_id": game_id, "count": len(expired)})
        return expired

    async def team_stats(self, game_id: str, team_id: str) -> Dict[str, int]:
        """Completed, active and expired counts plus points won from challenges."""
        challenges = await self._challenges.list_for_game(game_id)
        completed = [
            c for c in challenges
            if c.status == ChallengeStatus.COMPLETED and c.completed_by_team_id == team_id
        ]
        visible = [c for c in challenges if c.applies_to(team_id)]
        return {
            "completed": len(completed),
            "active": sum(1 for c in visible if c.status == ChallengeStatus.ACTIVE),
            "expired": sum(1 for c in visible if c.status == ChallengeStatus.EXPIRED),
            "total_points": sum(c.reward_points for c in completed),
        }


# ========== Event Subscriber ==========

CHANGE_OUTCOME_EVENTS = (
    EventType.CHANGE_COMPLETED,
    EventType.CHANGE_FAILED,
    EventType.CHANGE_ROLLED_BACK,
)


class ProgressSubscriber:
    """
    Feeds game events into scoring, challenges and achievements.

    Usage:
        subscriber = ProgressSubscriber(scores, challenges, achievements)
        subscriber.register(dispatcher)
    """

    def __init__(
        self,
        scores: ScoreService,
        challenges: ChallengeService,
        achievements: AchievementService
    ):
        self._scores = scores
        self._challenges = challenges
        self._achievements = achievements

    def register(self, dispatcher: EventDispatcher) -> None:
        dispatcher.subscribe(CHANGE_OUTCOME_EVENTS, self.on_change_outcome)
        dispatcher.subscribe(ChallengeCriteria.all_triggers(), self.on_challenge_event)
        dispatcher.subscribe(ACHIEVEMENT_TRIGGERS, self.on_achievement_event)

    async def on_change_outcome(self, event: GameEvent) -> None:
        points = event.payload.get("points")
        if event.team_id is None or points is None or event.entity_id is None:
            return
        await self._scores.award(
            event.game_id, event.team_id, points,
            reason=f"change {event.payload.get('change_number')} {event.event_type.value}",
            idempotency_key=f"change:{event.entity_id}",
        )

    async def on_challenge_event(self, event: GameEvent) -> None:
        await self._challenges.handle_event(event)

    async def on_achievement_event(self, event: GameEvent) -> None:
        if event.team_id is None:
            return
        await self._achievements.evaluate(event.game_id, event.team_id)

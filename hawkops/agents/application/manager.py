"""
Agent Manager
=============

Creates simulated roles for teams and runs their cycles.

Cycles for one team run one after another under a per-team lock. Teams run
concurrently, except when the cycle pipeline is bound to a single database
session. A cycle that loses a compare-and-set race is retried from a fresh
perceive, up to ``max_cycle_retries`` times.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

from hawkops.config import AgentRole, Personality, VALID_ROLES
from hawkops.core import ConcurrentModification
from hawkops.agents.application.services import ActionOutcome, Agent, AgentCycle
from hawkops.agents.domain import AgentProfile
from hawkops.shared.infrastructure import KeyedLockRegistry
from hawkops.shared.infrastructure.logging import get_context_logger, get_logger
from hawkops.workitems.application import ITeamRepository

logger = get_logger(__name__)

# Order roles act in within one team cycle
FULL_TEAM: Tuple[AgentRole, ...] = (AgentRole.SERVICE_DESK, AgentRole.TECH_OPS, AgentRole.MANAGEMENT)


class AgentRoster:
    """
    Agents keyed by team and role.

    Outlives any one manager, so per-session managers share counters and
    the set of teams being simulated.
    """

    def __init__(self):
        self._agents: Dict[Tuple[str, AgentRole], Agent] = {}
        self.locks = KeyedLockRegistry("team_cycles")

    def put(self, agent: Agent) -> Agent:
        self._agents[(agent.profile.team_id, agent.profile.role)] = agent
        return agent

    def for_team(self, team_id: str) -> List[Agent]:
        return [self._agents[(team_id, role)] for role in FULL_TEAM if (team_id, role) in self._agents]

    def remove_team(self, team_id: str) -> int:
        keys = [key for key in self._agents if key[0] == team_id]
        for key in keys:
            del self._agents[key]
        return len(keys)

    def team_ids(self, game_id: Optional[str] = None) -> List[str]:
        return sorted({
            agent.profile.team_id for agent in self._agents.values()
            if game_id is None or agent.profile.game_id == game_id
        })

    def all(self) -> List[Agent]:
        return list(self._agents.values())

    def __len__(self) -> int:
        return len(self._agents)


class AgentManager:
    """
    Registry front-end and runner for simulated roles.

    Usage:
        manager.create_team_agents(game_id, team_id)
        await manager.tick(game_id)
    """

    def __init__(
        self,
        cycle: AgentCycle,
        teams: ITeamRepository,
        roster: Optional[AgentRoster] = None,
        max_cycle_retries: int = 2,
        default_personality: str = Personality.BALANCED,
        concurrent_teams: bool = True
    ):
        self._cycle = cycle
        self._teams = teams
        self.roster = roster if roster is not None else AgentRoster()
        self._max_retries = max_cycle_retries
        self._default_personality = Personality(default_personality)
        self._concurrent_teams = concurrent_teams

    # ========== Registry ==========

    def create_agent(
        self,
        game_id: str,
        team_id: str,
        role: str,
        personality: Optional[str] = None
    ) -> Agent:
        """Create (or replace) the agent playing ``role`` for a team."""
        profile = AgentProfile(
            game_id=game_id,
            team_id=team_id,
            role=AgentRole(role),
            personality=Personality(personality) if personality else self._default_personality,
        )
        agent = self.roster.put(Agent(profile))

        logger.info(
            "Agent created",
            extra={"team_id": team_id, "role": profile.role.value, "personality": profile.personality.value}
        )
        return agent

    def create_team_agents(
        self,
        game_id: str,
        team_id: str,
        roles: Optional[Iterable[str]] = None,
        personality: Optional[str] = None
    ) -> List[Agent]:
        """Create agents for the given roles, or the full team when none are given."""
        wanted = {AgentRole(r) for r in (roles or VALID_ROLES)}
        return [
            self.create_agent(game_id, team_id, role, personality)
            for role in FULL_TEAM if role in wanted
        ]

    async def create_game_agents(
        self,
        game_id: str,
        roles: Optional[Iterable[str]] = None,
        personality: Optional[str] = None
    ) -> List[Agent]:
        """Create agents for every team in a game."""
        roles = list(roles) if roles is not None else None
        agents: List[Agent] = []
        for team in await self._teams.list_for_game(game_id):
            agents.extend(self.create_team_agents(game_id, team.id, roles, personality))
        return agents

    def agents_for_team(self, team_id: str) -> List[Agent]:
        return self.roster.for_team(team_id)

    def remove_team(self, team_id: str) -> int:
        """Drop a team's agents. Returns how many were removed."""
        return self.roster.remove_team(team_id)

    # ========== Running ==========

    async def _run_with_retries(
        self,
        agent: Agent,
        log: Optional[logging.LoggerAdapter] = None
    ) -> Optional[ActionOutcome]:
        log = log or get_context_logger(__name__)
        for attempt in range(self._max_retries + 1):
            try:
                return await self._cycle.run(agent)
            except ConcurrentModification as e:
                log.warning(
                    "Cycle lost a race, retrying from a fresh snapshot",
                    extra={
                        "team_id": agent.profile.team_id,
                        "role": agent.profile.role.value,
                        "attempt": attempt + 1,
                        "entity_id": e.entity_id,
                    }
                )

        log.error(
            "Cycle abandoned after retries",
            extra={"team_id": agent.profile.team_id, "role": agent.profile.role.value, "retries": self._max_retries}
        )
        return None

    async def run_team_cycle(self, team_id: str) -> List[ActionOutcome]:
        """
        Run one cycle for each of a team's agents, in role order.

        Returns:
            Outcomes of the decisions taken this cycle
        """
        outcomes: List[ActionOutcome] = []
        log = get_context_logger(__name__, f"cycle-{uuid.uuid4().hex[:12]}")
        async with self.roster.locks.hold("team", team_id):
            for agent in self.agents_for_team(team_id):
                outcome = await self._run_with_retries(agent, log)
                if outcome is not None:
                    outcomes.append(outcome)
        log.debug(
            "Team cycle finished",
            extra={"team_id": team_id, "actions": [o.decision.rule for o in outcomes]}
        )
        return outcomes

    async def _run_guarded(self, team_id: str) -> List[ActionOutcome]:
        try:
            return await self.run_team_cycle(team_id)
        except Exception as e:
            logger.error("Team cycle failed", extra={"team_id": team_id, "error": str(e)}, exc_info=True)
            return []

    async def tick(self, game_id: Optional[str] = None) -> Dict[str, List[ActionOutcome]]:
        """
        Run one cycle for every team.

        A failing team is logged and reported with no outcomes; it never
        stops the other teams or the caller.
        """
        team_ids = self.roster.team_ids(game_id)
        if self._concurrent_teams:
            results = await asyncio.gather(*(self._run_guarded(team_id) for team_id in team_ids))
        else:
            results = [await self._run_guarded(team_id) for team_id in team_ids]
        return dict(zip(team_ids, results))

    def status(self) -> Dict[str, Any]:
        return {
            "agents": [agent.status() for agent in self.roster.all()],
            "teams": self.roster.team_ids(),
            "max_cycle_retries": self._max_retries,
            "concurrent_teams": self._concurrent_teams,
        }

import asyncio

from hawkops.agents.application import ActStatus, ActionExecutor, ActionOutcome, AgentManager
from hawkops.agents.domain import AgentAction, AgentProfile, Decision
from hawkops.config import AgentRole, ChangeStatus, IncidentStatus, PlanStatus
from hawkops.core import ConcurrentModification, EventType


def _executor(services, clock):
    return ActionExecutor(
        services.incident_service, services.plan_service, services.change_service,
        services.runner, services.event_log, clock,
    )


def _decision(action, target=None, **params):
    return Decision(action=action, target=target, reasoning="test", priority=1, rule="test", params=params)


DESK = AgentProfile(game_id="game-1", team_id="team-a", role=AgentRole.SERVICE_DESK)
TECH = AgentProfile(game_id="game-1", team_id="team-a", role=AgentRole.TECH_OPS)
BOSS = AgentProfile(game_id="game-1", team_id="team-a", role=AgentRole.MANAGEMENT)


# ========== Act ==========

def test_replayed_actions_are_skipped(services, seed, clock):
    async def main():
        await seed()
        incident = await services.incident_service.create_incident("game-1", "team-a", "Queue backlog")
        executor = _executor(services, clock)

        start = _decision(AgentAction.START_WORK, incident.id)
        assert (await executor.act(TECH, start)).status == ActStatus.APPLIED
        assert (await executor.act(TECH, start)).status == ActStatus.SKIPPED

        escalate = _decision(AgentAction.ESCALATE, incident.id, from_level=0, reason="Needs L2")
        assert (await executor.act(DESK, escalate)).applied
        replay = await executor.act(DESK, escalate)
        assert replay.status == ActStatus.SKIPPED
        assert (await services.incident_service.get(incident.id)).escalation_level == 1

        plan = _decision(AgentAction.CREATE_PLAN, incident.id)
        assert (await executor.act(TECH, plan)).applied
        assert (await executor.act(TECH, plan)).status == ActStatus.SKIPPED
        assert len(await services.plans.list_for_game("game-1")) == 1

    asyncio.run(main())


def test_management_alert_once_per_breach_count(services, seed, clock):
    async def main():
        await seed()
        executor = _executor(services, clock)
        alert = _decision(AgentAction.ESCALATE_MANAGEMENT, breach_count=3, incident_ids=["a", "b", "c"])

        assert (await executor.act(BOSS, alert)).applied
        assert (await executor.act(BOSS, alert)).status == ActStatus.SKIPPED
        assert (await executor.act(BOSS, _decision(AgentAction.ESCALATE_MANAGEMENT, breach_count=4))).applied

        raised = await services.event_log.list_for_team("game-1", "team-a", [EventType.MANAGEMENT_ESCALATED])
        assert [e.payload["breach_count"] for e in raised] == [3, 4]

    asyncio.run(main())


def test_rejected_action_is_reported_not_raised(services, seed, clock):
    async def main():
        await seed()
        incident = await services.incident_service.create_incident("game-1", "team-a", "Queue backlog")

        outcome = await _executor(services, clock).act(
            DESK, _decision(AgentAction.RESOLVE, incident.id, resolution="Too early")
        )

        assert outcome.status == ActStatus.FAILED
        assert outcome.to_dict()["status"] == "failed"
        assert (await services.incident_service.get(incident.id)).status == IncidentStatus.OPEN

    asyncio.run(main())


# ========== Full team ==========

def test_team_works_an_incident_end_to_end(services, seed, rng, run_grading):
    async def main():
        await seed()
        incident = await services.incident_service.create_incident(
            "game-1", "team-a", "Payments database crash", priority="critical"
        )
        agents = services.agents.create_team_agents("game-1", "team-a")
        assert [a.profile.role for a in agents] == [AgentRole.SERVICE_DESK, AgentRole.TECH_OPS, AgentRole.MANAGEMENT]

        first = await services.agents.run_team_cycle("team-a")
        assert [o.decision.rule for o in first] == ["escalate_critical", "start_urgent_incident"]

        second = await services.agents.run_team_cycle("team-a")
        assert [o.decision.rule for o in second] == ["plan_critical_incident"]

        third = await services.agents.run_team_cycle("team-a")
        assert [o.decision.rule for o in third] == ["submit_draft_plan"]
        await run_grading()

        fourth = await services.agents.run_team_cycle("team-a")
        assert [o.decision.rule for o in fourth] == ["raise_change_for_approved_plan", "review_pending_change"]
        [change] = await services.changes.list_for_game("game-1")
        assert change.status == ChangeStatus.APPROVED

        rng.queued = [0.99]
        fifth = await services.agents.run_team_cycle("team-a")
        assert [o.decision.rule for o in fifth] == ["implement_approved_change"]
        assert (await services.change_service.get(change.id)).status == ChangeStatus.COMPLETED
        assert (await services.plans.list_for_game("game-1"))[0].status == PlanStatus.COMPLETED

        sixth = await services.agents.run_team_cycle("team-a")
        assert [o.decision.rule for o in sixth] == ["resolve_after_change"]
        assert (await services.incident_service.get(incident.id)).status == IncidentStatus.RESOLVED

        tech = services.agents.agents_for_team("team-a")[1]
        assert tech.actions_applied == 5
        assert tech.cycles == 6

    asyncio.run(main())


def test_breach_wave_alerts_management_once(services, seed, clock):
    async def main():
        await seed()
        for title in ("API down", "Queue down", "Cache down"):
            await services.incident_service.create_incident("game-1", "team-a", title, priority="critical")
        clock.advance(minutes=16)
        agent = services.agents.create_agent("game-1", "team-a", "management")

        [alert] = await services.agents.run_team_cycle("team-a")
        assert alert.decision.rule == "escalate_breach_wave"
        assert alert.decision.params["breach_count"] == 3

        assert await services.agents.run_team_cycle("team-a") == []
        assert agent.last_decision is None
        assert agent.cycles == 2

    asyncio.run(main())


# ========== Manager ==========

class StubCycle:
    """Cycle that fails a set number of times, optionally for one team only."""

    def __init__(self, failures=0, error=None, failing_team=None):
        self.failures = failures
        self.error = error
        self.failing_team = failing_team
        self.calls = 0

    async def run(self, agent):
        self.calls += 1
        if self.failing_team == agent.profile.team_id:
            raise self.error
        if self.calls <= self.failures:
            raise ConcurrentModification("incident", "inc-1", "open")
        decision = Decision(AgentAction.START_WORK, "inc-1", "stub", 1, "stub")
        outcome = ActionOutcome(decision, ActStatus.APPLIED)
        agent.record(decision, outcome)
        return outcome


def test_lost_race_retries_the_whole_cycle(services):
    async def main():
        cycle = StubCycle(failures=2)
        manager = AgentManager(cycle, services.teams, max_cycle_retries=2)
        manager.create_agent("game-1", "team-a", "tech_ops")

        outcomes = await manager.run_team_cycle("team-a")

        assert len(outcomes) == 1
        assert cycle.calls == 3

    asyncio.run(main())


def test_cycle_abandoned_after_retries(services):
    async def main():
        cycle = StubCycle(failures=10)
        manager = AgentManager(cycle, services.teams, max_cycle_retries=2)
        manager.create_agent("game-1", "team-a", "tech_ops")

        assert await manager.run_team_cycle("team-a") == []
        assert cycle.calls == 3

    asyncio.run(main())


def test_failing_team_does_not_stop_the_tick(services):
    async def main():
        cycle = StubCycle(error=RuntimeError("boom"), failing_team="team-b")
        manager = AgentManager(cycle, services.teams)
        manager.create_team_agents("game-1", "team-a", roles=["service_desk"])
        manager.create_team_agents("game-1", "team-b", roles=["service_desk"])

        results = await manager.tick("game-1")

        assert len(results["team-a"]) == 1
        assert results["team-b"] == []

    asyncio.run(main())


def test_game_agents_and_removal(services, seed):
    async def main():
        await seed(team_ids=("team-a", "team-b"))

        agents = await services.agents.create_game_agents("game-1", roles=["tech_ops"], personality="cautious")

        assert [a.profile.name for a in agents] == ["tech_ops:team-a", "tech_ops:team-b"]
        assert all(a.profile.personality.value == "cautious" for a in agents)
        assert services.agents.status()["teams"] == ["team-a", "team-b"]

        assert services.agents.remove_team("team-a") == 1
        assert services.agents.agents_for_team("team-a") == []

    asyncio.run(main())

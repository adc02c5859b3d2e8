"""
Agent Rule Tables
=================

Each role decides with a fixed, ordered list of rules. The first rule whose
selector finds something wins; a rule's priority is its position in the
list. Nothing here scores or re-ranks candidates.

Also holds the pure judgement helpers the rules and the executor share:
- L1 keyword screening for the service desk
- workload buckets and recommendation strings
- the rule-based CAB review
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from hawkops.config import (
    AgentRole, ChangeType, IncidentStatus, Personality, PlanStatus, Priority, RiskLevel, Workload,
)
from hawkops.agents.domain.entities import AgentAction, Decision, Perception
from hawkops.workitems.domain import ChangeRequest, Incident

Selector = Callable[[Perception, Personality], Optional[Any]]

URGENT_PRIORITIES = (Priority.CRITICAL, Priority.HIGH)
HIGH_RISK = (RiskLevel.HIGH, RiskLevel.CRITICAL)

# More than this many simultaneous breaches pulls in management
MANAGEMENT_BREACH_THRESHOLD = 2


# ========== Rule Mechanism ==========

def _no_params(match: Any) -> Dict[str, Any]:
    return {}


@dataclass(frozen=True)
class Rule:
    """
    A guarded decision.

    ``select`` returns the matched item, or None to fall through.
    """
    name: str
    action: AgentAction
    select: Selector
    explain: Callable[[Any], str]
    params: Callable[[Any], Dict[str, Any]] = _no_params


class RuleTable:
    """Ordered rules for one role."""

    def __init__(self, role: AgentRole, rules: Sequence[Rule]):
        self.role = role
        self.rules: Tuple[Rule, ...] = tuple(rules)

    def evaluate(self, perception: Perception, personality: Personality) -> Optional[Decision]:
        """
        Run the rules in order and build a decision from the first match.

        Returns:
            The decision, or None when no rule matches
        """
        for position, rule in enumerate(self.rules, start=1):
            match = rule.select(perception, personality)
            if match is None:
                continue
            return Decision(
                action=rule.action,
                target=getattr(match, "id", None),
                reasoning=rule.explain(match),
                priority=position,
                rule=rule.name,
                params=rule.params(match),
            )
        return None

    def names(self) -> List[str]:
        return [rule.name for rule in self.rules]

    def __len__(self) -> int:
        return len(self.rules)


def _first(items: Iterable[Any]) -> Optional[Any]:
    return next(iter(items), None)


# ========== Service Desk Judgement ==========

L1_PATTERNS = (
    "password", "reset", "access", "login", "unlock",
    "how to", "question", "help", "training",
    "slow", "performance", "restart",
    "email", "outlook", "calendar",
    "printer", "print",
    "vpn", "connect",
)

NOT_L1_PATTERNS = (
    "server", "database", "outage", "down", "crash",
    "security", "breach", "malware", "ransomware",
    "data loss", "corruption", "backup",
    "network", "firewall", "infrastructure",
    "code", "deploy", "release", "production",
)


def can_resolve_at_l1(incident: Incident, personality: Personality) -> bool:
    """
    Whether first-line support can close this out itself.

    Exclusion keywords win over inclusion keywords; with neither present
    the decision falls back to priority.
    """
    text = f"{incident.title} {incident.description}".lower()
    if any(p in text for p in NOT_L1_PATTERNS):
        return False
    if any(p in text for p in L1_PATTERNS):
        return True
    if personality == Personality.AGGRESSIVE:
        return incident.priority in (Priority.LOW, Priority.MEDIUM)
    return incident.priority == Priority.LOW


# ========== Workload & Recommendations ==========

# Upper bound of each bucket below overloaded: low, medium, high
WORKLOAD_LIMITS = {
    AgentRole.TECH_OPS: (3, 6, 9),
    AgentRole.SERVICE_DESK: (2, 4, 6),
    AgentRole.MANAGEMENT: (4, 8, 12),
}


def classify_workload(role: AgentRole, active_count: int) -> Workload:
    low, medium, high = WORKLOAD_LIMITS[role]
    if active_count <= low:
        return Workload.LOW
    if active_count <= medium:
        return Workload.MEDIUM
    if active_count <= high:
        return Workload.HIGH
    return Workload.OVERLOADED


def build_recommendations(
    role: AgentRole,
    urgent_count: int,
    breached_count: int,
    workload: Workload,
    pending_changes: int = 0,
    plans_needing_revision: int = 0
) -> Tuple[str, ...]:
    """Short advisory strings shown alongside a perception."""
    recs: List[str] = []

    if role == AgentRole.SERVICE_DESK:
        if urgent_count > 3:
            recs.append(f"{urgent_count} urgent incidents - consider escalating lower priority items")
        if workload == Workload.OVERLOADED:
            recs.append("Team overloaded - escalate or request support")
        if breached_count:
            recs.append(f"{breached_count} SLA breach(es) - immediate escalation needed")

    elif role == AgentRole.MANAGEMENT:
        if breached_count:
            recs.append(f"{breached_count} SLA breach(es) require management attention")
        if pending_changes > 3:
            recs.append(f"{pending_changes} change requests pending - CAB review needed")
        if workload == Workload.OVERLOADED:
            recs.append("Team overloaded - consider resource allocation")

    else:
        if plans_needing_revision:
            recs.append(f"{plans_needing_revision} plan(s) returned for revision")
        if workload == Workload.OVERLOADED:
            recs.append("Technical backlog overloaded - prioritise critical incidents")

    return tuple(recs)


# ========== CAB Review ==========

MIN_IMPLEMENTATION_PLAN_LENGTH = 50
MIN_ROLLBACK_PLAN_LENGTH = 20


@dataclass(frozen=True)
class CabVerdict:
    approve: bool
    notes: str


def cab_review(change: ChangeRequest, personality: Personality, thorough_review: bool = False) -> CabVerdict:
    """
    Rule-based change advisory board decision.

    Standard low-risk changes pass. Emergency changes pass unless the board
    is cautious. Anything else needs an implementation and a rollback plan,
    and high-risk changes also need technical review notes (or an
    aggressive board). A cautious board rejects high risk it has not been
    asked to review thoroughly.
    """
    high_risk = change.risk_level in HIGH_RISK
    has_implementation = len((change.implementation_plan or "").strip()) > MIN_IMPLEMENTATION_PLAN_LENGTH
    has_rollback = len((change.rollback_plan or "").strip()) > MIN_ROLLBACK_PLAN_LENGTH
    has_tech_review = bool((change.tech_review_notes or "").strip())

    if personality == Personality.CAUTIOUS and high_risk and not thorough_review:
        return CabVerdict(False, "High-risk change requires a thorough review")

    if change.change_type == ChangeType.STANDARD and change.risk_level == RiskLevel.LOW:
        return CabVerdict(True, "Standard low-risk change approved")

    if change.change_type == ChangeType.EMERGENCY:
        if personality == Personality.CAUTIOUS:
            return CabVerdict(False, "Emergency changes require more documentation")
        return CabVerdict(True, "Emergency change approved with expedited review")

    if not (has_implementation and has_rollback):
        return CabVerdict(False, "Incomplete documentation - needs implementation and rollback plans")

    if high_risk:
        if has_tech_review or personality == Personality.AGGRESSIVE:
            return CabVerdict(True, "Approved after thorough review")
        return CabVerdict(False, "High-risk change requires technical review notes")

    return CabVerdict(True, "Change request meets all criteria")


# ========== Technical Operations ==========

def _breached_in_progress(p: Perception, personality: Personality) -> Optional[Incident]:
    if personality != Personality.AGGRESSIVE:
        return None
    return _first(i for i in p.breached() if i.status == IncidentStatus.IN_PROGRESS)


def _critical_without_plan(p: Perception, personality: Personality) -> Optional[Incident]:
    return _first(
        i for i in p.urgent
        if i.priority == Priority.CRITICAL
        and i.status == IncidentStatus.IN_PROGRESS
        and not p.snapshot.has_plan(i.id)
    )


def _plan_in(status: PlanStatus) -> Selector:
    def select(p: Perception, personality: Personality):
        return _first(p.plans_in(status))
    return select


def _urgent_open(p: Perception, personality: Personality) -> Optional[Incident]:
    return _first(i for i in p.open_items() if i.priority in URGENT_PRIORITIES)


def _resolvable_after_change(p: Perception, personality: Personality) -> Optional[Incident]:
    return _first(i for i in p.in_progress_items() if p.snapshot.has_completed_change(i.id))


def _in_progress_without_plan(p: Perception, personality: Personality) -> Optional[Incident]:
    return _first(i for i in p.in_progress_items() if not p.snapshot.has_plan(i.id))


def _any_open(p: Perception, personality: Personality) -> Optional[Incident]:
    return _first(p.open_items())


TECH_OPS_RULES = RuleTable(AgentRole.TECH_OPS, [
    Rule(
        "emergency_resolve_breached",
        AgentAction.EMERGENCY_RESOLVE,
        _breached_in_progress,
        lambda i: f"SLA breached for {i.incident_number}, quick resolution needed",
        lambda i: {"resolution": "Emergency resolution to prevent further SLA impact"},
    ),
    Rule(
        "plan_critical_incident",
        AgentAction.CREATE_PLAN,
        _critical_without_plan,
        lambda i: f"Creating implementation plan for critical incident {i.incident_number}",
    ),
    Rule(
        "submit_draft_plan",
        AgentAction.SUBMIT_PLAN,
        _plan_in(PlanStatus.DRAFT),
        lambda plan: f"Submitting plan {plan.plan_number} for review",
    ),
    Rule(
        "raise_change_for_approved_plan",
        AgentAction.CREATE_CHANGE,
        _plan_in(PlanStatus.AI_APPROVED),
        lambda plan: f"Creating change request for approved plan {plan.plan_number}",
        lambda plan: {"change_type": ChangeType.NORMAL.value},
    ),
    Rule(
        "revise_plan",
        AgentAction.REVISE_PLAN,
        _plan_in(PlanStatus.AI_NEEDS_REVISION),
        lambda plan: f"Revising plan {plan.plan_number} based on review feedback",
    ),
    Rule(
        "start_urgent_incident",
        AgentAction.START_WORK,
        _urgent_open,
        lambda i: f"Starting investigation of {i.priority.value} incident {i.incident_number}",
    ),
    Rule(
        "resolve_after_change",
        AgentAction.RESOLVE,
        _resolvable_after_change,
        lambda i: f"Resolving {i.incident_number} - change approved and implemented",
        lambda i: {"resolution": "Resolved after implementing approved change"},
    ),
    Rule(
        "plan_in_progress_incident",
        AgentAction.CREATE_PLAN,
        _in_progress_without_plan,
        lambda i: f"Creating implementation plan for {i.incident_number}",
    ),
    Rule(
        "start_open_incident",
        AgentAction.START_WORK,
        _any_open,
        lambda i: f"Starting work on incident {i.incident_number}",
    ),
])


# ========== Service Desk ==========

def _unescalated(incidents: Iterable[Incident]) -> Iterable[Incident]:
    return (i for i in incidents if i.escalation_level == 0)


def _breached_unescalated(p: Perception, personality: Personality) -> Optional[Incident]:
    return _first(_unescalated(p.breached()))


def _critical_open(p: Perception, personality: Personality) -> Optional[Incident]:
    return _first(i for i in p.urgent if i.priority == Priority.CRITICAL and i.status == IncidentStatus.OPEN)


def _critical_open_to_start(p: Perception, personality: Personality) -> Optional[Incident]:
    if personality != Personality.AGGRESSIVE:
        return None
    return _critical_open(p, personality)


def _critical_open_to_escalate(p: Perception, personality: Personality) -> Optional[Incident]:
    if personality == Personality.AGGRESSIVE:
        return None
    return _first(_unescalated(
        i for i in p.urgent if i.priority == Priority.CRITICAL and i.status == IncidentStatus.OPEN
    ))


def _high_at_risk_open(p: Perception, personality: Personality) -> Optional[Incident]:
    return _first(
        i for i in p.urgent
        if i.priority == Priority.HIGH and p.is_at_risk(i) and i.status == IncidentStatus.OPEN
    )


def _high_at_risk_beyond_l1(p: Perception, personality: Personality) -> Optional[Incident]:
    return _first(_unescalated(
        i for i in p.urgent
        if i.priority == Priority.HIGH
        and p.is_at_risk(i)
        and i.status == IncidentStatus.IN_PROGRESS
        and not can_resolve_at_l1(i, personality)
    ))


def _oldest_open(p: Perception, personality: Personality) -> Optional[Incident]:
    return _first(sorted(p.open_items(), key=lambda i: i.created_at))


def _l1_resolvable(p: Perception, personality: Personality) -> Optional[Incident]:
    return _first(i for i in p.in_progress_items() if can_resolve_at_l1(i, personality))


def _beyond_l1(p: Perception, personality: Personality) -> Optional[Incident]:
    return _first(_unescalated(i for i in p.in_progress_items() if not can_resolve_at_l1(i, personality)))


def _escalation_params(reason: str) -> Callable[[Incident], Dict[str, Any]]:
    def params(incident: Incident) -> Dict[str, Any]:
        return {"reason": reason, "from_level": incident.escalation_level}
    return params


SERVICE_DESK_RULES = RuleTable(AgentRole.SERVICE_DESK, [
    Rule(
        "escalate_breached",
        AgentAction.ESCALATE,
        _breached_unescalated,
        lambda i: f"SLA breached for {i.incident_number}, escalating immediately",
        _escalation_params("SLA breached - requires immediate attention"),
    ),
    Rule(
        "start_critical",
        AgentAction.START_WORK,
        _critical_open_to_start,
        lambda i: f"Starting work on critical incident {i.incident_number}",
    ),
    Rule(
        "escalate_critical",
        AgentAction.ESCALATE,
        _critical_open_to_escalate,
        lambda i: f"Critical incident {i.incident_number} needs Tech Ops",
        _escalation_params("Critical priority requires technical investigation"),
    ),
    Rule(
        "start_high_at_risk",
        AgentAction.START_WORK,
        _high_at_risk_open,
        lambda i: f"SLA at risk for {i.incident_number}, starting work",
    ),
    Rule(
        "escalate_high_at_risk",
        AgentAction.ESCALATE,
        _high_at_risk_beyond_l1,
        lambda i: f"Escalating {i.incident_number} before SLA breach",
        _escalation_params("SLA at risk, needs technical expertise"),
    ),
    Rule(
        "start_oldest_open",
        AgentAction.START_WORK,
        _oldest_open,
        lambda i: f"Processing oldest open incident {i.incident_number}",
    ),
    Rule(
        "resolve_l1",
        AgentAction.RESOLVE,
        _l1_resolvable,
        lambda i: f"Resolving L1 incident {i.incident_number}",
        lambda i: {"resolution": "Resolved by Service Desk following standard procedures"},
    ),
    Rule(
        "escalate_beyond_l1",
        AgentAction.ESCALATE,
        _beyond_l1,
        lambda i: f"Escalating complex incident {i.incident_number}",
        _escalation_params("Requires technical investigation beyond L1 scope"),
    ),
])


# ========== Management ==========

def _high_risk_pending(p: Perception, personality: Personality) -> Optional[ChangeRequest]:
    return _first(c for c in p.changes_needing_review if c.risk_level in HIGH_RISK)


def _any_pending(p: Perception, personality: Personality) -> Optional[ChangeRequest]:
    return _first(p.changes_needing_review)


def _ready_change(p: Perception, personality: Personality) -> Optional[ChangeRequest]:
    return _first(p.changes_ready)


def _breach_wave(p: Perception, personality: Personality) -> Optional[Tuple[Incident, ...]]:
    if personality == Personality.AGGRESSIVE:
        return None
    breached = p.breached()
    if len(breached) <= MANAGEMENT_BREACH_THRESHOLD:
        return None
    # Raise once per new high-water mark of simultaneous breaches
    if len(breached) <= p.snapshot.escalated_breach_count:
        return None
    return breached


MANAGEMENT_RULES = RuleTable(AgentRole.MANAGEMENT, [
    Rule(
        "review_high_risk_change",
        AgentAction.REVIEW_CHANGE,
        _high_risk_pending,
        lambda c: f"High-risk change {c.change_number} needs thorough review",
        lambda c: {"thorough_review": True},
    ),
    Rule(
        "review_pending_change",
        AgentAction.REVIEW_CHANGE,
        _any_pending,
        lambda c: f"Reviewing change request {c.change_number}",
    ),
    Rule(
        "implement_approved_change",
        AgentAction.IMPLEMENT_CHANGE,
        _ready_change,
        lambda c: f"Implementing approved change {c.change_number}",
    ),
    Rule(
        "escalate_breach_wave",
        AgentAction.ESCALATE_MANAGEMENT,
        _breach_wave,
        lambda breached: "Too many SLA breaches, needs executive attention",
        lambda breached: {
            "reason": f"Multiple SLA breaches ({len(breached)}), management attention needed",
            "breach_count": len(breached),
            "incident_ids": [i.id for i in breached],
        },
    ),
])


ROLE_RULES: Dict[AgentRole, RuleTable] = {
    AgentRole.TECH_OPS: TECH_OPS_RULES,
    AgentRole.SERVICE_DESK: SERVICE_DESK_RULES,
    AgentRole.MANAGEMENT: MANAGEMENT_RULES,
}

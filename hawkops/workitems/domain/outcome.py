"""
Change Implementation Outcome
=============================

The only intentionally random step in the simulation: whether a change
request that has started succeeds.

The random source is injected so tests can force either branch.
"""

import random
from dataclasses import dataclass
from typing import Optional, Protocol

from hawkops.config import ChangeStatus, RiskLevel


class RandomSource(Protocol):
    """Anything with ``random() -> float in [0, 1)``; ``random.Random`` fits."""

    def random(self) -> float:
        ...


# Base failure probability by risk level
BASE_FAILURE_PROBABILITY = {
    RiskLevel.LOW: 0.05,
    RiskLevel.MEDIUM: 0.15,
    RiskLevel.HIGH: 0.30,
    RiskLevel.CRITICAL: 0.45,
}

# Discount applied for each artifact present on the change
IMPLEMENTATION_PLAN_FACTOR = 0.7
ROLLBACK_PLAN_FACTOR = 0.8
TEST_PLAN_FACTOR = 0.9

SUCCESS_POINTS = {
    RiskLevel.LOW: 50,
    RiskLevel.MEDIUM: 100,
    RiskLevel.HIGH: 150,
    RiskLevel.CRITICAL: 200,
}

FAILURE_PENALTY = {
    RiskLevel.LOW: -25,
    RiskLevel.MEDIUM: -50,
    RiskLevel.HIGH: -100,
    RiskLevel.CRITICAL: -150,
}


@dataclass(frozen=True)
class ChangeOutcome:
    """Result of one implementation draw."""
    success: bool
    failure_probability: float
    roll: float
    status: ChangeStatus
    points: int


def _present(text: Optional[str]) -> bool:
    return bool(text and text.strip())


class ChangeOutcomeModel:
    """
    Bernoulli draw against a risk-derived failure probability.

    Usage:
        model = ChangeOutcomeModel(random.Random(42))
        outcome = model.draw(change)
    """

    def __init__(self, rng: Optional[RandomSource] = None):
        self._rng = rng or random.Random()

    @staticmethod
    def failure_probability(
        risk_level: str,
        implementation_plan: Optional[str] = None,
        rollback_plan: Optional[str] = None,
        test_plan: Optional[str] = None
    ) -> float:
        """
        Final failure probability after artifact discounts.

        Example:
            high risk with all three artifacts: 0.30 x 0.7 x 0.8 x 0.9 = 0.1512
        """
        probability = BASE_FAILURE_PROBABILITY[RiskLevel(risk_level)]
        if _present(implementation_plan):
            probability *= IMPLEMENTATION_PLAN_FACTOR
        if _present(rollback_plan):
            probability *= ROLLBACK_PLAN_FACTOR
        if _present(test_plan):
            probability *= TEST_PLAN_FACTOR
        return probability

    @staticmethod
    def outcome_points(risk_level: str, status: str) -> int:
        """Score delta for a terminal change status; zero for non-terminal ones."""
        status = ChangeStatus(status)
        risk = RiskLevel(risk_level)
        if status == ChangeStatus.COMPLETED:
            return SUCCESS_POINTS[risk]
        if status in (ChangeStatus.FAILED, ChangeStatus.ROLLED_BACK):
            return FAILURE_PENALTY[risk]
        return 0

    def draw(self, change) -> ChangeOutcome:
        """
        Decide how an in-progress change ends.

        A failed change with a rollback plan is rolled back; without one it
        is marked failed.

        Args:
            change: ChangeRequest (or anything with the same artifact fields)

        Returns:
            ChangeOutcome with the terminal status to apply
        """
        probability = self.failure_probability(
            change.risk_level,
            change.implementation_plan,
            change.rollback_plan,
            change.test_plan,
        )
        roll = self._rng.random()
        success = roll >= probability

        if success:
            status = ChangeStatus.COMPLETED
        elif _present(change.rollback_plan):
            status = ChangeStatus.ROLLED_BACK
        else:
            status = ChangeStatus.FAILED

        return ChangeOutcome(
            success=success,
            failure_probability=probability,
            roll=roll,
            status=status,
            points=self.outcome_points(change.risk_level, status),
        )

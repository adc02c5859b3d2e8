import random
from types import SimpleNamespace

import pytest

from hawkops.config import ChangeStatus
from hawkops.workitems.domain import ChangeOutcomeModel


class FixedRoll:
    def __init__(self, value):
        self.value = value

    def random(self):
        return self.value


def _change(risk="high", impl="Drain, patch, restore", rollback="Restore snapshot", test="Smoke suite"):
    return SimpleNamespace(risk_level=risk, implementation_plan=impl, rollback_plan=rollback, test_plan=test)


def test_failure_probability_applies_artifact_discounts():
    assert ChangeOutcomeModel.failure_probability("high", "a", "b", "c") == pytest.approx(0.1512)
    assert ChangeOutcomeModel.failure_probability("critical") == pytest.approx(0.45)
    assert ChangeOutcomeModel.failure_probability("low", "plan") == pytest.approx(0.035)


def test_whitespace_artifacts_do_not_count():
    assert ChangeOutcomeModel.failure_probability("medium", "   ", "\n", "") == pytest.approx(0.15)


def test_roll_at_or_above_probability_succeeds():
    model = ChangeOutcomeModel(FixedRoll(0.1512))

    outcome = model.draw(_change())

    assert outcome.success
    assert outcome.status == ChangeStatus.COMPLETED
    assert outcome.points == 150


def test_failure_with_rollback_plan_rolls_back():
    outcome = ChangeOutcomeModel(FixedRoll(0.01)).draw(_change())

    assert not outcome.success
    assert outcome.status == ChangeStatus.ROLLED_BACK
    assert outcome.points == -100


def test_failure_without_rollback_plan_fails():
    outcome = ChangeOutcomeModel(FixedRoll(0.01)).draw(_change(risk="critical", rollback=None))

    assert outcome.status == ChangeStatus.FAILED
    assert outcome.points == -150


def test_points_for_non_terminal_status_are_zero():
    assert ChangeOutcomeModel.outcome_points("low", "approved") == 0
    assert ChangeOutcomeModel.outcome_points("low", "completed") == 50
    assert ChangeOutcomeModel.outcome_points("medium", "rolled_back") == -50


def test_observed_failure_rate_matches_probability():
    model = ChangeOutcomeModel(random.Random(1234))
    change = _change()
    draws = 20000

    failures = sum(1 for _ in range(draws) if not model.draw(change).success)

    assert failures / draws == pytest.approx(0.1512, abs=0.01)

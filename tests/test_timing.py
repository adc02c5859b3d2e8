from datetime import timedelta

import pytest
from pydantic import ValidationError

from hawkops.config import VALID_ESCALATION_LEVELS, VALID_PRIORITIES, WarningLevel
from hawkops.timing.application import TimingService
from hawkops.timing.domain import TimeScaler, TimeScalingConfig
from hawkops.timing.infrastructure import StaticTimingConfigProvider

from conftest import START


def test_sla_targets_scale_with_session_length():
    assert TimeScaler.sla_target("critical", 75) == 15
    assert TimeScaler.sla_target("high", 75) == 26
    assert TimeScaler.sla_target("medium", 75) == 41
    assert TimeScaler.sla_target("low", 75) == 60


def test_sla_targets_clamp_to_bounds():
    short = {p: TimeScaler.sla_target(p, 30) for p in VALID_PRIORITIES}
    long = {p: TimeScaler.sla_target(p, 200) for p in VALID_PRIORITIES}

    assert short == {"critical": 8, "high": 12, "medium": 20, "low": 30}
    assert long == {"critical": 25, "high": 40, "medium": 55, "low": 75}


def test_half_minutes_round_up():
    # 75 x 0.30 = 22.5
    assert TimeScaler.challenge_window("quick", 75) == 23
    assert TimeScaler.challenge_window("standard", 75) == 38
    assert TimeScaler.challenge_window("long", 75) == 56


@pytest.mark.parametrize("duration", range(5, 301, 5))
def test_threshold_chain_holds_for_every_duration(duration):
    for priority in VALID_PRIORITIES:
        chain = [TimeScaler.at_risk_threshold(priority, duration)]
        chain += [TimeScaler.escalation_threshold(priority, lvl, duration) for lvl in VALID_ESCALATION_LEVELS]
        chain.append(TimeScaler.sla_target(priority, duration))
        assert all(a < b for a, b in zip(chain, chain[1:])), (priority, chain)


def test_escalation_thresholds_are_fractions_of_the_scaled_target():
    assert TimeScaler.escalation_thresholds("critical", 75) == {"L1": 7, "L2": 11, "L3": 14}
    assert TimeScaler.at_risk_threshold("critical", 75) == 4


def test_sla_deadline_adds_scaled_target():
    assert TimeScaler.sla_deadline(START, "high", 75) == START + timedelta(minutes=26)


def test_challenge_window_is_capped_to_remaining_time():
    assert TimeScaler.challenge_window("long", 75, remaining_minutes=20) == 18
    assert TimeScaler.challenge_window("long", 75, remaining_minutes=6) == 5
    assert TimeScaler.challenge_window("quick", 75, remaining_minutes=60) == 23


def test_challenge_interval():
    assert TimeScaler.challenge_interval(75) == (11, 19)
    assert TimeScaler.challenge_interval(20) == (8, 8)
    assert TimeScaler.challenge_interval(1) == (8, 8)


def test_non_positive_duration_is_rejected():
    with pytest.raises(ValueError):
        TimeScaler.sla_target("high", 0)
    with pytest.raises(ValueError):
        TimeScaler.challenge_window("quick", -10)


def test_warning_levels():
    assert TimeScaler.warning_level(0, 10) == WarningLevel.BREACHED
    assert TimeScaler.warning_level(1, 10) == WarningLevel.RED
    assert TimeScaler.warning_level(3, 10) == WarningLevel.YELLOW
    assert TimeScaler.warning_level(8, 10) == WarningLevel.GREEN


def test_game_timing_report():
    timing = TimeScaler.game_timing(75, rounds=4).to_dict()

    assert timing["sla_targets"]["critical"] == 15
    assert timing["escalation_thresholds"]["critical"]["L3"] == 14
    assert timing["challenge_interval"] == {"min_minutes": 11, "max_minutes": 19}
    assert timing["rounds"] == {"count": 4, "round_minutes": 19, "snapshot_interval_minutes": 19}
    assert {r["name"] for r in timing["escalation_rules"]} >= {"critical_l1", "high_l2"}


def test_escalation_rules_notify_roles():
    rules = {r.name: r for r in TimeScaler.escalation_rules(75)}

    assert list(rules) == ["critical_l1", "critical_l2", "high_l1", "high_l2", "medium_l1"]
    assert rules["critical_l1"].notify == ("manager", "lead")
    assert rules["critical_l2"].notify == ("director", "vp")
    assert rules["high_l1"].notify == ("manager",)
    assert rules["high_l2"].notify == ("director",)
    assert rules["medium_l1"].notify == ("lead",)
    assert rules["critical_l1"].after_minutes < rules["critical_l2"].after_minutes


def test_escalation_level_for_age():
    timing = TimingService(StaticTimingConfigProvider())

    assert timing.escalation_level_for_age("critical", 6, 75) == 0
    assert timing.escalation_level_for_age("critical", 7, 75) == 1
    assert timing.escalation_level_for_age("critical", 11, 75) == 2
    assert timing.escalation_level_for_age("critical", 30, 75) == 3


def test_table_with_unordered_fractions_is_rejected():
    with pytest.raises(ValidationError):
        TimeScalingConfig(escalation_fractions={"L1": 0.5, "L2": 0.5, "L3": 0.9})


def test_table_breaking_threshold_chain_is_rejected():
    with pytest.raises(ValidationError):
        TimeScalingConfig(at_risk={"percent": 0.6, "min": 2, "max": 40})


def test_missing_priority_rows_take_defaults():
    config = TimeScalingConfig(sla_targets={"critical": {"percent": 0.2, "min": 10, "max": 25}})

    assert TimeScaler.sla_target("critical", 30, config) == 10
    assert TimeScaler.sla_target("low", 30, config) == 30

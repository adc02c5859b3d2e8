import pytest
import yaml

from hawkops.core import ConfigurationException
from hawkops.timing.application import TimingService
from hawkops.timing.infrastructure import TimingConfigManager


def _write(path, data):
    path.write_text(yaml.safe_dump(data))


def test_missing_file_uses_built_in_table(tmp_path):
    manager = TimingConfigManager()
    manager.load(tmp_path / "absent.yaml")

    assert TimingService(manager).sla_target("critical", 75) == 15


def test_reload_picks_up_edited_table(tmp_path):
    path = tmp_path / "timing.yaml"
    _write(path, {"sla_targets": {"critical": {"percent": 0.2, "min": 8, "max": 25}}})
    manager = TimingConfigManager()
    manager.load(path)
    timing = TimingService(manager)
    assert timing.sla_target("critical", 150) == 25

    _write(path, {"sla_targets": {"critical": {"percent": 0.1, "min": 8, "max": 25}}})

    assert manager.reload() is True
    assert timing.sla_target("critical", 150) == 15
    assert manager.version == 2


def test_invalid_reload_keeps_previous_table(tmp_path):
    path = tmp_path / "timing.yaml"
    _write(path, {"red_threshold": 0.1, "yellow_threshold": 0.3})
    manager = TimingConfigManager()
    manager.load(path)

    _write(path, {"escalation_fractions": {"L1": 0.9, "L2": 0.5, "L3": 0.95}})

    assert manager.reload() is False
    assert manager.version == 1
    assert manager.get_config().red_threshold == 0.1
    assert manager.get_config().escalation_fractions["L1"] == 0.5


def test_invalid_initial_table_is_a_configuration_error(tmp_path):
    path = tmp_path / "timing.yaml"
    _write(path, {"red_threshold": 0.5, "yellow_threshold": 0.2})

    with pytest.raises(ConfigurationException):
        TimingConfigManager().load(path)


def test_reading_before_load_fails():
    with pytest.raises(RuntimeError):
        TimingConfigManager().get_config()


def test_shipped_table_is_valid():
    from pathlib import Path

    manager = TimingConfigManager()
    config = manager.load(Path(__file__).resolve().parent.parent / "timing_config.yaml")

    assert set(config.sla_targets) == {"critical", "high", "medium", "low"}

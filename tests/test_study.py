import math

import pytest

from kairpodsd.protocol import NoiseControlMode
from kairpodsd.study import (
    BatteryStudy,
    DeviceStudy,
    StudyNotFoundError,
    db_path,
)

TEST_ADDRESS = "AA:BB:CC:DD:EE:FF"


@pytest.fixture
def study(tmp_path):
    handle = BatteryStudy.open(tmp_path / "battery_study.db")
    yield handle
    handle.close()


def test_create_and_get_study(study):
    result = study.get_or_create_study(TEST_ADDRESS, "Test AirPods")
    assert result.device_name == "Test AirPods"
    assert result.total_sessions == 0
    assert result.total_samples == 0


def test_update_drain_rate(study):
    study.get_or_create_study(TEST_ADDRESS, "Test AirPods")
    study.update_drain_rate(TEST_ADDRESS, NoiseControlMode.ACTIVE, 12.5, 10)

    rate, confidence = study.get_drain_rate(TEST_ADDRESS, NoiseControlMode.ACTIVE)
    assert abs(rate - 12.5) < 0.001
    assert confidence == 0.0

    study.update_drain_rate(TEST_ADDRESS, NoiseControlMode.ACTIVE, 11.5, 10)
    rate, confidence = study.get_drain_rate(TEST_ADDRESS, NoiseControlMode.ACTIVE)
    assert abs(rate - 12.0) < 0.001
    assert confidence < math.inf
    assert confidence > 0.0


def test_update_counts_samples(study):
    study.get_or_create_study(TEST_ADDRESS, "Test AirPods")
    study.update_drain_rate(TEST_ADDRESS, NoiseControlMode.ACTIVE, 12.5, 10)
    study.update_drain_rate(TEST_ADDRESS, NoiseControlMode.OFF, 8.0, 4)
    stored = study.get_or_create_study(TEST_ADDRESS, "ignored")
    assert stored.total_samples == 14
    assert len(stored.drain_rates) == 2
    assert stored.drain_rates.get(NoiseControlMode.OFF).samples == 4


def test_single_sample_has_infinite_confidence(study):
    study.get_or_create_study(TEST_ADDRESS, "Test AirPods")
    study.update_drain_rate(TEST_ADDRESS, NoiseControlMode.OFF, 10.0, 1)
    assert study.get_drain_rate(TEST_ADDRESS, NoiseControlMode.OFF) == (10.0, math.inf)


def test_unknown_mode_and_device_give_none(study):
    assert study.get_drain_rate(TEST_ADDRESS, NoiseControlMode.ACTIVE) is None
    study.get_or_create_study(TEST_ADDRESS, "Test AirPods")
    assert study.get_drain_rate(TEST_ADDRESS, NoiseControlMode.TRANSPARENCY) is None


def test_update_without_study_raises(study):
    with pytest.raises(StudyNotFoundError):
        study.update_drain_rate(TEST_ADDRESS, NoiseControlMode.ACTIVE, 12.5, 10)


def test_increment_session_count(study):
    study.increment_session_count(TEST_ADDRESS)  # no study yet: nothing happens
    study.get_or_create_study(TEST_ADDRESS, "Test AirPods")
    study.increment_session_count(TEST_ADDRESS)
    study.increment_session_count(TEST_ADDRESS)
    assert study.get_or_create_study(TEST_ADDRESS, "x").total_sessions == 2


def test_data_survives_reopen(tmp_path):
    path = tmp_path / "db"
    with BatteryStudy.open(path) as first:
        first.get_or_create_study(TEST_ADDRESS, "Test AirPods")
        first.update_drain_rate(TEST_ADDRESS, NoiseControlMode.ADAPTIVE, 9.0, 5)
        before = first.get_or_create_study(TEST_ADDRESS, "x")
    with BatteryStudy.open(path) as second:
        after = second.get_or_create_study(TEST_ADDRESS, "x")
    assert isinstance(after, DeviceStudy)
    assert after == before
    assert after.device_name == "Test AirPods"


def test_bytes_and_string_addresses_agree(study):
    study.get_or_create_study(TEST_ADDRESS, "Test AirPods")
    raw = bytes([0xAA, 0xBB, 0xCC, 0xDD, 0xEE, 0xFF])
    assert study.get_or_create_study(raw, "other").device_name == "Test AirPods"


@pytest.mark.parametrize("address", ["AA:BB:CC", "not an address", "GG:BB:CC:DD:EE:FF"])
def test_invalid_address_rejected(study, address):
    with pytest.raises(ValueError):
        study.get_or_create_study(address, "x")


def test_db_path_override(monkeypatch, tmp_path):
    target = tmp_path / "custom"
    monkeypatch.setenv("AIRPODS_BATTERY_DB_PATH", str(target))
    assert db_path() == target
    with BatteryStudy.open() as handle:
        handle.get_or_create_study(TEST_ADDRESS, "Test AirPods")
    assert target.is_dir()


def test_db_path_default(monkeypatch):
    monkeypatch.delenv("AIRPODS_BATTERY_DB_PATH", raising=False)
    path = db_path()
    assert path.name == "battery_study.db"
    assert path.parent.name == "kairpods"
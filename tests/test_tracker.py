import time

import pytest

from kairpodsd.protocol import BatteryInfo, BatteryState, BatteryStatus, NoiseControlMode
from kairpodsd.study import BatteryStudy
from kairpodsd.tracker import (
    BATTERY_HISTORY_SIZE,
    BatteryHistory,
    BatteryTracker,
    calculate_slope,
)

TEST_ADDRESS = "00:11:22:33:44:55"


class FakeClock:
    def __init__(self) -> None:
        self.now = time.monotonic() + 10.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def state(level, charging=False):
    return BatteryState(
        level=level, status=BatteryStatus.CHARGING if charging else BatteryStatus.NORMAL
    )


def info(left, right, case=80):
    return BatteryInfo(left=left, right=right, case=state(case))


@pytest.fixture
def study(tmp_path):
    handle = BatteryStudy.open(tmp_path / "battery_study.db")
    yield handle
    handle.close()


def feed(tracker, clock, levels, step=900):
    for i, level in enumerate(levels):
        if i:
            clock.advance(step)
        tracker.record_battery_drop(state(level), state(level))


def test_battery_history_ring_buffer():
    history = BatteryHistory()
    base = time.monotonic()
    assert len(history) == 0
    assert history.last_level() is None
    for i in range(5):
        history.push(base + i * 60, 100 - i)
    assert len(history) == 5
    assert history.last_level() == 96
    samples = list(history)
    assert len(samples) == 5
    assert samples[0][1] == 100
    assert samples[4][1] == 96


def test_battery_history_wraparound():
    history = BatteryHistory()
    base = time.monotonic()
    for i in range(80):
        history.push(base + i * 60, 100 - i)
    assert len(history) == BATTERY_HISTORY_SIZE
    samples = list(history)
    assert len(samples) == BATTERY_HISTORY_SIZE
    assert samples[0][1] == 52


def test_history_records_only_drops():
    history = BatteryHistory()
    base = time.monotonic()
    history.record_battery_drop(90, base)
    history.record_battery_drop(90, base + 60)
    history.record_battery_drop(95, base + 120)
    history.record_battery_drop(88, base + 180)
    assert [level for _, level in history] == [90, 88]


def test_history_truncate_and_oldest():
    history = BatteryHistory()
    base = time.monotonic()
    for i in range(8):
        history.push(base + i * 60, 100 - i)
    history.truncate_front(3)
    assert [level for _, level in history] == [95, 94, 93]
    assert history.oldest_timestamp() <= base + 5 * 60
    history.clear()
    assert history.oldest_timestamp() is None


def test_calculate_slope_values():
    assert calculate_slope([(0, 100), (3600, 90)]) == pytest.approx(10.0)
    assert calculate_slope([(0, 100)]) is None
    assert calculate_slope([(0, 90), (3600, 95)]) is None
    assert calculate_slope([(100, 90), (100, 80)]) is None


def test_calculate_drain_rate_requires_samples():
    history = BatteryHistory()
    base = time.monotonic()
    for i in range(3):
        history.push(base + i * 900, 100 - 2 * i)
    assert history.calculate_drain_rate(4, None) is None
    history.push(base + 3 * 900, 94)
    rate, alpha = history.calculate_drain_rate(4, None)
    assert rate == pytest.approx(8.0)
    assert alpha == 0.1


def test_battery_tracker_ttl_when_charging():
    tracker = BatteryTracker(None)
    battery = info(state(50, charging=True), state(60))
    assert tracker.estimate_ttl(battery, NoiseControlMode.OFF, TEST_ADDRESS) is None


def test_battery_tracker_clears_on_charging():
    tracker = BatteryTracker(None)
    for i in range(5):
        level = 100 - i * 2
        tracker.record_battery_drop(state(level), state(level))
    assert len(tracker.left_history) == 5
    assert len(tracker.right_history) == 5
    tracker.record_battery_drop(state(90, charging=True), state(90))
    assert len(tracker.left_history) == 0
    assert len(tracker.right_history) == 6


def test_battery_tracker_insufficient_data():
    tracker = BatteryTracker(None)
    for i in range(3):
        tracker.record_battery_drop(state(100 - i), state(100 - i))
    battery = info(state(97), state(97))
    assert tracker.estimate_ttl(battery, NoiseControlMode.OFF, TEST_ADDRESS) is None


def test_estimate_from_local_history_with_smoothing():
    clock = FakeClock()
    tracker = BatteryTracker(None, clock=clock)
    feed(tracker, clock, [100, 98, 96, 94, 92, 90])
    assert tracker.estimate_ttl(info(state(80), state(80)), None, TEST_ADDRESS) == 600
    assert tracker.estimate_ttl(info(state(80), state(80)), None, TEST_ADDRESS) == 600
    assert tracker.estimate_ttl(info(state(40), state(40)), None, TEST_ADDRESS) == 570


def test_estimate_unavailable_when_bud_disconnected():
    clock = FakeClock()
    tracker = BatteryTracker(None, clock=clock)
    feed(tracker, clock, [100, 98, 96, 94, 92, 90])
    battery = BatteryInfo(left=state(80), right=BatteryState())
    assert tracker.estimate_ttl(battery, None, TEST_ADDRESS) is None


def test_unreasonable_estimate_is_rejected():
    clock = FakeClock()
    tracker = BatteryTracker(None, clock=clock)
    feed(tracker, clock, [100, 99, 98, 97], step=3600)
    assert tracker.estimate_ttl(info(state(90), state(90)), None, TEST_ADDRESS) is None


def test_historical_rate_falls_back_through_modes(study):
    study.get_or_create_study(TEST_ADDRESS, "Test AirPods")
    study.update_drain_rate(TEST_ADDRESS, NoiseControlMode.OFF, 10.0, 1)
    tracker = BatteryTracker(study, clock=FakeClock())
    ttl = tracker.estimate_ttl(info(state(50), state(50)), NoiseControlMode.ADAPTIVE, TEST_ADDRESS)
    assert ttl == 300


def test_local_and_historical_rates_are_combined(study):
    study.get_or_create_study(TEST_ADDRESS, "Test AirPods")
    study.update_drain_rate(TEST_ADDRESS, NoiseControlMode.OFF, 10.0, 1)
    study.update_drain_rate(TEST_ADDRESS, NoiseControlMode.OFF, 10.0, 1)
    clock = FakeClock()
    tracker = BatteryTracker(study, clock=clock)
    feed(tracker, clock, [100, 98, 96, 94, 92, 90])
    ttl = tracker.estimate_ttl(info(state(80), state(80)), NoiseControlMode.OFF, TEST_ADDRESS)
    assert ttl == 540


def test_should_save():
    clock = FakeClock()
    tracker = BatteryTracker(None, clock=clock)
    battery = info(state(80), state(80))
    assert tracker.should_save(30, battery) is False
    feed(tracker, clock, [100, 99], step=60)
    assert tracker.should_save(1, battery) is False
    feed(tracker, clock, [98, 97, 96], step=120)
    assert tracker.should_save(30, battery) is False
    assert tracker.should_save(5, battery) is True
    assert tracker.should_save(5, info(state(80, charging=True), state(80))) is False


def test_init_session_counts_sessions(study):
    tracker = BatteryTracker(study)
    tracker.init_session(TEST_ADDRESS, "Test AirPods")
    assert study.get_or_create_study(TEST_ADDRESS, "Other").total_sessions == 0
    tracker.init_session(TEST_ADDRESS, "Test AirPods")
    device_study = study.get_or_create_study(TEST_ADDRESS, "Other")
    assert device_study.total_sessions == 1
    assert device_study.device_name == "Test AirPods"


def test_battery_tracker_integration_with_study(study):
    clock = FakeClock()
    tracker = BatteryTracker(study, clock=clock)
    tracker.init_session(TEST_ADDRESS, "Test AirPods")
    feed(tracker, clock, [100 - 2 * i for i in range(10)])
    tracker.save_to_study(TEST_ADDRESS, NoiseControlMode.ACTIVE)
    rate, confidence = study.get_drain_rate(TEST_ADDRESS, NoiseControlMode.ACTIVE)
    assert rate == pytest.approx(8.0)
    assert confidence == 0.0
    assert study.get_or_create_study(TEST_ADDRESS, "x").total_samples == 10
    assert len(tracker.left_history) == 5
    assert [level for _, level in tracker.right_history] == [90, 88, 86, 84, 82]


def test_save_without_study_still_trims():
    clock = FakeClock()
    tracker = BatteryTracker(None, clock=clock)
    feed(tracker, clock, [100 - i for i in range(8)], step=60)
    tracker.save_to_study(TEST_ADDRESS, NoiseControlMode.OFF)
    assert [level for _, level in tracker.left_history] == [97, 96, 95, 94, 93]
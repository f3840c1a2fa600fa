import threading

import pytest

from kairpodsd.events import AirPodsEvent, EventBus, EventKind, QueueEventBus
from kairpodsd.protocol import BatteryInfo, NoiseControlMode


def test_drain_returns_events_in_order():
    bus = QueueEventBus()
    first = AirPodsEvent(EventKind.DEVICE_CONNECTED)
    second = AirPodsEvent(EventKind.NOISE_CONTROL_CHANGED, NoiseControlMode.ACTIVE)
    bus.emit("dev-a", first)
    bus.emit("dev-b", second)
    assert bus.drain() == [("dev-a", first), ("dev-b", second)]


def test_drain_empties_queue():
    bus = QueueEventBus()
    bus.emit("dev", AirPodsEvent(EventKind.DEVICE_ERROR))
    bus.drain()
    assert bus.drain() == []


def test_payload_checked():
    with pytest.raises(TypeError):
        AirPodsEvent(EventKind.BATTERY_UPDATED, "full")
    with pytest.raises(TypeError):
        AirPodsEvent(EventKind.DEVICE_CONNECTED, BatteryInfo())
    event = AirPodsEvent(EventKind.DEVICE_NAME_CHANGED, "Buds")
    assert event.payload == "Buds"


def test_event_bus_is_abstract():
    with pytest.raises(TypeError):
        EventBus()


def test_concurrent_emit():
    bus = QueueEventBus()
    event = AirPodsEvent(EventKind.DEVICE_DISCONNECTED)

    def worker():
        for _ in range(200):
            bus.emit("dev", event)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(bus.drain()) == 800
"""Events describing AirPods state changes, and the bus that carries them."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any

from kairpodsd.protocol import BatteryInfo, EarDetectionStatus, NoiseControlMode


class EventKind(Enum):
    DEVICE_CONNECTED = "device_connected"
    DEVICE_DISCONNECTED = "device_disconnected"
    DEVICE_ERROR = "device_error"
    BATTERY_UPDATED = "battery_updated"
    NOISE_CONTROL_CHANGED = "noise_control_changed"
    EAR_DETECTION_CHANGED = "ear_detection_changed"
    DEVICE_NAME_CHANGED = "device_name_changed"


_PAYLOAD_TYPES: dict[EventKind, type | None] = {
    EventKind.DEVICE_CONNECTED: None,
    EventKind.DEVICE_DISCONNECTED: None,
    EventKind.DEVICE_ERROR: None,
    EventKind.BATTERY_UPDATED: BatteryInfo,
    EventKind.NOISE_CONTROL_CHANGED: NoiseControlMode,
    EventKind.EAR_DETECTION_CHANGED: EarDetectionStatus,
    EventKind.DEVICE_NAME_CHANGED: str,
}


@dataclass(frozen=True)
class AirPodsEvent:
    """An event, with the payload its kind carries."""

    kind: EventKind
    payload: Any = None

    def __post_init__(self) -> None:
        expected = _PAYLOAD_TYPES[self.kind]
        if expected is None:
            if self.payload is not None:
                raise TypeError(f"{self.kind.value} events carry no payload")
        elif not isinstance(self.payload, expected):
            raise TypeError(f"{self.kind.value} events carry a {expected.__name__}")


class EventBus(ABC):
    """Receiver of device events."""

    @abstractmethod
    def emit(self, device: Any, event: AirPodsEvent) -> None:
        """Deliver an event about ``device``."""


class QueueEventBus(EventBus):
    """Thread-safe bus that queues events until they are drained."""

    def __init__(self) -> None:
        self._queue: deque[tuple[Any, AirPodsEvent]] = deque()
        self._lock = threading.Lock()

    def emit(self, device: Any, event: AirPodsEvent) -> None:
        with self._lock:
            self._queue.append((device, event))

    def drain(self) -> list[tuple[Any, AirPodsEvent]]:
        """Remove and return every queued (device, event) pair, oldest first."""
        with self._lock:
            pending = list(self._queue)
            self._queue.clear()
        return pending
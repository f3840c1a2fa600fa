"""Recognition of AirPods among Bluetooth devices."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

AIRPOD_PATTERNS = ("airpods", "beats", "powerbeats")

APPLE_VID = 0x004C
APPLE_CID = 0x004C
PP_TYPE = 0x07
PID_OFFSET = 6

AIRPOD_PIDS = (
    0x2002,  # Beats (also some AirPods variants)
    0x200E,  # AirPods (2nd gen)
    0x200A,  # AirPods (3rd gen)
    0x200F,  # Beats Solo Pro
    0x2012,  # PowerBeats Pro
    0x2013,  # AirPods Max
    0x2014,  # AirPods Pro (2nd gen)
    0x2024,  # AirPods Pro (1st gen)
)

APPLE_SERVICES = frozenset(
    {
        uuid.UUID("0000fd6f-0000-1000-8000-00805f9b34fb"),  # Find My
        uuid.UUID("0000fd39-0000-1000-8000-00805f9b34fb"),
        uuid.UUID("0000fd32-0000-1000-8000-00805f9b34fb"),
    }
)


@dataclass(frozen=True)
class DeviceInfo:
    """What is known about a Bluetooth device; ``modalias`` is (vendor, product)."""

    modalias: tuple[int, int] | None = None
    manufacturer_data: Mapping[int, bytes] = field(default_factory=dict)
    uuids: frozenset[uuid.UUID] = frozenset()
    name: str | None = None
    alias: str | None = None


def check_manufacturer_data(data: bytes) -> bool:
    """Return whether Apple manufacturer data announces a known headphone product."""
    data = bytes(data)
    if len(data) > PID_OFFSET and data[0] == PP_TYPE:
        product_id = data[PID_OFFSET]
        return any((pid & 0xFF) == product_id for pid in AIRPOD_PIDS)
    return False


def _ascii_lower(text: str) -> str:
    return "".join(c.lower() if c.isascii() else c for c in text)


def _matching_pattern(text: str | None) -> str | None:
    if text is None:
        return None
    lowered = _ascii_lower(text)
    return next((p for p in AIRPOD_PATTERNS if p in lowered), None)


def is_device_airpods(info: DeviceInfo) -> bool:
    """Decide whether a device is AirPods, most reliable evidence first."""
    if info.modalias is not None:
        vendor, product = info.modalias
        if vendor == APPLE_VID and product in AIRPOD_PIDS:
            log.debug("AirPods detected via modalias: vendor=%#06x, product=%#06x", vendor, product)
            return True

    apple_data = info.manufacturer_data.get(APPLE_CID)
    if apple_data is not None and check_manufacturer_data(apple_data):
        log.debug("AirPods detected via manufacturer data")
        return True

    if any(u in APPLE_SERVICES for u in info.uuids):
        log.debug("AirPods detected via Apple service UUID")
        return True

    for label, text in (("name", info.name), ("alias", info.alias)):
        pattern = _matching_pattern(text)
        if pattern is not None:
            log.debug("AirPods detected via %s pattern: %s => %s", label, text, pattern)
            return True
    return False
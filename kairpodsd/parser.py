"""Parsers for packets received from AirPods over the control channel."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from kairpodsd.errors import AirPodsError
from kairpodsd.protocol import (
    HDR_BATTERY_STATE,
    HDR_EAR_DETECTION,
    HDR_METADATA,
    BatteryInfo,
    BatteryState,
    BatteryStatus,
    Component,
    EarDetectionStatus,
    NoiseControlMode,
)

log = logging.getLogger(__name__)

_COMPONENT_FIELDS = {
    Component.LEFT: "left",
    Component.RIGHT: "right",
    Component.CASE: "case",
    Component.HEADPHONE: "headphone",
}


class ProtoError(AirPodsError):
    """A packet could not be parsed."""

    default_message = "Invalid packet"


class WrongPacketTypeError(ProtoError):
    """The packet does not carry the expected header."""

    def __init__(self, expected: str) -> None:
        self.expected = expected
        super().__init__(f"Not a {expected} packet")


class PacketTooShortError(ProtoError):
    """The packet is shorter than its format requires."""

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Packet too short: expected at least {expected} bytes, got {actual}")


class InvalidBatteryCountError(ProtoError):
    """A battery packet announces more than three components."""

    def __init__(self, count: int) -> None:
        self.count = count
        super().__init__(f"Invalid battery count: {count} (must be 0-3)")


class PacketSizeMismatchError(ProtoError):
    """The packet length disagrees with what its content announces."""

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Packet size mismatch: expected {expected} bytes, got {actual} bytes")


class UnknownNoiseModeError(ProtoError):
    """The packet names a noise control mode that is not known."""

    def __init__(self, mode: int) -> None:
        self.mode = mode
        super().__init__(f"Unknown noise control mode: 0x{mode:02x}")


@dataclass(frozen=True)
class Metadata:
    """Information extracted from a metadata packet."""

    name_candidate: str | None = None


def parse_battery_status(data: bytes) -> BatteryInfo:
    """Parse a battery status packet holding up to three components."""
    data = bytes(data)
    if not data.startswith(HDR_BATTERY_STATE):
        raise WrongPacketTypeError("battery status")
    if len(data) < 7:
        raise PacketTooShortError(7, len(data))

    count = data[6]
    expected_length = 7 + 5 * count
    log.debug("Battery packet: %s", data.hex())
    log.debug(
        "Battery count: %d, expected length: %d, actual: %d", count, expected_length, len(data)
    )
    if count > 3:
        raise InvalidBatteryCountError(count)
    if len(data) != expected_length:
        raise PacketSizeMismatchError(expected_length, len(data))

    states: dict[str, BatteryState] = {}
    for i in range(count):
        offset = 7 + 5 * i
        if offset + 4 >= len(data):
            log.warning("Not enough data for component %d at offset %d", i, offset)
            continue
        comp_id, _pad1, level, status, _pad2 = data[offset : offset + 5]
        try:
            component = Component(comp_id)
        except ValueError:
            log.warning("Unknown component type 0x%02x", comp_id)
            continue
        try:
            bat_status = BatteryStatus(status)
        except ValueError:
            log.warning(
                "Unknown battery status 0x%02x for component %s, treating as Normal",
                status,
                component,
            )
            bat_status = BatteryStatus.NORMAL
        log.debug("Parsed component: %s = %d%% (%s)", component, level, bat_status)
        if bat_status != BatteryStatus.DISCONNECTED:
            states[_COMPONENT_FIELDS[component]] = BatteryState(level=level, status=bat_status)

    info = BatteryInfo(**states)
    log.debug("Battery parsed - %s", info)
    return info


def parse_noise_mode(data: bytes) -> NoiseControlMode:
    """Parse the noise control mode carried in byte 7 of a packet."""
    data = bytes(data)
    if len(data) < 8:
        raise PacketTooShortError(8, len(data))
    mode = data[7]
    try:
        return NoiseControlMode(mode)
    except ValueError:
        raise UnknownNoiseModeError(mode) from None


def parse_ear_detection(data: bytes) -> EarDetectionStatus:
    """Parse an ear detection packet."""
    data = bytes(data)
    if not data.startswith(HDR_EAR_DETECTION):
        raise WrongPacketTypeError("ear detection")
    if len(data) < 8:
        raise PacketTooShortError(8, len(data))
    left_out = data[6] == 0x01
    right_out = data[7] == 0x01
    return EarDetectionStatus(left=not left_out, right=not right_out)


def _name_from_chunk(chunk: bytes) -> str | None:
    try:
        text = chunk.decode("utf-8")
    except UnicodeDecodeError:
        return None
    stripped = text.strip()
    if any(c.isalpha() for c in text) and len(stripped.encode("utf-8")) > 2:
        return stripped
    return None


def parse_metadata(data: bytes) -> Metadata:
    """Parse a metadata packet, looking for something that reads like a device name."""
    data = bytes(data)
    if not data.startswith(HDR_METADATA):
        raise WrongPacketTypeError("metadata")
    if len(data) < 20:
        raise PacketTooShortError(20, len(data))

    payload = data[6:]
    for i in range(max(len(payload) - 5, 0)):
        name = _name_from_chunk(payload[i : i + 10])
        if name is not None:
            return Metadata(name_candidate=name)
    return Metadata()
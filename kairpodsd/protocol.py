"""AirPods protocol constants, packets and state types."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Generic, TypeVar

PKT_HANDSHAKE = bytes(
    [0x00, 0x00, 0x04, 0x00, 0x01, 0x00, 0x02, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00]
)
PKT_SET_FEATURES = bytes(
    [0x04, 0x00, 0x04, 0x00, 0x4D, 0x00, 0xD7, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00]
)
PKT_REQUEST_NOTIFY = bytes([0x04, 0x00, 0x04, 0x00, 0x0F, 0x00, 0xFF, 0xFF, 0xFF, 0xFF, 0xFF])

HDR_BATTERY_STATE = b"\x04\x00\x04\x00\x04\x00"
HDR_NOISE_CTL = b"\x04\x00\x04\x00\x09\x00\x0d"
HDR_CMD_CTL = b"\x04\x00\x04\x00\x09\x00"

HDR_ACK_HANDSHAKE = b"\x01\x00\x04\x00"
HDR_ACK_FEATURES = b"\x04\x00\x04\x00\x2b"
HDR_METADATA = b"\x04\x00\x04\x00\x1d"
HDR_EAR_DETECTION = b"\x04\x00\x04\x00\x06\x00"


class _NamedIntEnum(IntEnum):
    def __str__(self) -> str:
        return self.name.capitalize()

    def __format__(self, spec: str) -> str:
        return format(str(self), spec)


class Component(_NamedIntEnum):
    """A part of the headset that reports a battery."""

    HEADPHONE = 0x01
    RIGHT = 0x02
    LEFT = 0x04
    CASE = 0x08


class BatteryStatus(_NamedIntEnum):
    """Charging state of one component."""

    NORMAL = 0x00
    CHARGING = 0x01
    DISCHARGING = 0x02
    DISCONNECTED = 0x04


class NoiseControlMode(IntEnum):
    """Noise control modes; OFF is the default."""

    OFF = 0x01
    ACTIVE = 0x02
    TRANSPARENCY = 0x03
    ADAPTIVE = 0x04

    def to_str(self) -> str:
        return _NOISE_MODE_NAMES[self]

    def index(self) -> int:
        return self.value - 1

    @classmethod
    def from_index(cls, index: int) -> NoiseControlMode | None:
        try:
            return cls(index + 1)
        except ValueError:
            return None

    @classmethod
    def parse(cls, text: str) -> NoiseControlMode:
        """Parse a mode from its wire name ("off", "anc", ...)."""
        for mode, name in _NOISE_MODE_NAMES.items():
            if name == text:
                return mode
        raise ValueError(f"Invalid noise mode: {text!r}")

    def __str__(self) -> str:
        return self.to_str()

    def __format__(self, spec: str) -> str:
        return format(str(self), spec)


_NOISE_MODE_NAMES = {
    NoiseControlMode.OFF: "off",
    NoiseControlMode.ACTIVE: "anc",
    NoiseControlMode.TRANSPARENCY: "transparency",
    NoiseControlMode.ADAPTIVE: "adaptive",
}

V = TypeVar("V")


class NoiseControlMap(Generic[V]):
    """A small map keyed by noise control mode."""

    def __init__(self) -> None:
        self._slots: list[V | None] = [None] * len(NoiseControlMode)
        self._present: list[bool] = [False] * len(NoiseControlMode)

    def get(self, mode: NoiseControlMode) -> V | None:
        return self._slots[mode.index()]

    def insert(self, mode: NoiseControlMode, value: V) -> V | None:
        """Store ``value`` and return the value it replaced, if any."""
        i = mode.index()
        previous = self._slots[i]
        self._slots[i] = value
        self._present[i] = True
        return previous

    def get_or_insert_with(self, mode: NoiseControlMode, factory: Callable[[], V]) -> V:
        i = mode.index()
        if not self._present[i]:
            self._slots[i] = factory()
            self._present[i] = True
        return self._slots[i]  # type: ignore[return-value]

    def remove(self, mode: NoiseControlMode) -> V | None:
        i = mode.index()
        previous = self._slots[i]
        self._slots[i] = None
        self._present[i] = False
        return previous

    def items(self) -> Iterator[tuple[NoiseControlMode, V]]:
        for mode in NoiseControlMode:
            if self._present[mode.index()]:
                yield mode, self._slots[mode.index()]  # type: ignore[misc]

    def __len__(self) -> int:
        return sum(self._present)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, NoiseControlMap):
            return NotImplemented
        return list(self.items()) == list(other.items())

    def __repr__(self) -> str:
        inner = ", ".join(f"{mode.to_str()}: {value!r}" for mode, value in self.items())
        return f"NoiseControlMap({{{inner}}})"


@dataclass(frozen=True)
class FeatureId:
    """Identifier of a configurable device feature (one byte)."""

    id: int

    def __post_init__(self) -> None:
        if not 0 <= self.id <= 0xFF:
            raise ValueError(f"feature id out of range: {self.id}")

    @classmethod
    def from_name(cls, name: str) -> FeatureId:
        """Look a feature up by its name, ignoring ASCII case."""
        wanted = name.lower()
        for repr_id, known in KNOWN_FEATURES:
            if known == wanted:
                return cls(repr_id)
        raise ValueError(f"Invalid feature: {name!r}")

    def bitpos(self) -> tuple[int, int]:
        return self.id >> 6, 1 << (self.id & 0x3F)

    def try_to_str(self) -> str | None:
        return _FEATURE_NAMES.get(self.id)

    def to_str(self) -> str:
        return self.try_to_str() or f"{self.id:02x}"

    def __str__(self) -> str:
        return self.to_str()


FeatureId.MIC_MODE = FeatureId(0x01)
FeatureId.NOISE_CONTROL = FeatureId(0x0D)
FeatureId.BUTTON_SEND_MODE = FeatureId(0x05)
FeatureId.SINGLE_CLICK_MODE = FeatureId(0x14)
FeatureId.DOUBLE_CLICK_MODE = FeatureId(0x15)
FeatureId.CLICK_HOLD_MODE = FeatureId(0x16)
FeatureId.DOUBLE_CLICK_INTERVAL = FeatureId(0x17)
FeatureId.CLICK_HOLD_INTERVAL = FeatureId(0x18)
FeatureId.LISTENING_MODE_CONFIGS = FeatureId(0x1A)
FeatureId.ONE_BUD_ANC = FeatureId(0x1B)
FeatureId.CROWN_ROTATION_DIRECTION = FeatureId(0x1C)
FeatureId.AUTO_ANSWER_MODE = FeatureId(0x1E)
FeatureId.CALL_MANAGEMENT_CONFIG = FeatureId(0x24)
FeatureId.CHIME_VOLUME = FeatureId(0x1F)
FeatureId.VOLUME_INTERVAL = FeatureId(0x23)
FeatureId.VOLUME_SWIPE = FeatureId(0x25)
FeatureId.ADAPTIVE_VOLUME = FeatureId(0x26)
FeatureId.SOFTWARE_MUTE = FeatureId(0x27)
FeatureId.CONVERSATIONAL = FeatureId(0x28)
FeatureId.SSL = FeatureId(0x29)
FeatureId.HEARING_AID_SETTINGS = FeatureId(0x2C)
FeatureId.AUTO_ANC_STRENGTH = FeatureId(0x2E)
FeatureId.HPS_GAIN_SWIPE = FeatureId(0x2F)
FeatureId.HRM = FeatureId(0x30)  # heart rate monitor
FeatureId.IN_CASE_TONE = FeatureId(0x31)
FeatureId.SIRI_MULTITONE = FeatureId(0x32)
FeatureId.HEARING_ASSIST = FeatureId(0x33)
FeatureId.ALLOW_OFF = FeatureId(0x34)

KNOWN_FEATURES: tuple[tuple[int, str], ...] = (
    (0x01, "mic_mode"),
    (0x05, "button_send_mode"),
    (0x0D, "noise_control"),
    (0x14, "single_click_mode"),
    (0x15, "double_click_mode"),
    (0x16, "click_hold_mode"),
    (0x17, "double_click_interval"),
    (0x18, "click_hold_interval"),
    (0x1A, "listening_mode_configs"),
    (0x1B, "one_bud_anc"),
    (0x1C, "crown_rotation_direction"),
    (0x1E, "auto_answer_mode"),
    (0x1F, "chime_volume"),
    (0x23, "volume_interval"),
    (0x24, "call_management_config"),
    (0x25, "volume_swipe"),
    (0x26, "adaptive_volume"),
    (0x27, "software_mute"),
    (0x28, "conversational"),
    (0x29, "ssl"),
    (0x2C, "hearing_aid_settings"),
    (0x2E, "auto_anc_strength"),
    (0x2F, "hps_gain_swipe"),
    (0x30, "hrm"),
    (0x31, "in_case_tone"),
    (0x32, "siri_multitone"),
    (0x33, "hearing_assist"),
    (0x34, "allow_off"),
)

_FEATURE_NAMES = dict(KNOWN_FEATURES)


class FeatureBitmap:
    """Thread-safe set of feature ids."""

    def __init__(self) -> None:
        self._bits = 0
        self._lock = threading.Lock()

    def set(self, feature: FeatureId, enabled: bool) -> bool:
        """Set or clear a feature and return whether it was set before."""
        mask = 1 << feature.id
        with self._lock:
            previous = bool(self._bits & mask)
            if enabled:
                self._bits |= mask
            else:
                self._bits &= ~mask
        return previous

    def get(self, feature: FeatureId) -> bool:
        return bool(self._bits & (1 << feature.id))

    def __iter__(self) -> Iterator[FeatureId]:
        bits = self._bits
        for i in range(256):
            if bits & (1 << i):
                yield FeatureId(i)

    def __repr__(self) -> str:
        return "FeatureBitmap({" + ", ".join(str(f) for f in self) + "})"


@dataclass(frozen=True)
class BatteryState:
    """Battery level and status of a single component."""

    level: int = 0
    status: BatteryStatus = BatteryStatus.DISCONNECTED

    def is_charging(self) -> bool:
        return self.status == BatteryStatus.CHARGING

    def is_available(self) -> bool:
        return self.status != BatteryStatus.DISCONNECTED

    def to_json(self) -> dict | None:
        if not self.is_available():
            return None
        return {"level": self.level, "charging": self.is_charging()}

    def __str__(self) -> str:
        return f"{self.level}%({self.status})"


@dataclass(frozen=True)
class BatteryInfo:
    """Battery state of every component."""

    left: BatteryState = field(default_factory=BatteryState)
    right: BatteryState = field(default_factory=BatteryState)
    case: BatteryState = field(default_factory=BatteryState)
    headphone: BatteryState = field(default_factory=BatteryState)

    def split(self) -> tuple[BatteryState, BatteryState]:
        """Return (left, right); over-ear headphones report one battery for both."""
        if self.headphone.is_available():
            return self.headphone, self.headphone
        return self.left, self.right

    def to_json(self) -> dict:
        return {
            "left": self.left.to_json(),
            "right": self.right.to_json(),
            "case": self.case.to_json(),
            "headphone": self.headphone.to_json(),
        }

    def __str__(self) -> str:
        return f"L:{self.left} R:{self.right} C:{self.case} H:{self.headphone}"


@dataclass(frozen=True)
class EarDetectionStatus:
    """Whether each bud is in an ear."""

    left: bool
    right: bool

    LEFT = 1 << 0
    RIGHT = 1 << 1
    VALID = 0x80

    @property
    def flags(self) -> int:
        return self.VALID | (self.LEFT if self.left else 0) | (self.RIGHT if self.right else 0)

    def is_left_in_ear(self) -> bool:
        return self.left

    def is_right_in_ear(self) -> bool:
        return self.right

    def to_json(self) -> dict:
        return {"left_in_ear": self.left, "right_in_ear": self.right}


def build_control_packet(cmd: int, data: bytes) -> bytes:
    """Build a control packet: command header, command byte, four data bytes."""
    data = bytes(data)
    if len(data) != 4:
        raise ValueError("control packet data must be exactly 4 bytes")
    if not 0 <= cmd <= 0xFF:
        raise ValueError(f"command out of range: {cmd}")
    return HDR_CMD_CTL + bytes([cmd]) + data


class FeatureCmd(IntEnum):
    """Operations on a feature."""

    QUERY = 0
    ENABLE = 1
    DISABLE = 2

    def build(self, feature: FeatureId | int) -> bytes:
        feature_id = feature.id if isinstance(feature, FeatureId) else feature
        return build_control_packet(feature_id, self.value.to_bytes(4, "little"))

    @classmethod
    def parse(cls, data: bytes) -> tuple[FeatureId, FeatureCmd] | None:
        """Parse a feature command packet, or return None if it is not one."""
        if not data.startswith(HDR_CMD_CTL):
            return None
        rest = data[len(HDR_CMD_CTL) :]
        if len(rest) != 5:
            return None
        try:
            op = cls(int.from_bytes(rest[1:], "little"))
        except ValueError:
            return None
        return FeatureId(rest[0]), op
"""State of one AirPods device and its control connection."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import weakref
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from kairpodsd import l2cap
from kairpodsd.errors import AirPodsError, DeviceNotConnectedError
from kairpodsd.events import AirPodsEvent, EventBus, EventKind
from kairpodsd.parser import (
    ProtoError,
    parse_battery_status,
    parse_ear_detection,
    parse_metadata,
    parse_noise_mode,
)
from kairpodsd.protocol import (
    HDR_ACK_FEATURES,
    HDR_ACK_HANDSHAKE,
    HDR_BATTERY_STATE,
    HDR_EAR_DETECTION,
    HDR_METADATA,
    HDR_NOISE_CTL,
    PKT_HANDSHAKE,
    PKT_REQUEST_NOTIFY,
    PKT_SET_FEATURES,
    BatteryInfo,
    EarDetectionStatus,
    FeatureBitmap,
    FeatureCmd,
    FeatureId,
    NoiseControlMode,
    build_control_packet,
)
from kairpodsd.study import BatteryStudy
from kairpodsd.tracker import BatteryTracker

log = logging.getLogger(__name__)

T = TypeVar("T")

ChannelOpener = Callable[[l2cap.Hooks], Awaitable[l2cap.L2CapChannel]]

_ACK_TIMEOUT = 5.0
_RETRY_FIRST_DELAY = 1.0
_RETRY_SCHEDULE = (2.0, 3.0, 5.0, 10.0)
_DEFAULT_DRAIN_RATE = 16.9  # percent per hour
_SAVE_INTERVAL_MINUTES = 5
_NOISE_CONTROL_CMD = 0x0D
_DEFAULT_NOISE_MODE = NoiseControlMode(0x01)


class UpdateKind(Enum):
    NOOP = "noop"
    INSERTED = "inserted"
    DELETED = "deleted"
    UPDATED = "updated"


@dataclass(frozen=True)
class UpdateOp(Generic[T]):
    """Outcome of replacing a piece of device state.

    ``value`` holds the removed value for DELETED and the new value for UPDATED
    (the previous name for name updates).
    """

    kind: UpdateKind
    value: T | None = None

    @classmethod
    def between(cls, previous: T | None, new: T | None) -> UpdateOp[T]:
        if previous is None:
            return cls(UpdateKind.NOOP) if new is None else cls(UpdateKind.INSERTED)
        if new is None:
            return cls(UpdateKind.DELETED, previous)
        if previous == new:
            return cls(UpdateKind.NOOP)
        return cls(UpdateKind.UPDATED, new)

    def is_updated(self) -> bool:
        return self.kind in (UpdateKind.INSERTED, UpdateKind.UPDATED)


@dataclass
class _Connection:
    channel: l2cap.L2CapChannel
    tasks: list[asyncio.Task] = field(default_factory=list)

    async def close(self) -> None:
        for task in self.tasks:
            task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        await self.channel.close()


async def _retry_notifications(
    ref: weakref.ReferenceType[AirPods], address: str, sender: l2cap.L2CapSender
) -> None:
    await asyncio.sleep(_RETRY_FIRST_DELAY)
    for i, delay in enumerate(_RETRY_SCHEDULE):
        device = ref()
        if device is not None and device.battery_info is not None:
            log.info("%s: Battery status established after %d retries!", address, i)
            return
        del device
        log.warning(
            "%s: [Retry %d] No battery status received after notification request, "
            "retrying in %.0fs...",
            address,
            i,
            delay,
        )
        with contextlib.suppress(AirPodsError, OSError):
            await sender.send(PKT_REQUEST_NOTIFY)
        await asyncio.sleep(delay)


class AirPods:
    """A connected AirPods device and everything known about its state."""

    def __init__(
        self, address: str, name: str, battery_study: BatteryStudy | None = None
    ) -> None:
        self.address = address
        self._state_lock = threading.Lock()
        self._name = name
        self._battery: BatteryInfo | None = None
        self._ear_detection: EarDetectionStatus | None = None
        self._noise_mode: NoiseControlMode | None = None
        self._connected = False
        self._features = FeatureBitmap()
        self._features_present = FeatureBitmap()
        self._conn: _Connection | None = None
        self._conn_lock = asyncio.Lock()
        self._tracker = BatteryTracker(battery_study)
        self._tracker_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"AirPods(address={self.address!r}, name={self.name!r})"

    # --- state -----------------------------------------------------------

    @property
    def name(self) -> str:
        with self._state_lock:
            return self._name

    @property
    def battery_info(self) -> BatteryInfo | None:
        return self._battery

    @property
    def ear_detection(self) -> EarDetectionStatus | None:
        return self._ear_detection

    @property
    def noise_mode(self) -> NoiseControlMode | None:
        return self._noise_mode

    @property
    def connected(self) -> bool:
        return self._connected

    def update_name(self, name: str) -> UpdateOp[str]:
        """Rename the device; an UPDATED result carries the previous name."""
        with self._state_lock:
            if self._name == name:
                return UpdateOp(UpdateKind.NOOP)
            previous, self._name = self._name, name
        return UpdateOp(UpdateKind.UPDATED, previous)

    def update_battery_info(self, battery: BatteryInfo | None) -> UpdateOp[BatteryInfo]:
        with self._state_lock:
            previous, self._battery = self._battery, battery
        return UpdateOp.between(previous, battery)

    def update_ear_detection(
        self, status: EarDetectionStatus | None
    ) -> UpdateOp[EarDetectionStatus]:
        with self._state_lock:
            previous, self._ear_detection = self._ear_detection, status
        return UpdateOp.between(previous, status)

    def update_noise_mode(self, mode: NoiseControlMode | None) -> UpdateOp[NoiseControlMode]:
        with self._state_lock:
            previous, self._noise_mode = self._noise_mode, mode
        return UpdateOp.between(previous, mode)

    def to_json(self) -> dict[str, Any]:
        """Describe the device as a JSON-ready dictionary."""
        info: dict[str, Any] = {
            "address": self.address,
            "name": self.name,
            "connected": self.connected,
        }
        battery = self.battery_info
        if battery is not None:
            info["battery"] = battery.to_json()
        info["battery_ttl_estimate"] = self.estimate_battery_ttl()
        mode = self.noise_mode
        if mode is not None:
            info["noise_mode"] = mode.to_str()
        ear = self.ear_detection
        if ear is not None:
            info["ear_detection"] = ear.to_json()
        info["features"] = {feature.to_str(): enabled for feature, enabled in self.features()}
        return info

    def feature_enabled(self, feature: FeatureId) -> bool:
        return self._features.get(feature)

    def features(self) -> list[tuple[FeatureId, bool]]:
        """Every feature the device reported, with whether it is enabled."""
        return [(feature, self.feature_enabled(feature)) for feature in self._features_present]

    def set_feature_enabled(self, feature: FeatureId, enabled: bool) -> bool:
        """Record a feature's state; return whether it was enabled before."""
        self._features_present.set(feature, True)
        return self._features.set(feature, enabled)

    # --- connection ------------------------------------------------------

    async def _open_l2cap(self, hooks: l2cap.Hooks) -> l2cap.L2CapChannel:
        return await l2cap.connect(self.address, hooks)

    async def connect(
        self, event_bus: EventBus, channel: ChannelOpener | None = None
    ) -> asyncio.Task:
        """Open the control channel and run the handshake.

        ``channel`` opens the transport given the hooks to install; by default
        an L2CAP connection to the device. Returns a task that finishes when the
        connection closes, with the error that closed it or None.
        """
        log.info("Connecting to AirPods at %s", self.address)
        async with self._conn_lock:
            old, self._conn = self._conn, None
            if old is not None:
                await old.close()
            conn, receiver = await self._start_connection(channel or self._open_l2cap)
            processor = self._start_packet_processor(receiver, event_bus)
            self._conn = conn
            self._connected = True
        with self._tracker_lock:
            self._tracker.init_session(self.address, self.name)
        log.info("Successfully connected to %s", self.address)
        return processor

    async def disconnect(self) -> None:
        self._save_battery_study()
        self._connected = False
        await self._drop_connection()
        log.info("Disconnected from %s", self.address)

    async def _notify_disconnected(self, event_bus: EventBus) -> None:
        self._save_battery_study()
        self._connected = False
        await self._drop_connection()
        log.info("Disconnected from %s", self.address)
        event_bus.emit(self, AirPodsEvent(EventKind.DEVICE_DISCONNECTED))

    async def _drop_connection(self) -> None:
        async with self._conn_lock:
            conn, self._conn = self._conn, None
        if conn is not None:
            await conn.close()

    @staticmethod
    async def _send_and_wait(
        sender: l2cap.L2CapSender, packet: bytes, ack: asyncio.Future, what: str
    ) -> None:
        try:
            await sender.send(packet)
        except Exception as exc:
            log.error("Failed to send %s: %r", what, exc)
            raise
        try:
            await asyncio.wait_for(ack, _ACK_TIMEOUT)
        except asyncio.TimeoutError:
            log.warning("No %s acknowledgment received, continuing anyway...", what)
        else:
            log.info("%s acknowledged", what.capitalize())

    async def _start_connection(
        self, opener: ChannelOpener
    ) -> tuple[_Connection, l2cap.L2CapReceiver]:
        loop = asyncio.get_running_loop()
        handshake_ack: asyncio.Future = loop.create_future()
        features_ack: asyncio.Future = loop.create_future()

        def resolver(future: asyncio.Future) -> Callable[[bytes], None]:
            def resolve(_data: bytes) -> None:
                if not future.done():
                    future.set_result(None)

            return resolve

        hooks = (
            l2cap.Hooks()
            .prefix_once(HDR_ACK_HANDSHAKE, resolver(handshake_ack))
            .prefix_once(HDR_ACK_FEATURES, resolver(features_ack))
        )
        channel = await opener(hooks)
        log.info("Starting handshake sequence...")
        try:
            await self._send_and_wait(channel.sender, PKT_HANDSHAKE, handshake_ack, "handshake")
            await self._send_and_wait(channel.sender, PKT_SET_FEATURES, features_ack, "features")
            try:
                await channel.sender.send(PKT_REQUEST_NOTIFY)
            except Exception as exc:
                log.error("Failed to send notification request: %r", exc)
                raise
        except BaseException:
            await channel.close()
            raise

        log.info("%s: Handshake sequence completed", self.address)
        retry = asyncio.create_task(
            _retry_notifications(weakref.ref(self), self.address, channel.sender)
        )
        return _Connection(channel, [retry]), channel.receiver

    def _start_packet_processor(
        self, receiver: l2cap.L2CapReceiver, event_bus: EventBus
    ) -> asyncio.Task:
        ref = weakref.ref(self)
        address = self.address

        async def run() -> AirPodsError | None:
            while True:
                try:
                    packet = await receiver.recv()
                except AirPodsError as exc:
                    device = ref()
                    if device is not None:
                        await device._notify_disconnected(event_bus)
                    else:
                        log.warning("%s: Connection closed: %r", address, exc)
                    return exc
                device = ref()
                if device is None:
                    log.warning("%s: Airpod instance was dropped", address)
                    return None
                device.process_packet(packet, event_bus)
                del device

        return asyncio.create_task(run())

    async def _send(self, packet: bytes) -> None:
        async with self._conn_lock:
            if self._conn is None:
                raise DeviceNotConnectedError()
            await self._conn.channel.sender.send(packet)

    async def set_noise_control(self, mode: NoiseControlMode) -> None:
        packet = build_control_packet(_NOISE_CONTROL_CMD, mode.value.to_bytes(4, "little"))
        await self._send(packet)
        with self._state_lock:
            self._noise_mode = mode

    async def passthrough(self, packet: bytes) -> None:
        """Send raw bytes to the device."""
        await self._send(bytes(packet))

    async def set_feature(self, feature: FeatureId, enabled: bool) -> None:
        command = FeatureCmd.ENABLE if enabled else FeatureCmd.DISABLE
        await self._send(command.build(feature))
        self.set_feature_enabled(feature, enabled)

    # --- incoming packets --------------------------------------------------

    def process_packet(self, packet: bytes, event_bus: EventBus) -> None:
        """Update the device state from one received packet and emit events."""
        packet = bytes(packet)
        address = self.address
        if packet.startswith(HDR_BATTERY_STATE):
            try:
                battery = parse_battery_status(packet)
            except ProtoError as exc:
                log.warning("Failed to parse battery: %s", exc)
                return
            log.debug(
                "Battery updated for %s: L:%d%% R:%d%% C:%d%%",
                address,
                battery.left.level,
                battery.right.level,
                battery.case.level,
            )
            if self.update_battery_info(battery).is_updated():
                with self._tracker_lock:
                    self._tracker.record_battery_drop(battery.left, battery.right)
                event_bus.emit(self, AirPodsEvent(EventKind.BATTERY_UPDATED, battery))
        elif packet.startswith(HDR_NOISE_CTL):
            try:
                mode = parse_noise_mode(packet)
            except ProtoError as exc:
                log.warning("Failed to parse noise mode: %s", exc)
                return
            log.debug("Noise mode updated for %s: %s", address, mode)
            if self.update_noise_mode(mode).is_updated():
                event_bus.emit(self, AirPodsEvent(EventKind.NOISE_CONTROL_CHANGED, mode))
        elif packet.startswith(HDR_EAR_DETECTION):
            try:
                status = parse_ear_detection(packet)
            except ProtoError as exc:
                log.warning("Failed to parse ear detection: %s", exc)
                return
            log.debug(
                "Ear detection updated for %s: L:%s R:%s",
                address,
                status.is_left_in_ear(),
                status.is_right_in_ear(),
            )
            if self.update_ear_detection(status).is_updated():
                event_bus.emit(self, AirPodsEvent(EventKind.EAR_DETECTION_CHANGED, status))
        elif packet.startswith(HDR_METADATA):
            try:
                metadata = parse_metadata(packet)
            except ProtoError:
                return
            log.debug("Device metadata for %s: %s", address, metadata)
            new_name = metadata.name_candidate
            if new_name is not None and self.update_name(new_name).is_updated():
                event_bus.emit(self, AirPodsEvent(EventKind.DEVICE_NAME_CHANGED, new_name))
        elif packet.startswith(HDR_ACK_HANDSHAKE):
            log.debug("Received handshake ACK from %s", address)
        elif packet.startswith(HDR_ACK_FEATURES):
            log.debug("Received features ACK from %s", address)
        elif (parsed := FeatureCmd.parse(packet)) is not None:
            feature, op = parsed
            log.debug("Received feature command from %s: %s %s", address, feature, op)
            if op in (FeatureCmd.ENABLE, FeatureCmd.DISABLE):
                self.set_feature_enabled(feature, op is FeatureCmd.ENABLE)
        else:
            if len(packet) < 16:
                data = packet.hex()
            else:
                data = f"{packet[:8].hex()}..{packet[8:].hex()}"
            log.debug("Unknown packet from %s | %d bytes => %s", address, len(packet), data)

    # --- battery study ---------------------------------------------------

    def estimate_battery_ttl(self) -> int | None:
        """Estimated minutes of battery left, falling back to a typical drain rate."""
        battery = self.battery_info
        if battery is None:
            return None
        with self._tracker_lock:
            estimate = self._tracker.estimate_ttl(battery, self.noise_mode, self.address)
        if estimate is not None:
            return estimate
        min_level = float(min(battery.left.level, battery.right.level))
        return int(min_level / _DEFAULT_DRAIN_RATE * 60.0)

    def _save_battery_study(self) -> None:
        mode = self.noise_mode or _DEFAULT_NOISE_MODE
        with self._tracker_lock:
            self._tracker.save_to_study(self.address, mode)

    def _should_save_battery_study(self, interval_minutes: int) -> bool:
        battery = self.battery_info
        if battery is None:
            return False
        with self._tracker_lock:
            return self._tracker.should_save(interval_minutes, battery)

    def tick(self) -> None:
        """Run periodic work: save battery statistics when enough has been gathered."""
        if not self.connected:
            log.debug("Device %s not connected, skipping tick", self.address)
            return
        if self._should_save_battery_study(_SAVE_INTERVAL_MINUTES):
            log.debug("Performing periodic battery save for %s", self.address)
            self._save_battery_study()
        else:
            log.debug("Battery save check for %s returned false", self.address)
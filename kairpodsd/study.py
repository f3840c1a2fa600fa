"""Persistent per-device battery drain statistics stored in LMDB."""

from __future__ import annotations

import json
import math
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import lmdb
import platformdirs

from kairpodsd.errors import AirPodsError
from kairpodsd.protocol import NoiseControlMap, NoiseControlMode

_MAP_SIZE = 10 * 1024 * 1024
_DB_NAME = b"devices"


class BatteryStudyError(AirPodsError):
    """The battery study database failed."""

    default_message = "Battery study error"


class StudyNotFoundError(BatteryStudyError):
    default_message = "Device study not found"


def db_path() -> Path:
    """Return the database directory, honouring AIRPODS_BATTERY_DB_PATH."""
    override = os.environ.get("AIRPODS_BATTERY_DB_PATH")
    if override is not None:
        return Path(override)
    base = platformdirs.user_data_dir()
    if not base:
        raise BatteryStudyError("Could not find local data directory")
    return Path(base) / "kairpods" / "battery_study.db"


def _unix_now() -> int:
    return int(time.time())


def _address_key(address: str | bytes) -> bytes:
    """Encode a Bluetooth address as its six raw bytes."""
    if isinstance(address, (bytes, bytearray)):
        key = bytes(address)
    else:
        parts = str(address).split(":")
        if len(parts) != 6 or any(len(p) != 2 for p in parts):
            raise ValueError(f"Invalid address: {address!r}")
        try:
            key = bytes(int(p, 16) for p in parts)
        except ValueError:
            raise ValueError(f"Invalid address: {address!r}") from None
    if len(key) != 6:
        raise ValueError(f"Invalid address: {address!r}")
    return key


@dataclass
class DrainRateStats:
    """Running statistics of the drain rate in one noise mode."""

    rate: float  # percent per hour
    variance: float
    samples: int
    last_updated: int  # unix timestamp

    def _to_json(self) -> dict[str, Any]:
        return {
            "rate": self.rate,
            "variance": self.variance,
            "samples": self.samples,
            "last_updated": self.last_updated,
        }

    @classmethod
    def _from_json(cls, data: dict[str, Any]) -> DrainRateStats:
        return cls(
            rate=float(data["rate"]),
            variance=float(data["variance"]),
            samples=int(data["samples"]),
            last_updated=int(data["last_updated"]),
        )


@dataclass
class DeviceStudy:
    """Everything recorded about one device."""

    device_name: str
    last_updated: int
    total_sessions: int = 0
    total_samples: int = 0
    drain_rates: NoiseControlMap[DrainRateStats] = field(default_factory=NoiseControlMap)

    def _encode(self) -> bytes:
        return json.dumps(
            {
                "device_name": self.device_name,
                "last_updated": self.last_updated,
                "total_sessions": self.total_sessions,
                "total_samples": self.total_samples,
                "drain_rates": {
                    mode.to_str(): stats._to_json() for mode, stats in self.drain_rates.items()
                },
            }
        ).encode("utf-8")

    @classmethod
    def _decode(cls, raw: bytes) -> DeviceStudy:
        try:
            data = json.loads(raw.decode("utf-8"))
            rates: NoiseControlMap[DrainRateStats] = NoiseControlMap()
            for name, stats in data["drain_rates"].items():
                rates.insert(NoiseControlMode.parse(name), DrainRateStats._from_json(stats))
            return cls(
                device_name=str(data["device_name"]),
                last_updated=int(data["last_updated"]),
                total_sessions=int(data["total_sessions"]),
                total_samples=int(data["total_samples"]),
                drain_rates=rates,
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise BatteryStudyError(f"Database operation error: {exc}") from exc


class BatteryStudy:
    """Thread-safe handle on the battery study database."""

    def __init__(self, env: lmdb.Environment, db: Any) -> None:
        self._env = env
        self._db = db

    @classmethod
    def open(cls, path: str | os.PathLike[str] | None = None) -> BatteryStudy:
        """Open or create the database at ``path`` (default: :func:`db_path`)."""
        target = Path(path) if path is not None else db_path()
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BatteryStudyError(
                f"Failed to create battery study directory: {exc}"
            ) from exc
        try:
            env = lmdb.open(str(target), map_size=_MAP_SIZE, max_dbs=1)
        except lmdb.Error as exc:
            raise BatteryStudyError(f"Failed to open environment: {exc}") from exc
        try:
            db = env.open_db(_DB_NAME)
        except lmdb.Error as exc:
            env.close()
            raise BatteryStudyError(f"Database operation error: {exc}") from exc
        return cls(env, db)

    def close(self) -> None:
        self._env.close()

    def __enter__(self) -> BatteryStudy:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @contextmanager
    def _transaction(self, write: bool = False) -> Iterator[Any]:
        try:
            with self._env.begin(write=write, db=self._db) as txn:
                yield txn
        except lmdb.Error as exc:
            raise BatteryStudyError(f"Database transaction error: {exc}") from exc

    def get_or_create_study(self, address: str | bytes, device_name: str) -> DeviceStudy:
        """Return the stored study of a device, creating an empty one if needed."""
        key = _address_key(address)
        with self._transaction() as txn:
            raw = txn.get(key)
        if raw is not None:
            return DeviceStudy._decode(raw)
        study = DeviceStudy(device_name=device_name, last_updated=_unix_now())
        with self._transaction(write=True) as txn:
            txn.put(key, study._encode())
        return study

    def update_drain_rate(
        self, address: str | bytes, mode: NoiseControlMode, new_rate: float, samples: int
    ) -> None:
        """Fold a new rate measured over ``samples`` samples into the running statistics."""
        if samples < 0:
            raise ValueError("samples must not be negative")
        key = _address_key(address)
        with self._transaction(write=True) as txn:
            raw = txn.get(key)
            if raw is None:
                raise StudyNotFoundError()
            study = DeviceStudy._decode(raw)
            stats = study.drain_rates.get_or_insert_with(
                mode, lambda: DrainRateStats(rate=new_rate, variance=0.0, samples=0, last_updated=0)
            )
            k = float(samples)
            n = float(stats.samples)
            if n + k > 0:
                delta = new_rate - stats.rate
                stats.rate += delta * k / (n + k)
                if stats.samples > 0:
                    delta2 = new_rate - stats.rate
                    stats.variance = (stats.variance * n + delta * delta2 * k) / (n + k)
            now = _unix_now()
            stats.samples += samples
            stats.last_updated = now
            study.total_samples += samples
            study.last_updated = now
            txn.put(key, study._encode())

    def get_drain_rate(
        self, address: str | bytes, mode: NoiseControlMode
    ) -> tuple[float, float] | None:
        """Return (rate, 95% confidence half-width) for a mode, or None if unknown."""
        key = _address_key(address)
        with self._transaction() as txn:
            raw = txn.get(key)
        if raw is None:
            return None
        stats = DeviceStudy._decode(raw).drain_rates.get(mode)
        if stats is None:
            return None
        if stats.samples > 1:
            confidence = 1.96 * math.sqrt(stats.variance / stats.samples)
        else:
            confidence = math.inf
        return stats.rate, confidence

    def increment_session_count(self, address: str | bytes) -> None:
        """Count one more session for a device that already has a study."""
        key = _address_key(address)
        with self._transaction(write=True) as txn:
            raw = txn.get(key)
            if raw is None:
                return
            study = DeviceStudy._decode(raw)
            study.total_sessions += 1
            study.last_updated = _unix_now()
            txn.put(key, study._encode())
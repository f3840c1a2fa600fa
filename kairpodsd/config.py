"""Service configuration stored as TOML on disk."""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import platformdirs
import tomli_w

from kairpodsd.errors import ConfigDirNotFoundError, ConfigError


def config_path() -> Path:
    """Return the configuration file path, honouring AIRPODS_CONFIG_PATH."""
    override = os.environ.get("AIRPODS_CONFIG_PATH")
    if override is not None:
        return Path(override)
    base = platformdirs.user_config_dir()
    if not base:
        raise ConfigDirNotFoundError()
    return Path(base) / "kairpods" / "config.toml"


@dataclass
class KnownDevice:
    """A device the user has declared as AirPods."""

    address: str
    name: str

    @classmethod
    def _from_mapping(cls, data: Any) -> KnownDevice:
        if not isinstance(data, Mapping):
            raise ConfigError("TOML parsing error: known device must be a table")
        values = {}
        for key in ("address", "name"):
            value = data.get(key)
            if not isinstance(value, str):
                raise ConfigError(f"TOML parsing error: known device needs a string '{key}'")
            values[key] = value
        return cls(**values)


def _unsigned(data: Mapping[str, Any], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigError(f"TOML parsing error: '{key}' must be a non-negative integer")
    return value


@dataclass
class Config:
    """Settings of the service."""

    known_devices: list[KnownDevice] = field(default_factory=list)
    poll_interval: int = 30
    connection_retry_count: int = 10
    reconnect_delay_sec: int = 10
    notification_retries: int = 3
    log_filter: str | None = None

    @classmethod
    def _from_mapping(cls, data: Mapping[str, Any]) -> Config:
        devices = data.get("known_devices", [])
        if not isinstance(devices, list):
            raise ConfigError("TOML parsing error: 'known_devices' must be an array")
        log_filter = data.get("log_filter")
        if log_filter is not None and not isinstance(log_filter, str):
            raise ConfigError("TOML parsing error: 'log_filter' must be a string")
        defaults = cls()
        return cls(
            known_devices=[KnownDevice._from_mapping(d) for d in devices],
            poll_interval=_unsigned(data, "poll_interval", defaults.poll_interval),
            connection_retry_count=_unsigned(
                data, "connection_retry_count", defaults.connection_retry_count
            ),
            reconnect_delay_sec=_unsigned(data, "reconnect_delay_sec", defaults.reconnect_delay_sec),
            notification_retries=_unsigned(
                data, "notification_retries", defaults.notification_retries
            ),
            log_filter=log_filter,
        )

    def _to_mapping(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "known_devices": [asdict(d) for d in self.known_devices],
            "poll_interval": self.poll_interval,
            "connection_retry_count": self.connection_retry_count,
            "reconnect_delay_sec": self.reconnect_delay_sec,
            "notification_retries": self.notification_retries,
        }
        if self.log_filter is not None:
            data["log_filter"] = self.log_filter
        return data

    @classmethod
    def load(cls) -> Config:
        """Load the configuration, writing a default file if none exists."""
        path = config_path()
        if path.exists():
            try:
                data = tomllib.loads(path.read_text(encoding="utf-8"))
            except tomllib.TOMLDecodeError as exc:
                raise ConfigError(f"TOML parsing error: {exc}") from exc
            return cls._from_mapping(data)
        config = cls()
        config.save()
        return config

    def save(self) -> None:
        """Write the configuration to disk, creating its directory."""
        path = config_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            contents = tomli_w.dumps(self._to_mapping())
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"TOML serialization error: {exc}") from exc
        path.write_text(contents, encoding="utf-8")

    def is_known_device(self, address: str) -> str | None:
        """Return the name of the known device with this address, if any."""
        return next((d.name for d in self.known_devices if d.address == address), None)
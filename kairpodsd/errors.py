"""Errors raised by the AirPods service."""

from __future__ import annotations


class AirPodsError(Exception):
    """Base class for every error the service raises."""

    default_message = "AirPods error"

    def __init__(self, *args: object) -> None:
        super().__init__(*(args or (self.default_message,)))


class DeviceNotFoundError(AirPodsError):
    """No managed device has the given address."""

    def __init__(self, address: object) -> None:
        self.address = address
        super().__init__(f"Device not found: {address}")


class DeviceNotConnectedError(AirPodsError):
    default_message = "Device not connected"


class DeviceNotPairedError(AirPodsError):
    default_message = "Device not paired"


class FeatureNotSupportedError(AirPodsError):
    """The device does not support the requested feature."""

    def __init__(self, feature: object) -> None:
        self.feature = feature
        super().__init__(f"Feature not supported: {feature}")


class ConnectionLostError(AirPodsError):
    default_message = "Connection lost"


class ConnectionClosedError(AirPodsError):
    default_message = "Connection closed"


class RequestTimeoutError(AirPodsError):
    default_message = "Request timeout"


class ConfigDirNotFoundError(AirPodsError):
    default_message = "Could not determine config directory"


class ConfigError(AirPodsError):
    """The configuration file could not be read or written."""

    default_message = "Configuration error"


class ManagerShutdownError(AirPodsError):
    default_message = "Manager has been shut down"


class AlreadyConnectingError(AirPodsError):
    default_message = "Already connecting to device"


class AdapterNotFoundError(AirPodsError):
    default_message = "Adapter not found"


class AdapterNotAvailableError(AirPodsError):
    default_message = "Adapter not available"
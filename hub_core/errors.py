"""Domain errors raised by the hub core.

Every error carries the device id it concerns (``None`` when the failure is
not device-specific) so callers and logs can attribute failures without
parsing messages.
"""

from __future__ import annotations


class HubError(Exception):
    """Base exception for hub operations."""

    def __init__(self, message: str, device_id: str | None = None) -> None:
        super().__init__(message)
        self.device_id = device_id


class PermissionDenied(HubError):
    """Raised when the radio scan/connect permission has not been granted."""


class AdapterNotReady(HubError):
    """Raised when the radio adapter is powered off or unavailable."""


class CapacityExceeded(HubError):
    """Raised when the live set already holds ``max_devices`` connections."""

    def __init__(self, device_id: str, max_devices: int) -> None:
        super().__init__(
            f"Max device limit ({max_devices}) reached; "
            f"disconnect a device before connecting {device_id}",
            device_id,
        )
        self.max_devices = max_devices


class DeviceNotConnected(HubError):
    """Raised when a write targets a device that is not ready."""

    def __init__(self, device_id: str) -> None:
        super().__init__(f"Device {device_id} is not connected", device_id)


class SetupFailed(HubError):
    """Raised when channel discovery or subscription fails after connect."""


class TransportError(HubError):
    """Raised when the wireless transport reports a connect/write/disconnect failure."""


class TransportLost(HubError):
    """Signals an unexpected link drop. Reported through state changes, not raised."""

    def __init__(self, device_id: str) -> None:
        super().__init__(f"Connection to {device_id} lost unexpectedly", device_id)


class MalformedTopic(HubError):
    """Raised when a topic (or device id) does not fit the addressing scheme."""

    def __init__(self, topic: str) -> None:
        super().__init__(f"Malformed device topic: {topic!r}")
        self.topic = topic


class ConfigError(HubError):
    """Raised when a configuration value cannot be used."""


__all__ = [
    "AdapterNotReady",
    "CapacityExceeded",
    "ConfigError",
    "DeviceNotConnected",
    "HubError",
    "MalformedTopic",
    "PermissionDenied",
    "SetupFailed",
    "TransportError",
    "TransportLost",
]

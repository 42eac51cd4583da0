"""Protocol definitions for external ports used by the hub.

These small Protocols document the minimal methods the radio adapter, the
broker client and the permission source must provide. The core only talks to
these surfaces; ``ble_gateway`` and ``mqtt_dispatcher`` are the shipped
implementations.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from .core_types import (
    BytesCallback,
    ChannelPair,
    ConnectionCallback,
    LossCallback,
    MessageCallback,
    ScanCallback,
)


@runtime_checkable
class WirelessAdapter(Protocol):
    """Short-range radio transport: scan, connect, GATT-style channel I/O."""

    async def is_powered_on(self) -> bool:
        """Return True when the radio is powered and usable."""

    async def start_scan(
        self, service_uuids: Iterable[str], on_result: ScanCallback
    ) -> None:
        """Start discovery; ``on_result`` gets one call per advertisement."""

    async def stop_scan(self) -> None:
        """Stop an active discovery."""

    async def connect(self, device_id: str) -> Any:
        """Open a connection and return an opaque transport handle."""

    async def discover_channels(self, handle: Any) -> ChannelPair:
        """Resolve the inbound (write) and outbound (notify) channels."""

    async def subscribe(
        self, handle: Any, channel: Any, on_bytes: BytesCallback
    ) -> None:
        """Deliver notifications from ``channel`` to ``on_bytes``."""

    async def write(self, handle: Any, channel: Any, data: bytes) -> None:
        """Write ``data`` to ``channel``."""

    async def disconnect(self, handle: Any) -> None:
        """Close the connection behind ``handle``."""

    def on_unexpected_disconnect(self, handle: Any, callback: LossCallback) -> None:
        """Register ``callback(handle)`` for link drops not caused by disconnect()."""


@runtime_checkable
class BrokerClient(Protocol):
    """Publish/subscribe broker surface used by the bridge."""

    def publish(
        self,
        topic: str,
        payload: str | bytes,
        qos: int = ...,
        retain: bool = ...,
    ) -> Any:
        """Publish a payload to a topic."""

    def subscribe(self, pattern: str, on_message: MessageCallback) -> None:
        """Subscribe; callback gets (topic, payload)."""

    def add_connection_listener(self, callback: ConnectionCallback) -> None:
        """Register a callback receiving True/False on broker (dis)connect."""


@runtime_checkable
class PermissionProvider(Protocol):
    """Capability negotiation reduced to one boolean precondition."""

    def has_required_permissions(self) -> bool:
        """Return True when scanning and connecting are permitted."""


@dataclass
class StaticPermissions:
    """Fixed answer; hosts without runtime permission prompts use ``granted=True``."""

    granted: bool = True

    def has_required_permissions(self) -> bool:
        return self.granted


__all__ = [
    "BrokerClient",
    "PermissionProvider",
    "StaticPermissions",
    "WirelessAdapter",
]

"""BLE <-> MQTT hub.

Public exports for embedding the hub; the process entry point is
``hub_core.main:main``.
"""

from __future__ import annotations

from .ble_bridge import BleBridge
from .bridge_controller import Hub
from .connection_manager import ConnectionManager
from .core_types import (
    BatchResult,
    ConnectionState,
    DeviceRecord,
    OperationOutcome,
    ScanResult,
    StateChange,
    TopicBinding,
)
from .errors import (
    AdapterNotReady,
    CapacityExceeded,
    ConfigError,
    DeviceNotConnected,
    HubError,
    MalformedTopic,
    PermissionDenied,
    SetupFailed,
    TransportError,
    TransportLost,
)
from .hub_config import HubSettings, load_config, load_settings
from .ports import BrokerClient, PermissionProvider, StaticPermissions, WirelessAdapter
from .scanner import ScanController

__all__ = [
    "AdapterNotReady",
    "BatchResult",
    "BleBridge",
    "BrokerClient",
    "CapacityExceeded",
    "ConfigError",
    "ConnectionManager",
    "ConnectionState",
    "DeviceNotConnected",
    "DeviceRecord",
    "Hub",
    "HubError",
    "HubSettings",
    "MalformedTopic",
    "OperationOutcome",
    "PermissionDenied",
    "PermissionProvider",
    "ScanController",
    "ScanResult",
    "SetupFailed",
    "StateChange",
    "StaticPermissions",
    "TopicBinding",
    "TransportError",
    "TransportLost",
    "WirelessAdapter",
    "load_config",
    "load_settings",
]

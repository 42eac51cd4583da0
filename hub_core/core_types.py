"""Small stable types shared across hub_core.

Device records, scan observations and the aggregate results returned by
batch operations. Nothing here imports other hub_core modules at runtime.
"""

from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

# NB: Avoid importing any local modules at runtime to prevent cycles.


class ConnectionState(str, enum.Enum):
    """Lifecycle states of a Device Record."""

    DISCOVERED = "discovered"
    CONNECTING = "connecting"
    READY = "ready"
    DISCONNECTING = "disconnecting"
    DISCONNECTED = "disconnected"


# States that occupy a capacity slot.
LIVE_STATES = frozenset({ConnectionState.CONNECTING, ConnectionState.READY})


@dataclass
class DeviceRecord:
    """Per-peripheral identity and connection handles.

    ``transport_handle`` is set only while CONNECTING, READY or
    DISCONNECTING; the channel handles only while READY.
    """

    device_id: str
    display_name: str | None = None
    rssi: int | None = None
    state: ConnectionState = ConnectionState.DISCOVERED
    transport_handle: Any = None
    inbound_channel: Any = None
    outbound_channel: Any = None

    @property
    def name(self) -> str:
        return self.display_name or self.device_id

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    def clear_handles(self) -> None:
        self.transport_handle = None
        self.inbound_channel = None
        self.outbound_channel = None


@dataclass(frozen=True)
class ScanResult:
    """One matching advertisement observed during a scan."""

    device_id: str
    name: str
    rssi: int


@dataclass(frozen=True)
class ChannelPair:
    """Negotiated write-target (inbound) and notify-source (outbound) channels."""

    inbound: Any
    outbound: Any


@dataclass(frozen=True)
class TopicBinding:
    inbound: str
    outbound: str


@dataclass(frozen=True)
class StateChange:
    """Notification emitted by the lifecycle manager on every transition."""

    device_id: str
    state: ConnectionState
    reason: str = ""
    error: BaseException | None = None


@dataclass(frozen=True)
class OperationOutcome:
    device_id: str
    ok: bool
    error: BaseException | None = None


@dataclass(frozen=True)
class BatchResult:
    """Per-device outcomes of a fan-out operation (broadcast, disconnect_all)."""

    outcomes: tuple[OperationOutcome, ...] = field(default_factory=tuple)

    @property
    def succeeded(self) -> list[str]:
        return [o.device_id for o in self.outcomes if o.ok]

    @property
    def failed(self) -> dict[str, BaseException | None]:
        return {o.device_id: o.error for o in self.outcomes if not o.ok}

    @property
    def all_ok(self) -> bool:
        return all(o.ok for o in self.outcomes)

    def __len__(self) -> int:
        return len(self.outcomes)


# ---------------------------
# Callback signatures
# ---------------------------
ScanCallback = Callable[[ScanResult], None]
BytesCallback = Callable[[bytes], None]
DataCallback = Callable[[str, bytes], None]
StateCallback = Callable[[StateChange], None]
MessageCallback = Callable[[str, bytes], None]
ConnectionCallback = Callable[[bool], None]
LossCallback = Callable[[Any], None]


__all__ = [
    "LIVE_STATES",
    "BatchResult",
    "BytesCallback",
    "ChannelPair",
    "ConnectionCallback",
    "ConnectionState",
    "DataCallback",
    "DeviceRecord",
    "LossCallback",
    "MessageCallback",
    "OperationOutcome",
    "ScanCallback",
    "ScanResult",
    "StateCallback",
    "StateChange",
    "TopicBinding",
]

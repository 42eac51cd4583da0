"""
connection_manager.py

Owns the live set of peripheral connections:
- bounded concurrent connections (``max_devices``)
- connect -> channel setup -> ready, with rollback on any failure
- explicit disconnect / disconnect_all (partial-failure tolerant)
- fixed-delay reconnect after an unexpected link loss, retried indefinitely

All state lives on one asyncio loop. Transitions and writes for the same
device are serialized by a per-device lock; the capacity check and the
insertion of the CONNECTING record happen without a suspension point between
them, so concurrent connects for different devices cannot overshoot capacity.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
from collections.abc import AsyncIterator
from dataclasses import replace
from typing import Any

from .core_types import (
    BatchResult,
    ConnectionState,
    DataCallback,
    DeviceRecord,
    OperationOutcome,
    ScanResult,
    StateCallback,
    StateChange,
)
from .errors import (
    CapacityExceeded,
    ConfigError,
    DeviceNotConnected,
    HubError,
    SetupFailed,
    TransportError,
    TransportLost,
)
from .logging_setup import ble_logger as logger
from .ports import PermissionProvider, WirelessAdapter
from .scanner import ScanController, ensure_radio_ready


class ConnectionManager:
    """Connection lifecycle for every known peripheral.

    Only this class mutates the ``device_id -> DeviceRecord`` map; accessors
    return snapshots.
    """

    def __init__(
        self,
        adapter: WirelessAdapter,
        permissions: PermissionProvider,
        max_devices: int,
        reconnect_delay_s: float = 3.0,
        scanner: ScanController | None = None,
    ) -> None:
        self._adapter = adapter
        self._permissions = permissions
        self.max_devices = max_devices
        self.reconnect_delay_s = reconnect_delay_s
        self._scanner = scanner

        self._records: dict[str, DeviceRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._lost_during_setup: set[str] = set()

        self._reconnect_wanted: set[str] = set()
        self._reconnect_timers: dict[str, asyncio.TimerHandle] = {}
        self._reconnect_tasks: dict[str, asyncio.Task] = {}

        self._state_listeners: list[StateCallback] = []
        self._data_listeners: list[DataCallback] = []

    # ------------------------------------------------------------------
    # Configuration & accessors
    # ------------------------------------------------------------------
    @property
    def max_devices(self) -> int:
        return self._max_devices

    @max_devices.setter
    def max_devices(self, value: int) -> None:
        if int(value) < 1:
            raise ConfigError(f"max_devices must be >= 1, got {value}")
        self._max_devices = int(value)

    @property
    def live_count(self) -> int:
        """Records occupying a capacity slot (CONNECTING or READY)."""
        return sum(1 for r in self._records.values() if r.is_live)

    @property
    def has_capacity(self) -> bool:
        return self.live_count < self._max_devices

    @property
    def device_count(self) -> int:
        return len(self.connected_ids())

    def connected_ids(self) -> list[str]:
        return [i for i, r in self._records.items() if r.state is ConnectionState.READY]

    def is_connected(self, device_id: str) -> bool:
        rec = self._records.get(device_id)
        return rec is not None and rec.state is ConnectionState.READY

    def get(self, device_id: str) -> DeviceRecord | None:
        rec = self._records.get(device_id)
        return replace(rec) if rec is not None else None

    def records(self) -> list[DeviceRecord]:
        return [replace(r) for r in self._records.values()]

    def pending_reconnects(self) -> list[str]:
        return sorted(self._reconnect_timers)

    def add_state_listener(self, callback: StateCallback) -> None:
        self._state_listeners.append(callback)

    def remove_state_listener(self, callback: StateCallback) -> None:
        if callback in self._state_listeners:
            self._state_listeners.remove(callback)

    def add_data_listener(self, callback: DataCallback) -> None:
        self._data_listeners.append(callback)

    def remove_data_listener(self, callback: DataCallback) -> None:
        if callback in self._data_listeners:
            self._data_listeners.remove(callback)

    # ------------------------------------------------------------------
    # Discovery bookkeeping
    # ------------------------------------------------------------------
    def note_discovered(self, result: ScanResult) -> None:
        """Track a scan candidate. Observations of live devices are ignored."""
        rec = self._records.get(result.device_id)
        if rec is None:
            rec = DeviceRecord(result.device_id, display_name=result.name, rssi=result.rssi)
            self._records[result.device_id] = rec
            self._emit(StateChange(rec.device_id, ConnectionState.DISCOVERED, "scan"))
        elif rec.state is ConnectionState.DISCOVERED:
            rec.display_name = result.name or rec.display_name
            rec.rssi = result.rssi

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------
    async def connect(self, device_id: str) -> DeviceRecord:
        """Connect and set up ``device_id``; returns the READY record snapshot.

        Raises:
            PermissionDenied, AdapterNotReady: preconditions not met.
            CapacityExceeded: ``max_devices`` records already live.
            TransportError: the transport connect failed.
            SetupFailed: channel discovery or subscription failed.
        """
        await ensure_radio_ready(self._adapter, self._permissions)
        async with self._locked(device_id):
            rec = self._records.get(device_id)
            if rec is not None and rec.state is ConnectionState.READY:
                logger.info({"event": "ble_already_connected", "device_id": device_id})
                return replace(rec)
            if self.live_count >= self._max_devices:
                logger.warning(
                    {
                        "event": "ble_capacity_exceeded",
                        "device_id": device_id,
                        "max_devices": self._max_devices,
                    }
                )
                raise CapacityExceeded(device_id, self._max_devices)
            if rec is None:
                rec = DeviceRecord(device_id)
                self._records[device_id] = rec
            self._transition(rec, ConnectionState.CONNECTING)
            return await self._establish(rec)

    async def _establish(self, rec: DeviceRecord) -> DeviceRecord:
        device_id = rec.device_id
        handle: Any = None
        try:
            # Connection setup is more reliable with the radio not scanning.
            if self._scanner is not None:
                await self._scanner.stop_scan()
            logger.info({"event": "ble_connect_start", "device_id": device_id})
            try:
                handle = await self._adapter.connect(device_id)
            except HubError:
                raise
            except Exception as e:
                raise TransportError(f"Connect to {device_id} failed: {e}", device_id) from e
            rec.transport_handle = handle
            self._adapter.on_unexpected_disconnect(
                handle, functools.partial(self._on_transport_lost, device_id)
            )
            try:
                channels = await self._adapter.discover_channels(handle)
                await self._adapter.subscribe(
                    handle, channels.outbound, functools.partial(self._on_data, device_id)
                )
            except SetupFailed:
                raise
            except Exception as e:
                raise SetupFailed(f"Channel setup on {device_id} failed: {e}", device_id) from e
            if device_id in self._lost_during_setup:
                raise SetupFailed(f"Link to {device_id} dropped during setup", device_id)
        except BaseException as exc:
            await self._rollback(rec, handle, exc)
            raise

        rec.inbound_channel = channels.inbound
        rec.outbound_channel = channels.outbound
        self._transition(rec, ConnectionState.READY)
        logger.info({"event": "ble_connected", "device_id": device_id, "name": rec.name})
        return replace(rec)

    async def _rollback(self, rec: DeviceRecord, handle: Any, exc: BaseException) -> None:
        self._lost_during_setup.discard(rec.device_id)
        logger.warning(
            {
                "event": "ble_connect_failed",
                "device_id": rec.device_id,
                "error": repr(exc),
            }
        )
        self._remove(
            rec,
            reason="setup_failed",
            error=exc if isinstance(exc, Exception) else None,
        )
        if handle is None:
            return
        try:
            await self._adapter.disconnect(handle)
        except Exception as e:
            logger.debug(
                {"event": "ble_rollback_disconnect_error", "device_id": rec.device_id, "error": repr(e)}
            )

    # ------------------------------------------------------------------
    # Disconnect
    # ------------------------------------------------------------------
    async def disconnect(self, device_id: str) -> None:
        """Disconnect and remove ``device_id``. Unknown ids are a no-op.

        A pending reconnect for the id is cancelled first.

        Raises:
            TransportError: the adapter failed to close the link. The record
                is removed regardless.
        """
        await self._cancel_reconnect(device_id)
        async with self._locked(device_id):
            rec = self._records.get(device_id)
            if rec is None:
                logger.debug({"event": "ble_disconnect_noop", "device_id": device_id})
                return
            if rec.state is ConnectionState.DISCOVERED:
                del self._records[device_id]
                return
            handle = rec.transport_handle
            self._transition(rec, ConnectionState.DISCONNECTING)
            try:
                await self._adapter.disconnect(handle)
            except HubError:
                raise
            except Exception as e:
                logger.warning(
                    {"event": "ble_disconnect_error", "device_id": device_id, "error": repr(e)}
                )
                raise TransportError(f"Disconnect of {device_id} failed: {e}", device_id) from e
            finally:
                self._remove(rec, reason="explicit")
            logger.info({"event": "ble_disconnected", "device_id": device_id})

    async def disconnect_all(self, timeout_s: float | None = None) -> BatchResult:
        """Disconnect every device; failures are collected, never fatal to the rest."""
        for device_id in set(self._reconnect_wanted) | set(self._reconnect_timers):
            await self._cancel_reconnect(device_id)
        ids = [i for i, r in self._records.items() if r.state is not ConnectionState.DISCOVERED]
        logger.info({"event": "ble_disconnect_all", "devices": ids})

        async def _one(device_id: str) -> None:
            if timeout_s is None:
                await self.disconnect(device_id)
            else:
                await asyncio.wait_for(self.disconnect(device_id), timeout_s)

        results = await asyncio.gather(*(_one(i) for i in ids), return_exceptions=True)
        outcomes = tuple(
            OperationOutcome(i, ok=not isinstance(r, BaseException), error=r if isinstance(r, BaseException) else None)
            for i, r in zip(ids, results)
        )
        for i in [i for i, r in self._records.items() if r.state is ConnectionState.DISCOVERED]:
            del self._records[i]
        result = BatchResult(outcomes)
        if result.failed:
            logger.warning(
                {
                    "event": "ble_disconnect_all_partial",
                    "failed": {k: repr(v) for k, v in result.failed.items()},
                }
            )
        return result

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------
    async def write(self, device_id: str, data: bytes) -> None:
        """Write to the device's inbound channel.

        Raises:
            DeviceNotConnected: the device is not READY.
            TransportError: the adapter reported a write failure.
        """
        if not self.is_connected(device_id):
            raise DeviceNotConnected(device_id)
        async with self._locked(device_id):
            rec = self._records.get(device_id)
            if rec is None or rec.state is not ConnectionState.READY:
                raise DeviceNotConnected(device_id)
            try:
                await self._adapter.write(rec.transport_handle, rec.inbound_channel, data)
            except HubError:
                raise
            except Exception as e:
                raise TransportError(f"Write to {device_id} failed: {e}", device_id) from e
        logger.debug({"event": "ble_write", "device_id": device_id, "len": len(data)})

    def _on_data(self, device_id: str, data: bytes) -> None:
        rec = self._records.get(device_id)
        if rec is None or not rec.is_live:
            logger.debug({"event": "ble_data_dropped", "device_id": device_id, "reason": "not_live"})
            return
        for cb in list(self._data_listeners):
            try:
                cb(device_id, bytes(data))
            except Exception as e:
                logger.error(
                    {"event": "ble_data_listener_error", "device_id": device_id, "error": repr(e)},
                    exc_info=True,
                )

    # ------------------------------------------------------------------
    # Unexpected loss & reconnect
    # ------------------------------------------------------------------
    def _on_transport_lost(self, device_id: str, handle: Any) -> None:
        rec = self._records.get(device_id)
        if rec is None or rec.transport_handle is not handle:
            logger.debug({"event": "ble_loss_stale", "device_id": device_id})
            return
        if rec.state is ConnectionState.CONNECTING:
            self._lost_during_setup.add(device_id)
            return
        if rec.state is not ConnectionState.READY:
            return
        logger.warning({"event": "ble_transport_lost", "device_id": device_id})
        self._remove(rec, reason="transport_lost", error=TransportLost(device_id))
        self._schedule_reconnect(device_id)

    def _schedule_reconnect(self, device_id: str) -> None:
        self._reconnect_wanted.add(device_id)
        timer = self._reconnect_timers.pop(device_id, None)
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        self._reconnect_timers[device_id] = loop.call_later(
            self.reconnect_delay_s, self._fire_reconnect, device_id
        )
        logger.info(
            {
                "event": "ble_reconnect_scheduled",
                "device_id": device_id,
                "delay_s": self.reconnect_delay_s,
            }
        )

    def _fire_reconnect(self, device_id: str) -> None:
        self._reconnect_timers.pop(device_id, None)
        if device_id not in self._reconnect_wanted:
            return
        task = asyncio.get_running_loop().create_task(self._attempt_reconnect(device_id))
        self._reconnect_tasks[device_id] = task
        task.add_done_callback(functools.partial(self._reconnect_done, device_id))

    def _reconnect_done(self, device_id: str, task: asyncio.Task) -> None:
        if self._reconnect_tasks.get(device_id) is task:
            del self._reconnect_tasks[device_id]

    async def _attempt_reconnect(self, device_id: str) -> None:
        logger.info({"event": "ble_reconnect_attempt", "device_id": device_id})
        try:
            await self.connect(device_id)
        except Exception as e:
            logger.warning(
                {"event": "ble_reconnect_failed", "device_id": device_id, "error": repr(e)}
            )
            if device_id in self._reconnect_wanted:
                self._schedule_reconnect(device_id)
            return
        self._reconnect_wanted.discard(device_id)
        logger.info({"event": "ble_reconnected", "device_id": device_id})

    async def _cancel_reconnect(self, device_id: str) -> None:
        self._reconnect_wanted.discard(device_id)
        timer = self._reconnect_timers.pop(device_id, None)
        if timer is not None:
            timer.cancel()
            logger.info({"event": "ble_reconnect_cancelled", "device_id": device_id})
        task = self._reconnect_tasks.pop(device_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait([task])

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @contextlib.asynccontextmanager
    async def _locked(self, device_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = self._locks[device_id] = asyncio.Lock()
        self._lock_users[device_id] = self._lock_users.get(device_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[device_id] -= 1
            if not self._lock_users[device_id]:
                del self._lock_users[device_id]
                # Only ids still tracked keep their lock.
                if device_id not in self._records:
                    del self._locks[device_id]

    def _transition(self, rec: DeviceRecord, state: ConnectionState, reason: str = "") -> None:
        rec.state = state
        self._emit(StateChange(rec.device_id, state, reason))

    def _remove(self, rec: DeviceRecord, reason: str, error: BaseException | None = None) -> None:
        if self._records.get(rec.device_id) is rec:
            del self._records[rec.device_id]
        rec.clear_handles()
        rec.state = ConnectionState.DISCONNECTED
        self._emit(StateChange(rec.device_id, ConnectionState.DISCONNECTED, reason, error))

    def _emit(self, change: StateChange) -> None:
        for cb in list(self._state_listeners):
            try:
                cb(change)
            except Exception as e:
                logger.error(
                    {"event": "ble_state_listener_error", "device_id": change.device_id, "error": repr(e)},
                    exc_info=True,
                )


__all__ = ["ConnectionManager"]

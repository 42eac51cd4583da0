"""
bridge_controller.py

Composition root for the hub:
- builds the scan controller, connection manager, bridge and telemetry
  around one wireless adapter and one broker client
- connects configured device ids, then auto-connects scan candidates while
  capacity remains
- tears everything down in order on shutdown

A ``Hub`` is an explicit instance passed by reference; nothing here is a
module-level singleton.
"""

from __future__ import annotations

import asyncio

from .ble_bridge import BleBridge
from .connection_manager import ConnectionManager
from .core_types import BatchResult, ConnectionState, DeviceRecord, ScanResult, StateChange
from .errors import AdapterNotReady, CapacityExceeded, HubError
from .hub_config import HubSettings
from .logging_setup import logger
from .ports import BrokerClient, PermissionProvider, StaticPermissions, WirelessAdapter
from .scanner import ScanController
from .telemetry import Telemetry

SHUTDOWN_DISCONNECT_TIMEOUT_S = 5.0


class Hub:
    def __init__(
        self,
        settings: HubSettings,
        adapter: WirelessAdapter,
        broker: BrokerClient,
        permissions: PermissionProvider | None = None,
    ) -> None:
        self.settings = settings
        self.adapter = adapter
        self.broker = broker
        self.permissions = permissions or StaticPermissions()

        self.scanner = ScanController(
            adapter, self.permissions, [settings.service_uuid], settings.scan_timeout_s
        )
        self.manager = ConnectionManager(
            adapter,
            self.permissions,
            settings.max_devices,
            reconnect_delay_s=settings.reconnect_delay_s,
            scanner=self.scanner,
        )
        self.bridge = BleBridge(
            self.manager, broker, encoding=settings.payload_encoding, qos=settings.mqtt_qos
        )
        self.telemetry: Telemetry | None = None
        if settings.enable_telemetry:
            self.telemetry = Telemetry(
                self.manager,
                broker,
                settings.telemetry_topic,
                settings.telemetry_interval_s,
                is_scanning=lambda: self.scanner.is_scanning,
                status=self.link_status,
            )

        self._started = False
        self._pending: dict[str, asyncio.Task] = {}
        self.broker_connected = False
        # None until the radio has been probed
        self.radio_ready: bool | None = None
        self.scanner.add_result_listener(self._on_scan_result)
        self.manager.add_state_listener(self._on_state_change)
        broker.add_connection_listener(self._on_broker_connection)

    @classmethod
    def from_settings(cls, settings: HubSettings, loop: asyncio.AbstractEventLoop) -> Hub:
        """Build a hub wired to the bleak adapter and the paho broker client."""
        from .ble_gateway import BleGateway
        from .mqtt_dispatcher import MqttDispatcher

        return cls(settings, BleGateway.from_settings(settings), MqttDispatcher(settings, loop))

    # ----- lifecycle -----
    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        logger.info(
            {
                "event": "hub_start",
                "max_devices": self.settings.max_devices,
                "device_ids": self.settings.device_ids,
                "auto_connect": self.settings.auto_connect,
            }
        )
        start = getattr(self.broker, "start", None)
        if callable(start):
            start()
        self.bridge.start()
        self.radio_ready = await self.adapter.is_powered_on()
        logger.info({"event": "hub_radio_state", "ready": self.radio_ready})
        if self.telemetry is not None:
            self.telemetry.start()

        for device_id in self.settings.device_ids:
            try:
                await self.manager.connect(device_id)
            except HubError as e:
                logger.error({"event": "hub_connect_configured_failed", "device_id": device_id, "error": repr(e)})

        if self.settings.auto_connect:
            await self.scan()

    async def shutdown(self) -> BatchResult:
        """Stop scanning, disconnect everything, then release the broker."""
        self._started = False
        logger.info({"event": "hub_shutdown"})
        await self.scanner.stop_scan()
        pending = list(self._pending.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        result = await self.manager.disconnect_all(timeout_s=SHUTDOWN_DISCONNECT_TIMEOUT_S)
        await self.bridge.stop()
        if self.telemetry is not None:
            await self.telemetry.stop()
        stop = getattr(self.broker, "stop", None)
        if callable(stop):
            stop()
        logger.info({"event": "hub_stopped", "disconnected": result.succeeded, "failed": sorted(result.failed)})
        return result

    # ----- operations -----
    async def scan(self) -> None:
        if not self.manager.has_capacity:
            logger.info({"event": "hub_scan_skipped", "reason": "at_capacity"})
            return
        try:
            await self.scanner.start_scan()
        except AdapterNotReady as e:
            self.radio_ready = False
            logger.error({"event": "hub_scan_failed", "error": repr(e)})
        except HubError as e:
            logger.error({"event": "hub_scan_failed", "error": repr(e)})

    async def connect(self, device_id: str) -> DeviceRecord:
        return await self.manager.connect(device_id)

    async def disconnect(self, device_id: str) -> None:
        await self.manager.disconnect(device_id)

    async def write(self, device_id: str, data: str | bytes) -> None:
        await self.bridge.write(device_id, data)

    async def broadcast(self, data: str | bytes) -> BatchResult:
        return await self.bridge.broadcast(data)

    # ----- link state -----
    def link_status(self) -> dict:
        return {"broker_connected": self.broker_connected, "radio_ready": self.radio_ready}

    def _on_broker_connection(self, connected: bool) -> None:
        self.broker_connected = bool(connected)
        logger.info({"event": "hub_broker_state", "connected": self.broker_connected})
        if self.broker_connected and self._started and self.telemetry is not None:
            self.telemetry.publish_once()

    # ----- auto-connect -----
    def _wanted(self, device_id: str) -> bool:
        ids = self.settings.device_ids
        return not ids or device_id in ids

    def _on_scan_result(self, result: ScanResult) -> None:
        self.manager.note_discovered(result)
        device_id = result.device_id
        if not (self._started and self.settings.auto_connect and self._wanted(device_id)):
            return
        if device_id in self._pending or self.manager.is_connected(device_id):
            return
        if self.manager.live_count + len(self._pending) >= self.manager.max_devices:
            return
        task = asyncio.get_running_loop().create_task(self._auto_connect(device_id))
        self._pending[device_id] = task

    async def _auto_connect(self, device_id: str) -> None:
        try:
            await self.manager.connect(device_id)
        except CapacityExceeded:
            logger.debug({"event": "hub_auto_connect_skipped", "device_id": device_id, "reason": "at_capacity"})
            return
        except HubError as e:
            logger.warning({"event": "hub_auto_connect_failed", "device_id": device_id, "error": repr(e)})
            return
        finally:
            self._pending.pop(device_id, None)
        if self._started and not self._pending and not self.scanner.is_scanning:
            # Look for more candidates while slots remain.
            await self.scan()

    def _on_state_change(self, change: StateChange) -> None:
        if change.state is ConnectionState.DISCOVERED:
            return
        logger.info(
            {
                "event": "hub_device_state",
                "device_id": change.device_id,
                "state": change.state.value,
                "reason": change.reason,
                "connected": self.manager.device_count,
            }
        )


__all__ = ["Hub"]

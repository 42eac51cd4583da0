"""
ble_gateway.py

bleak-backed implementation of the wireless adapter port.

Handles are ``GattHandle`` objects wrapping one ``BleakClient``. Channels are
bleak ``BleakGATTCharacteristic`` objects resolved from the configured
service. bleak exceptions never leak past this module; they are translated
into hub errors.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from .ble_utils import (
    NOTIFY_PROPERTIES,
    WRITE_PROPERTIES,
    chunk_size,
    chunked,
    find_characteristic,
    find_service,
    is_valid_mac,
    resolve_services,
    supports_response,
)
from .core_types import BytesCallback, ChannelPair, LossCallback, ScanCallback, ScanResult
from .errors import AdapterNotReady, SetupFailed, TransportError
from .hub_config import NUS_RX_CHAR_UUID, NUS_SERVICE_UUID, NUS_TX_CHAR_UUID, HubSettings
from .logging_setup import ble_logger as logger

_TRANSPORT_ERRORS = (BleakError, OSError, asyncio.TimeoutError)


@dataclass(eq=False)
class GattHandle:
    device_id: str
    client: Any = None
    closing: bool = False
    loss_callback: LossCallback | None = field(default=None, repr=False)


class BleGateway:
    def __init__(
        self,
        adapter: str | None = None,
        service_uuid: str = NUS_SERVICE_UUID,
        inbound_char_uuid: str | None = NUS_RX_CHAR_UUID,
        outbound_char_uuid: str | None = NUS_TX_CHAR_UUID,
        connect_timeout_s: float = 10.0,
    ) -> None:
        self.adapter = adapter
        self.service_uuid = service_uuid.lower()
        self.inbound_char_uuid = inbound_char_uuid
        self.outbound_char_uuid = outbound_char_uuid
        self.connect_timeout_s = connect_timeout_s
        self._scanner: BleakScanner | None = None
        # Last probe result; None means unknown and forces a fresh probe.
        self._powered: bool | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        logger.info({"event": "ble_gateway_init", "adapter": adapter or "default"})

    @classmethod
    def from_settings(cls, settings: HubSettings) -> BleGateway:
        return cls(
            adapter=settings.ble_adapter,
            service_uuid=settings.service_uuid,
            inbound_char_uuid=settings.inbound_char_uuid,
            outbound_char_uuid=settings.outbound_char_uuid,
            connect_timeout_s=settings.connect_timeout_s,
        )

    def _adapter_kwargs(self) -> dict[str, Any]:
        return {"adapter": self.adapter} if self.adapter else {}

    # ----- radio state -----
    async def is_powered_on(self) -> bool:
        """Probe the radio once; later calls reuse the result until a scan fails to start.

        The probe is a short scan, so it must not run ahead of every connect.
        """
        if self._scanner is not None or self._powered:
            return True
        probe = BleakScanner(**self._adapter_kwargs())
        try:
            await probe.start()
            await probe.stop()
        except (BleakError, OSError) as e:
            logger.warning({"event": "ble_adapter_probe_failed", "error": repr(e)})
            self._powered = None
            return False
        self._powered = True
        logger.info({"event": "ble_adapter_ready", "adapter": self.adapter or "default"})
        return True

    # ----- scanning -----
    async def start_scan(self, service_uuids: Iterable[str], on_result: ScanCallback) -> None:
        def _detected(device: Any, adv: Any) -> None:
            name = getattr(adv, "local_name", None) or getattr(device, "name", None)
            on_result(ScanResult(device.address, name, getattr(adv, "rssi", None)))

        if self._scanner is not None:
            await self.stop_scan()
        scanner = BleakScanner(
            detection_callback=_detected,
            service_uuids=list(service_uuids) or None,
            **self._adapter_kwargs(),
        )
        try:
            await scanner.start()
        except (BleakError, OSError) as e:
            self._powered = None
            raise AdapterNotReady(f"BLE scan could not start: {e}") from e
        self._scanner = scanner

    async def stop_scan(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is None:
            return
        try:
            await scanner.stop()
        except (BleakError, OSError) as e:
            raise TransportError(f"BLE scan stop failed: {e}") from e

    # ----- connection -----
    async def connect(self, device_id: str) -> GattHandle:
        self._loop = asyncio.get_running_loop()
        handle = GattHandle(device_id)
        client = BleakClient(
            device_id,
            disconnected_callback=lambda _c: self._on_disconnected(handle),
            timeout=self.connect_timeout_s,
            **self._adapter_kwargs(),
        )
        handle.client = client
        logger.debug(
            {
                "event": "ble_gatt_connect",
                "device_id": device_id,
                # CoreBluetooth hosts address peripherals by UUID, not MAC
                "address_kind": "mac" if is_valid_mac(device_id) else "platform_id",
                "timeout_s": self.connect_timeout_s,
            }
        )
        try:
            await client.connect()
        except _TRANSPORT_ERRORS as e:
            raise TransportError(f"BLE connect to {device_id} failed: {e!r}", device_id) from e
        if not client.is_connected:
            raise TransportError(f"BLE connect to {device_id} failed", device_id)
        logger.debug(
            {"event": "ble_gatt_connected", "device_id": device_id, "mtu": getattr(client, "mtu_size", None)}
        )
        return handle

    def on_unexpected_disconnect(self, handle: GattHandle, callback: LossCallback) -> None:
        handle.loss_callback = callback

    def _on_disconnected(self, handle: GattHandle) -> None:
        if handle.closing:
            logger.debug({"event": "ble_gatt_closed", "device_id": handle.device_id})
            return
        cb = handle.loss_callback
        if cb is None or self._loop is None:
            return
        self._loop.call_soon_threadsafe(cb, handle)

    async def discover_channels(self, handle: GattHandle) -> ChannelPair:
        services = await resolve_services(handle.client)
        service = find_service(services, self.service_uuid)
        if service is None:
            raise SetupFailed(
                f"Service {self.service_uuid} not found on {handle.device_id}", handle.device_id
            )
        inbound = find_characteristic(service, self.inbound_char_uuid, WRITE_PROPERTIES)
        outbound = find_characteristic(service, self.outbound_char_uuid, NOTIFY_PROPERTIES)
        if inbound is None or outbound is None:
            raise SetupFailed(
                f"Writable/notifiable characteristics missing on {handle.device_id}",
                handle.device_id,
            )
        logger.debug(
            {
                "event": "ble_channels_resolved",
                "device_id": handle.device_id,
                "inbound": str(getattr(inbound, "uuid", inbound)),
                "outbound": str(getattr(outbound, "uuid", outbound)),
            }
        )
        return ChannelPair(inbound=inbound, outbound=outbound)

    async def subscribe(self, handle: GattHandle, channel: Any, on_bytes: BytesCallback) -> None:
        def _notified(_char: Any, data: bytearray) -> None:
            on_bytes(bytes(data))

        try:
            await handle.client.start_notify(channel, _notified)
        except _TRANSPORT_ERRORS as e:
            raise SetupFailed(
                f"Notification subscribe on {handle.device_id} failed: {e!r}", handle.device_id
            ) from e

    async def write(self, handle: GattHandle, channel: Any, data: bytes) -> None:
        size = chunk_size(getattr(handle.client, "mtu_size", None))
        response = supports_response(channel)
        try:
            for part in chunked(data, size):
                await handle.client.write_gatt_char(channel, part, response=response)
        except _TRANSPORT_ERRORS as e:
            raise TransportError(f"BLE write to {handle.device_id} failed: {e!r}", handle.device_id) from e

    async def disconnect(self, handle: GattHandle) -> None:
        handle.closing = True
        if handle.client is None:
            return
        try:
            await handle.client.disconnect()
        except _TRANSPORT_ERRORS as e:
            raise TransportError(
                f"BLE disconnect of {handle.device_id} failed: {e!r}", handle.device_id
            ) from e


__all__ = ["BleGateway", "GattHandle"]

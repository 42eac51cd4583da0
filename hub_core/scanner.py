"""Time-bounded, service-filtered discovery.

The controller only surfaces candidates; it never connects. Every matching
advertisement is forwarded to the listeners as-is, duplicates included.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

from .core_types import ScanCallback, ScanResult
from .errors import AdapterNotReady, PermissionDenied
from .logging_setup import ble_logger as logger
from .ports import PermissionProvider, WirelessAdapter

DEFAULT_RSSI = -100


async def ensure_radio_ready(
    adapter: WirelessAdapter, permissions: PermissionProvider
) -> None:
    """Fail fast when scanning/connecting cannot work at all.

    Raises:
        PermissionDenied: permission provider refused.
        AdapterNotReady: radio is off or unavailable.
    """
    if not permissions.has_required_permissions():
        logger.warning({"event": "ble_permission_denied"})
        raise PermissionDenied("Bluetooth scan/connect permission not granted")
    if not await adapter.is_powered_on():
        logger.warning({"event": "ble_adapter_not_ready"})
        raise AdapterNotReady("Bluetooth adapter is not powered on")


class ScanController:
    def __init__(
        self,
        adapter: WirelessAdapter,
        permissions: PermissionProvider,
        service_uuids: Iterable[str],
        timeout_s: float = 10.0,
    ) -> None:
        self._adapter = adapter
        self._permissions = permissions
        self.service_uuids = [str(u).lower() for u in service_uuids]
        self.timeout_s = timeout_s
        self._listeners: list[ScanCallback] = []
        self._scanning = False
        self._timer: asyncio.TimerHandle | None = None
        self._stop_task: asyncio.Task | None = None
        self._radio_lock = asyncio.Lock()

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    def add_result_listener(self, callback: ScanCallback) -> None:
        self._listeners.append(callback)

    def remove_result_listener(self, callback: ScanCallback) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    async def start_scan(self) -> None:
        """Start discovery; auto-stops after ``timeout_s``.

        Raises:
            PermissionDenied: permission provider refused.
            AdapterNotReady: radio is off or unavailable.
        """
        await ensure_radio_ready(self._adapter, self._permissions)
        # Start and stop never interleave; a stop issued mid-start runs after it.
        async with self._radio_lock:
            if self._scanning:
                logger.debug({"event": "ble_scan_already_active"})
                return
            logger.info(
                {
                    "event": "ble_scan_start",
                    "service_uuids": self.service_uuids,
                    "timeout_s": self.timeout_s,
                }
            )
            self._scanning = True
            try:
                await self._adapter.start_scan(self.service_uuids, self._on_advertisement)
            except BaseException:
                self._scanning = False
                raise
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self.timeout_s, self._on_timeout)

    def _on_timeout(self) -> None:
        self._timer = None
        logger.info({"event": "ble_scan_timeout", "timeout_s": self.timeout_s})
        self._stop_task = asyncio.get_running_loop().create_task(self.stop_scan())

    async def stop_scan(self) -> None:
        """Stop discovery. Safe to call at any time, any number of times."""
        async with self._radio_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if not self._scanning:
                return
            self._scanning = False
            try:
                await self._adapter.stop_scan()
            except Exception as e:
                logger.warning({"event": "ble_scan_stop_error", "error": repr(e)})
                return
        logger.info({"event": "ble_scan_stopped"})

    def _on_advertisement(self, result: ScanResult) -> None:
        if not self._scanning:
            return
        result = ScanResult(
            device_id=result.device_id,
            name=result.name or result.device_id,
            rssi=DEFAULT_RSSI if result.rssi is None else int(result.rssi),
        )
        logger.debug(
            {
                "event": "ble_scan_result",
                "device_id": result.device_id,
                "name": result.name,
                "rssi": result.rssi,
            }
        )
        for cb in list(self._listeners):
            try:
                cb(result)
            except Exception as e:
                logger.error(
                    {
                        "event": "ble_scan_listener_error",
                        "device_id": result.device_id,
                        "error": repr(e),
                    },
                    exc_info=True,
                )


__all__ = ["DEFAULT_RSSI", "ScanController", "ensure_radio_ready"]

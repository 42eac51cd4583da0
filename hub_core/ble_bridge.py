"""
ble_bridge.py

Routes data between the connection manager and the broker:
- device notifications -> ``devices/<id>/out``
- ``devices/<id>/in`` messages -> device writes
- write / broadcast entry points for local callers
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from .connection_manager import ConnectionManager
from .core_types import BatchResult, OperationOutcome
from .errors import DeviceNotConnected, HubError, MalformedTopic
from .logging_setup import bridge_logger as logger
from .ports import BrokerClient
from .topics import INBOUND_SUBSCRIPTION, outbound_topic, parse_inbound

DeliveryErrorCallback = Callable[[str, BaseException], None]


class BleBridge:
    def __init__(
        self,
        manager: ConnectionManager,
        broker: BrokerClient,
        encoding: str = "utf-8",
        qos: int = 0,
    ) -> None:
        self.manager = manager
        self.broker = broker
        self.encoding = encoding
        self.qos = qos
        self._started = False
        self._delivery_error_listeners: list[DeliveryErrorCallback] = []
        self._pending: set[asyncio.Task] = set()

    def add_delivery_error_listener(self, callback: DeliveryErrorCallback) -> None:
        self._delivery_error_listeners.append(callback)

    def start(self) -> None:
        """Subscribe the inbound pattern and start forwarding notifications."""
        if self._started:
            return
        self.manager.add_data_listener(self._on_notification)
        self.broker.subscribe(INBOUND_SUBSCRIPTION, self._on_broker_message)
        self._started = True
        logger.info({"event": "bridge_started", "subscription": INBOUND_SUBSCRIPTION})

    async def stop(self) -> None:
        if not self._started:
            return
        self.manager.remove_data_listener(self._on_notification)
        self._started = False
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        logger.info({"event": "bridge_stopped"})

    # ----- device -> broker -----
    def _on_notification(self, device_id: str, data: bytes) -> None:
        payload = data.decode(self.encoding, errors="replace")
        topic = outbound_topic(device_id)
        try:
            self.broker.publish(topic, payload, qos=self.qos, retain=False)
        except Exception as e:
            logger.error(
                {"event": "bridge_publish_error", "device_id": device_id, "topic": topic, "error": repr(e)}
            )
            return
        logger.debug({"event": "bridge_out", "device_id": device_id, "len": len(data)})

    # ----- broker -> device -----
    def _on_broker_message(self, topic: str, payload: bytes) -> None:
        if not self._started:
            return
        try:
            device_id = parse_inbound(topic)
        except MalformedTopic as e:
            logger.warning({"event": "bridge_malformed_topic", "topic": e.topic})
            return
        task = asyncio.get_running_loop().create_task(self._deliver(device_id, bytes(payload)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, device_id: str, data: bytes) -> None:
        try:
            await self.manager.write(device_id, data)
        except DeviceNotConnected as e:
            logger.warning({"event": "bridge_in_not_connected", "device_id": device_id})
            self._report(device_id, e)
        except HubError as e:
            logger.error({"event": "bridge_in_write_error", "device_id": device_id, "error": repr(e)})
            self._report(device_id, e)
        else:
            logger.debug({"event": "bridge_in", "device_id": device_id, "len": len(data)})

    def _report(self, device_id: str, error: BaseException) -> None:
        for cb in list(self._delivery_error_listeners):
            try:
                cb(device_id, error)
            except Exception as e:
                logger.error(
                    {"event": "bridge_delivery_listener_error", "device_id": device_id, "error": repr(e)},
                    exc_info=True,
                )

    # ----- public surface -----
    def _as_bytes(self, data: str | bytes) -> bytes:
        if isinstance(data, str):
            return data.encode(self.encoding)
        return bytes(data)

    async def write(self, device_id: str, data: str | bytes) -> None:
        """Write to one device.

        Raises:
            DeviceNotConnected: the device is not ready.
            TransportError: the write failed at the transport.
        """
        await self.manager.write(device_id, self._as_bytes(data))

    async def broadcast(self, data: str | bytes) -> BatchResult:
        """Write ``data`` to every ready device concurrently.

        One device failing never aborts the others; the result lists each
        device's outcome.
        """
        payload = self._as_bytes(data)
        ids = self.manager.connected_ids()
        results = await asyncio.gather(
            *(self.manager.write(i, payload) for i in ids), return_exceptions=True
        )
        outcomes = []
        for device_id, res in zip(ids, results):
            if isinstance(res, BaseException):
                outcomes.append(OperationOutcome(device_id, ok=False, error=res))
            else:
                outcomes.append(OperationOutcome(device_id, ok=True))
        result = BatchResult(tuple(outcomes))
        logger.info(
            {
                "event": "bridge_broadcast",
                "targets": len(ids),
                "ok": len(result.succeeded),
                "failed": sorted(result.failed),
            }
        )
        return result


__all__ = ["BleBridge", "DeliveryErrorCallback"]

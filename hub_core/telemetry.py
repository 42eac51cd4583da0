from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable

from .connection_manager import ConnectionManager
from .logging_setup import logger
from .ports import BrokerClient


class Telemetry:
    def __init__(
        self,
        manager: ConnectionManager,
        broker: BrokerClient,
        topic: str,
        interval_s: float = 30.0,
        is_scanning: Callable[[], bool] | None = None,
        status: Callable[[], dict] | None = None,
    ):
        self.manager = manager
        self.broker = broker
        self.topic = topic
        self.interval_s = interval_s
        self._is_scanning = is_scanning
        self._status = status
        self._task: asyncio.Task | None = None

    def snapshot(self) -> dict:
        connected = self.manager.connected_ids()
        snap = {
            "connected": connected,
            "count": len(connected),
            "max_devices": self.manager.max_devices,
            "scanning": bool(self._is_scanning()) if self._is_scanning else False,
            "pending_reconnects": self.manager.pending_reconnects(),
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        if self._status is not None:
            snap.update(self._status())
        return snap

    def publish_once(self) -> None:
        try:
            self.broker.publish(self.topic, json.dumps(self.snapshot()), qos=0, retain=False)
        except Exception as e:
            logger.warning({"event": "telemetry_publish_error", "error": repr(e)})

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info({"event": "telemetry_start", "interval_s": self.interval_s})

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.info({"event": "telemetry_stop"})

    async def _run(self) -> None:
        while True:
            self.publish_once()
            await asyncio.sleep(self.interval_s)


__all__ = ["Telemetry"]

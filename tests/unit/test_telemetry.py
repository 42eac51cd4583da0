import asyncio
import json

import pytest
from hub_core.connection_manager import ConnectionManager
from hub_core.ports import StaticPermissions
from hub_core.telemetry import Telemetry
from tests.helpers.fakes import FakeMQTT
from tests.helpers.fakes_ble import FakeAdapter


async def make(interval_s=30.0):
    mgr = ConnectionManager(FakeAdapter(), StaticPermissions(), 2)
    mqtt = FakeMQTT()
    return mgr, mqtt, Telemetry(mgr, mqtt, "hub/telemetry", interval_s, is_scanning=lambda: True)


@pytest.mark.asyncio
async def test_snapshot_reports_connections():
    mgr, _mqtt, tel = await make()
    await mgr.connect("A")
    snap = tel.snapshot()
    assert snap["connected"] == ["A"]
    assert snap["count"] == 1
    assert snap["max_devices"] == 2
    assert snap["scanning"] is True
    assert snap["ts"].endswith("Z")


@pytest.mark.asyncio
async def test_periodic_publish_and_stop():
    _mgr, mqtt, tel = await make(interval_s=0.02)
    tel.start()
    await asyncio.sleep(0.07)
    await tel.stop()
    count = len(mqtt.payloads("hub/telemetry"))
    assert count >= 2
    body = json.loads(mqtt.payloads("hub/telemetry")[0])
    assert body["count"] == 0
    await asyncio.sleep(0.05)
    assert len(mqtt.payloads("hub/telemetry")) == count


@pytest.mark.asyncio
async def test_publish_errors_do_not_stop_loop():
    _mgr, mqtt, tel = await make(interval_s=0.01)
    mqtt.fail_publish = True
    tel.start()
    await asyncio.sleep(0.03)
    mqtt.fail_publish = False
    await asyncio.sleep(0.03)
    await tel.stop()
    assert mqtt.payloads("hub/telemetry")


@pytest.mark.asyncio
async def test_status_fields_merged_into_snapshot():
    mgr = ConnectionManager(FakeAdapter(), StaticPermissions(), 2)
    status = {"broker_connected": False}
    tel = Telemetry(mgr, FakeMQTT(), "hub/telemetry", status=lambda: dict(status))
    assert tel.snapshot()["broker_connected"] is False
    status["broker_connected"] = True
    assert tel.snapshot()["broker_connected"] is True
    assert tel.snapshot()["scanning"] is False

import asyncio

import pytest
from hub_core.connection_manager import ConnectionManager
from hub_core.core_types import ConnectionState
from hub_core.errors import TransportLost
from hub_core.ports import StaticPermissions
from tests.helpers.fakes_ble import FakeAdapter

DELAY = 0.05


def make(max_devices=1):
    adapter = FakeAdapter()
    mgr = ConnectionManager(adapter, StaticPermissions(), max_devices, reconnect_delay_s=DELAY)
    states = []
    mgr.add_state_listener(states.append)
    return adapter, mgr, states


@pytest.mark.asyncio
async def test_loss_frees_slot_immediately():
    adapter, mgr, states = make(max_devices=1)
    await mgr.connect("A")
    adapter.drop("A")
    assert mgr.get("A") is None
    assert mgr.live_count == 0
    lost = states[-1]
    assert lost.state is ConnectionState.DISCONNECTED
    assert lost.reason == "transport_lost"
    assert isinstance(lost.error, TransportLost)
    # another device may take the freed slot before the reconnect fires
    await mgr.connect("B")
    assert mgr.connected_ids() == ["B"]
    await mgr.disconnect_all()


@pytest.mark.asyncio
async def test_exactly_one_reconnect_attempt_after_delay():
    adapter, mgr, _ = make()
    await mgr.connect("A")
    adapter.drop("A")
    assert mgr.pending_reconnects() == ["A"]
    await asyncio.sleep(DELAY / 2)
    assert adapter.connect_calls == ["A"]
    await asyncio.sleep(DELAY * 2)
    assert adapter.connect_calls == ["A", "A"]
    assert mgr.is_connected("A")
    assert mgr.pending_reconnects() == []


@pytest.mark.asyncio
async def test_reconnect_retries_forever_at_fixed_delay():
    adapter, mgr, _ = make()
    await mgr.connect("A")
    adapter.fail_connect["A"] = RuntimeError("out of range")
    adapter.drop("A")
    await asyncio.sleep(DELAY * 4.5)
    attempts = adapter.connect_calls.count("A") - 1
    assert 3 <= attempts <= 5
    adapter.fail_connect.clear()
    await asyncio.sleep(DELAY * 2)
    assert mgr.is_connected("A")
    settled = len(adapter.connect_calls)
    await asyncio.sleep(DELAY * 2)
    assert len(adapter.connect_calls) == settled


@pytest.mark.asyncio
async def test_explicit_disconnect_cancels_pending_reconnect():
    adapter, mgr, _ = make()
    await mgr.connect("A")
    adapter.drop("A")
    await mgr.disconnect("A")
    assert mgr.pending_reconnects() == []
    await asyncio.sleep(DELAY * 3)
    assert adapter.connect_calls == ["A"]


@pytest.mark.asyncio
async def test_disconnect_all_cancels_every_timer():
    adapter, mgr, _ = make(max_devices=2)
    await mgr.connect("A")
    await mgr.connect("B")
    adapter.drop("A")
    adapter.drop("B")
    assert mgr.pending_reconnects() == ["A", "B"]
    await mgr.disconnect_all()
    await asyncio.sleep(DELAY * 3)
    assert adapter.connect_calls == ["A", "B"]


@pytest.mark.asyncio
async def test_stale_loss_callback_ignored():
    adapter, mgr, _ = make()
    await mgr.connect("A")
    old = adapter.handles["A"]
    await mgr.disconnect("A")
    await mgr.connect("A")
    old.on_lost(old)
    assert mgr.is_connected("A")
    assert mgr.pending_reconnects() == []


@pytest.mark.asyncio
async def test_reconnect_blocked_by_capacity_keeps_retrying():
    adapter, mgr, _ = make(max_devices=1)
    await mgr.connect("A")
    adapter.drop("A")
    await mgr.connect("B")
    await asyncio.sleep(DELAY * 1.5)
    assert mgr.pending_reconnects() == ["A"]
    await mgr.disconnect("B")
    await asyncio.sleep(DELAY * 2)
    assert mgr.is_connected("A")

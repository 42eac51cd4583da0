import asyncio

import pytest
from hub_core.errors import AdapterNotReady, PermissionDenied
from hub_core.ports import StaticPermissions
from hub_core.scanner import DEFAULT_RSSI, ScanController
from tests.helpers.fakes_ble import FakeAdapter

NUS = "6E400001-B5A3-F393-E0A9-E50E24DCCA9E"


def make(adapter=None, granted=True, timeout_s=10.0):
    adapter = adapter or FakeAdapter()
    return adapter, ScanController(adapter, StaticPermissions(granted), [NUS], timeout_s)


@pytest.mark.asyncio
async def test_start_scan_filters_by_service():
    adapter, scanner = make()
    await scanner.start_scan()
    assert scanner.is_scanning is True
    assert adapter.scan_filter == [NUS.lower()]
    await scanner.stop_scan()


@pytest.mark.asyncio
async def test_permission_denied_before_any_scan():
    adapter, scanner = make(granted=False)
    with pytest.raises(PermissionDenied):
        await scanner.start_scan()
    assert adapter.scan_starts == 0


@pytest.mark.asyncio
async def test_adapter_off_fails_fast():
    adapter, scanner = make(FakeAdapter(powered=False))
    with pytest.raises(AdapterNotReady):
        await scanner.start_scan()
    assert adapter.scan_starts == 0
    assert scanner.is_scanning is False


@pytest.mark.asyncio
async def test_start_while_scanning_is_noop():
    adapter, scanner = make()
    await scanner.start_scan()
    await scanner.start_scan()
    assert adapter.scan_starts == 1
    await scanner.stop_scan()


@pytest.mark.asyncio
async def test_stop_scan_idempotent():
    adapter, scanner = make()
    await scanner.stop_scan()
    assert adapter.scan_stops == 0
    await scanner.start_scan()
    await scanner.stop_scan()
    await scanner.stop_scan()
    assert adapter.scan_stops == 1
    assert scanner.is_scanning is False


@pytest.mark.asyncio
async def test_stop_scan_swallows_adapter_error():
    adapter, scanner = make()
    adapter.fail_scan_stop = True
    await scanner.start_scan()
    await scanner.stop_scan()
    assert scanner.is_scanning is False


@pytest.mark.asyncio
async def test_results_forwarded_with_fallbacks_and_duplicates():
    adapter, scanner = make()
    seen = []
    scanner.add_result_listener(seen.append)
    await scanner.start_scan()
    adapter.advertise("AA", name="Thermo", rssi=-40)
    adapter.advertise("BB")
    adapter.advertise("AA", name="Thermo", rssi=-42)
    await scanner.stop_scan()
    assert [(r.device_id, r.name, r.rssi) for r in seen] == [
        ("AA", "Thermo", -40),
        ("BB", "BB", DEFAULT_RSSI),
        ("AA", "Thermo", -42),
    ]


@pytest.mark.asyncio
async def test_listener_error_does_not_block_others():
    adapter, scanner = make()
    seen = []

    def broken(_result):
        raise ValueError("listener bug")

    scanner.add_result_listener(broken)
    scanner.add_result_listener(seen.append)
    await scanner.start_scan()
    adapter.advertise("AA")
    await scanner.stop_scan()
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_results_after_stop_are_ignored():
    adapter, scanner = make()
    seen = []
    scanner.add_result_listener(seen.append)
    await scanner.start_scan()
    await scanner.stop_scan()
    adapter.advertise("AA")
    assert seen == []


@pytest.mark.asyncio
async def test_scan_auto_stops_after_timeout():
    adapter, scanner = make(timeout_s=0.05)
    await scanner.start_scan()
    await asyncio.sleep(0.15)
    assert scanner.is_scanning is False
    assert adapter.scan_stops == 1


@pytest.mark.asyncio
async def test_stop_during_start_leaves_radio_idle():
    adapter, scanner = make(timeout_s=0.05)
    adapter.start_gate = asyncio.Event()
    starting = asyncio.create_task(scanner.start_scan())
    await asyncio.sleep(0)
    stopping = asyncio.create_task(scanner.stop_scan())
    await asyncio.sleep(0)
    adapter.start_gate.set()
    await asyncio.gather(starting, stopping)
    assert adapter.scanning is False
    assert scanner.is_scanning is False
    await asyncio.sleep(0.1)
    assert adapter.scan_starts == 1
    assert adapter.scan_stops == 1

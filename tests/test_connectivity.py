import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from orderbook_sync.network.connectivity import (
    ConnectivityMonitor,
    ReachabilityProbe,
    TransportKind,
)


def test_starts_offline():
    monitor = ConnectivityMonitor()
    assert monitor.is_online() is False
    assert monitor.get_status().connected is False


def test_reconnect_fires_only_on_edge():
    monitor = ConnectivityMonitor()
    reconnects = []
    monitor.on_reconnect(lambda: reconnects.append(1))

    monitor.handle_signal(True, True, TransportKind.WIFI)
    monitor.handle_signal(True, True, TransportKind.WIFI)
    monitor.handle_signal(True, None, TransportKind.CELLULAR)
    assert len(reconnects) == 1

    monitor.handle_signal(False)
    monitor.handle_signal(True)
    assert len(reconnects) == 2


def test_unreachable_link_counts_as_offline():
    monitor = ConnectivityMonitor()
    monitor.handle_signal(True, reachable=False, transport=TransportKind.WIFI)
    assert monitor.is_online() is False

    monitor.handle_signal(True, reachable=None, transport=TransportKind.WIFI)
    assert monitor.is_online() is True


def test_disconnect_sets_transport_none():
    monitor = ConnectivityMonitor()
    monitor.handle_signal(True)
    monitor.handle_signal(False)
    assert monitor.get_status().transport == TransportKind.NONE


def test_subscribers_see_every_signal_and_can_unsubscribe():
    monitor = ConnectivityMonitor()
    seen = []
    unsubscribe = monitor.subscribe(lambda status: seen.append(status.connected))

    monitor.handle_signal(True)
    monitor.handle_signal(True)
    unsubscribe()
    monitor.handle_signal(False)

    assert seen == [True, True]
    assert monitor.signal_count == 3


def test_failing_callback_does_not_block_others():
    monitor = ConnectivityMonitor()
    calls = []

    def broken():
        raise RuntimeError("boom")

    monitor.on_reconnect(broken)
    monitor.on_reconnect(lambda: calls.append("ok"))
    monitor.handle_signal(True)

    assert calls == ["ok"]


def test_status_to_dict():
    monitor = ConnectivityMonitor()
    monitor.handle_signal(True, True, TransportKind.ETHERNET)
    data = monitor.get_status().to_dict()
    assert data["connected"] is True
    assert data["transport"] == "ethernet"
    assert data["changed_at"] is not None


@pytest.mark.asyncio
async def test_probe_reports_reachability():
    monitor = ConnectivityMonitor()
    probe = ReachabilityProbe(monitor, "http://probe.invalid/health", interval=60)

    with patch.object(ReachabilityProbe, "_check", AsyncMock(return_value=True)):
        assert await probe.check_once() is True
    assert monitor.is_online() is True

    with patch.object(ReachabilityProbe, "_check", AsyncMock(return_value=False)):
        assert await probe.check_once() is False
    assert monitor.is_online() is False


@pytest.mark.asyncio
async def test_probe_start_and_stop():
    monitor = ConnectivityMonitor()
    probe = ReachabilityProbe(monitor, "http://probe.invalid/health", interval=60)

    with patch.object(ReachabilityProbe, "_check", AsyncMock(return_value=True)):
        probe.start()
        for _ in range(5):
            if monitor.is_online():
                break
            await asyncio.sleep(0)
        await probe.stop()

    assert monitor.is_online() is True
    assert probe._task is None

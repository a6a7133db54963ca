from __future__ import annotations

import pytest
from aiohttp import ClientConnectionError

from punch_sync import ConnectivityMonitor, ConnectivityProbe
from tests.helpers import BASE_URL, DummySession


def test_listeners_fire_only_on_transitions() -> None:
    monitor = ConnectivityMonitor(online=True)
    seen: list[bool] = []
    monitor.add_listener(seen.append)

    assert monitor.set_online(True) is False
    assert monitor.set_online(False) is True
    assert monitor.set_online(False) is False
    assert monitor.set_online(True) is True

    assert seen == [False, True]
    assert monitor.current_state() is True
    assert monitor.last_change_at is not None


def test_remove_listener() -> None:
    monitor = ConnectivityMonitor(online=False)
    seen: list[bool] = []
    remove = monitor.add_listener(seen.append)
    remove()
    remove()
    monitor.set_online(True)
    assert seen == []


def test_failing_listener_does_not_block_others(caplog: pytest.LogCaptureFixture) -> None:
    monitor = ConnectivityMonitor(online=False)
    seen: list[bool] = []

    def broken(_online: bool) -> None:
        raise RuntimeError("boom")

    monitor.add_listener(broken)
    monitor.add_listener(seen.append)
    monitor.set_online(True)

    assert seen == [True]
    assert "Connectivity listener" in caplog.text


@pytest.mark.asyncio
async def test_probe_any_response_means_online() -> None:
    monitor = ConnectivityMonitor(online=False)
    session = DummySession([500])
    probe = ConnectivityProbe(monitor, session, BASE_URL + "/", path="/api/employee-portal/server-time")

    assert await probe.probe_once() is True
    assert monitor.is_online
    assert session.urls == [f"{BASE_URL}/api/employee-portal/server-time"]
    assert probe.status()["last_probe_error"] is None


@pytest.mark.asyncio
async def test_probe_network_failure_means_offline() -> None:
    monitor = ConnectivityMonitor(online=True)
    session = DummySession([ClientConnectionError("refused"), TimeoutError()])
    probe = ConnectivityProbe(monitor, session, BASE_URL)

    assert await probe.probe_once() is False
    assert not monitor.is_online
    assert probe.last_error == "refused"

    assert await probe.probe_once() is False
    assert probe.last_error == "TimeoutError"

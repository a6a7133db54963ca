from __future__ import annotations

import asyncio

import pytest
from aiohttp import ClientConnectionError

from punch_sync import (
    ConnectivityMonitor,
    ControlChannel,
    OfflineSyncFacade,
    SyncResult,
    SyncState,
    describe_sync_result,
)
from punch_sync.const import MSG_PROCESS_QUEUE
from punch_sync.facade import NOTIFY_ERROR, NOTIFY_SUCCESS
from tests.helpers import make_item


@pytest.mark.parametrize(
    ("result", "expected"),
    [
        (None, None),
        (SyncResult(), None),
        (SyncResult(processed=2, failed=1), (NOTIFY_SUCCESS, "2 punch(es) synced successfully")),
        (SyncResult(failed=3, remaining=3), (NOTIFY_ERROR, "3 punch(es) failed to sync")),
    ],
)
def test_describe_sync_result(result, expected) -> None:
    notification = describe_sync_result(result)
    if expected is None:
        assert notification is None
    else:
        assert (notification.kind, notification.message) == expected


def test_actions_are_noops_without_worker() -> None:
    channel = ControlChannel()
    monitor = ConnectivityMonitor(online=True)
    facade = OfflineSyncFacade(channel.connect(), monitor)

    facade.sync_now()
    facade.clear_queue()
    facade.cache_portal_data("token-1")

    assert facade.state == SyncState(is_online=True)


@pytest.mark.asyncio
async def test_sync_now_is_noop_offline(channel) -> None:
    monitor = ConnectivityMonitor(online=False)
    inbox = channel.attach()
    facade = OfflineSyncFacade(channel.connect(), monitor)
    inbox.get_nowait()  # initial status request

    facade.sync_now()

    assert inbox.empty()
    monitor.set_online(True)
    facade.sync_now()
    assert inbox.get_nowait().type == MSG_PROCESS_QUEUE


@pytest.mark.asyncio
async def test_facade_tracks_queue_and_sync_results(worker, store, channel, monitor, session) -> None:
    for n in (1, 2):
        await store.async_enqueue(make_item(n))
    facade = OfflineSyncFacade(channel.connect(), monitor)
    states: list[SyncState] = []
    facade.add_listener(states.append)
    await worker.async_block_till_done()

    assert facade.pending_count == 2
    assert len(facade.pending_items) == 2
    assert facade.last_sync_result is None

    facade.sync_now()
    await worker.async_block_till_done()

    assert facade.last_sync_result == SyncResult(processed=2, failed=0, remaining=0)
    assert facade.pending_count == 0
    assert facade.pending_items == ()
    assert facade.notification.kind == NOTIFY_SUCCESS
    assert states[-1] is facade.state


@pytest.mark.asyncio
async def test_facade_reports_failed_cycle(worker, store, channel, monitor, session) -> None:
    await store.async_enqueue(make_item(1))
    session.outcomes = [ClientConnectionError("offline again")]
    facade = OfflineSyncFacade(channel.connect(), monitor)

    facade.sync_now()
    await worker.async_block_till_done()

    assert facade.last_sync_result == SyncResult(processed=0, failed=1, remaining=1)
    assert facade.pending_count == 1
    assert facade.notification.kind == NOTIFY_ERROR


@pytest.mark.asyncio
async def test_every_tab_converges_after_clear(worker, store, channel, monitor) -> None:
    for n in (1, 2, 3):
        await store.async_enqueue(make_item(n))
    first = OfflineSyncFacade(channel.connect(), monitor)
    second = OfflineSyncFacade(channel.connect(), monitor)
    await worker.async_block_till_done()
    assert first.pending_count == second.pending_count == 3

    first.clear_queue()
    await worker.async_block_till_done()

    assert first.pending_count == second.pending_count == 0
    assert second.state.storage_warning is False


@pytest.mark.asyncio
async def test_connectivity_is_mirrored(worker, channel, monitor) -> None:
    facade = OfflineSyncFacade(channel.connect(), monitor)
    monitor.set_online(False)
    assert facade.is_online is False
    facade.close()
    monitor.set_online(True)
    assert facade.is_online is False


@pytest.mark.asyncio
async def test_portal_cache_event_updates_state(worker, channel, monitor, session) -> None:
    session.default = (200, {"ok": True})
    facade = OfflineSyncFacade(channel.connect(), monitor)

    facade.cache_portal_data("token-1")
    await worker.async_block_till_done()

    assert facade.state.portal_cached_at is not None


@pytest.mark.asyncio
async def test_malformed_event_is_ignored(channel, monitor, caplog: pytest.LogCaptureFixture) -> None:
    facade = OfflineSyncFacade(channel.connect(), monitor)
    channel.broadcast("QUEUE_STATUS", queue=[{"url": "missing id"}])
    await asyncio.sleep(0)

    assert facade.pending_count == 0
    assert "Ignoring malformed" in caplog.text

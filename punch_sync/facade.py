"""Foreground view of the offline punch queue.

The façade never touches the network or the queue store. It turns channel
events into an observable :class:`SyncState` and forwards the user's
intents to the worker.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime

from .channel import ChannelMessage, ChannelPort
from .connectivity import ConnectivityMonitor
from .const import (
    MSG_CACHE_PORTAL_DATA,
    MSG_CLEAR_QUEUE,
    MSG_GET_QUEUE_STATUS,
    MSG_PORTAL_DATA_CACHED,
    MSG_PROCESS_QUEUE,
    MSG_QUEUE_CLEARED,
    MSG_QUEUE_PROCESSED,
    MSG_QUEUE_STATUS,
)
from .models import QueueItem, SyncResult

_LOGGER = logging.getLogger(__name__)

NOTIFY_SUCCESS = "success"
NOTIFY_ERROR = "error"


@dataclass(frozen=True, slots=True)
class SyncState:
    is_online: bool = True
    pending_count: int = 0
    pending_items: tuple[QueueItem, ...] = ()
    last_sync_result: SyncResult | None = None
    storage_warning: bool = False
    portal_cached_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class SyncNotification:
    kind: str
    message: str


def describe_sync_result(result: SyncResult | None) -> SyncNotification | None:
    """Derive the banner shown after a drain cycle."""

    if result is None:
        return None
    if result.processed > 0:
        return SyncNotification(NOTIFY_SUCCESS, f"{result.processed} punch(es) synced successfully")
    if result.failed > 0:
        return SyncNotification(NOTIFY_ERROR, f"{result.failed} punch(es) failed to sync")
    return None


StateListener = Callable[[SyncState], None]


class OfflineSyncFacade:
    """Observable offline-sync state for one foreground context."""

    def __init__(self, port: ChannelPort, monitor: ConnectivityMonitor) -> None:
        self._port = port
        self._monitor = monitor
        self._state = SyncState(is_online=monitor.is_online)
        self._listeners: list[StateListener] = []
        self._unsub_port = port.add_handler(self._handle_message)
        self._unsub_monitor = monitor.add_listener(self._handle_connectivity)
        self.refresh_status()

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._state.is_online

    @property
    def pending_count(self) -> int:
        return self._state.pending_count

    @property
    def pending_items(self) -> tuple[QueueItem, ...]:
        return self._state.pending_items

    @property
    def last_sync_result(self) -> SyncResult | None:
        return self._state.last_sync_result

    @property
    def notification(self) -> SyncNotification | None:
        return describe_sync_result(self._state.last_sync_result)

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # ------------------------------------------------------------------
    def sync_now(self) -> None:
        """Ask the worker for a drain; completion arrives as an event."""

        if not self._monitor.is_online or not self._port.controller:
            return
        self._port.post(MSG_PROCESS_QUEUE)

    def clear_queue(self) -> None:
        self._port.post(MSG_CLEAR_QUEUE)

    def refresh_status(self) -> None:
        self._port.post(MSG_GET_QUEUE_STATUS)

    def cache_portal_data(self, token: str | None) -> None:
        if not token:
            return
        self._port.post(MSG_CACHE_PORTAL_DATA, token=token)

    def close(self) -> None:
        self._unsub_port()
        self._unsub_monitor()
        self._listeners.clear()

    # ------------------------------------------------------------------
    def _handle_connectivity(self, online: bool) -> None:
        self._update(is_online=online)

    def _handle_message(self, message: ChannelMessage) -> None:
        try:
            if message.type == MSG_QUEUE_PROCESSED:
                result = SyncResult.from_dict(message.payload)
                self._update(last_sync_result=result, pending_count=result.remaining)
                self.refresh_status()
            elif message.type == MSG_QUEUE_STATUS:
                items = tuple(QueueItem.from_dict(raw) for raw in message.get("queue") or ())
                self._update(
                    pending_items=items,
                    pending_count=len(items),
                    storage_warning=bool(message.get("storage_warning")),
                )
            elif message.type == MSG_QUEUE_CLEARED:
                self._update(pending_items=(), pending_count=0, storage_warning=False)
            elif message.type == MSG_PORTAL_DATA_CACHED:
                _LOGGER.debug("Portal data cached for offline use: %s", dict(message.payload))
                if message.get("cached"):
                    self._update(portal_cached_at=datetime.now(tz=UTC))
        except (KeyError, TypeError, ValueError) as err:
            _LOGGER.warning("Ignoring malformed %s message: %s", message.type, err)

    def _update(self, **changes) -> None:
        self._state = replace(self._state, **changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("Sync state listener %r failed", listener)


__all__ = [
    "NOTIFY_ERROR",
    "NOTIFY_SUCCESS",
    "OfflineSyncFacade",
    "SyncNotification",
    "SyncState",
    "describe_sync_result",
]

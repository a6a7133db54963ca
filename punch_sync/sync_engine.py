from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from aiohttp import ClientError, ClientSession, ClientTimeout

from .connectivity import ConnectivityMonitor
from .const import DEFAULT_REQUEST_TIMEOUT
from .models import QueueItem, SyncResult
from .queue_store import QueueStore

_LOGGER = logging.getLogger(__name__)

NETWORK_ERRORS: tuple[type[BaseException], ...] = (ClientError, TimeoutError, OSError)


class SyncEngine:
    """Replay queued punch requests, one at a time, oldest first.

    A drain attempts every item of its start-of-cycle snapshot at most once.
    Any HTTP response evicts the item, including rejections such as ``409``;
    only a failure to obtain a response keeps it queued.
    """

    def __init__(
        self,
        store: QueueStore,
        session: ClientSession,
        monitor: ConnectivityMonitor,
        *,
        stop_on_network_error: bool = True,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.session = session
        self.monitor = monitor
        self.stop_on_network_error = stop_on_network_error
        self.request_timeout = request_timeout
        self.logger = logger or _LOGGER
        self._lock = asyncio.Lock()
        self.last_result: SyncResult | None = None
        self.last_drain_at: datetime | None = None
        self.last_error: str | None = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def drain(self) -> SyncResult | None:
        """Run one drain cycle.

        Returns ``None`` without touching the network when offline or when a
        cycle is already running; concurrent requests coalesce into the
        running one.
        """

        if not self.monitor.is_online:
            self.logger.debug("Drain refused: offline")
            return None
        if self._lock.locked():
            self.logger.debug("Drain already running, request coalesced")
            return None

        async with self._lock:
            snapshot = await self.store.async_list_all()
            processed = failed = 0
            for item in snapshot:
                # Items cleared while this cycle was running must not be sent.
                if not await self.store.async_contains(item.id):
                    continue
                status = await self._deliver(item)
                if status is None:
                    failed += 1
                    if self.stop_on_network_error:
                        break
                    continue
                await self.store.async_remove(item.id)
                processed += 1
            remaining = await self.store.async_size()
            result = SyncResult(processed=processed, failed=failed, remaining=remaining)
            self.last_result = result
            self.last_drain_at = datetime.now(tz=UTC)
            if snapshot:
                self.logger.info(
                    "Drain finished: %d processed, %d failed, %d remaining",
                    processed,
                    failed,
                    remaining,
                )
            return result

    async def _deliver(self, item: QueueItem) -> int | None:
        """Send ``item`` once; return the HTTP status or ``None`` on network failure."""

        data = item.body.encode("utf-8") if item.body is not None else None
        try:
            async with self.session.request(
                item.method,
                item.url,
                headers=dict(item.headers),
                data=data,
                timeout=ClientTimeout(total=self.request_timeout),
            ) as resp:
                await resp.read()
                status = resp.status
        except NETWORK_ERRORS as err:
            self.last_error = str(err) or err.__class__.__name__
            self.logger.warning("Replay of %s %s failed: %s", item.method, item.url, self.last_error)
            return None

        self.last_error = None
        if status >= 400:
            self.logger.info("Replay of %s rejected with %s, dropping it", item.id, status)
        else:
            self.logger.debug("Replayed %s %s -> %s", item.method, item.url, status)
        return status

    def status(self) -> dict[str, Any]:
        return {
            "draining": self.running,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "last_drain_at": self.last_drain_at.isoformat() if self.last_drain_at else None,
            "last_delivery_error": self.last_error,
        }


__all__ = ["NETWORK_ERRORS", "SyncEngine"]

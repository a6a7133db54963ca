"""The worker context: sole owner of the offline queue."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Coroutine, Mapping
from contextlib import suppress
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlsplit

from aiohttp import ClientSession, ClientTimeout

from .channel import ChannelMessage, ControlChannel
from .config import SyncConfig
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
    QUEUEABLE_METHODS,
)
from .models import PortalResponse, QueueItem, SyncResult, request_headers
from .queue_store import QueueStorageError, QueueStore
from .sync_engine import NETWORK_ERRORS, SyncEngine

_LOGGER = logging.getLogger(__name__)


class SyncWorker:
    """Serve control-channel intents and intercept punch submissions.

    Every queue mutation happens on this object's event loop, so there is a
    single logical writer. Foreground contexts only see snapshots broadcast
    on the channel.
    """

    def __init__(
        self,
        config: SyncConfig,
        store: QueueStore,
        monitor: ConnectivityMonitor,
        channel: ControlChannel,
        *,
        session: ClientSession | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.monitor = monitor
        self.channel = channel
        self.logger = logger or _LOGGER
        self._session = session
        self._owns_session = session is None
        self.engine: SyncEngine | None = None
        if session is not None:
            self.engine = self._create_engine(session)
        self._inbox: asyncio.Queue[ChannelMessage] | None = None
        self._serve_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._unsub_monitor: Callable[[], None] | None = None
        self.last_enqueue_at: datetime | None = None
        self.last_cache_at: datetime | None = None

    def _create_engine(self, session: ClientSession) -> SyncEngine:
        return SyncEngine(
            self.store,
            session,
            self.monitor,
            stop_on_network_error=self.config.stop_on_network_error,
            request_timeout=self.config.request_timeout,
            logger=self.logger,
        )

    @property
    def session(self) -> ClientSession:
        if self._session is None:
            raise RuntimeError("worker has no HTTP session; call async_start() first")
        return self._session

    @property
    def started(self) -> bool:
        return self._serve_task is not None and not self._serve_task.done()

    # ------------------------------------------------------------------
    async def async_start(self) -> None:
        """Take control of the channel and follow connectivity changes."""

        if self.started:
            return
        if self._session is None:
            self._session = ClientSession()
            self._owns_session = True
        if self.engine is None:
            self.engine = self._create_engine(self._session)
        self._inbox = self.channel.attach()
        self._serve_task = asyncio.create_task(self._serve())
        self._unsub_monitor = self.monitor.add_listener(self._handle_connectivity)
        self.logger.debug("Sync worker started (store=%s)", self.store.path)

    async def async_stop(self) -> None:
        """Release the channel. Running drains are allowed to finish."""

        if self._unsub_monitor is not None:
            self._unsub_monitor()
            self._unsub_monitor = None
        if self._inbox is not None:
            self.channel.detach()
        if self._serve_task is not None:
            self._serve_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._serve_task
        self._serve_task = None
        self._inbox = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
            self.engine = None

    async def async_block_till_done(self) -> None:
        """Wait until the inbox is empty and every scheduled task finished."""

        while True:
            if self._inbox is not None and self.started:
                await self._inbox.join()
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)
        # Let call_soon broadcasts reach the ports.
        await asyncio.sleep(0)
        await asyncio.sleep(0)

    async def _serve(self) -> None:
        assert self._inbox is not None
        inbox = self._inbox
        while True:
            message = await inbox.get()
            try:
                await self.handle_message(message)
            except asyncio.CancelledError:
                raise
            except Exception as err:  # pragma: no cover
                self.logger.exception("Failed to handle %s: %s", message.type, err)
            finally:
                inbox.task_done()

    # ------------------------------------------------------------------
    async def handle_message(self, message: ChannelMessage) -> None:
        if message.type == MSG_GET_QUEUE_STATUS:
            await self.async_broadcast_status()
        elif message.type == MSG_PROCESS_QUEUE:
            self.schedule_drain()
        elif message.type == MSG_CLEAR_QUEUE:
            await self.async_clear_queue()
        elif message.type == MSG_CACHE_PORTAL_DATA:
            token = str(message.get("token") or "").strip()
            if token:
                self._spawn(self.async_cache_portal_data(token))
        else:
            self.logger.debug("Ignoring unknown channel message %s", message.type)

    def _handle_connectivity(self, online: bool) -> None:
        if online:
            self.schedule_drain()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def schedule_drain(self) -> asyncio.Task | None:
        """Start a drain in the background unless one is already running."""

        if self.engine is None or self.engine.running:
            return None
        return self._spawn(self.async_process_queue())

    async def async_process_queue(self) -> SyncResult | None:
        """Run one drain and broadcast its outcome when a cycle ran."""

        if self.engine is None:
            return None
        result = await self.engine.drain()
        if result is None:
            return None
        self.channel.broadcast(MSG_QUEUE_PROCESSED, **result.to_dict())
        await self.async_broadcast_status()
        return result

    async def async_clear_queue(self) -> int:
        cleared = await self.store.async_clear()
        self.logger.info("Offline queue cleared (%d item(s) discarded)", cleared)
        self.channel.broadcast(MSG_QUEUE_CLEARED, cleared=cleared)
        await self.async_broadcast_status()
        return cleared

    async def async_broadcast_status(self) -> list[QueueItem]:
        items = await self.store.async_list_all()
        self.channel.broadcast(
            MSG_QUEUE_STATUS,
            queue=[item.to_dict() for item in items],
            count=len(items),
            storage_warning=self.store.storage_warning,
        )
        return items

    # ------------------------------------------------------------------
    def is_queueable(self, method: str, url: str) -> bool:
        if method.upper() not in QUEUEABLE_METHODS:
            return False
        path = urlsplit(url).path or "/"
        return any(path == prefix or path.startswith(prefix + "/") for prefix in self.config.queue_paths)

    async def async_fetch(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        body: str | bytes | Mapping[str, Any] | None = None,
    ) -> PortalResponse:
        """Send a request on behalf of a foreground context.

        Punch submissions that cannot reach the portal are deferred into the
        queue and answered with ``202``. Reads fall back to the portal cache
        when the network is unavailable.
        """

        method = method.upper()
        headers = dict(headers or {})
        if self.is_queueable(method, url):
            if not self.monitor.is_online:
                return await self._defer(method, url, headers, body, reason="offline")
            try:
                response = await self._send(method, url, headers, body)
            except NETWORK_ERRORS as err:
                self.logger.warning("Punch submission failed, queueing it: %s", err)
                return await self._defer(method, url, headers, body, reason="network_error")
            if response.status in self.config.retry_statuses:
                return await self._defer(method, url, headers, body, reason=f"status_{response.status}")
            return response

        path = urlsplit(url).path
        if method == "GET" and not self.monitor.is_online:
            cached = await self._cached_response(path)
            if cached is not None:
                return cached
        try:
            response = await self._send(method, url, headers, body)
        except NETWORK_ERRORS:
            if method == "GET":
                cached = await self._cached_response(path)
                if cached is not None:
                    return cached
            raise
        if method == "GET" and response.ok and path in self.config.portal_cache_paths:
            await self.store.async_update_portal_cache(path, response.body)
        return response

    async def _send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: str | bytes | Mapping[str, Any] | None,
    ) -> PortalResponse:
        if isinstance(body, Mapping):
            data: str | bytes | None = json.dumps(body, separators=(",", ":"))
        else:
            data = body
        async with self.session.request(
            method,
            url,
            headers=request_headers(headers, body),
            data=data,
            timeout=ClientTimeout(total=self.config.request_timeout),
        ) as resp:
            raw = await resp.read()
            content_type = resp.headers.get("Content-Type", "")
            return PortalResponse(
                status=resp.status,
                body=_decode_body(raw, content_type),
                headers=dict(resp.headers),
            )

    async def _defer(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: str | bytes | Mapping[str, Any] | None,
        *,
        reason: str,
    ) -> PortalResponse:
        try:
            item = QueueItem.create(url, method, headers=headers, body=body)
        except UnicodeDecodeError as err:
            self.logger.warning("Cannot queue %s %s offline, body is not UTF-8: %s", method, url, err)
            return PortalResponse(
                status=422,
                body={"queued": False, "offline": True, "error": "request body cannot be stored offline"},
            )
        try:
            await self.store.async_enqueue(item)
        except QueueStorageError as err:
            self.logger.warning("Could not queue punch offline: %s", err)
            await self.async_broadcast_status()
            return PortalResponse(
                status=503,
                body={"queued": False, "offline": True, "error": "offline queue unavailable"},
            )
        self.last_enqueue_at = datetime.now(tz=UTC)
        self.logger.info("Punch queued offline (%s): %s", reason, item.id)
        await self.async_broadcast_status()
        return PortalResponse(
            status=202,
            body={
                "queued": True,
                "offline": True,
                "id": item.id,
                "message": "Punch saved offline; it will be sent when the connection returns",
            },
            queued=True,
            item_id=item.id,
        )

    async def _cached_response(self, path: str) -> PortalResponse | None:
        payload = await self.store.async_fetch_portal_cache(path)
        if payload is None:
            return None
        return PortalResponse(status=200, body=payload, cached=True)

    async def async_cache_portal_data(self, token: str) -> dict[str, int]:
        """Fetch the portal pages an offline employee needs and cache them."""

        if not self.monitor.is_online:
            self.logger.debug("Skipping portal cache refresh while offline")
            return {"cached": 0, "failed": 0}
        cached = failed = 0
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        for path in self.config.portal_cache_paths:
            try:
                response = await self._send("GET", self.config.url_for(path), headers, None)
            except NETWORK_ERRORS as err:
                self.logger.warning("Portal cache refresh of %s failed: %s", path, err)
                failed += 1
                continue
            if not response.ok or isinstance(response.body, str):
                self.logger.debug("Portal cache refresh of %s returned %s", path, response.status)
                failed += 1
                continue
            await self.store.async_update_portal_cache(path, response.body)
            cached += 1
        if cached:
            self.last_cache_at = datetime.now(tz=UTC)
        self.channel.broadcast(MSG_PORTAL_DATA_CACHED, cached=cached, failed=failed)
        return {"cached": cached, "failed": failed}

    # ------------------------------------------------------------------
    async def async_status(self) -> dict[str, Any]:
        """Diagnostics dict with the queue size read off the event loop."""

        return self.status(pending=await self.store.async_size())

    def status(self, pending: int | None = None) -> dict[str, Any]:
        """Diagnostics dict.

        Without ``pending`` the queue size is read synchronously from SQLite;
        coroutines should use :meth:`async_status` instead.
        """

        status: dict[str, Any] = {
            "online": self.monitor.is_online,
            "controller": self.started,
            "store_path": str(self.store.path),
            "pending": self.store.size() if pending is None else pending,
            "storage_warning": self.store.storage_warning,
            "connected_ports": self.channel.port_count,
            "last_enqueue_at": self.last_enqueue_at.isoformat() if self.last_enqueue_at else None,
            "last_portal_cache_at": self.last_cache_at.isoformat() if self.last_cache_at else None,
        }
        if self.engine is not None:
            status.update(self.engine.status())
        return status


def _decode_body(raw: bytes, content_type: str) -> Any:
    if not raw:
        return None
    text = raw.decode("utf-8", "replace")
    if "json" in content_type:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
    return text


__all__ = ["SyncWorker"]

"""Connectivity tracking for the offline punch queue.

The runtime signal is advisory: a host can report ``online`` while the
portal is unreachable. Delivery failures seen by the sync engine are
authoritative for a single drain but never flip the monitor's state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from aiohttp import ClientError, ClientSession, ClientTimeout

from .const import DEFAULT_PROBE_INTERVAL, DEFAULT_PROBE_PATH, DEFAULT_REQUEST_TIMEOUT

_LOGGER = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], None]


class ConnectivityMonitor:
    """Single source of truth for the online/offline state."""

    def __init__(self, online: bool = True) -> None:
        self._online = bool(online)
        self._listeners: list[ConnectivityListener] = []
        self.last_change_at: datetime | None = None

    @property
    def is_online(self) -> bool:
        return self._online

    def current_state(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> bool:
        """Apply a host connectivity report.

        Returns True when the report was a transition. Listeners only run on
        transitions, never on repeated reports of the same state.
        """

        online = bool(online)
        if online == self._online:
            return False
        self._online = online
        self.last_change_at = datetime.now(tz=UTC)
        _LOGGER.info("Connectivity changed: %s", "online" if online else "offline")
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("Connectivity listener %r failed", listener)
        return True

    def add_listener(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register ``listener`` and return a callable that removes it."""

        if listener not in self._listeners:
            self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove


class ConnectivityProbe:
    """Feed a :class:`ConnectivityMonitor` by polling a lightweight endpoint."""

    def __init__(
        self,
        monitor: ConnectivityMonitor,
        session: ClientSession,
        base_url: str,
        *,
        path: str = DEFAULT_PROBE_PATH,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        logger: logging.Logger | None = None,
    ) -> None:
        self.monitor = monitor
        self.session = session
        self.url = f"{base_url.rstrip('/')}/{path.lstrip('/')}"
        self.timeout = timeout
        self.logger = logger or _LOGGER
        self.last_probe_at: datetime | None = None
        self.last_error: str | None = None

    async def probe_once(self) -> bool:
        """Probe once and report the outcome to the monitor.

        Any HTTP response counts as reachable; the status code is irrelevant
        to connectivity.
        """

        try:
            async with self.session.get(self.url, timeout=ClientTimeout(total=self.timeout)) as resp:
                await resp.read()
        except (ClientError, TimeoutError, OSError) as err:
            self.last_error = str(err) or err.__class__.__name__
            self.logger.debug("Connectivity probe failed: %s", self.last_error)
            online = False
        else:
            self.last_error = None
            online = True
        self.last_probe_at = datetime.now(tz=UTC)
        self.monitor.set_online(online)
        return online

    async def run_forever(self, *, interval_seconds: float = DEFAULT_PROBE_INTERVAL) -> None:
        while True:
            try:
                await self.probe_once()
            except asyncio.CancelledError:
                raise
            except Exception as err:  # pragma: no cover
                self.logger.exception("Unexpected probe error: %s", err)
            await asyncio.sleep(interval_seconds)

    def status(self) -> dict[str, Any]:
        return {
            "probe_url": self.url,
            "last_probe_at": self.last_probe_at.isoformat() if self.last_probe_at else None,
            "last_probe_error": self.last_error,
        }


__all__ = ["ConnectivityListener", "ConnectivityMonitor", "ConnectivityProbe"]

"""Fake aiohttp sessions and queue items shared by the test modules."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Iterable
from typing import Any

from punch_sync import QueueItem

BASE_URL = "https://portal.example"
PUNCH_URL = f"{BASE_URL}/api/employee-portal/punch"

# A scripted outcome is either an HTTP status, a (status, body) pair or an exception.
Outcome = int | tuple[int, Any] | BaseException


class DummyResponse:
    """Simple async context manager emulating an aiohttp response."""

    def __init__(self, status: int, body: Any = None) -> None:
        self.status = status
        if body is None:
            self._raw = b""
            self.headers = {}
        elif isinstance(body, str):
            self._raw = body.encode("utf-8")
            self.headers = {"Content-Type": "text/plain"}
        else:
            self._raw = json.dumps(body).encode("utf-8")
            self.headers = {"Content-Type": "application/json"}

    async def __aenter__(self) -> DummyResponse:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None

    async def read(self) -> bytes:
        return self._raw


class _PendingRequest:
    def __init__(self, session: DummySession, outcome: Outcome) -> None:
        self._session = session
        self._outcome = outcome

    async def __aenter__(self) -> DummyResponse:
        if self._session.gate is not None:
            await self._session.gate.wait()
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        if isinstance(self._outcome, tuple):
            return DummyResponse(*self._outcome)
        return DummyResponse(self._outcome)

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None


class DummySession:
    """Record every request and answer from a scripted list of outcomes.

    Once the script runs out, ``default`` answers the remaining requests.
    """

    def __init__(self, outcomes: Iterable[Outcome] = (), *, default: Outcome | Callable[[], Outcome] = 200) -> None:
        self.outcomes = list(outcomes)
        self.default = default
        self.calls: list[dict[str, Any]] = []
        self.gate: asyncio.Event | None = None
        self.closed = False

    def _next(self) -> Outcome:
        if self.outcomes:
            return self.outcomes.pop(0)
        return self.default() if callable(self.default) else self.default

    def request(self, method: str, url: str, **kwargs: Any) -> _PendingRequest:
        self.calls.append({"method": method, "url": url, **kwargs})
        return _PendingRequest(self, self._next())

    def get(self, url: str, **kwargs: Any) -> _PendingRequest:
        return self.request("GET", url, **kwargs)

    async def close(self) -> None:
        self.closed = True

    async def __aenter__(self) -> DummySession:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def urls(self) -> list[str]:
        return [call["url"] for call in self.calls]


def make_item(n: int, *, timestamp: int | None = None, url: str = PUNCH_URL) -> QueueItem:
    return QueueItem.create(
        url,
        "POST",
        headers={"Authorization": "Bearer token-1", "Content-Type": "application/json"},
        body={"n": n},
        timestamp=1_700_000_000_000 + n if timestamp is None else timestamp,
    )

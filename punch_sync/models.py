from __future__ import annotations

import json
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_item_id(timestamp: int | None = None) -> str:
    """Return a time-ordered id with a random suffix.

    The suffix keeps ids unique when several foreground contexts enqueue
    within the same millisecond.
    """

    ts = now_ms() if timestamp is None else int(timestamp)
    return f"{ts}-{uuid4().hex[:9]}"


@dataclass(frozen=True, slots=True)
class QueueItem:
    """A deferred HTTP request waiting in the offline queue."""

    id: str
    url: str
    method: str
    headers: Mapping[str, str]
    body: str | None
    timestamp: int

    @classmethod
    def create(
        cls,
        url: str,
        method: str = "POST",
        *,
        headers: Mapping[str, str] | None = None,
        body: str | bytes | Mapping[str, Any] | None = None,
        timestamp: int | None = None,
    ) -> QueueItem:
        ts = now_ms() if timestamp is None else int(timestamp)
        return cls(
            id=generate_item_id(ts),
            url=url,
            method=method.upper(),
            headers=request_headers(headers, body),
            body=serialize_body(body),
            timestamp=ts,
        )

    @property
    def size(self) -> int:
        """Approximate stored size in bytes."""

        return len(self.to_json_line().encode("utf-8"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "method": self.method,
            "headers": dict(self.headers),
            "body": self.body,
            "timestamp": self.timestamp,
        }

    def to_json_line(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> QueueItem:
        headers_raw = payload.get("headers") or {}
        if isinstance(headers_raw, str):
            headers_raw = json.loads(headers_raw)
        body = payload.get("body")
        return cls(
            id=str(payload["id"]),
            url=str(payload["url"]),
            method=str(payload.get("method") or "POST").upper(),
            headers={str(key): str(value) for key, value in headers_raw.items()},
            body=None if body is None else str(body),
            timestamp=int(payload.get("timestamp") or 0),
        )


def request_headers(
    headers: Mapping[str, str] | None,
    body: str | bytes | Mapping[str, Any] | None = None,
) -> dict[str, str]:
    """Copy ``headers`` as strings, adding a JSON content type for mapping bodies."""

    result = {str(key): str(value) for key, value in (headers or {}).items()}
    if isinstance(body, Mapping) and not any(key.lower() == "content-type" for key in result):
        result["Content-Type"] = "application/json"
    return result


def serialize_body(body: str | bytes | Mapping[str, Any] | None) -> str | None:
    """Return the stored text form of a request body.

    Byte bodies must be UTF-8; anything else raises :class:`UnicodeDecodeError`.
    """

    if body is None:
        return None
    if isinstance(body, bytes):
        return body.decode("utf-8")
    if isinstance(body, str):
        return body
    return json.dumps(body, separators=(",", ":"))


@dataclass(frozen=True, slots=True)
class SyncResult:
    """Outcome of a single drain cycle."""

    processed: int = 0
    failed: int = 0
    remaining: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "failed": self.failed,
            "remaining": self.remaining,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> SyncResult:
        return cls(
            processed=int(payload.get("processed") or 0),
            failed=int(payload.get("failed") or 0),
            remaining=int(payload.get("remaining") or 0),
        )


@dataclass(slots=True)
class PortalResponse:
    """Answer handed back to a foreground caller by the worker."""

    status: int
    body: Any = None
    queued: bool = False
    item_id: str | None = None
    cached: bool = False
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


__all__ = [
    "PortalResponse",
    "QueueItem",
    "SyncResult",
    "generate_item_id",
    "now_ms",
    "request_headers",
    "serialize_body",
]

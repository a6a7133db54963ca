"""In-process control channel between foreground ports and the worker.

Foreground ports post intents to the single worker inbox; the worker
broadcasts events to every connected port. Delivery is fire-and-forget and
at-most-once: nothing is acknowledged and messages carry no correlation id.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

_LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[["ChannelMessage"], None]


@dataclass(frozen=True, slots=True)
class ChannelMessage:
    """A typed message with a JSON-safe payload."""

    type: str
    payload: Mapping[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, **copy.deepcopy(dict(self.payload))}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ChannelMessage:
        if not isinstance(data, Mapping) or not data.get("type"):
            raise ValueError("channel message requires a type")
        payload = {key: value for key, value in data.items() if key != "type"}
        return cls(type=str(data["type"]), payload=copy.deepcopy(payload))


class ChannelPort:
    """Foreground end of the channel (one per open page/tab)."""

    def __init__(self, channel: ControlChannel) -> None:
        self._channel = channel
        self._handlers: list[MessageHandler] = []
        self.closed = False

    @property
    def controller(self) -> bool:
        """True while a worker is attached and able to receive messages."""

        return not self.closed and self._channel.controller

    def post(self, message_type: str, **payload: Any) -> bool:
        """Send an intent to the worker; returns False when nobody is listening."""

        if self.closed:
            return False
        return self._channel.post(ChannelMessage(message_type, payload))

    def add_handler(self, handler: MessageHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def _remove() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _remove

    def close(self) -> None:
        self.closed = True
        self._handlers.clear()
        self._channel.disconnect(self)

    def _deliver(self, data: dict[str, Any]) -> None:
        if self.closed:
            return
        message = ChannelMessage.from_dict(data)
        for handler in list(self._handlers):
            try:
                handler(message)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("Channel handler %r failed on %s", handler, message.type)


class ControlChannel:
    """Point-to-point inbox for the worker plus broadcast to every port."""

    def __init__(self) -> None:
        self._inbox: asyncio.Queue[ChannelMessage] | None = None
        self._ports: list[ChannelPort] = []

    @property
    def controller(self) -> bool:
        return self._inbox is not None

    @property
    def port_count(self) -> int:
        return len(self._ports)

    # -- foreground side -------------------------------------------------
    def connect(self) -> ChannelPort:
        port = ChannelPort(self)
        self._ports.append(port)
        return port

    def disconnect(self, port: ChannelPort) -> None:
        if port in self._ports:
            self._ports.remove(port)

    def post(self, message: ChannelMessage) -> bool:
        if self._inbox is None:
            _LOGGER.debug("No worker attached, dropping %s", message.type)
            return False
        self._inbox.put_nowait(ChannelMessage.from_dict(message.to_dict()))
        return True

    # -- worker side -----------------------------------------------------
    def attach(self) -> asyncio.Queue[ChannelMessage]:
        """Become the controlling worker and return its inbox."""

        if self._inbox is not None:
            raise RuntimeError("a worker already controls this channel")
        self._inbox = asyncio.Queue()
        return self._inbox

    def detach(self) -> None:
        self._inbox = None

    def broadcast(self, message_type: str, **payload: Any) -> int:
        """Schedule delivery of an event to every connected port.

        Each port receives its own copy of the payload on a later loop
        iteration. Returns the number of ports addressed.
        """

        data = ChannelMessage(message_type, payload).to_dict()
        loop = asyncio.get_running_loop()
        ports = list(self._ports)
        for port in ports:
            loop.call_soon(port._deliver, copy.deepcopy(data))
        return len(ports)


__all__ = ["ChannelMessage", "ChannelPort", "ControlChannel", "MessageHandler"]

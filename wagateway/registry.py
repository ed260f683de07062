"""In-memory stores for sessions and pending QR challenges.

All operations are synchronous and never await, so a lookup followed by a
mutation inside one coroutine step cannot interleave with another task on
the same event loop.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple


LOGGER = logging.getLogger("wagateway.registry")


class ConnectionState(str, enum.Enum):
    CONNECTING = "connecting"
    QR = "qr"
    OPEN = "open"
    CLOSE = "close"


@dataclass(slots=True)
class PendingAuth:
    artifact: str
    created_at: float = field(default_factory=time.time)


@dataclass(slots=True, eq=False)
class SessionRecord:
    name: str
    socket: Any = None
    auth: Any = None
    state: ConnectionState = ConnectionState.CONNECTING
    is_live: bool = False
    reconnect_attempts: int = 0
    created_at: float = field(default_factory=time.time)
    connected_at: Optional[float] = None
    last_message_received_at: Optional[float] = None
    last_presence_update_at: Optional[float] = None
    last_disconnect_code: Optional[int] = None
    phone_number: Optional[str] = None
    profile_name: Optional[str] = None
    profile_picture_url: Optional[str] = None
    keepalive: Any = None
    events: "asyncio.Queue[Tuple[str, Any]]" = field(default_factory=asyncio.Queue)
    consumer: Optional["asyncio.Task[Any]"] = None
    closed: bool = False

    @property
    def last_activity_at(self) -> Optional[float]:
        return self.last_message_received_at or self.connected_at

    @property
    def has_keepalive(self) -> bool:
        return bool(self.keepalive is not None and self.keepalive.active)

    def cancel_keepalive(self) -> None:
        monitor = self.keepalive
        self.keepalive = None
        if monitor is not None:
            monitor.cancel()

    def close(self) -> None:
        """Cancel owned tasks and end the socket. Never raises."""

        self.closed = True
        self.is_live = False
        self.cancel_keepalive()
        consumer = self.consumer
        if consumer is not None and not consumer.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if consumer is not current:
                consumer.cancel()
        socket = self.socket
        if socket is None:
            return
        try:
            socket.end()
        except Exception as exc:
            LOGGER.debug("event=socket_end_failed instance=%s error=%s", self.name, exc)


class PendingAuthRegistry:
    def __init__(self) -> None:
        self._items: Dict[str, PendingAuth] = {}

    def get(self, name: str) -> Optional[PendingAuth]:
        return self._items.get(name)

    def set(self, name: str, entry: PendingAuth) -> None:
        self._items[name] = entry

    def delete(self, name: str) -> Optional[PendingAuth]:
        return self._items.pop(name, None)

    def clear(self) -> None:
        self._items.clear()

    def __contains__(self, name: object) -> bool:
        return name in self._items

    def __len__(self) -> int:
        return len(self._items)


class SessionRegistry:
    def __init__(self, pending: Optional[PendingAuthRegistry] = None) -> None:
        self._sessions: Dict[str, SessionRecord] = {}
        self.pending = pending if pending is not None else PendingAuthRegistry()

    def get(self, name: str) -> Optional[SessionRecord]:
        return self._sessions.get(name)

    def set(self, name: str, record: SessionRecord) -> None:
        previous = self._sessions.get(name)
        if previous is not None and previous is not record:
            previous.close()
        self._sessions[name] = record

    def delete(self, name: str) -> Optional[SessionRecord]:
        record = self._sessions.pop(name, None)
        self.pending.delete(name)
        if record is not None:
            record.close()
        return record

    def list(self) -> List[Tuple[str, SessionRecord]]:
        return list(self._sessions.items())

    def names(self) -> List[str]:
        return list(self._sessions)

    def clear(self) -> None:
        for name in list(self._sessions):
            self.delete(name)
        self.pending.clear()

    def __contains__(self, name: object) -> bool:
        return name in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._sessions))


__all__ = [
    "ConnectionState",
    "PendingAuth",
    "PendingAuthRegistry",
    "SessionRecord",
    "SessionRegistry",
]

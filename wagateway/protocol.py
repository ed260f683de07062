"""Interfaces of the external chat-protocol library.

The gateway never speaks the wire protocol itself. A concrete library is
plugged in through ``WA_SOCKET_FACTORY`` ("package.module:callable"); the
callable receives the loaded auth state plus :class:`SocketOptions` and
returns an object satisfying :class:`ProtocolSocket`.
"""

from __future__ import annotations

import enum
import importlib
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, Tuple, Union


EVENT_CONNECTION_UPDATE = "connection.update"
EVENT_CREDS_UPDATE = "creds.update"
EVENT_MESSAGES_UPSERT = "messages.upsert"
EVENT_PRESENCE_UPDATE = "presence.update"
EVENT_CONNECTION_ERROR = "connection.error"

SOCKET_EVENTS = (
    EVENT_CONNECTION_UPDATE,
    EVENT_CREDS_UPDATE,
    EVENT_MESSAGES_UPSERT,
    EVENT_PRESENCE_UPDATE,
    EVENT_CONNECTION_ERROR,
)

WS_CONNECTING = 0
WS_OPEN = 1
WS_CLOSING = 2
WS_CLOSED = 3

WS_STATE_NAMES = {
    WS_CONNECTING: "CONNECTING",
    WS_OPEN: "OPEN",
    WS_CLOSING: "CLOSING",
    WS_CLOSED: "CLOSED",
}


class DisconnectReason(enum.IntEnum):
    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    FORBIDDEN = 403
    UNAVAILABLE_SERVICE = 503


class SocketUnavailableError(RuntimeError):
    """Raised when no protocol implementation is configured or it cannot be loaded."""


@dataclass(frozen=True, slots=True)
class SocketOptions:
    browser: Tuple[str, str, str] = ("wagateway", "Chrome", "110.0.0.0")
    default_query_timeout_ms: int = 120_000
    connect_timeout_ms: int = 120_000
    keep_alive_interval_ms: int = 25_000
    retry_request_delay_ms: int = 1_000
    max_msg_retry_count: int = 5
    mark_online_on_connect: bool = False
    sync_full_history: bool = False
    generate_high_quality_link_preview: bool = False
    emit_own_events: bool = False
    fire_init_queries: bool = True
    link_preview_image_thumbnail_width: int = 192
    max_commit_retries: int = 10
    delay_between_tries_ms: int = 3_000
    print_qr_in_terminal: bool = False


class ProtocolSocket(Protocol):
    user: Optional[Mapping[str, Any]]

    @property
    def ws_ready_state(self) -> Optional[int]: ...

    def on(self, event: str, handler: Callable[[Any], None]) -> None: ...

    async def send_message(self, jid: str, content: Mapping[str, Any]) -> Mapping[str, Any]: ...

    async def logout(self) -> None: ...

    def end(self, error: Optional[BaseException] = None) -> None: ...

    async def query(self, node: Mapping[str, Any]) -> Any: ...

    def generate_message_tag(self) -> str: ...


SocketFactory = Callable[[Any, SocketOptions], Union[ProtocolSocket, Awaitable[ProtocolSocket]]]


def ws_ready_state(socket: Any) -> Optional[int]:
    if socket is None:
        return None
    try:
        value = socket.ws_ready_state
    except Exception:
        return None
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def load_socket_factory(target: str | None) -> Optional[SocketFactory]:
    """Resolve ``module:attribute`` into the protocol library's session factory."""

    cleaned = (target or "").strip()
    if not cleaned:
        return None
    module_name, sep, attr = cleaned.partition(":")
    if not sep or not module_name or not attr:
        raise SocketUnavailableError(f"invalid socket factory path: {cleaned}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise SocketUnavailableError(f"cannot import {module_name}: {exc}") from exc
    factory: Any = module
    for part in attr.split("."):
        try:
            factory = getattr(factory, part)
        except AttributeError as exc:
            raise SocketUnavailableError(f"{cleaned} not found") from exc
    if not callable(factory):
        raise SocketUnavailableError(f"{cleaned} is not callable")
    return factory


__all__ = [
    "DisconnectReason",
    "ProtocolSocket",
    "SOCKET_EVENTS",
    "SocketFactory",
    "SocketOptions",
    "SocketUnavailableError",
    "WS_CLOSED",
    "WS_CLOSING",
    "WS_CONNECTING",
    "WS_OPEN",
    "WS_STATE_NAMES",
    "load_socket_factory",
    "ws_ready_state",
]

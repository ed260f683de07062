from __future__ import annotations

import asyncio
import itertools
from typing import Any, Callable

from wagateway.protocol import (
    EVENT_CONNECTION_UPDATE,
    WS_CLOSED,
    WS_CONNECTING,
    WS_OPEN,
)


class FakeSocket:
    def __init__(self, auth_state: Any = None, options: Any = None) -> None:
        self.auth_state = auth_state
        self.options = options
        self.user: dict[str, Any] | None = None
        self.ws_ready_state: int | None = WS_CONNECTING
        self.handlers: dict[str, list[Callable[..., None]]] = {}
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.queries: list[dict[str, Any]] = []
        self.logged_out = False
        self.ended = 0
        self.end_error: Exception | None = None
        self.query_error: Exception | None = None
        self.send_error: Exception | None = None
        self.logout_error: Exception | None = None
        self._tags = itertools.count(1)

    def on(self, event: str, handler: Callable[..., None]) -> None:
        self.handlers.setdefault(event, []).append(handler)

    def emit(self, event: str, payload: Any = None) -> None:
        for handler in list(self.handlers.get(event, [])):
            handler(payload)

    def emit_qr(self, code: str = "2@fake-qr") -> None:
        self.emit(EVENT_CONNECTION_UPDATE, {"qr": code})

    def emit_open(self, user_id: str = "5511999990000:12@s.whatsapp.net", name: str | None = "Loja") -> None:
        self.user = {"id": user_id, "name": name}
        self.ws_ready_state = WS_OPEN
        self.emit(EVENT_CONNECTION_UPDATE, {"connection": "open"})

    def emit_close(self, status: int | None, *, payload_error: str | None = None) -> None:
        self.ws_ready_state = WS_CLOSED
        output: dict[str, Any] = {"statusCode": status}
        if payload_error is not None:
            output["payload"] = {"error": payload_error}
        self.emit(
            EVENT_CONNECTION_UPDATE,
            {"connection": "close", "lastDisconnect": {"error": {"output": output}}},
        )

    async def send_message(self, jid: str, content: dict[str, Any]) -> dict[str, Any]:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((jid, content))
        return {
            "key": {"remoteJid": jid, "fromMe": True, "id": f"MSG{len(self.sent)}"},
            "messageTimestamp": 1_700_000_000 + len(self.sent),
        }

    async def logout(self) -> None:
        if self.logout_error is not None:
            raise self.logout_error
        self.logged_out = True

    def end(self, error: Exception | None = None) -> None:
        self.ended += 1
        self.ws_ready_state = WS_CLOSED
        if self.end_error is not None:
            raise self.end_error

    async def query(self, node: dict[str, Any]) -> Any:
        if self.query_error is not None:
            raise self.query_error
        self.queries.append(node)
        return {"tag": "iq", "attrs": {"type": "result"}}

    def generate_message_tag(self) -> str:
        return f"tag-{next(self._tags)}"


class FakeSocketFactory:
    """Hands out FakeSockets; optionally emits a QR challenge right after creation."""

    def __init__(self, auto_qr: str | None = None) -> None:
        self.sockets: list[FakeSocket] = []
        self.auto_qr = auto_qr

    def __call__(self, auth_state: Any, options: Any) -> FakeSocket:
        socket = FakeSocket(auth_state, options)
        self.sockets.append(socket)
        if self.auto_qr is not None:
            asyncio.get_running_loop().call_soon(socket.emit_qr, self.auto_qr)
        return socket

    @property
    def latest(self) -> FakeSocket:
        return self.sockets[-1]


async def settle(record: Any, timeout: float = 1.0) -> None:
    """Wait until every queued event of ``record`` has been handled."""

    await asyncio.wait_for(record.events.join(), timeout)

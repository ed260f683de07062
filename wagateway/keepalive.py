from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Optional

from .metrics import KEEPALIVE_FAILURES_TOTAL
from .protocol import WS_OPEN, ws_ready_state


LOGGER = logging.getLogger("wagateway.keepalive")

KEEPALIVE_INTERVAL = 60.0


def build_ping_node(socket: Any) -> dict[str, Any]:
    return {
        "tag": "iq",
        "attrs": {
            "id": socket.generate_message_tag(),
            "type": "get",
            "xmlns": "w:p",
            "to": "s.whatsapp.net",
        },
    }


class KeepAliveMonitor:
    """Periodically pings an open socket; stops itself once the socket is gone.

    The monitor only observes. Reconnects are driven by the socket's own
    ``connection.update`` close event.
    """

    def __init__(self, name: str, socket: Any, *, interval: float = KEEPALIVE_INTERVAL) -> None:
        self.name = name
        self._socket = socket
        self._interval = interval
        self._task: Optional[asyncio.Task[Any]] = None
        self._stopped = False

    @property
    def active(self) -> bool:
        return not self._stopped and self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def cancel(self) -> None:
        self._stopped = True
        task = self._task
        if task is not None and not task.done():
            task.cancel()

    async def wait_closed(self) -> None:
        task = self._task
        if task is None:
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self._interval)
            if not await self.tick():
                break

    async def tick(self) -> bool:
        """Send one ping. Returns False when the monitor should disarm."""

        if self._stopped:
            return False
        try:
            if ws_ready_state(self._socket) == WS_OPEN:
                await self._socket.query(build_ping_node(self._socket))
                LOGGER.debug("stage=keepalive_sent instance=%s", self.name)
            else:
                LOGGER.info("stage=keepalive_skip instance=%s reason=socket_not_open", self.name)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            KEEPALIVE_FAILURES_TOTAL.inc()
            LOGGER.warning("stage=keepalive_failed instance=%s error=%s", self.name, exc)
            if "closed" in str(exc).lower():
                self._stopped = True
                LOGGER.info("stage=keepalive_disabled instance=%s reason=connection_closed", self.name)
                return False
        return True


__all__ = ["KEEPALIVE_INTERVAL", "KeepAliveMonitor", "build_ping_node"]

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, List, Optional

from .registry import ConnectionState


LOGGER = logging.getLogger("wagateway.reaper")

REAPER_INTERVAL = 300.0
IDLE_THRESHOLD = 600.0


class IdleReaper:
    """Evict closed sessions that nobody is going to reconnect."""

    def __init__(
        self,
        manager: Any,
        *,
        interval: float = REAPER_INTERVAL,
        threshold: float = IDLE_THRESHOLD,
    ) -> None:
        self._manager = manager
        self._interval = interval
        self._threshold = threshold
        self._task: Optional[asyncio.Task[Any]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                self.sweep()
            except Exception:
                LOGGER.exception("stage=reaper_sweep_failed")

    def sweep(self, now: Optional[float] = None) -> List[str]:
        now = time.time() if now is None else now
        reaped: List[str] = []
        for name, record in self._manager.registry.list():
            if record.is_live or record.state is not ConnectionState.CLOSE:
                continue
            if self._manager.has_pending_reconnect(name):
                continue
            last_activity = record.last_activity_at or record.created_at
            inactive = now - last_activity
            if inactive <= self._threshold:
                continue
            if self._manager.registry.get(name) is not record:
                continue
            self._manager.remove(name)
            reaped.append(name)
            LOGGER.info(
                "stage=reaped instance=%s inactive_minutes=%s",
                name,
                round(inactive / 60),
            )
        return reaped


__all__ = ["IDLE_THRESHOLD", "REAPER_INTERVAL", "IdleReaper"]

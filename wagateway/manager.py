from __future__ import annotations

import asyncio
import contextlib
import functools
import inspect
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple

from .auth_state import load_auth_state, purge_auth_state
from .keepalive import KEEPALIVE_INTERVAL, KeepAliveMonitor
from .metrics import (
    DISCONNECTS_TOTAL,
    EVENT_ERRORS_TOTAL,
    MESSAGES_SENT_TOTAL,
    QR_GENERATED_TOTAL,
    RECONNECTS_SCHEDULED_TOTAL,
    SESSIONS_CLOSED,
    SESSIONS_CONNECTING,
    SESSIONS_OPEN,
)
from .policy import (
    classify_disconnect,
    disconnect_status_code,
    next_state,
)
from .protocol import (
    EVENT_CONNECTION_ERROR,
    EVENT_CONNECTION_UPDATE,
    EVENT_CREDS_UPDATE,
    EVENT_MESSAGES_UPSERT,
    EVENT_PRESENCE_UPDATE,
    SOCKET_EVENTS,
    WS_OPEN,
    SocketFactory,
    SocketOptions,
    SocketUnavailableError,
    ws_ready_state,
)
from .qr import render_qr_data_url
from .reaper import IdleReaper
from .registry import (
    ConnectionState,
    PendingAuth,
    PendingAuthRegistry,
    SessionRecord,
    SessionRegistry,
)


LOGGER = logging.getLogger("wagateway")

DEFAULT_PROFILE_NAME = "WhatsApp User"
QR_POLL_STEP = 0.1


class GatewayError(Exception):
    """Base class for errors surfaced to HTTP callers as 4xx responses."""


class InvalidInstanceNameError(GatewayError):
    pass


class InstanceNotFoundError(GatewayError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Instance '{name}' not found. Please create the instance first.")
        self.name = name


class InstanceNotReadyError(GatewayError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.details = details


class InvalidPayloadError(GatewayError):
    pass


@dataclass(slots=True)
class ScheduledReconnect:
    task: "asyncio.Task[Any]"
    delay: float
    attempts: int
    reason: str


def _field(source: Any, *names: str) -> Any:
    if source is None:
        return None
    for name in names:
        if isinstance(source, dict):
            if name in source:
                return source[name]
        elif hasattr(source, name):
            return getattr(source, name)
    return None


def phone_from_jid(jid: str | None) -> Optional[str]:
    if not jid:
        return None
    digits = str(jid).split(":", 1)[0].split("@", 1)[0].strip()
    if not digits:
        return None
    return f"+{digits}"


def format_jid(number: str) -> str:
    cleaned = number.strip()
    if "@" in cleaned:
        return cleaned
    return f"{cleaned}@s.whatsapp.net"


class SessionManager:
    """Own every instance's connection, its reconnect policy and its timers."""

    def __init__(
        self,
        sessions_dir: Path,
        socket_factory: Optional[SocketFactory],
        *,
        options: Optional[SocketOptions] = None,
        keepalive_interval: float = KEEPALIVE_INTERVAL,
        reaper_interval: float = 300.0,
        idle_threshold: float = 600.0,
        max_unclassified_retries: Optional[int] = None,
        auth_loader: Callable[[Path], Awaitable[Any]] = load_auth_state,
        qr_renderer: Callable[[str], str] = render_qr_data_url,
    ) -> None:
        self._sessions_dir = sessions_dir
        self._sessions_dir.mkdir(parents=True, exist_ok=True)
        self._socket_factory = socket_factory
        self._options = options or SocketOptions()
        self._keepalive_interval = keepalive_interval
        self._max_unclassified_retries = max_unclassified_retries
        self._auth_loader = auth_loader
        self._qr_renderer = qr_renderer
        self._pending = PendingAuthRegistry()
        self._registry = SessionRegistry(self._pending)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._reconnects: Dict[str, ScheduledReconnect] = {}
        self._reaper = IdleReaper(self, interval=reaper_interval, threshold=idle_threshold)
        self._started_at = time.time()
        self._started = False

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def pending(self) -> PendingAuthRegistry:
        return self._pending

    @property
    def reaper(self) -> IdleReaper:
        return self._reaper

    @property
    def sessions_dir(self) -> Path:
        return self._sessions_dir

    @property
    def started_at(self) -> float:
        return self._started_at

    async def start(self, *, restore: bool = False) -> None:
        if self._started:
            return
        self._started = True
        self._reaper.start()
        if restore:
            await self._restore_existing_sessions()

    async def shutdown(self) -> None:
        await self._reaper.stop()
        for name in list(self._reconnects):
            self._cancel_reconnect(name)
        monitors = [record.keepalive for _, record in self._registry.list() if record.keepalive]
        for name in self._registry.names():
            LOGGER.info("stage=shutdown_close instance=%s", name)
            self._registry.delete(name)
        for monitor in monitors:
            await monitor.wait_closed()
        self._pending.clear()
        self._started = False
        self._update_metrics()

    async def _restore_existing_sessions(self) -> None:
        for path in sorted(self._sessions_dir.iterdir()):
            if not path.is_dir():
                continue
            try:
                await self.connect(path.name)
                LOGGER.info("stage=restore instance=%s", path.name)
            except Exception as exc:
                LOGGER.exception("stage=restore_failed instance=%s error=%s", path.name, exc)

    def session_path(self, name: str) -> Path:
        if (
            not name
            or name in {".", ".."}
            or "/" in name
            or "\\" in name
            or "\x00" in name
        ):
            raise InvalidInstanceNameError(f"invalid instance name: {name!r}")
        return self._sessions_dir / name

    @contextlib.asynccontextmanager
    async def _name_lock(self, name: str) -> AsyncIterator[None]:
        """Serialise work on one name; the lock is dropped once nobody holds or awaits it."""

        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        self._lock_users[name] = self._lock_users.get(name, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[name] - 1
            if remaining:
                self._lock_users[name] = remaining
            else:
                del self._lock_users[name]
                self._locks.pop(name, None)

    def _set_state(
        self,
        record: SessionRecord,
        state: ConnectionState,
        *,
        reason: str | None = None,
    ) -> None:
        previous = record.state
        if previous is not state:
            LOGGER.info(
                "stage=state_transition instance=%s from=%s to=%s reason=%s",
                record.name,
                previous.value,
                state.value,
                reason or "-",
            )
        record.state = state

    def _is_current(self, record: SessionRecord) -> bool:
        return not record.closed and self._registry.get(record.name) is record

    async def connect(self, name: str, *, reconnect_attempts: int = 0) -> SessionRecord:
        """Tear down any session for ``name`` and open a fresh one."""

        path = self.session_path(name)
        async with self._name_lock(name):
            self._cancel_reconnect(name)
            previous = self._registry.delete(name)
            if previous is not None:
                LOGGER.info("stage=teardown instance=%s state=%s", name, previous.state.value)
            if self._socket_factory is None:
                raise SocketUnavailableError("no protocol socket factory configured")

            LOGGER.info("stage=connect instance=%s attempts=%s", name, reconnect_attempts)
            auth = await self._auth_loader(path)
            socket = self._socket_factory(auth.state, self._options)
            if inspect.isawaitable(socket):
                socket = await socket

            record = SessionRecord(
                name=name,
                socket=socket,
                auth=auth,
                reconnect_attempts=reconnect_attempts,
            )
            try:
                for event in SOCKET_EVENTS:
                    socket.on(event, functools.partial(self._enqueue_event, record, event))
            except Exception:
                record.close()
                raise
            record.consumer = asyncio.get_running_loop().create_task(
                self._consume_events(record)
            )
            self._registry.set(name, record)
            self._update_metrics()
            return record

    def _enqueue_event(self, record: SessionRecord, event: str, payload: Any = None) -> None:
        if record.closed or record.state is ConnectionState.CLOSE:
            return
        record.events.put_nowait((event, payload))

    async def _consume_events(self, record: SessionRecord) -> None:
        while True:
            event, payload = await record.events.get()
            try:
                if not self._is_current(record):
                    continue
                await self._handle_event(record, event, payload)
            except asyncio.CancelledError:
                raise
            except Exception:
                EVENT_ERRORS_TOTAL.labels(event).inc()
                LOGGER.exception(
                    "stage=event_handler_error instance=%s event=%s", record.name, event
                )
            finally:
                record.events.task_done()
            if record.closed or record.state is ConnectionState.CLOSE:
                self._drain(record)
                return

    @staticmethod
    def _drain(record: SessionRecord) -> None:
        while True:
            try:
                record.events.get_nowait()
            except asyncio.QueueEmpty:
                return
            record.events.task_done()

    async def _handle_event(self, record: SessionRecord, event: str, payload: Any) -> None:
        if event == EVENT_CONNECTION_UPDATE:
            await self._handle_connection_update(record, payload)
        elif event == EVENT_CREDS_UPDATE:
            await record.auth.persist()
        elif event == EVENT_MESSAGES_UPSERT:
            record.last_message_received_at = time.time()
        elif event == EVENT_PRESENCE_UPDATE:
            record.last_presence_update_at = time.time()
        elif event == EVENT_CONNECTION_ERROR:
            EVENT_ERRORS_TOTAL.labels("connection_error").inc()
            LOGGER.warning("stage=connection_error instance=%s error=%s", record.name, payload)

    async def _handle_connection_update(self, record: SessionRecord, update: Any) -> None:
        connection = _field(update, "connection")
        qr = _field(update, "qr")
        LOGGER.debug(
            "stage=connection_update instance=%s connection=%s qr=%s",
            record.name,
            connection,
            bool(qr),
        )
        if qr and record.state is not ConnectionState.OPEN:
            self._handle_qr(record, str(qr))
        if connection == "close":
            await self._handle_close(record, update)
        elif connection == "open":
            self._handle_open(record)

    def _handle_qr(self, record: SessionRecord, qr: str) -> None:
        try:
            artifact = self._qr_renderer(qr)
        except Exception:
            EVENT_ERRORS_TOTAL.labels("qr_render").inc()
            LOGGER.exception("stage=qr_render_failed instance=%s", record.name)
            return
        self._pending.set(record.name, PendingAuth(artifact=artifact))
        self._set_state(record, next_state(record.state, has_qr=True), reason="qr")
        QR_GENERATED_TOTAL.inc()
        LOGGER.info("stage=qr_new instance=%s", record.name)
        self._update_metrics()

    def _handle_open(self, record: SessionRecord) -> None:
        self._set_state(record, next_state(record.state, connection="open"), reason="open")
        record.is_live = True
        record.reconnect_attempts = 0
        record.connected_at = time.time()
        self._pending.delete(record.name)

        try:
            user = record.socket.user
            if user:
                record.phone_number = phone_from_jid(_field(user, "id"))
                record.profile_name = _field(user, "name") or DEFAULT_PROFILE_NAME
        except Exception as exc:
            LOGGER.warning("stage=identity_failed instance=%s error=%s", record.name, exc)

        LOGGER.info(
            "stage=open instance=%s phone=%s profile=%s",
            record.name,
            record.phone_number,
            record.profile_name,
        )
        record.cancel_keepalive()
        monitor = KeepAliveMonitor(record.name, record.socket, interval=self._keepalive_interval)
        record.keepalive = monitor
        monitor.start()
        self._update_metrics()

    async def _handle_close(self, record: SessionRecord, update: Any) -> None:
        name = record.name
        last_disconnect = _field(update, "last_disconnect", "lastDisconnect")
        status = disconnect_status_code(last_disconnect)
        record.is_live = False
        record.last_disconnect_code = status
        record.cancel_keepalive()
        self._set_state(record, next_state(record.state, connection="close"), reason=str(status))

        decision = classify_disconnect(
            status,
            last_disconnect,
            record.reconnect_attempts,
            max_unclassified_retries=self._max_unclassified_retries,
        )
        DISCONNECTS_TOTAL.labels(decision.action.value, decision.reason).inc()
        LOGGER.warning(
            "stage=disconnect instance=%s status=%s action=%s reason=%s attempts=%s",
            name,
            status,
            decision.action.value,
            decision.reason,
            record.reconnect_attempts,
        )

        if decision.purges_credentials:
            self._registry.delete(name)
            removed = False
            async with self._name_lock(name):
                # a superseding connect() may already own the directory again
                if self._registry.get(name) is None:
                    removed = await self.purge_credentials(name)
            LOGGER.warning(
                "stage=session_invalidated instance=%s reason=%s removed_credentials=%s",
                name,
                decision.reason,
                removed,
            )
        elif decision.retries:
            record.reconnect_attempts = decision.next_attempts
            self._schedule_reconnect(name, decision.delay, decision.next_attempts, decision.reason)
        else:
            self._registry.delete(name)
            LOGGER.warning("stage=session_dropped instance=%s reason=%s", name, decision.reason)
        self._update_metrics()

    def _schedule_reconnect(self, name: str, delay: float, attempts: int, reason: str) -> None:
        self._cancel_reconnect(name)
        task = asyncio.get_running_loop().create_task(
            self._run_reconnect(name, delay, attempts)
        )
        self._reconnects[name] = ScheduledReconnect(
            task=task, delay=delay, attempts=attempts, reason=reason
        )
        RECONNECTS_SCHEDULED_TOTAL.labels(reason).inc()
        LOGGER.info(
            "stage=reconnect_scheduled instance=%s delay=%.1fs attempt=%s reason=%s",
            name,
            delay,
            attempts,
            reason,
        )

    async def _run_reconnect(self, name: str, delay: float, attempts: int) -> None:
        await asyncio.sleep(delay)
        scheduled = self._reconnects.get(name)
        if scheduled is not None and scheduled.task is asyncio.current_task():
            self._reconnects.pop(name, None)
        LOGGER.info("stage=reconnect instance=%s attempt=%s", name, attempts)
        try:
            await self.connect(name, reconnect_attempts=attempts)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.exception("stage=reconnect_failed instance=%s error=%s", name, exc)
            self._update_metrics()

    def _cancel_reconnect(self, name: str) -> bool:
        scheduled = self._reconnects.get(name)
        if scheduled is None:
            return False
        if scheduled.task is asyncio.current_task():
            return False
        self._reconnects.pop(name, None)
        if not scheduled.task.done():
            scheduled.task.cancel()
        return True

    def scheduled_reconnect(self, name: str) -> Optional[ScheduledReconnect]:
        scheduled = self._reconnects.get(name)
        if scheduled is None or scheduled.task.done():
            return None
        return scheduled

    def has_pending_reconnect(self, name: str) -> bool:
        return self.scheduled_reconnect(name) is not None

    def remove(self, name: str) -> Optional[SessionRecord]:
        """Drop ``name`` from both registries and cancel its timers; credentials stay on disk."""

        self._cancel_reconnect(name)
        record = self._registry.delete(name)
        self._update_metrics()
        return record

    async def purge_credentials(self, name: str) -> bool:
        return await purge_auth_state(self.session_path(name))

    async def clear(self, name: str) -> bool:
        path = self.session_path(name)
        record = self.remove(name)
        removed = await purge_auth_state(path)
        LOGGER.info(
            "stage=clear instance=%s had_session=%s removed_credentials=%s",
            name,
            record is not None,
            removed,
        )
        return record is not None or removed

    async def logout(self, name: str) -> None:
        self.session_path(name)
        record = self._registry.get(name)
        failure: Optional[Exception] = None
        if record is not None and record.socket is not None:
            try:
                await record.socket.logout()
            except Exception as exc:
                LOGGER.warning("stage=logout_failed instance=%s error=%s", name, exc)
                failure = exc
        await self.clear(name)
        LOGGER.info("stage=logout instance=%s protocol_ok=%s", name, failure is None)
        if failure is not None:
            raise failure

    def readiness(self, record: SessionRecord) -> Tuple[bool, Dict[str, Any]]:
        socket_state = ws_ready_state(record.socket)
        is_socket_open = socket_state == WS_OPEN
        is_marked_connected = record.is_live and record.state is ConnectionState.OPEN
        details = {
            "connected": record.is_live,
            "status": record.state.value,
            "socketState": socket_state,
        }
        return is_marked_connected or is_socket_open, details

    async def send_text(self, name: str, number: Any, text: Any) -> Dict[str, Any]:
        record = self._registry.get(name)
        if record is None:
            raise InstanceNotFoundError(name)
        if record.socket is None:
            raise InstanceNotReadyError("Instance socket not initialized. Please reconnect.")

        ready, details = self.readiness(record)
        if not ready:
            LOGGER.warning(
                "stage=send_not_ready instance=%s connected=%s status=%s socket_state=%s",
                name,
                details["connected"],
                details["status"],
                details["socketState"],
            )
            raise InstanceNotReadyError(
                "Instance not connected. Please scan QR code and wait for connection.",
                details,
            )
        if not number or not text:
            raise InvalidPayloadError("number and text are required")

        jid = format_jid(str(number))
        try:
            result = await record.socket.send_message(jid, {"text": str(text)})
        except Exception:
            MESSAGES_SENT_TOTAL.labels("error").inc()
            LOGGER.exception("stage=send_fail instance=%s to=%s", name, jid)
            raise
        MESSAGES_SENT_TOTAL.labels("ok").inc()
        key = _field(result, "key")
        LOGGER.info(
            "stage=send_ok instance=%s to=%s message_id=%s", name, jid, _field(key, "id")
        )
        return {"key": key, "messageTimestamp": _field(result, "messageTimestamp")}

    async def wait_for_qr(self, name: str, timeout: float) -> Optional[PendingAuth]:
        deadline = time.monotonic() + max(timeout, 0.0)
        while True:
            entry = self._pending.get(name)
            if entry is not None:
                return entry
            record = self._registry.get(name)
            if record is None or record.state is ConnectionState.OPEN:
                return None
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(QR_POLL_STEP, remaining))

    def stats_snapshot(self) -> Dict[str, int]:
        connected = connecting = disconnected = 0
        for _, record in self._registry.list():
            if record.is_live:
                connected += 1
            elif record.state in (ConnectionState.CONNECTING, ConnectionState.QR):
                connecting += 1
            else:
                disconnected += 1
        return {
            "total": connected + connecting + disconnected,
            "connected": connected,
            "connecting": connecting,
            "disconnected": disconnected,
        }

    def _update_metrics(self) -> None:
        snapshot = self.stats_snapshot()
        SESSIONS_OPEN.set(snapshot["connected"])
        SESSIONS_CONNECTING.set(snapshot["connecting"])
        SESSIONS_CLOSED.set(snapshot["disconnected"])


__all__ = [
    "GatewayError",
    "InstanceNotFoundError",
    "InstanceNotReadyError",
    "InvalidInstanceNameError",
    "InvalidPayloadError",
    "ScheduledReconnect",
    "SessionManager",
    "SocketUnavailableError",
    "format_jid",
    "phone_from_jid",
]

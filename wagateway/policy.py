"""Disconnect classification and connection-state transitions.

Everything here is pure: the manager feeds in what the protocol reported and
acts on the returned decision.

=================================  =================================
status                             decision
=================================  =================================
bad session (500) or 401           purge credentials, no retry
connection closed (428) or 515     retry with growing delay, max 10
logged out                         drop the session, no retry
anything else                      retry after 5s, unbounded
=================================  =================================
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from typing import Any, Optional

from .protocol import DisconnectReason
from .registry import ConnectionState


MAX_BOUNDED_RETRIES = 10
BOUNDED_BASE_DELAY_MS = 5_000
BOUNDED_STEP_MS = 2_000
BOUNDED_MAX_DELAY_MS = 30_000
UNCLASSIFIED_DELAY_MS = 5_000

DEVICE_REMOVED = "device_removed"

_PURGE_CODES = frozenset({int(DisconnectReason.BAD_SESSION), 401})
_BOUNDED_CODES = frozenset({int(DisconnectReason.CONNECTION_CLOSED), 515})


class ReconnectAction(str, enum.Enum):
    TERMINAL_PURGE = "terminal_purge"
    TERMINAL = "terminal"
    RETRY = "retry"


@dataclass(frozen=True, slots=True)
class ReconnectDecision:
    action: ReconnectAction
    reason: str
    delay_ms: int = 0
    next_attempts: int = 0

    @property
    def delay(self) -> float:
        return self.delay_ms / 1000.0

    @property
    def retries(self) -> bool:
        return self.action is ReconnectAction.RETRY

    @property
    def purges_credentials(self) -> bool:
        return self.action is ReconnectAction.TERMINAL_PURGE


def bounded_retry_delay_ms(attempts: int) -> int:
    return min(BOUNDED_BASE_DELAY_MS + max(attempts, 0) * BOUNDED_STEP_MS, BOUNDED_MAX_DELAY_MS)


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


def disconnect_error(last_disconnect: Any) -> Any:
    return _field(last_disconnect, "error")


def disconnect_status_code(last_disconnect: Any) -> Optional[int]:
    """Read ``error.output.statusCode`` (or a flat ``status_code``) from a disconnect report."""

    error = disconnect_error(last_disconnect)
    output = _field(error, "output")
    raw = _field(output, "statusCode", "status_code")
    if raw is None:
        raw = _field(error, "status_code", "statusCode")
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _serialize(value: Any) -> str:
    def _default(obj: Any) -> Any:
        if isinstance(obj, BaseException):
            return {"type": obj.__class__.__name__, "args": [repr(a) for a in obj.args], **vars(obj)}
        if hasattr(obj, "__dict__"):
            return vars(obj)
        return repr(obj)

    try:
        return json.dumps(value, default=_default)
    except (TypeError, ValueError):
        return repr(value)


def is_device_removed(last_disconnect: Any) -> bool:
    error = disconnect_error(last_disconnect)
    payload = _field(_field(error, "output"), "payload")
    if _field(payload, "error") == DEVICE_REMOVED:
        return True
    return DEVICE_REMOVED in _serialize(last_disconnect)


def classify_disconnect(
    status_code: Optional[int],
    last_disconnect: Any,
    attempts: int,
    *,
    max_unclassified_retries: Optional[int] = None,
    logged_out_code: int = int(DisconnectReason.LOGGED_OUT),
) -> ReconnectDecision:
    if status_code in _PURGE_CODES:
        reason = DEVICE_REMOVED if is_device_removed(last_disconnect) else "bad_session"
        return ReconnectDecision(ReconnectAction.TERMINAL_PURGE, reason)

    if status_code in _BOUNDED_CODES:
        if attempts < MAX_BOUNDED_RETRIES:
            return ReconnectDecision(
                ReconnectAction.RETRY,
                "connection_closed",
                delay_ms=bounded_retry_delay_ms(attempts),
                next_attempts=attempts + 1,
            )
        return ReconnectDecision(ReconnectAction.TERMINAL, "retries_exhausted")

    # only reached when the protocol reports logged-out with a code of its own
    if status_code is not None and status_code == logged_out_code:
        return ReconnectDecision(ReconnectAction.TERMINAL, "logged_out")

    if max_unclassified_retries is not None and attempts >= max_unclassified_retries:
        return ReconnectDecision(ReconnectAction.TERMINAL, "retries_exhausted")
    return ReconnectDecision(
        ReconnectAction.RETRY,
        "unclassified",
        delay_ms=UNCLASSIFIED_DELAY_MS,
        next_attempts=attempts + 1,
    )


def next_state(
    current: ConnectionState,
    *,
    connection: Optional[str] = None,
    has_qr: bool = False,
) -> ConnectionState:
    """Apply one ``connection.update`` to a record's state. ``close`` is absorbing."""

    if current is ConnectionState.CLOSE:
        return current
    if connection == "close":
        return ConnectionState.CLOSE
    if connection == "open":
        return ConnectionState.OPEN
    if has_qr and current is not ConnectionState.OPEN:
        return ConnectionState.QR
    return current


__all__ = [
    "BOUNDED_MAX_DELAY_MS",
    "DEVICE_REMOVED",
    "MAX_BOUNDED_RETRIES",
    "ReconnectAction",
    "ReconnectDecision",
    "UNCLASSIFIED_DELAY_MS",
    "bounded_retry_delay_ms",
    "classify_disconnect",
    "disconnect_status_code",
    "is_device_removed",
    "next_state",
]

from __future__ import annotations

from prometheus_client import Counter, Gauge


SESSIONS_OPEN = Gauge(
    "wagateway_sessions_open",
    "Number of instances with an authenticated, live connection",
)
SESSIONS_CONNECTING = Gauge(
    "wagateway_sessions_connecting",
    "Number of instances connecting or waiting for a QR scan",
)
SESSIONS_CLOSED = Gauge(
    "wagateway_sessions_closed",
    "Number of registered instances whose connection is closed",
)
QR_GENERATED_TOTAL = Counter(
    "wagateway_qr_generated_total",
    "Total number of scannable auth challenges rendered",
)
DISCONNECTS_TOTAL = Counter(
    "wagateway_disconnects_total",
    "Disconnects grouped by recovery action and classified reason",
    labelnames=("action", "reason"),
)
RECONNECTS_SCHEDULED_TOTAL = Counter(
    "wagateway_reconnects_scheduled_total",
    "Reconnect attempts scheduled after a disconnect",
    labelnames=("reason",),
)
KEEPALIVE_FAILURES_TOTAL = Counter(
    "wagateway_keepalive_failures_total",
    "Keep-alive pings that raised",
)
EVENT_ERRORS_TOTAL = Counter(
    "wagateway_event_errors_total",
    "Errors raised while handling protocol events",
    labelnames=("type",),
)
MESSAGES_SENT_TOTAL = Counter(
    "wagateway_messages_sent_total",
    "Outgoing text messages grouped by result",
    labelnames=("status",),
)

__all__ = [
    "SESSIONS_OPEN",
    "SESSIONS_CONNECTING",
    "SESSIONS_CLOSED",
    "QR_GENERATED_TOTAL",
    "DISCONNECTS_TOTAL",
    "RECONNECTS_SCHEDULED_TOTAL",
    "KEEPALIVE_FAILURES_TOTAL",
    "EVENT_ERRORS_TOTAL",
    "MESSAGES_SENT_TOTAL",
]

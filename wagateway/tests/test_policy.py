from __future__ import annotations

from types import SimpleNamespace

import pytest

from wagateway.policy import (
    MAX_BOUNDED_RETRIES,
    ReconnectAction,
    bounded_retry_delay_ms,
    classify_disconnect,
    disconnect_status_code,
    is_device_removed,
    next_state,
)
from wagateway.protocol import DisconnectReason
from wagateway.registry import ConnectionState


def _report(status, payload_error=None):
    output = {"statusCode": status}
    if payload_error:
        output["payload"] = {"error": payload_error}
    return {"error": {"output": output}}


def test_status_code_read_from_nested_output():
    assert disconnect_status_code(_report(428)) == 428
    assert disconnect_status_code({"error": {"status_code": "515"}}) == 515
    error = SimpleNamespace(output=SimpleNamespace(statusCode=401))
    assert disconnect_status_code(SimpleNamespace(error=error)) == 401
    assert disconnect_status_code(None) is None
    assert disconnect_status_code({"error": {"output": {"statusCode": "nope"}}}) is None


def test_device_removed_detection():
    assert is_device_removed(_report(401, "device_removed"))
    assert is_device_removed({"error": {"message": "stream errored (device_removed)"}})
    assert not is_device_removed(_report(401))


@pytest.mark.parametrize("attempts", range(0, MAX_BOUNDED_RETRIES + 1))
@pytest.mark.parametrize("status", [int(DisconnectReason.BAD_SESSION), 401])
def test_purge_codes_never_retry(status, attempts):
    decision = classify_disconnect(status, _report(status), attempts)
    assert decision.action is ReconnectAction.TERMINAL_PURGE
    assert decision.purges_credentials
    assert not decision.retries


def test_purge_reason_distinguishes_device_removal():
    assert classify_disconnect(401, _report(401, "device_removed"), 0).reason == "device_removed"
    assert classify_disconnect(500, _report(500), 0).reason == "bad_session"


@pytest.mark.parametrize("status", [int(DisconnectReason.CONNECTION_CLOSED), 515])
def test_bounded_retry_delays_and_cap(status):
    for attempts in range(MAX_BOUNDED_RETRIES):
        decision = classify_disconnect(status, _report(status), attempts)
        assert decision.action is ReconnectAction.RETRY
        assert decision.delay_ms == min(5000 + 2000 * attempts, 30000)
        assert decision.next_attempts == attempts + 1

    exhausted = classify_disconnect(status, _report(status), MAX_BOUNDED_RETRIES)
    assert exhausted.action is ReconnectAction.TERMINAL
    assert exhausted.reason == "retries_exhausted"


def test_bounded_delay_saturates():
    assert bounded_retry_delay_ms(0) == 5000
    assert bounded_retry_delay_ms(3) == 11000
    assert bounded_retry_delay_ms(12) == 29000
    assert bounded_retry_delay_ms(20) == 30000


def test_distinct_logged_out_code_drops_without_purge():
    decision = classify_disconnect(499, None, 0, logged_out_code=499)
    assert decision.action is ReconnectAction.TERMINAL
    assert decision.reason == "logged_out"


@pytest.mark.parametrize("status", [None, 408, 440, 503, 411])
def test_unclassified_retries_every_five_seconds(status):
    decision = classify_disconnect(status, None, 57)
    assert decision.action is ReconnectAction.RETRY
    assert decision.reason == "unclassified"
    assert decision.delay == 5.0
    assert decision.next_attempts == 58


def test_unclassified_retries_can_be_bounded():
    assert classify_disconnect(408, None, 2, max_unclassified_retries=3).retries
    stopped = classify_disconnect(408, None, 3, max_unclassified_retries=3)
    assert stopped.action is ReconnectAction.TERMINAL
    assert stopped.reason == "retries_exhausted"


def test_state_transitions():
    assert next_state(ConnectionState.CONNECTING, has_qr=True) is ConnectionState.QR
    assert next_state(ConnectionState.QR, connection="open") is ConnectionState.OPEN
    assert next_state(ConnectionState.OPEN, has_qr=True) is ConnectionState.OPEN
    assert next_state(ConnectionState.OPEN, connection="close") is ConnectionState.CLOSE
    assert next_state(ConnectionState.CONNECTING) is ConnectionState.CONNECTING


def test_close_is_absorbing():
    assert next_state(ConnectionState.CLOSE, connection="open") is ConnectionState.CLOSE
    assert next_state(ConnectionState.CLOSE, has_qr=True) is ConnectionState.CLOSE

from __future__ import annotations

from wagateway.registry import (
    ConnectionState,
    PendingAuth,
    PendingAuthRegistry,
    SessionRecord,
    SessionRegistry,
)

from .fakes import FakeSocket


def _record(name: str) -> SessionRecord:
    return SessionRecord(name=name, socket=FakeSocket())


def test_set_replaces_and_closes_previous():
    registry = SessionRegistry()
    first = _record("a")
    second = _record("a")
    registry.set("a", first)
    registry.set("a", second)

    assert registry.get("a") is second
    assert first.closed
    assert first.socket.ended == 1
    assert not second.closed
    assert len(registry) == 1


def test_set_same_record_is_noop():
    registry = SessionRegistry()
    record = _record("a")
    registry.set("a", record)
    registry.set("a", record)
    assert not record.closed


def test_delete_is_idempotent_and_drops_pending():
    pending = PendingAuthRegistry()
    registry = SessionRegistry(pending)
    record = _record("a")
    registry.set("a", record)
    pending.set("a", PendingAuth(artifact="data:image/png;base64,AAA"))

    assert registry.delete("a") is record
    assert "a" not in pending
    assert record.closed
    assert record.state is ConnectionState.CONNECTING

    assert registry.delete("a") is None
    assert registry.delete("missing") is None
    assert record.socket.ended == 1


def test_close_swallows_socket_errors():
    record = _record("a")
    record.socket.end_error = RuntimeError("already closed")
    record.close()
    assert record.closed
    assert not record.is_live


def test_list_and_names_are_snapshots():
    registry = SessionRegistry()
    registry.set("a", _record("a"))
    registry.set("b", _record("b"))

    for name in registry:
        registry.delete(name)
    assert registry.names() == []
    assert registry.list() == []


def test_clear_empties_both_registries():
    registry = SessionRegistry()
    registry.set("a", _record("a"))
    registry.pending.set("a", PendingAuth(artifact="x"))
    registry.pending.set("orphan", PendingAuth(artifact="y"))
    registry.clear()
    assert len(registry) == 0
    assert len(registry.pending) == 0


def test_last_activity_prefers_message_timestamp():
    record = _record("a")
    assert record.last_activity_at is None
    record.connected_at = 10.0
    assert record.last_activity_at == 10.0
    record.last_message_received_at = 20.0
    assert record.last_activity_at == 20.0

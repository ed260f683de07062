from __future__ import annotations

import random

import pytest

from wagateway.consolidate import consolidate, group_by_tenant, tenant_key
from wagateway.registry import ConnectionState, SessionRecord

from .fakes import FakeSocket


def _record(name: str, *, live: bool = False, connected_at: float | None = None) -> SessionRecord:
    return SessionRecord(
        name=name,
        socket=FakeSocket(),
        state=ConnectionState.OPEN if live else ConnectionState.CLOSE,
        is_live=live,
        connected_at=connected_at,
    )


def test_tenant_key():
    assert tenant_key("reseller_42") == "42"
    assert tenant_key("reseller_42_backup") == "42"
    assert tenant_key("old-reseller_7") == "7"
    assert tenant_key("reseller_default") is None
    assert tenant_key("shop_9", prefix="shop_") == "9"


def test_group_ignores_unmatched_names():
    sessions = [(name, _record(name)) for name in ("reseller_1", "reseller_1_old", "default")]
    groups = group_by_tenant(sessions)
    assert set(groups) == {"1"}
    assert [name for name, _ in groups["1"]] == ["reseller_1", "reseller_1_old"]


@pytest.mark.anyio
@pytest.mark.parametrize("seed", range(5))
async def test_keeps_live_most_recent_regardless_of_order(manager, seed):
    records = [
        _record("reseller_5_a", live=False, connected_at=900.0),
        _record("reseller_5_b", live=True, connected_at=100.0),
        _record("reseller_5_c", live=True, connected_at=500.0),
        _record("reseller_6", live=False),
        _record("standalone", live=False),
    ]
    random.Random(seed).shuffle(records)
    for record in records:
        manager.registry.set(record.name, record)
        manager.session_path(record.name).mkdir(parents=True)

    result = await consolidate(manager)

    assert sorted(result.kept) == ["reseller_5_c", "reseller_6"]
    assert sorted(result.cleaned) == ["reseller_5_a", "reseller_5_b"]
    assert sorted(manager.registry.names()) == ["reseller_5_c", "reseller_6", "standalone"]
    for name in result.cleaned:
        assert not manager.session_path(name).exists()
    assert manager.session_path("reseller_5_c").exists()


@pytest.mark.anyio
async def test_ties_break_by_name(manager):
    manager.registry.set("reseller_9_b", _record("reseller_9_b"))
    manager.registry.set("reseller_9_a", _record("reseller_9_a"))
    result = await consolidate(manager)
    assert result.kept == ["reseller_9_a"]
    assert result.cleaned == ["reseller_9_b"]

from __future__ import annotations

import json

import httpx

from wagateway import admin


def _transport(calls, statuses=None):
    statuses = statuses or {}

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path, request.headers.get("apikey")))
        status = statuses.get(request.url.path, 200)
        if request.url.path == "/instance/cleanup":
            return httpx.Response(status, json={"success": True, "cleaned": 1, "kept": 1})
        return httpx.Response(status, json={"ok": True})

    return httpx.MockTransport(handler)


def test_state_command(capsys):
    calls = []
    code = admin.main(
        ["--url", "http://gw", "--api-key", "k", "state", "reseller_1"],
        transport=_transport(calls),
    )
    assert code == 0
    assert calls == [("GET", "/instance/connectionState/reseller_1", "k")]
    out = json.loads(capsys.readouterr().out)
    assert out["step"] == "state"
    assert out["status"] == 200


def test_purge_runs_every_step(capsys, monkeypatch):
    monkeypatch.delenv("WA_API_KEY", raising=False)
    calls = []
    code = admin.main(["--url", "http://gw", "purge", "reseller_default"], transport=_transport(calls))
    assert code == 0
    assert [(method, path) for method, path, _ in calls] == [
        ("GET", "/instance/connectionState/reseller_default"),
        ("DELETE", "/instance/logout/reseller_default"),
        ("POST", "/instance/clear/reseller_default"),
        ("POST", "/instance/cleanup"),
        ("GET", "/instance/fetchInstances"),
    ]
    assert all(key is None for _, _, key in calls)
    assert len(capsys.readouterr().out.strip().splitlines()) == 5


def test_failed_step_sets_exit_code():
    calls = []
    transport = _transport(calls, {"/instance/logout/x": 500})
    assert admin.main(["--url", "http://gw", "purge", "x"], transport=transport) == 1
    assert len(calls) == 5
    assert admin.main(["--url", "http://gw", "logout", "x"], transport=transport) == 1


def test_cleanup_command():
    calls = []
    assert admin.main(["--url", "http://gw/", "cleanup"], transport=_transport(calls)) == 0
    assert calls[0][:2] == ("POST", "/instance/cleanup")

from __future__ import annotations

from pathlib import Path

import pytest

from wagateway.manager import SessionManager

from .fakes import FakeSocketFactory


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def socket_factory() -> FakeSocketFactory:
    return FakeSocketFactory()


def _fake_qr(payload: str) -> str:
    return f"data:image/png;base64,{payload}"


@pytest.fixture
async def manager(tmp_path: Path, socket_factory: FakeSocketFactory, anyio_backend: str):
    mgr = SessionManager(
        tmp_path / "sessions",
        socket_factory,
        keepalive_interval=3600.0,
        qr_renderer=_fake_qr,
    )
    try:
        yield mgr
    finally:
        await mgr.shutdown()

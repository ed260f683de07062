"""Environment-driven settings for the gateway process."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple


DEFAULT_SESSIONS_DIR = "/app/wa-sessions"
FALLBACK_SESSIONS_DIR = "/tmp/wa-sessions"
DEFAULT_BROWSER = ("wagateway", "Chrome", "110.0.0.0")
DEFAULT_TENANT_PREFIX = "reseller_"


def _coerce_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip() or default)
    except ValueError:
        return default


def _coerce_optional_int(value: str | None) -> Optional[int]:
    if value is None or not value.strip():
        return None
    try:
        parsed = int(value.strip())
    except ValueError:
        return None
    return parsed if parsed >= 0 else None


def _coerce_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    cleaned = value.strip().lower()
    if not cleaned:
        return default
    return cleaned in {"1", "true", "yes", "on"}


def _parse_duration(raw: str | None, *, default: float) -> float:
    if not raw:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    if cleaned.endswith("s"):
        cleaned = cleaned[:-1]
    try:
        return float(cleaned)
    except ValueError:
        return default


def _parse_browser(raw: str | None) -> Tuple[str, str, str]:
    if not raw:
        return DEFAULT_BROWSER
    parts = [part.strip() for part in raw.split(",")]
    if len(parts) != 3 or not all(parts):
        return DEFAULT_BROWSER
    return parts[0], parts[1], parts[2]


def _resolve_sessions_dir(raw: str | None) -> Path:
    candidate = Path(raw or DEFAULT_SESSIONS_DIR)
    try:
        candidate.mkdir(parents=True, exist_ok=True)
    except OSError:
        alt = Path(FALLBACK_SESSIONS_DIR)
        alt.mkdir(parents=True, exist_ok=True)
        return alt
    return candidate


@dataclass(frozen=True, slots=True)
class GatewayConfig:
    api_key: str
    sessions_dir: Path
    port: int
    socket_factory: str
    browser: Tuple[str, str, str]
    keepalive_interval: float
    reaper_interval: float
    idle_threshold: float
    qr_wait_seconds: float
    tenant_prefix: str
    max_unclassified_retries: Optional[int]
    restore_on_start: bool


def gateway_config() -> GatewayConfig:
    return GatewayConfig(
        api_key=(os.getenv("WA_API_KEY") or "").strip(),
        sessions_dir=_resolve_sessions_dir(os.getenv("WA_SESSIONS_DIR")),
        port=_coerce_int(os.getenv("WA_PORT"), 3002),
        socket_factory=(os.getenv("WA_SOCKET_FACTORY") or "").strip(),
        browser=_parse_browser(os.getenv("WA_BROWSER")),
        keepalive_interval=_parse_duration(os.getenv("WA_KEEPALIVE_INTERVAL"), default=60.0),
        reaper_interval=_parse_duration(os.getenv("WA_REAPER_INTERVAL"), default=300.0),
        idle_threshold=_parse_duration(os.getenv("WA_IDLE_THRESHOLD"), default=600.0),
        qr_wait_seconds=_parse_duration(os.getenv("WA_QR_WAIT_SECONDS"), default=2.0),
        tenant_prefix=(os.getenv("WA_TENANT_PREFIX") or DEFAULT_TENANT_PREFIX).strip()
        or DEFAULT_TENANT_PREFIX,
        max_unclassified_retries=_coerce_optional_int(os.getenv("WA_MAX_UNCLASSIFIED_RETRIES")),
        restore_on_start=_coerce_bool(os.getenv("WA_RESTORE_ON_START")),
    )


__all__ = ["GatewayConfig", "gateway_config"]

"""Multi-file credential store: one directory per instance, one JSON file per key."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Dict, Optional


LOGGER = logging.getLogger("wagateway.auth_state")

CREDS_FILE = "creds.json"


def _file_name(category: str, key_id: str) -> str:
    safe = f"{category}-{key_id}".replace("/", "__").replace(":", "-")
    return f"{safe}.json"


def _write_json(path: Path, payload: Any) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
    try:
        os.chmod(tmp, 0o600)
    except OSError as exc:
        LOGGER.warning("event=auth_file_chmod_failed path=%s error=%s", tmp, exc)
    tmp.replace(path)


def _read_json(path: Path) -> Optional[Any]:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        LOGGER.warning("event=auth_file_unreadable path=%s error=%s", path, exc)
        return None


class SignalKeyStore:
    """Lazy per-file key storage; pending writes are flushed by ``persist``."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._cache: Dict[tuple[str, str], Any] = {}
        self._dirty: Dict[tuple[str, str], Any] = {}

    def get(self, category: str, ids: list[str]) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for key_id in ids:
            cache_key = (category, key_id)
            if cache_key not in self._cache:
                self._cache[cache_key] = _read_json(self._path / _file_name(category, key_id))
            value = self._cache[cache_key]
            if value is not None:
                result[key_id] = value
        return result

    def set(self, data: Dict[str, Dict[str, Any]]) -> None:
        for category, values in data.items():
            for key_id, value in values.items():
                self._cache[(category, key_id)] = value
                self._dirty[(category, key_id)] = value

    def flush(self) -> int:
        written = 0
        for (category, key_id), value in list(self._dirty.items()):
            target = self._path / _file_name(category, key_id)
            if value is None:
                try:
                    target.unlink()
                except FileNotFoundError:
                    pass
            else:
                _write_json(target, value)
            written += 1
        self._dirty.clear()
        return written


class MultiFileAuthState:
    def __init__(self, path: Path, creds: Dict[str, Any]) -> None:
        self.path = path
        self.creds = creds
        self.keys = SignalKeyStore(path)

    @property
    def state(self) -> "MultiFileAuthState":
        return self

    def _write(self) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
        _write_json(self.path / CREDS_FILE, self.creds)
        self.keys.flush()

    async def persist(self) -> None:
        await asyncio.to_thread(self._write)


def _load(path: Path) -> MultiFileAuthState:
    path.mkdir(parents=True, exist_ok=True)
    creds = _read_json(path / CREDS_FILE)
    if not isinstance(creds, dict):
        creds = {}
    return MultiFileAuthState(path, creds)


async def load_auth_state(path: Path) -> MultiFileAuthState:
    return await asyncio.to_thread(_load, path)


async def purge_auth_state(path: Path) -> bool:
    """Recursively remove a credential directory. Missing directories are not an error."""

    def _remove() -> bool:
        if not path.exists():
            return False
        shutil.rmtree(path, ignore_errors=True)
        return not path.exists()

    try:
        return await asyncio.to_thread(_remove)
    except Exception as exc:
        LOGGER.warning("event=auth_purge_failed path=%s error=%s", path, exc)
        return False


__all__ = ["MultiFileAuthState", "SignalKeyStore", "load_auth_state", "purge_auth_state"]

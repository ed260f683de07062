from __future__ import annotations

import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import Body, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .config import gateway_config
from .consolidate import consolidate
from .manager import (
    InstanceNotFoundError,
    InstanceNotReadyError,
    InvalidInstanceNameError,
    InvalidPayloadError,
    SessionManager,
)
from .protocol import (
    WS_OPEN,
    WS_STATE_NAMES,
    SocketOptions,
    SocketUnavailableError,
    load_socket_factory,
    ws_ready_state,
)
from .registry import ConnectionState, SessionRecord


logger = logging.getLogger("wagateway.api")

INTEGRATION = "WHATSAPP-BAILEYS"
DEFAULT_PROFILE_NAME = "WhatsApp User"

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class CreateInstanceRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    instanceName: Optional[str] = None
    token: Optional[str] = None
    qrcode: bool = True


class SendTextRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    number: Optional[str] = None
    text: Optional[str] = None

    @field_validator("number", "text", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _now_iso() -> str:
    return _iso(time.time()) or ""


def _build_manager(cfg) -> SessionManager:
    try:
        factory = load_socket_factory(cfg.socket_factory)
    except SocketUnavailableError as exc:
        logger.error("stage=socket_factory_unavailable target=%s error=%s", cfg.socket_factory, exc)
        factory = None
    if factory is None:
        logger.warning("stage=socket_factory_missing connect_requests_will_fail=true")
    return SessionManager(
        cfg.sessions_dir,
        factory,
        options=SocketOptions(browser=cfg.browser),
        keepalive_interval=cfg.keepalive_interval,
        reaper_interval=cfg.reaper_interval,
        idle_threshold=cfg.idle_threshold,
        max_unclassified_retries=cfg.max_unclassified_retries,
    )


def create_app(manager: SessionManager | None = None) -> FastAPI:
    cfg = gateway_config()
    if manager is None:
        manager = _build_manager(cfg)
    api_key = cfg.api_key
    if not api_key:
        logger.warning("stage=api_key_missing auth_disabled=true")

    app = FastAPI(title="wagateway")
    app.state.session_manager = manager
    app.state.config = cfg

    def _json(body: Any, status_code: int = 200) -> JSONResponse:
        return JSONResponse(body, status_code=status_code, headers=dict(NO_STORE_HEADERS))

    def _error(status_code: int, error: str, message: str, **extra: Any) -> JSONResponse:
        body: dict[str, Any] = {"error": error, "message": message}
        body.update(extra)
        return _json(body, status_code)

    def _enforce_api_key(request: Request, route: str) -> JSONResponse | None:
        if not api_key:
            return None
        header = (request.headers.get("apikey") or request.headers.get("authorization") or "").strip()
        if header.lower().startswith("bearer "):
            header = header[7:].strip()
        if not header or not secrets.compare_digest(header, api_key):
            logger.warning("event=api_key_invalid route=%s", route)
            return _error(401, "Unauthorized", "Invalid API key")
        return None

    def _failure(route: str, name: str | None, exc: Exception) -> JSONResponse:
        if isinstance(exc, InvalidInstanceNameError):
            return _error(400, "Bad Request", str(exc))
        if isinstance(exc, SocketUnavailableError):
            logger.error("event=socket_unavailable route=%s instance=%s error=%s", route, name, exc)
            return _error(503, "Service Unavailable", str(exc))
        logger.exception("event=request_failed route=%s instance=%s", route, name)
        return _error(500, "Internal Server Error", str(exc) or exc.__class__.__name__)

    def _public_status(record: SessionRecord) -> str:
        return ConnectionState.OPEN.value if record.is_live else record.state.value

    def _session_detail(name: str, record: SessionRecord) -> dict[str, Any]:
        return {
            "instanceName": name,
            "status": record.state.value,
            "connected": record.is_live,
            "connectedAt": _iso(record.connected_at),
            "reconnectAttempts": record.reconnect_attempts,
            "lastMessageReceived": _iso(record.last_message_received_at),
            "lastPresenceUpdate": _iso(record.last_presence_update_at),
            "phoneNumber": record.phone_number,
            "profileName": record.profile_name,
        }

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - wiring
        await manager.start(restore=cfg.restore_on_start)

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - wiring
        await manager.shutdown()

    @app.post("/instance/create")
    async def create_instance(request: Request, raw_payload: Any = Body(default=None)):
        denied = _enforce_api_key(request, "/instance/create")
        if denied is not None:
            return denied
        try:
            payload = CreateInstanceRequest.model_validate(raw_payload or {})
        except ValidationError:
            return _error(400, "Bad Request", "invalid request body")
        name = (payload.instanceName or "").strip()
        if not name:
            return _error(400, "Bad Request", "instanceName is required")
        if manager.registry.get(name) is not None:
            return _error(409, "Conflict", "Instance already exists")

        logger.info("stage=instance_create instance=%s", name)
        try:
            await manager.connect(name)
        except Exception as exc:
            return _failure("/instance/create", name, exc)
        return _json(
            {
                "instance": {"instanceName": name, "status": "created"},
                "hash": {"apikey": payload.token},
            }
        )

    @app.get("/instance/fetchInstances")
    async def fetch_instances(request: Request):
        denied = _enforce_api_key(request, "/instance/fetchInstances")
        if denied is not None:
            return denied
        return _json(
            [
                {
                    "instance": {
                        "instanceName": name,
                        "status": "open" if record.is_live else "close",
                    }
                }
                for name, record in manager.registry.list()
            ]
        )

    @app.get("/instance/connectedNumbers")
    async def connected_numbers(request: Request):
        denied = _enforce_api_key(request, "/instance/connectedNumbers")
        if denied is not None:
            return denied
        numbers = [
            {
                "instanceName": name,
                "phoneNumber": record.phone_number,
                "profileName": record.profile_name,
                "connectedAt": _iso(record.connected_at),
            }
            for name, record in manager.registry.list()
            if record.is_live and record.phone_number
        ]
        return _json({"total": len(numbers), "numbers": numbers})

    @app.post("/instance/cleanup")
    async def cleanup_instances(request: Request):
        denied = _enforce_api_key(request, "/instance/cleanup")
        if denied is not None:
            return denied
        try:
            result = await consolidate(manager, prefix=cfg.tenant_prefix)
        except Exception as exc:
            logger.exception("event=cleanup_failed")
            return _json({"success": False, "error": str(exc)}, 500)
        return _json(
            {
                "success": True,
                "cleaned": len(result.cleaned),
                "kept": len(result.kept),
                "details": {"cleaned": result.cleaned, "kept": result.kept},
            }
        )

    @app.get("/instance/connect/{instance_name}")
    async def connect_instance(request: Request, instance_name: str):
        denied = _enforce_api_key(request, "/instance/connect")
        if denied is not None:
            return denied
        try:
            if manager.registry.get(instance_name) is None:
                await manager.connect(instance_name)
                entry = await manager.wait_for_qr(instance_name, cfg.qr_wait_seconds)
            else:
                entry = manager.pending.get(instance_name)
        except Exception as exc:
            return _failure("/instance/connect", instance_name, exc)

        if entry is None:
            return _json(
                {"message": "QR Code being generated, please wait...", "status": "generating"},
                202,
            )
        return _json({"base64": entry.artifact, "code": entry.artifact, "count": 1})

    @app.get("/instance/connectionState/{instance_name}")
    async def connection_state(request: Request, instance_name: str):
        denied = _enforce_api_key(request, "/instance/connectionState")
        if denied is not None:
            return denied
        record = manager.registry.get(instance_name)
        if record is None:
            return _json(
                {"instance": {"instanceName": instance_name, "state": "close", "status": "close"}}
            )
        if record.is_live:
            state = "open"
        elif record.state is ConnectionState.QR:
            state = "qr"
        else:
            state = "close"
        return _json(
            {
                "instance": {
                    "instanceName": instance_name,
                    "state": state,
                    "status": record.state.value,
                }
            }
        )

    @app.post("/instance/clear/{instance_name}")
    async def clear_instance(request: Request, instance_name: str):
        denied = _enforce_api_key(request, "/instance/clear")
        if denied is not None:
            return denied
        try:
            await manager.clear(instance_name)
        except InvalidInstanceNameError as exc:
            return _json({"success": False, "error": str(exc)}, 400)
        except Exception as exc:
            logger.exception("event=clear_failed instance=%s", instance_name)
            return _json({"success": False, "error": str(exc)}, 500)
        return _json({"success": True, "message": "Session cleared"})

    @app.delete("/instance/logout/{instance_name}")
    async def logout_instance(request: Request, instance_name: str):
        denied = _enforce_api_key(request, "/instance/logout")
        if denied is not None:
            return denied
        try:
            await manager.logout(instance_name)
        except Exception as exc:
            return _failure("/instance/logout", instance_name, exc)
        return _json({"error": False, "message": "Instance logged out successfully"})

    @app.get("/instance/diagnose/{instance_name}")
    async def diagnose_instance(request: Request, instance_name: str):
        denied = _enforce_api_key(request, "/instance/diagnose")
        if denied is not None:
            return denied
        record = manager.registry.get(instance_name)
        if record is None:
            return _json(
                {
                    "exists": False,
                    "message": f"Instance '{instance_name}' not found",
                    "availableInstances": manager.registry.names(),
                }
            )
        socket_state = ws_ready_state(record.socket)
        scheduled = manager.scheduled_reconnect(instance_name)
        ready = record.is_live and socket_state == WS_OPEN
        return _json(
            {
                "exists": True,
                "instanceName": instance_name,
                "diagnosis": {
                    "connected": record.is_live,
                    "status": record.state.value,
                    "socketExists": record.socket is not None,
                    "socketState": socket_state,
                    "socketStateName": WS_STATE_NAMES.get(socket_state, "UNKNOWN"),
                    "phoneNumber": record.phone_number,
                    "profileName": record.profile_name,
                    "connectedAt": _iso(record.connected_at),
                    "reconnectAttempts": record.reconnect_attempts,
                    "lastMessageReceived": _iso(record.last_message_received_at),
                    "lastPresenceUpdate": _iso(record.last_presence_update_at),
                    "lastDisconnectCode": record.last_disconnect_code,
                    "hasKeepAlive": record.has_keepalive,
                    "hasPendingQr": manager.pending.get(instance_name) is not None,
                    "reconnectScheduledIn": scheduled.delay if scheduled else None,
                },
                "recommendation": (
                    "Instance is ready to send messages"
                    if ready
                    else "Instance is not ready. Please reconnect or wait for connection to stabilize."
                ),
            }
        )

    @app.get("/instance/{instance_name}")
    async def instance_info(request: Request, instance_name: str):
        denied = _enforce_api_key(request, "/instance")
        if denied is not None:
            return denied
        record = manager.registry.get(instance_name)
        if record is None:
            return _error(404, "Not Found", "Instance not found")
        return _json(
            {
                "instance": {
                    "instanceName": instance_name,
                    "status": _public_status(record),
                    "profileName": record.profile_name or DEFAULT_PROFILE_NAME,
                    "profilePictureUrl": record.profile_picture_url,
                    "phoneNumber": record.phone_number,
                    "integration": INTEGRATION,
                }
            }
        )

    @app.post("/message/sendText/{instance_name}")
    async def send_text(request: Request, instance_name: str, raw_payload: Any = Body(default=None)):
        denied = _enforce_api_key(request, "/message/sendText")
        if denied is not None:
            return denied
        try:
            payload = SendTextRequest.model_validate(raw_payload or {})
        except ValidationError:
            # unusable fields count as missing; send_text reports them after the instance checks
            payload = SendTextRequest()

        try:
            result = await manager.send_text(instance_name, payload.number, payload.text)
        except InstanceNotFoundError as exc:
            return _error(404, "Not Found", str(exc))
        except InstanceNotReadyError as exc:
            if exc.details is not None:
                return _error(400, "Bad Request", str(exc), details=exc.details)
            return _error(400, "Bad Request", str(exc))
        except InvalidPayloadError as exc:
            return _error(400, "Bad Request", str(exc))
        except Exception as exc:
            return _failure("/message/sendText", instance_name, exc)

        return _json(
            {
                "key": result.get("key"),
                "message": {"conversation": payload.text},
                "messageTimestamp": result.get("messageTimestamp"),
                "status": "PENDING",
            }
        )

    @app.post("/webhook/{instance_name}")
    async def webhook(instance_name: str, raw_payload: Any = Body(default=None)):
        event = raw_payload.get("event") if isinstance(raw_payload, dict) else None
        logger.info("stage=webhook_received instance=%s event=%s", instance_name, event)
        return _json({"error": False, "message": "Webhook received successfully"})

    @app.get("/health")
    async def health():
        try:
            stats = manager.stats_snapshot()
            details = [_session_detail(name, record) for name, record in manager.registry.list()]
        except Exception:
            logger.warning("event=stats_snapshot_failed", exc_info=True)
            stats = {"total": 0, "connected": 0, "connecting": 0, "disconnected": 0}
            details = []
        return _json(
            {
                "status": "ok",
                "timestamp": _now_iso(),
                "uptime": round(time.time() - manager.started_at, 3),
                "sessions": {
                    "total": int(stats.get("total", 0) or 0),
                    "connected": int(stats.get("connected", 0) or 0),
                    "connecting": int(stats.get("connecting", 0) or 0),
                    "disconnected": int(stats.get("disconnected", 0) or 0),
                    "details": details,
                },
            }
        )

    @app.get("/ping")
    async def ping():
        return _json({"status": "pong", "timestamp": _now_iso()})

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["create_app"]

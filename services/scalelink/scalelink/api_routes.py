from __future__ import annotations
import asyncio
import logging
from typing import Any, List, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .codecs.scp import SCP_COMMANDS
from .errors import ProtocolError, ScaleLinkError, TransportError, TransportErrorKind
from .events import EventBus
from .models import (
    CommandRequest,
    Config,
    ConnectionConfig,
    ConnectionStatus,
    EndpointList,
    Health,
    ManualInput,
    SessionInfo,
    SessionStartRequest,
)

logger = logging.getLogger(__name__)

TRANSPORTS = ("serial", "tcp", "bluetooth")


def event_message(kind: str, payload: Any) -> dict:
    data = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else payload
    return {"type": kind, "data": data}


def error_response(exc: ScaleLinkError, status_code: int) -> JSONResponse:
    return JSONResponse(
        {"error": exc.kind.value, "details": exc.message, "actionable": exc.actionable},
        status_code=status_code,
    )


def _status_code(exc: ScaleLinkError) -> int:
    if isinstance(exc, ProtocolError):
        return 502
    if exc.kind == TransportErrorKind.TIMEOUT:
        return 504
    if exc.kind == TransportErrorKind.UNAVAILABLE:
        return 409
    return 503


class EventHub:
    """Tracks WebSocket clients and forwards bus events to each of them."""

    def __init__(self, bus: EventBus):
        self.bus = bus
        self.active: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active.append(websocket)
        logger.info(f"WebSocket connection accepted. Active connections: {len(self.active)}")

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active:
            self.active.remove(websocket)
            logger.info(f"WebSocket disconnected. Active connections: {len(self.active)}")

    async def forward(self, websocket: WebSocket):
        async for kind, payload in self.bus.stream():
            await websocket.send_json(event_message(kind, payload))


def create_router(ctx) -> APIRouter:
    router = APIRouter()
    hub = EventHub(ctx.bus)

    @router.get("/api/health", response_model=Health)
    async def health():
        return ctx.health_info()

    @router.get("/api/status", response_model=ConnectionStatus)
    async def get_status():
        return ctx.manager.status

    @router.post("/api/connect")
    async def connect(config: Optional[ConnectionConfig] = None):
        """Connect with the posted settings, or the configured default connection."""
        if ctx.manager.connecting:
            return JSONResponse({"error": "connect already in progress"}, status_code=409)
        config = config or ctx.cfg.default_connection()
        ok = await ctx.manager.connect(config)
        return {"connected": ok, "status": ctx.manager.status.model_dump(mode="json")}

    @router.post("/api/disconnect", response_model=ConnectionStatus)
    async def disconnect():
        await ctx.manager.disconnect()
        return ctx.manager.status

    @router.get("/api/endpoints/{transport}", response_model=EndpointList)
    async def list_endpoints(transport: str):
        if transport not in TRANSPORTS:
            return JSONResponse({"error": f"unknown transport {transport}"}, status_code=404)
        try:
            endpoints = await ctx.manager.list_endpoints(transport)
        except TransportError as e:
            return error_response(e, 503)
        return EndpointList(endpoints=endpoints)

    @router.get("/api/reading")
    async def get_reading():
        reading = ctx.manager.last_reading
        if reading is None:
            return JSONResponse({"error": "no reading yet"}, status_code=404)
        return reading.model_dump(mode="json")

    @router.post("/api/manual")
    async def manual_input(req: ManualInput):
        try:
            ctx.manager.feed_manual(req.text)
        except TransportError as e:
            return error_response(e, 409)
        reading = ctx.manager.last_reading
        return {"status": "ok", "reading": reading.model_dump(mode="json") if reading else None}

    @router.get("/api/scp/commands")
    async def scp_commands():
        return SCP_COMMANDS

    @router.post("/api/scp/command")
    async def scp_command(req: CommandRequest):
        try:
            reply = await ctx.manager.send_command(req.command)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except TransportError as e:
            return error_response(e, _status_code(e))
        return {"command": req.command, "reply": reply}

    async def _adi_call(name: str):
        client = ctx.manager.adi
        if client is None:
            return JSONResponse({"error": "not connected over ADI"}, status_code=409)
        try:
            return {"data": await getattr(client, name)()}
        except ScaleLinkError as e:
            return error_response(e, _status_code(e))

    @router.get("/api/adi/device")
    async def adi_device():
        return await _adi_call("get_device_info")

    @router.get("/api/adi/sessions")
    async def adi_sessions():
        return await _adi_call("get_sessions")

    @router.get("/api/session", response_model=SessionInfo)
    async def session_info():
        return ctx.capture.info()

    @router.post("/api/session/start", response_model=SessionInfo)
    async def session_start(req: Optional[SessionStartRequest] = None):
        return ctx.capture.start(req.name if req else None)

    @router.post("/api/session/stop", response_model=SessionInfo)
    async def session_stop():
        return ctx.capture.stop()

    @router.get("/api/session/records")
    async def session_records():
        records = getattr(ctx.capture.sink, "records", [])
        return [r.model_dump(mode="json") for r in records]

    @router.get("/api/config", response_model=Config)
    async def get_config():
        return ctx.cfg

    @router.post("/api/config", response_model=Config)
    async def set_config(new_cfg: Config):
        await ctx.update_config(new_cfg)
        return new_cfg

    @router.websocket("/ws/events")
    async def ws_events(websocket: WebSocket):
        client_ip = websocket.client.host if websocket.client else "unknown"
        await hub.connect(websocket)
        # late subscribers get no replay, so start them off with the current status
        await websocket.send_json(event_message("status_changed", ctx.manager.status))
        sender = asyncio.create_task(hub.forward(websocket))
        try:
            while True:
                data = await websocket.receive_text()
                if data == "ping":
                    await websocket.send_text("pong")
        except WebSocketDisconnect:
            logger.info(f"WebSocket client disconnected: {client_ip}")
        finally:
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug(f"WebSocket forward to {client_ip} ended: {e}")
            hub.disconnect(websocket)

    return router

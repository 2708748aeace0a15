"""API routes for the realtime service."""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, Request, WebSocket, status
from fastapi.websockets import WebSocketDisconnect
from pydantic import ValidationError

from ..config import HealthPayload, Settings, get_settings
from ..events import parse_domain_event
from ..models import PublishAck
from ..rate_limit import rate_limit
from ..server import RealtimeModule

logger = logging.getLogger(__name__)
router = APIRouter()


def _get_realtime_from_app(app) -> RealtimeModule:  # type: ignore[no-untyped-def]
    realtime = getattr(app.state, "realtime", None)
    if realtime is None:
        raise RuntimeError("RealtimeModule is not initialised")
    return realtime


def _settings_from_app(app) -> Settings:  # type: ignore[no-untyped-def]
    return getattr(app.state, "settings", None) or get_settings()


def get_realtime(request: Request) -> RealtimeModule:
    """Fetch realtime module from HTTP request context."""

    return _get_realtime_from_app(request.app)


def get_app_settings(request: Request) -> Settings:
    return _settings_from_app(request.app)


async def _authorize(websocket: WebSocket) -> None:
    settings = _settings_from_app(websocket.app)
    if not settings.ws_api_key:
        return
    auth_header = websocket.headers.get("authorization") or ""
    token = auth_header.split(" ")[-1] if auth_header.lower().startswith("bearer ") else websocket.query_params.get("token")
    if token != settings.ws_api_key:
        await websocket.close(code=4401, reason="Unauthorized")
        raise WebSocketDisconnect(code=4401)


@router.get("/health", response_model=HealthPayload, tags=["system"])
async def read_health(settings: Settings = Depends(get_app_settings)) -> HealthPayload:
    """Return service health information."""

    return HealthPayload(status="ok", api_version=settings.api_version)


@router.post(
    "/v1/events",
    response_model=PublishAck,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["events"],
)
async def publish_event(
    request: Request,
    body: Dict[str, Any] = Body(...),
    _rl: None = Depends(rate_limit),
) -> PublishAck:
    """Validate a domain event and publish it on the in-process bus."""

    realtime = get_realtime(request)
    try:
        event = parse_domain_event(body)
    except ValidationError as exc:
        detail = [{"loc": list(error["loc"]), "msg": error["msg"], "type": error["type"]} for error in exc.errors()]
        raise HTTPException(status_code=422, detail=detail) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    try:
        realtime.publish(event)
    except Exception:  # pylint: disable=broad-except
        # The domain write already happened upstream; delivery is best effort.
        logger.exception(
            "Failed to publish %s for session %s (traceId=%s)",
            event.type.value,
            event.session_id,
            getattr(request.state, "trace_id", ""),
        )
    return PublishAck(event_type=event.type.value, session_id=event.session_id)


@router.websocket("/ws")
async def realtime_ws(websocket: WebSocket) -> None:
    """Handle WebSocket connections for a session (``?sessionId=``)."""

    try:
        await _authorize(websocket)
    except WebSocketDisconnect:
        return
    realtime = _get_realtime_from_app(websocket.app)
    await realtime.handle_websocket(websocket)

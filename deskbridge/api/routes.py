from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Response, WebSocket, WebSocketDisconnect, status
from fastapi.websockets import WebSocketState

from deskbridge.api.deps import get_registry
from deskbridge.api.models import HealthResponse, SessionCreatedResponse, SessionInfoResponse
from deskbridge.errors import CodespaceExhausted, DeskBridgeError, Expired, NotFound, SessionBusy
from deskbridge.protocol import SessionErrorMessage, dump
from deskbridge.registry import SessionRegistry
from deskbridge.relay import relay

logger = logging.getLogger(__name__)

router = APIRouter()


def _http_error(e: DeskBridgeError) -> HTTPException:
    if isinstance(e, NotFound):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, Expired):
        code = status.HTTP_410_GONE
    elif isinstance(e, (CodespaceExhausted, SessionBusy)):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    return HTTPException(status_code=code, detail=e.message)


@router.websocket("/ws/signal")
async def signaling_ws(websocket: WebSocket, registry: SessionRegistry = Depends(get_registry)) -> None:
    peer_id = await relay.connect(websocket)

    try:
        # The relay closes the socket itself when the session expires or is closed.
        while websocket.application_state == WebSocketState.CONNECTED:
            text = await websocket.receive_text()
            try:
                raw = json.loads(text)
            except json.JSONDecodeError:
                raw = None
            if not isinstance(raw, dict):
                await relay.send(peer_id, dump(SessionErrorMessage(error="Messages must be JSON objects", code="bad-message")))
                continue
            await relay.handle(peer_id, raw, registry=registry)
    except WebSocketDisconnect:
        pass
    except Exception:
        await relay.disconnect(peer_id, registry=registry)
        raise
    await relay.disconnect(peer_id, registry=registry)


@router.get("/api/health", response_model=HealthResponse)
async def healthcheck(registry: SessionRegistry = Depends(get_registry)) -> HealthResponse:
    return HealthResponse(status="ok", timestamp=registry.now())


@router.post("/api/session", response_model=SessionCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_session_route(registry: SessionRegistry = Depends(get_registry)) -> SessionCreatedResponse:
    try:
        record = registry.create_session()
    except DeskBridgeError as e:
        logger.error("Session creation failed: %s", e)
        raise _http_error(e) from e
    # Reusing an expired code may have evicted a record that still had peers.
    await relay.flush_evicted(registry)

    return SessionCreatedResponse(
        session_id=record.session_id,
        session_code=record.code,
        expires_at=record.expires_at,
    )


@router.get("/api/session/{code}", response_model=SessionInfoResponse)
async def get_session_route(code: str, registry: SessionRegistry = Depends(get_registry)) -> SessionInfoResponse:
    try:
        record = registry.get_session(code)
    except DeskBridgeError as e:
        if isinstance(e, Expired):
            await relay.flush_evicted(registry)
        raise _http_error(e) from e
    return SessionInfoResponse.from_record(record)


@router.delete("/api/session/{code}", status_code=status.HTTP_204_NO_CONTENT)
async def close_session_route(code: str, registry: SessionRegistry = Depends(get_registry)) -> Response:
    try:
        record = registry.close_session(code)
    except DeskBridgeError as e:
        if isinstance(e, Expired):
            await relay.flush_evicted(registry)
        raise _http_error(e) from e

    await relay.close_session(record.code, record.identities)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

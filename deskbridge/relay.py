from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from fastapi import WebSocket
from pydantic import ValidationError

from deskbridge.api.models import Role
from deskbridge.config import get_settings
from deskbridge.errors import DeskBridgeError
from deskbridge.protocol import (
    JoinSession,
    LeaveSession,
    PeerJoined,
    PeerLeft,
    SessionClosed,
    SessionErrorMessage,
    SessionExpired,
    SessionJoined,
    dump,
    parse_client_message,
)
from deskbridge.registry import SessionRegistry, SweptSession


logger = logging.getLogger(__name__)

# Application close code sent to sockets whose session expired or was closed.
SESSION_GONE_CLOSE_CODE = 4410


@dataclass(slots=True)
class PeerConnection:
    peer_id: str
    websocket: WebSocket
    session_code: str | None = None
    role: Role | None = None


class SignalingRelay:
    """In-process signaling relay keyed by transport-level peer id.

    Contract:
      - every accepted WebSocket gets a fresh peer id via `connect(websocket)`.
      - `handle(peer_id, raw, registry=...)` applies one inbound message.
      - negotiation messages are forwarded unmodified, with `from` attached, to the
        target peer if it is live and in the same session; otherwise they are dropped.
      - `disconnect(peer_id, registry=...)` releases the peer's role.

    Registry failures are answered with `session-error`; they never close the socket.
    """

    def __init__(self) -> None:
        self._peers: dict[str, PeerConnection] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        peer_id = uuid4().hex
        async with self._lock:
            self._peers[peer_id] = PeerConnection(peer_id=peer_id, websocket=websocket)
        logger.info("Signaling peer connected: %s", peer_id)
        return peer_id

    async def peer(self, peer_id: str) -> PeerConnection | None:
        async with self._lock:
            return self._peers.get(peer_id)

    async def send(self, peer_id: str, payload: dict[str, Any]) -> bool:
        async with self._lock:
            conn = self._peers.get(peer_id)
        if conn is None:
            return False
        try:
            await conn.websocket.send_json(payload)
        except Exception:
            # The entry stays until `disconnect` so the role is released with it.
            logger.warning("Send to peer %s failed", peer_id, exc_info=True)
            return False
        return True

    async def _send_error(self, peer_id: str, error: DeskBridgeError) -> None:
        await self.send(peer_id, dump(SessionErrorMessage(error=error.message, code=error.code)))

    async def handle(self, peer_id: str, raw: dict[str, Any], *, registry: SessionRegistry) -> None:
        try:
            message = parse_client_message(raw)
        except ValidationError as e:
            logger.debug("Malformed message from %s: %s", peer_id, e)
            await self.send(
                peer_id,
                dump(SessionErrorMessage(error=f"Malformed message: {raw.get('type')!r}", code="bad-message")),
            )
            return

        if isinstance(message, JoinSession):
            await self.join(peer_id, message, registry=registry)
        elif isinstance(message, LeaveSession):
            await self.leave(peer_id, registry=registry)
        else:
            await self.forward(peer_id, raw)

    async def join(self, peer_id: str, message: JoinSession, *, registry: SessionRegistry) -> None:
        conn = await self.peer(peer_id)
        if conn is None:
            return

        code = message.session_code.strip().upper()
        if conn.session_code is not None and (conn.session_code != code or conn.role != message.role):
            # One session and one role per transport.
            await self.leave(peer_id, registry=registry)

        try:
            assignment = registry.assign_role(code, message.role, peer_id)
        except DeskBridgeError as e:
            logger.info("Join rejected for %s on %s as %s: %s", peer_id, code, message.role.value, e.code)
            await self._send_error(peer_id, e)
            await self.flush_evicted(registry)
            return

        conn.session_code = assignment.record.code
        conn.role = message.role

        await self.send(
            peer_id,
            dump(
                SessionJoined(
                    peer_id=peer_id,
                    session_code=assignment.record.code,
                    role=message.role,
                    ice_servers=get_settings().ice_server_dicts(),
                )
            ),
        )

        other_role = Role.client if message.role == Role.host else Role.host
        counterpart = assignment.record.identity_for(other_role)
        if counterpart is None:
            return

        if not assignment.rebound:
            await self.send(counterpart, dump(PeerJoined(peer_id=peer_id, role=message.role)))
        # The joiner learns an already-present counterpart without waiting for it to act.
        await self.send(peer_id, dump(PeerJoined(peer_id=counterpart, role=other_role)))

    async def forward(self, peer_id: str, raw: dict[str, Any]) -> bool:
        """Fire-and-forget: there is no acknowledgement and no retry."""

        target_id = raw.get("target")
        async with self._lock:
            sender = self._peers.get(peer_id)
            target = self._peers.get(target_id) if isinstance(target_id, str) else None

        if sender is None or sender.session_code is None:
            logger.debug("Dropped %s from %s: sender has not joined a session", raw.get("type"), peer_id)
            return False
        if target is None or target.session_code != sender.session_code:
            logger.debug("Dropped %s from %s: target %s not live in %s", raw.get("type"), peer_id, target_id, sender.session_code)
            return False

        out = dict(raw)
        out["from"] = peer_id
        return await self.send(target.peer_id, out)

    async def _release(self, conn: PeerConnection, *, registry: SessionRegistry) -> None:
        if conn.session_code is None:
            return
        code = conn.session_code
        conn.session_code = None
        conn.role = None

        released = registry.release_role(code, conn.peer_id)
        await self.flush_evicted(registry)
        if released is None:
            return

        other_role = Role.client if released.role == Role.host else Role.host
        counterpart = released.record.identity_for(other_role)
        if counterpart is not None:
            await self.send(counterpart, dump(PeerLeft(peer_id=conn.peer_id, role=released.role)))

    async def leave(self, peer_id: str, *, registry: SessionRegistry) -> None:
        conn = await self.peer(peer_id)
        if conn is None:
            return
        await self._release(conn, registry=registry)

    async def disconnect(self, peer_id: str, *, registry: SessionRegistry) -> None:
        async with self._lock:
            conn = self._peers.pop(peer_id, None)
        if conn is None:
            return
        logger.info("Signaling peer disconnected: %s", peer_id)
        await self._release(conn, registry=registry)

    async def _evict_peers(self, code: str, identities: tuple[str, ...], notice: dict[str, Any]) -> None:
        for peer_id in identities:
            async with self._lock:
                conn = self._peers.get(peer_id)
            if conn is None or conn.session_code != code:
                continue
            await self.send(peer_id, notice)
            async with self._lock:
                self._peers.pop(peer_id, None)
            try:
                await conn.websocket.close(code=SESSION_GONE_CLOSE_CODE)
            except Exception:
                logger.debug("Closing socket for %s failed", peer_id, exc_info=True)

    async def expire_sessions(self, swept: list[SweptSession]) -> None:
        for item in swept:
            await self._evict_peers(item.code, item.identities, dump(SessionExpired(session_code=item.code)))

    async def flush_evicted(self, registry: SessionRegistry) -> None:
        """Notify peers of sessions a lookup found expired and evicted."""

        swept = registry.take_evicted()
        if swept:
            await self.expire_sessions(swept)

    async def close_session(self, code: str, identities: tuple[str, ...]) -> None:
        await self._evict_peers(code, identities, dump(SessionClosed(session_code=code)))


relay = SignalingRelay()

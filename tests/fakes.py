"""In-memory stand-ins for the participant-side seams (transport, relay, REST, capture)."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from deskbridge.api.models import SessionCreatedResponse, SessionInfoResponse, SessionStatus
from deskbridge.core.transport import TransportConfig
from deskbridge.errors import CapturePermissionDenied, DeskBridgeError


class FakeChannel:
    def __init__(self, ready_state: str = "open") -> None:
        self.ready_state = ready_state
        self.sent: list[str] = []
        self.closed = False
        self._callback: Callable[[str], None] | None = None

    def send(self, data: str) -> None:
        self.sent.append(data)

    def on_message(self, callback: Callable[[str], None]) -> None:
        self._callback = callback

    def close(self) -> None:
        self.closed = True
        self.ready_state = "closed"

    def deliver(self, data: str) -> None:
        assert self._callback is not None
        self._callback(data)


class FakeTransport:
    def __init__(self, config: TransportConfig, *, gather: tuple[dict[str, Any], ...] = ()) -> None:
        self.config = config
        self.gather = gather
        self.local: list[tuple[str, str]] = []
        self.remote: list[tuple[str, str]] = []
        self.candidates: list[dict[str, Any] | None] = []
        self.tracks: list[Any] = []
        self.closed = False
        self.channel = FakeChannel()

        self._on_candidate: Callable[[dict[str, Any] | None], None] | None = None
        self._on_state: Callable[[str], None] | None = None
        self._on_track: Callable[[Any], None] | None = None

    async def create_offer(self) -> str:
        return "offer-sdp"

    async def create_answer(self) -> str:
        return "answer-sdp"

    async def set_local_description(self, sdp: str, kind: str) -> str:
        self.local.append((kind, sdp))
        for candidate in self.gather:
            assert self._on_candidate is not None
            self._on_candidate(candidate)
        return sdp

    async def set_remote_description(self, sdp: str, kind: str) -> None:
        self.remote.append((kind, sdp))

    async def add_ice_candidate(self, candidate: dict[str, Any] | None) -> None:
        self.candidates.append(candidate)

    async def attach_track(self, track: Any) -> None:
        self.tracks.append(track)

    async def close(self) -> None:
        self.closed = True

    def on_ice_candidate(self, callback) -> None:
        self._on_candidate = callback

    def on_state_change(self, callback) -> None:
        self._on_state = callback

    def on_track(self, callback) -> None:
        self._on_track = callback

    def on_control_channel(self, callback) -> None:
        callback(self.channel)

    # test drivers

    def emit_state(self, state: str) -> None:
        assert self._on_state is not None
        self._on_state(state)

    def emit_track(self, track: Any) -> None:
        assert self._on_track is not None
        self._on_track(track)


class TransportFactory:
    def __init__(self, *, gather: tuple[dict[str, Any], ...] = ()) -> None:
        self.gather = gather
        self.created: list[FakeTransport] = []

    def __call__(self, config: TransportConfig) -> FakeTransport:
        transport = FakeTransport(config, gather=self.gather)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


class FakeSignaling:
    """Records outbound messages; the relay side is played by the test."""

    def __init__(self, *, peer_id: str = "me", ice_servers: list[dict[str, Any]] | None = None) -> None:
        self.peer_id = peer_id
        self.ice_servers = ice_servers or []
        self.sent: list[Any] = []
        self.joins: list[tuple[str, str]] = []
        self.events: list[str] = []
        self.connect_calls = 0
        self.handler = None
        self.on_disconnect = None
        self.auto_ack = True
        self.join_error: Any = None

    async def connect(self, handler, *, on_disconnect=None) -> None:
        self.connect_calls += 1
        self.handler = handler
        self.on_disconnect = on_disconnect

    async def send(self, message) -> None:
        self.sent.append(message)

    async def join(self, code: str, role) -> None:
        from deskbridge.protocol import SessionJoined

        self.joins.append((code, str(role)))
        self.events.append("join")
        if self.join_error is not None:
            await self.handler(self.join_error)
        elif self.auto_ack:
            await self.handler(
                SessionJoined(peer_id=self.peer_id, session_code=code, role=role, ice_servers=self.ice_servers)
            )

    async def leave(self) -> None:
        self.events.append("leave")

    async def close(self) -> None:
        self.events.append("close-signaling")

    async def deliver(self, message) -> None:
        await self.handler(message)


class FakeApi:
    def __init__(self, *, code: str = "ABC234") -> None:
        self.code = code
        self.lookup_error: DeskBridgeError | None = None
        self.lookups: list[str] = []
        # When set, every call blocks until the test releases it.
        self.gate: asyncio.Event | None = None

    async def create_session(self) -> SessionCreatedResponse:
        if self.gate is not None:
            await self.gate.wait()
        return SessionCreatedResponse(
            session_id="sid",
            session_code=self.code,
            expires_at=datetime(2026, 1, 1, 13, 0, tzinfo=UTC),
        )

    async def get_session(self, code: str) -> SessionInfoResponse:
        self.lookups.append(code)
        if self.gate is not None:
            await self.gate.wait()
        if self.lookup_error is not None:
            raise self.lookup_error
        return SessionInfoResponse(
            session_id="sid",
            status=SessionStatus.active,
            expires_at=datetime(2026, 1, 1, 13, 0, tzinfo=UTC),
            has_host=True,
            has_client=False,
        )


class FakeCapture:
    def __init__(self, events: list[str] | None = None, *, deny: bool = False) -> None:
        self.events = events if events is not None else []
        self.deny = deny
        self.started = 0
        self.stopped = 0
        self.prompt: asyncio.Event | None = None
        self.prompt_cancelled = False

    async def start(self) -> Any:
        if self.prompt is not None:
            try:
                await self.prompt.wait()
            except asyncio.CancelledError:
                self.prompt_cancelled = True
                raise
        if self.deny:
            raise CapturePermissionDenied()
        self.started += 1
        return "screen-track"

    async def stop(self) -> None:
        self.stopped += 1
        self.events.append("stop-capture")


class FakeWebSocket:
    """Server-side socket as the relay sees it."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.close_code: int | None = None
        self.broken = False

    async def accept(self) -> None:
        return None

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self.broken:
            raise ConnectionResetError("socket gone")
        self.sent.append(payload)

    async def close(self, code: int = 1000) -> None:
        self.close_code = code

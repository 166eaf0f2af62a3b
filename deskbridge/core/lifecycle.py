from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import BaseModel
from statemachine import State, StateMachine

from deskbridge.api.models import Role, SessionCreatedResponse, SessionInfoResponse
from deskbridge.codes import require_valid_code
from deskbridge.core.capture import CaptureSource
from deskbridge.core.control import ControlChannel, Viewport, denormalize_event, normalize_event
from deskbridge.core.negotiation import NegotiationConfig, NegotiationEvent, PeerNegotiator
from deskbridge.core.retry import RetryPolicy
from deskbridge.core.transport import DataChannel, TransportFactory
from deskbridge.errors import DeskBridgeError, Expired, NotFound, TransportFailure
from deskbridge.protocol import (
    PeerJoined,
    PeerLeft,
    RelayedAnswer,
    RelayedIceCandidate,
    RelayedOffer,
    SessionClosed,
    SessionErrorMessage,
    SessionExpired,
    SessionJoined,
)


logger = logging.getLogger(__name__)

JOIN_TIMEOUT_SECONDS = 10.0


class LifecycleFSM(StateMachine):
    """Application-visible session state.

    disconnected -> initializing -> ready -> waiting (host) | connecting (client)
    -> connected -> streaming. `error` holds until `reset`.
    """

    disconnected = State("Disconnected", initial=True)
    initializing = State("Initializing")
    ready = State("Ready")
    waiting = State("Waiting")
    connecting = State("Connecting")
    connected = State("Connected")
    streaming = State("Streaming")
    error = State("Error")

    start_init = disconnected.to(initializing)
    initialized = initializing.to(ready)

    await_client = ready.to(waiting) | connected.to(waiting) | streaming.to(waiting)
    await_host = ready.to(connecting) | connected.to(connecting) | streaming.to(connecting)
    peer_connected = waiting.to(connected) | connecting.to(connected)

    stream_started = connected.to(streaming)
    stream_stopped = streaming.to(connected)

    fail = (
        disconnected.to(error)
        | initializing.to(error)
        | ready.to(error)
        | waiting.to(error)
        | connecting.to(error)
        | connected.to(error)
        | streaming.to(error)
    )
    reset = (
        initializing.to(disconnected)
        | ready.to(disconnected)
        | waiting.to(disconnected)
        | connecting.to(disconnected)
        | connected.to(disconnected)
        | streaming.to(disconnected)
        | error.to(disconnected)
    )


class SessionApi(Protocol):
    async def create_session(self) -> SessionCreatedResponse: ...

    async def get_session(self, code: str) -> SessionInfoResponse: ...


class Signaling(Protocol):
    async def connect(self, handler, *, on_disconnect=None) -> None: ...

    async def send(self, message: BaseModel) -> None: ...

    async def join(self, code: str, role: Role) -> None: ...

    async def leave(self) -> None: ...

    async def close(self) -> None: ...


@dataclass(frozen=True, slots=True)
class LifecycleEvent:
    state: str
    cause: DeskBridgeError | None = None


class SessionManager:
    """Sequences registry, relay, negotiation and capture for one participant.

    Teardown on every exit path runs in one order: release the role on the relay,
    close the negotiation, stop local capture, close signaling.
    """

    def __init__(
        self,
        *,
        api: SessionApi,
        signaling: Signaling,
        transport_factory: TransportFactory,
        capture: CaptureSource | None = None,
        retry: RetryPolicy | None = None,
        negotiation: NegotiationConfig | None = None,
        viewport: Viewport | None = None,
        on_input: Callable[[Any], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._api = api
        self._signaling = signaling
        self._transport_factory = transport_factory
        self._capture = capture
        self._retry = retry or RetryPolicy()
        self._negotiation_config = negotiation or NegotiationConfig()
        self._viewport = viewport
        self._on_input = on_input
        self._sleep = sleep

        self._fsm = LifecycleFSM()
        self._listeners: list[Callable[[LifecycleEvent], None]] = []

        self.negotiator: PeerNegotiator | None = None
        self.control: ControlChannel | None = None
        self.remote_track: Any = None
        self._on_remote_track: Callable[[Any], None] | None = None

        self.role: Role | None = None
        self.session_code: str | None = None
        self.peer_id: str | None = None
        self.remote_peer_id: str | None = None
        self.error: DeskBridgeError | None = None
        self.attempts = 0

        self._init_task: asyncio.Task[None] | None = None
        self._entry_task: asyncio.Task[Any] | None = None
        self._join_waiter: asyncio.Future[SessionJoined] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._capturing = False

    # -- observation -----------------------------------------------------

    @property
    def state(self) -> str:
        return str(self._fsm.current_state.id)

    def subscribe(self, listener: Callable[[LifecycleEvent], None]) -> None:
        self._listeners.append(listener)

    def on_remote_track(self, callback: Callable[[Any], None]) -> None:
        self._on_remote_track = callback

    def _transition(self, event: str) -> None:
        self._fsm.send(event)
        logger.info("Session %s (%s) -> %s", self.session_code, self.role, self.state)
        event_out = LifecycleEvent(state=self.state, cause=self.error if self.state == "error" else None)
        for listener in list(self._listeners):
            listener(event_out)

    def _spawn(self, coro) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -- initialization ----------------------------------------------------

    async def initialize(self) -> None:
        """Connect signaling and create the negotiator once.

        Concurrent callers share the same in-flight initialization.
        """

        if self.state == "error":
            raise self.error or TransportFailure("Session manager is in error")
        if self.state not in ("disconnected", "initializing"):
            return
        if self._init_task is None or self._init_task.done():
            self._init_task = asyncio.ensure_future(self._initialize())
        await asyncio.shield(self._init_task)

    async def _initialize(self) -> None:
        self._transition("start_init")
        try:
            await self._signaling.connect(self._on_signal, on_disconnect=self._on_signaling_lost)
        except Exception as e:
            cause = e if isinstance(e, DeskBridgeError) else TransportFailure(f"Signaling unavailable: {e}")
            self._enter_error(cause)
            raise cause from e

        negotiator = PeerNegotiator(
            signaling=self._signaling,
            transport_factory=self._transport_factory,
            config=self._negotiation_config,
        )
        negotiator.subscribe(self._on_negotiation_event)
        negotiator.on_remote_track(self._handle_remote_track)
        negotiator.on_control_channel(self._handle_control_channel)
        self.negotiator = negotiator
        self._transition("initialized")

    # -- entry points ------------------------------------------------------

    async def _run_entry(self, coro: Awaitable[Any]) -> Any:
        # `disconnect()` cancels this task, so the caller sees CancelledError.
        task = asyncio.ensure_future(coro)
        self._entry_task = task
        try:
            return await task
        finally:
            if self._entry_task is task:
                self._entry_task = None

    async def host(self) -> str:
        """Create a session and wait on the relay as its host. Returns the session code.

        Raises `asyncio.CancelledError` when `disconnect()` interrupts it.
        """

        return await self._run_entry(self._host())

    async def _host(self) -> str:
        await self.initialize()
        try:
            created = await self._api.create_session()
        except DeskBridgeError as e:
            self._enter_error(e)
            raise
        self.role = Role.host
        self.session_code = created.session_code
        await self._join_relay()
        self._transition("await_client")
        return created.session_code

    async def join(self, code: str) -> None:
        normalized = require_valid_code(code)
        await self._run_entry(self._join(normalized))

    async def _join(self, normalized: str) -> None:
        await self.initialize()
        try:
            await self._api.get_session(normalized)
        except DeskBridgeError as e:
            self._enter_error(e)
            raise
        self.role = Role.client
        self.session_code = normalized
        await self._join_relay()
        self._transition("await_host")

    async def _join_relay(self) -> None:
        assert self.session_code is not None and self.role is not None
        loop = asyncio.get_running_loop()
        self._join_waiter = loop.create_future()
        try:
            await self._signaling.join(self.session_code, self.role)
            joined = await asyncio.wait_for(self._join_waiter, JOIN_TIMEOUT_SECONDS)
        except asyncio.TimeoutError as e:
            cause = TransportFailure("Relay did not acknowledge the join")
            self._enter_error(cause)
            raise cause from e
        except DeskBridgeError as e:
            self._enter_error(e)
            raise
        finally:
            self._join_waiter = None

        self.peer_id = joined.peer_id
        if joined.ice_servers and self.negotiator is not None:
            self.negotiator.update_ice_servers(joined.ice_servers)

    # -- relay messages ----------------------------------------------------

    async def _on_signal(self, message: Any) -> None:
        if isinstance(message, SessionJoined):
            if self._join_waiter is not None and not self._join_waiter.done():
                self._join_waiter.set_result(message)
        elif isinstance(message, SessionErrorMessage):
            await self._on_session_error(message)
        elif isinstance(message, PeerJoined):
            await self._on_peer_joined(message)
        elif isinstance(message, PeerLeft):
            await self._on_peer_left(message)
        elif isinstance(message, RelayedOffer):
            if self.negotiator is not None:
                self.remote_peer_id = message.sender
                await self.negotiator.handle_offer(message.sender, message.sdp)
        elif isinstance(message, RelayedAnswer):
            if self.negotiator is not None:
                await self.negotiator.handle_answer(message.sender, message.sdp)
        elif isinstance(message, RelayedIceCandidate):
            if self.negotiator is not None:
                await self.negotiator.handle_remote_candidate(message.sender, message.candidate)
        elif isinstance(message, SessionExpired):
            logger.warning("Session %s expired", message.session_code)
            await self._teardown(release_role=False)
            self._enter_error(Expired())
        elif isinstance(message, SessionClosed):
            logger.warning("Session %s was closed", message.session_code)
            await self._teardown(release_role=False)
            self._enter_error(NotFound("Session was closed"))

    async def _on_session_error(self, message: SessionErrorMessage) -> None:
        cause = _error_from_wire(message)
        if self._join_waiter is not None and not self._join_waiter.done():
            self._join_waiter.set_exception(cause)
            return
        logger.warning("Relay error: %s (%s)", message.error, message.code)

    async def _on_peer_joined(self, message: PeerJoined) -> None:
        negotiator = self.negotiator
        if negotiator is None or message.role == self.role:
            return
        previous = self.remote_peer_id
        self.remote_peer_id = message.peer_id
        self.attempts = 0

        if self.role == Role.host:
            if previous is not None and previous != message.peer_id:
                await self._drop_peer_media()
                await negotiator.supersede(message.peer_id)
            else:
                await negotiator.start_offer(message.peer_id)
        else:
            if previous is not None and previous != message.peer_id:
                await self._drop_peer_media()
                await negotiator.restart()
            negotiator.set_target(message.peer_id)

    async def _on_peer_left(self, message: PeerLeft) -> None:
        if message.peer_id != self.remote_peer_id:
            return
        logger.info("Peer %s left session %s", message.peer_id, self.session_code)
        self.remote_peer_id = None
        await self._drop_peer_media()
        if self.negotiator is not None:
            await self.negotiator.restart()
            self.negotiator.set_target(None)
        self._back_to_waiting()

    async def _on_signaling_lost(self) -> None:
        if self.state in ("disconnected", "error"):
            return
        await self._teardown(release_role=False)
        self._enter_error(TransportFailure("Signaling connection lost"))

    def _back_to_waiting(self) -> None:
        if self.state not in ("connected", "streaming"):
            return
        self._transition("await_client" if self.role == Role.host else "await_host")

    # -- negotiation events ------------------------------------------------

    def _on_negotiation_event(self, event: NegotiationEvent) -> None:
        if event.state == "connected":
            self._spawn(self._on_peer_connected())
        elif event.state == "failed" and event.cause is not None:
            self._spawn(self._on_negotiation_failed(event.cause))

    async def _on_peer_connected(self) -> None:
        if self.state not in ("waiting", "connecting"):
            return
        self.attempts = 0
        self._transition("peer_connected")
        if self.role == Role.host:
            await self.start_streaming()
        elif self.remote_track is not None:
            self._transition("stream_started")

    async def _on_negotiation_failed(self, cause: DeskBridgeError) -> None:
        self.attempts += 1
        await self._drop_peer_media()
        self._back_to_waiting()
        if not self._retry.allows(self.attempts):
            logger.warning("Negotiation failed %d time(s), giving up: %s", self.attempts, cause)
            await self._teardown()
            self._enter_error(cause)
            return

        delay = self._retry.delay_for(self.attempts)
        logger.info("Negotiation failed (%s), retry %d in %.1fs", cause.code, self.attempts, delay)
        await self._sleep(delay)

        assert self.session_code is not None
        try:
            await self._api.get_session(self.session_code)
        except DeskBridgeError as e:
            await self._teardown()
            self._enter_error(e)
            return

        negotiator = self.negotiator
        if negotiator is None or negotiator.state == "closed":
            return
        await negotiator.restart()
        if self.role == Role.host and self.remote_peer_id is not None:
            await negotiator.start_offer(self.remote_peer_id)

    # -- media / control ---------------------------------------------------

    async def start_streaming(self) -> None:
        """Host only: start capture and push the track to the connected peer."""

        if self.role != Role.host or self.state != "connected" or self._capture is None:
            return
        try:
            track = await self._capture.start()
        except asyncio.CancelledError:
            # Interrupted permission prompt: release whatever the source acquired.
            try:
                await self._capture.stop()
            except Exception:
                logger.warning("Stopping capture failed", exc_info=True)
            raise
        except DeskBridgeError as e:
            self._enter_error(e)
            await self._teardown()
            return
        self._capturing = True
        assert self.negotiator is not None
        await self.negotiator.attach_track(track)
        if self.state == "connected":
            self._transition("stream_started")

    async def stop_streaming(self) -> None:
        await self._stop_capture()
        if self.state == "streaming":
            self._transition("stream_stopped")

    async def _stop_capture(self) -> None:
        if not self._capturing or self._capture is None:
            return
        self._capturing = False
        try:
            await self._capture.stop()
        except Exception:
            logger.warning("Stopping capture failed", exc_info=True)

    async def _drop_peer_media(self) -> None:
        await self._stop_capture()
        self.remote_track = None
        if self.control is not None:
            self.control.close()
            self.control = None

    def _handle_remote_track(self, track: Any) -> None:
        self.remote_track = track
        if self._on_remote_track is not None:
            self._on_remote_track(track)
        if self.role == Role.client and self.state == "connected":
            self._transition("stream_started")

    def _handle_control_channel(self, channel: DataChannel) -> None:
        control = ControlChannel(channel)
        if self.role == Role.host:
            control.on_event(self._dispatch_input)
        self.control = control

    def _dispatch_input(self, event: Any) -> None:
        if self._on_input is None:
            return
        if self._viewport is not None:
            event = denormalize_event(event, self._viewport)
        self._on_input(event)

    def send_input(self, event: BaseModel, *, frame: Viewport | None = None) -> bool:
        """Client only. With `frame`, pointer coordinates are normalized against it first."""

        if self.role != Role.client:
            raise TransportFailure("Only the client sends remote input")
        if self.control is None:
            logger.warning("No control channel yet, dropping %s", getattr(event, "type", "event"))
            return False
        if frame is not None:
            event = normalize_event(event, frame)
        return self.control.send(event)

    # -- teardown ----------------------------------------------------------

    def _enter_error(self, cause: DeskBridgeError) -> None:
        self.error = cause
        if self.state != "error":
            self._transition("fail")

    def _cancel_pending(self) -> None:
        current = asyncio.current_task()
        for task in (*self._tasks, self._init_task, self._entry_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        if self._join_waiter is not None and not self._join_waiter.done():
            self._join_waiter.cancel()

    async def _teardown(self, *, release_role: bool = True) -> None:
        self._cancel_pending()

        # A join may be bound on the relay before its acknowledgement arrives.
        if release_role and self.session_code is not None:
            try:
                await self._signaling.leave()
            except Exception:
                logger.warning("leave-session not delivered", exc_info=True)

        negotiator, self.negotiator = self.negotiator, None
        if negotiator is not None:
            await negotiator.close()

        await self._drop_peer_media()

        try:
            await self._signaling.close()
        except Exception:
            logger.warning("Closing signaling failed", exc_info=True)

        self.peer_id = None
        self.remote_peer_id = None

    async def disconnect(self) -> None:
        if self.state == "disconnected":
            self._cancel_pending()
            return
        await self._teardown()
        self._reset_fields()
        self._transition("reset")

    async def reset(self) -> None:
        """Leave `error` (or any other state) for `disconnected`, ready for a new session."""

        if self.state == "disconnected":
            return
        if self.negotiator is not None or self.peer_id is not None:
            await self._teardown()
        self._reset_fields()
        self._transition("reset")

    def _reset_fields(self) -> None:
        self.error = None
        self.attempts = 0
        self.role = None
        self.session_code = None
        self._init_task = None


def _error_from_wire(message: SessionErrorMessage) -> DeskBridgeError:
    for cls in DeskBridgeError.__subclasses__():
        if cls.code == message.code:
            return cls(message.error)
    return DeskBridgeError(message.error)

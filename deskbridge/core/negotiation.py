from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any, Protocol

from pydantic import BaseModel
from statemachine import State, StateMachine

from deskbridge.core.transport import (
    CONNECTED_STATES,
    FAILED_STATES,
    DataChannel,
    PeerTransport,
    TransportConfig,
    TransportFactory,
)
from deskbridge.errors import DeskBridgeError, NegotiationNotReady, NegotiationTimeout, TransportFailure
from deskbridge.protocol import Answer, IceCandidate, Offer


logger = logging.getLogger(__name__)


class NegotiationFSM(StateMachine):
    """Guards the offer/answer/ICE handshake.

    `PeerNegotiator` performs the I/O; the FSM only decides which steps are legal:
    idle -> initializing -> offering|answering -> negotiating -> connected.
    `failed` is reachable from every non-terminal state, `closed` is terminal.
    """

    idle = State("Idle", initial=True)
    initializing = State("Initializing")
    offering = State("Offering")
    answering = State("Answering")
    negotiating = State("Negotiating")
    connected = State("Connected")
    failed = State("Failed")
    closed = State("Closed", final=True)

    begin = idle.to(initializing)
    make_offer = initializing.to(offering)
    make_answer = initializing.to(answering)
    local_description_set = offering.to(negotiating) | answering.to(negotiating)
    transport_connected = negotiating.to(connected)

    fail = (
        idle.to(failed)
        | initializing.to(failed)
        | offering.to(failed)
        | answering.to(failed)
        | negotiating.to(failed)
        | connected.to(failed)
    )
    # Back to a blank slate: retry after a failure, or a newer peer superseding this one.
    restart = (
        failed.to(idle)
        | initializing.to(idle)
        | offering.to(idle)
        | answering.to(idle)
        | negotiating.to(idle)
        | connected.to(idle)
    )
    teardown = (
        idle.to(closed)
        | initializing.to(closed)
        | offering.to(closed)
        | answering.to(closed)
        | negotiating.to(closed)
        | connected.to(closed)
        | failed.to(closed)
    )


@dataclass(frozen=True, slots=True)
class NegotiationConfig:
    # Seconds from the first handshake step until the transport must report "connected".
    timeout: float = 30.0
    ice_servers: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True, slots=True)
class NegotiationEvent:
    state: str
    peer_id: str | None
    cause: DeskBridgeError | None = None


class SignalSender(Protocol):
    async def send(self, message: BaseModel) -> None: ...


NegotiationListener = Callable[[NegotiationEvent], None]


class PeerNegotiator:
    """Drives one participant's side of the handshake over a relay.

    Every restart bumps a generation counter; callbacks and in-flight steps that
    belong to an older generation are ignored, so a superseded peer can never move
    the machine.
    """

    def __init__(
        self,
        *,
        signaling: SignalSender,
        transport_factory: TransportFactory,
        config: NegotiationConfig | None = None,
    ) -> None:
        self._signaling = signaling
        self._transport_factory = transport_factory
        self._config = config or NegotiationConfig()
        self._fsm = NegotiationFSM()

        self._transport: PeerTransport | None = None
        self._target: str | None = None
        self._initiator = False
        self._remote_description_set = False
        self._pending_candidates: list[tuple[str, dict[str, Any] | None]] = []
        # Local candidates gathered before our offer/answer went out.
        self._local_candidates: list[dict[str, Any] | None] = []
        self._description_sent = False

        self._generation = 0
        self._timeout_task: asyncio.Task[None] | None = None
        self._outbox: asyncio.Queue[BaseModel] | None = None
        self._outbox_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()

        self._listeners: list[NegotiationListener] = []
        self._track_callback: Callable[[Any], None] | None = None
        self._channel_callback: Callable[[DataChannel], None] | None = None

        self.failure: DeskBridgeError | None = None

    # -- observation -----------------------------------------------------

    @property
    def state(self) -> str:
        return str(self._fsm.current_state.id)

    @property
    def target(self) -> str | None:
        return self._target

    @property
    def transport(self) -> PeerTransport | None:
        return self._transport

    @property
    def is_initiator(self) -> bool:
        return self._initiator

    def subscribe(self, listener: NegotiationListener) -> None:
        """Called with every state entered, including intermediate handshake steps."""
        self._listeners.append(listener)

    def on_connected(self, callback: Callable[[], None]) -> None:
        self.subscribe(lambda e: callback() if e.state == "connected" else None)

    def on_failed(self, callback: Callable[[DeskBridgeError], None]) -> None:
        self.subscribe(lambda e: callback(e.cause) if e.state == "failed" and e.cause is not None else None)

    def on_closed(self, callback: Callable[[], None]) -> None:
        self.subscribe(lambda e: callback() if e.state == "closed" else None)

    def on_remote_track(self, callback: Callable[[Any], None]) -> None:
        self._track_callback = callback

    def on_control_channel(self, callback: Callable[[DataChannel], None]) -> None:
        self._channel_callback = callback

    def set_target(self, peer_id: str | None) -> None:
        self._target = peer_id

    def update_ice_servers(self, ice_servers) -> None:
        """Applies to transports created after this call."""
        self._config = replace(self._config, ice_servers=tuple(ice_servers))

    def _notify(self, cause: DeskBridgeError | None = None) -> None:
        event = NegotiationEvent(state=self.state, peer_id=self._target, cause=cause)
        for listener in list(self._listeners):
            listener(event)

    def _transition(self, event: str) -> None:
        self._fsm.send(event)
        logger.debug("Negotiation with %s -> %s", self._target, self.state)
        self._notify(self.failure if self.state == "failed" else None)

    def _spawn(self, coro) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # -- transport wiring ------------------------------------------------

    def _create_transport(self, *, initiator: bool) -> PeerTransport:
        self._initiator = initiator
        self._local_candidates = []
        self._description_sent = False
        transport = self._transport_factory(
            TransportConfig(ice_servers=self._config.ice_servers, initiator=initiator)
        )
        gen = self._generation

        transport.on_ice_candidate(lambda c: self._on_local_candidate(gen, c))
        transport.on_state_change(lambda s: self._on_transport_state(gen, s))
        transport.on_track(lambda t: self._on_track(gen, t))
        transport.on_control_channel(lambda ch: self._on_channel(gen, ch))

        self._transport = transport
        return transport

    async def _dispose_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is None:
            return
        try:
            await transport.close()
        except Exception:
            logger.warning("Closing peer transport failed", exc_info=True)

    def _on_local_candidate(self, gen: int, candidate: dict[str, Any] | None) -> None:
        if gen != self._generation or self._target is None:
            return
        if not self._description_sent:
            self._local_candidates.append(candidate)
            return
        self._enqueue(IceCandidate(candidate=candidate, target=self._target))

    def _send_description(self, message: BaseModel) -> None:
        self._enqueue(message)
        self._description_sent = True
        held, self._local_candidates = self._local_candidates, []
        for candidate in held:
            self._enqueue(IceCandidate(candidate=candidate, target=self._target))

    def _on_transport_state(self, gen: int, transport_state: str) -> None:
        if gen != self._generation:
            return
        logger.debug("Transport state for %s: %s", self._target, transport_state)
        if transport_state in CONNECTED_STATES and self.state == "negotiating":
            self._cancel_timeout()
            self._transition("transport_connected")
        elif transport_state in FAILED_STATES:
            self._fail(TransportFailure(f"Transport {transport_state}"))

    def _on_track(self, gen: int, track: Any) -> None:
        if gen == self._generation and self._track_callback is not None:
            self._track_callback(track)

    def _on_channel(self, gen: int, channel: DataChannel) -> None:
        if gen == self._generation and self._channel_callback is not None:
            self._channel_callback(channel)

    # -- outbound ordering -------------------------------------------------

    def _enqueue(self, message: BaseModel) -> None:
        # One drain task per negotiator keeps local candidates in generation order.
        if self._outbox is None:
            self._outbox = asyncio.Queue()
        self._outbox.put_nowait(message)
        if self._outbox_task is None or self._outbox_task.done():
            self._outbox_task = asyncio.ensure_future(self._drain_outbox())

    async def flush(self) -> None:
        """Wait until every queued outbound signal has been handed to the relay."""

        task = self._outbox_task
        if task is not None and not task.done():
            await task

    async def _drain_outbox(self) -> None:
        assert self._outbox is not None
        while not self._outbox.empty():
            message = self._outbox.get_nowait()
            try:
                await self._signaling.send(message)
            except Exception:
                logger.warning("Sending %s failed", getattr(message, "type", "message"), exc_info=True)

    # -- timeout / failure -----------------------------------------------

    def _arm_timeout(self) -> None:
        self._cancel_timeout()
        gen = self._generation
        self._timeout_task = asyncio.ensure_future(self._expire_after(gen, self._config.timeout))

    async def _expire_after(self, gen: int, seconds: float) -> None:
        await asyncio.sleep(seconds)
        if gen == self._generation and self.state not in ("connected", "failed", "closed"):
            logger.warning("Negotiation with %s timed out after %ss", self._target, seconds)
            self._fail(NegotiationTimeout())

    def _cancel_timeout(self) -> None:
        task, self._timeout_task = self._timeout_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _fail(self, cause: DeskBridgeError) -> None:
        if self.state in ("failed", "closed"):
            return
        self._cancel_timeout()
        self.failure = cause
        self._generation += 1
        self._transition("fail")
        self._spawn(self._dispose_transport())

    # -- handshake -------------------------------------------------------

    async def start_offer(self, target: str | None = None) -> None:
        """Offer to `target` (or the previously learned target).

        Raises `NegotiationNotReady` when no target is known: an offer is never
        sent into the void.
        """

        if target is not None:
            self._target = target
        if self._target is None:
            raise NegotiationNotReady()
        if self.state != "idle":
            await self._reset_to_idle()

        self.failure = None
        gen = self._generation
        self._transition("begin")
        transport = self._create_transport(initiator=True)
        self._transition("make_offer")
        self._arm_timeout()

        try:
            sdp = await transport.create_offer()
            if gen != self._generation:
                return
            sdp = await transport.set_local_description(sdp, "offer")
        except DeskBridgeError as e:
            self._fail(e)
            return
        except Exception as e:
            self._fail(TransportFailure(f"Creating offer failed: {e}"))
            return
        if gen != self._generation:
            return

        self._transition("local_description_set")
        logger.info("Offer sent to %s", self._target)
        self._send_description(Offer(sdp=sdp, target=self._target))

    async def supersede(self, new_target: str) -> None:
        """Restart offering against a newer peer, dropping whatever came before."""

        if self.state == "closed":
            raise TransportFailure("Negotiation is closed")
        logger.info("Peer %s supersedes %s", new_target, self._target)
        await self._reset_to_idle()
        await self.start_offer(new_target)

    async def handle_offer(self, sender: str, sdp: str) -> None:
        if self.state == "closed":
            return
        if self.state != "idle" or (self._target is not None and sender != self._target):
            # A fresh offer replaces any earlier negotiation, whoever it was with.
            await self._reset_to_idle(keep_candidates_from=sender)

        self._target = sender
        self.failure = None
        gen = self._generation
        self._transition("begin")
        transport = self._create_transport(initiator=False)
        self._transition("make_answer")
        self._arm_timeout()

        try:
            await transport.set_remote_description(sdp, "offer")
            if gen != self._generation:
                return
            self._remote_description_set = True
            await self._flush_pending_candidates(gen)
            if gen != self._generation:
                return
            answer = await transport.create_answer()
            if gen != self._generation:
                return
            answer = await transport.set_local_description(answer, "answer")
        except DeskBridgeError as e:
            self._fail(e)
            return
        except Exception as e:
            self._fail(TransportFailure(f"Answering offer failed: {e}"))
            return
        if gen != self._generation:
            return

        self._transition("local_description_set")
        logger.info("Answer sent to %s", sender)
        self._send_description(Answer(sdp=answer, target=sender))

    async def handle_answer(self, sender: str, sdp: str) -> None:
        if self.state == "connected":
            logger.debug("Duplicate answer from %s ignored", sender)
            return
        if not self._initiator or self.state != "negotiating" or sender != self._target:
            logger.debug("Unexpected answer from %s in state %s ignored", sender, self.state)
            return
        if self._remote_description_set:
            logger.debug("Duplicate answer from %s ignored", sender)
            return

        gen = self._generation
        transport = self._transport
        assert transport is not None
        try:
            await transport.set_remote_description(sdp, "answer")
            if gen != self._generation:
                return
            self._remote_description_set = True
            await self._flush_pending_candidates(gen)
        except DeskBridgeError as e:
            self._fail(e)
        except Exception as e:
            self._fail(TransportFailure(f"Applying answer failed: {e}"))

    async def handle_remote_candidate(self, sender: str, candidate: dict[str, Any] | None) -> None:
        if self.state in ("closed", "failed"):
            return
        if self._target is not None and sender != self._target:
            logger.debug("Candidate from stale peer %s dropped", sender)
            return
        if self._transport is None or not self._remote_description_set:
            # Held in arrival order until the remote description exists.
            self._pending_candidates.append((sender, candidate))
            return
        await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: dict[str, Any] | None) -> None:
        transport = self._transport
        if transport is None:
            return
        try:
            await transport.add_ice_candidate(candidate)
        except Exception:
            logger.warning("Applying ICE candidate from %s failed", self._target, exc_info=True)

    async def _flush_pending_candidates(self, gen: int) -> None:
        pending, self._pending_candidates = self._pending_candidates, []
        for sender, candidate in pending:
            if gen != self._generation:
                return
            if sender == self._target:
                await self._apply_candidate(candidate)

    # -- media -------------------------------------------------------------

    async def attach_track(self, track: Any) -> None:
        if self._transport is None:
            raise TransportFailure("No transport to attach the track to")
        await self._transport.attach_track(track)

    # -- restart / teardown ----------------------------------------------

    async def _reset_to_idle(self, *, keep_candidates_from: str | None = None) -> None:
        self._generation += 1
        self._cancel_timeout()
        await self._dispose_transport()
        self._remote_description_set = False
        self._pending_candidates = [
            (s, c) for s, c in self._pending_candidates if keep_candidates_from is not None and s == keep_candidates_from
        ]
        if self.state != "idle":
            self._transition("restart")

    async def restart(self) -> None:
        """Return to `idle` after a failure so a fresh offer can be made."""

        if self.state == "closed":
            raise TransportFailure("Negotiation is closed")
        await self._reset_to_idle()

    async def close(self) -> None:
        if self.state == "closed":
            return
        self._generation += 1
        self._cancel_timeout()
        if self._outbox_task is not None and not self._outbox_task.done():
            self._outbox_task.cancel()
        for task in list(self._background):
            task.cancel()
        await self._dispose_transport()
        self._pending_candidates = []
        self._transition("teardown")

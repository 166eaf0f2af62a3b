from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal, Protocol

DescriptionKind = Literal["offer", "answer"]

# Aggregated transport states, as reported by RTCPeerConnection.connectionState.
CONNECTED_STATES = frozenset({"connected"})
FAILED_STATES = frozenset({"failed", "closed"})


@dataclass(frozen=True, slots=True)
class TransportConfig:
    ice_servers: tuple[dict[str, Any], ...] = ()
    # The initiator creates the control channel and the outgoing media slot.
    initiator: bool = False


class DataChannel(Protocol):
    """Reliable, ordered channel as exposed by the transport."""

    @property
    def ready_state(self) -> str: ...

    def send(self, data: str) -> None: ...

    def on_message(self, callback: Callable[[str], None]) -> None: ...

    def close(self) -> None: ...


class PeerTransport(Protocol):
    """The direct peer-to-peer transport driven by `PeerNegotiator`."""

    async def create_offer(self) -> str: ...

    async def create_answer(self) -> str: ...

    async def set_local_description(self, sdp: str, kind: DescriptionKind) -> str:
        """Apply and return the description to signal, which may carry gathered candidates."""
        ...

    async def set_remote_description(self, sdp: str, kind: DescriptionKind) -> None: ...

    async def add_ice_candidate(self, candidate: dict[str, Any] | None) -> None: ...

    async def attach_track(self, track: Any) -> None: ...

    async def close(self) -> None: ...

    def on_ice_candidate(self, callback: Callable[[dict[str, Any] | None], None]) -> None: ...

    def on_state_change(self, callback: Callable[[str], None]) -> None: ...

    def on_track(self, callback: Callable[[Any], None]) -> None: ...

    def on_control_channel(self, callback: Callable[[DataChannel], None]) -> None: ...


TransportFactory = Callable[[TransportConfig], PeerTransport]

"""`PeerTransport` backed by aiortc (install the `rtc` extra).

aiortc gathers every ICE candidate during `setLocalDescription` and embeds them in
the description, so this transport never trickles local candidates; it still
accepts trickled remote candidates from browser peers.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from deskbridge.core.transport import DataChannel, DescriptionKind, TransportConfig


logger = logging.getLogger(__name__)

CONTROL_CHANNEL_LABEL = "control"


class AiortcDataChannel:
    def __init__(self, channel) -> None:
        self._channel = channel

    @property
    def ready_state(self) -> str:
        return self._channel.readyState

    def send(self, data: str) -> None:
        self._channel.send(data)

    def on_message(self, callback: Callable[[str], None]) -> None:
        @self._channel.on("message")
        def _on_message(message):
            if isinstance(message, bytes):
                message = message.decode("utf-8")
            callback(message)

    def close(self) -> None:
        self._channel.close()


def _ice_servers(config: TransportConfig) -> list[RTCIceServer]:
    servers = []
    for entry in config.ice_servers:
        servers.append(
            RTCIceServer(
                urls=entry["urls"],
                username=entry.get("username"),
                credential=entry.get("credential"),
            )
        )
    return servers


class AiortcTransport:
    def __init__(self, config: TransportConfig) -> None:
        self.config = config
        self.pc = RTCPeerConnection(RTCConfiguration(iceServers=_ice_servers(config)))
        self._on_state: Callable[[str], None] | None = None
        self._on_track: Callable[[Any], None] | None = None
        self._on_channel: Callable[[DataChannel], None] | None = None
        self._control: AiortcDataChannel | None = None
        self._video_sender = None

        @self.pc.on("connectionstatechange")
        async def _on_connection_state() -> None:
            logger.debug("Peer connection state: %s", self.pc.connectionState)
            if self._on_state is not None:
                self._on_state(self.pc.connectionState)

        @self.pc.on("track")
        def _on_remote_track(track) -> None:
            logger.info("Remote %s track received", track.kind)
            if self._on_track is not None:
                self._on_track(track)

        @self.pc.on("datachannel")
        def _on_datachannel(channel) -> None:
            if channel.label != CONTROL_CHANNEL_LABEL:
                logger.warning("Ignoring unexpected data channel %r", channel.label)
                return
            self._control = AiortcDataChannel(channel)
            if self._on_channel is not None:
                self._on_channel(self._control)

        if config.initiator:
            # The video slot is negotiated up front; the capture track is attached once connected.
            self._video_sender = self.pc.addTransceiver("video", direction="sendonly").sender
            self._control = AiortcDataChannel(self.pc.createDataChannel(CONTROL_CHANNEL_LABEL, ordered=True))

    async def create_offer(self) -> str:
        offer = await self.pc.createOffer()
        return offer.sdp

    async def create_answer(self) -> str:
        answer = await self.pc.createAnswer()
        return answer.sdp

    async def set_local_description(self, sdp: str, kind: DescriptionKind) -> str:
        await self.pc.setLocalDescription(RTCSessionDescription(sdp=sdp, type=kind))
        return self.pc.localDescription.sdp

    async def set_remote_description(self, sdp: str, kind: DescriptionKind) -> None:
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=kind))

    async def add_ice_candidate(self, candidate: dict[str, Any] | None) -> None:
        if not candidate or not candidate.get("candidate"):
            # End-of-candidates needs no action here.
            return
        line = candidate["candidate"]
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        ice = candidate_from_sdp(line)
        ice.sdpMid = candidate.get("sdpMid")
        ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(ice)

    async def attach_track(self, track: Any) -> None:
        if self._video_sender is None:
            self._video_sender = self.pc.addTrack(track)
            return
        self._video_sender.replaceTrack(track)

    async def close(self) -> None:
        await self.pc.close()

    def on_ice_candidate(self, callback: Callable[[dict[str, Any] | None], None]) -> None:
        # Never called: local candidates travel inside the description.
        return None

    def on_state_change(self, callback: Callable[[str], None]) -> None:
        self._on_state = callback

    def on_track(self, callback: Callable[[Any], None]) -> None:
        self._on_track = callback

    def on_control_channel(self, callback: Callable[[DataChannel], None]) -> None:
        self._on_channel = callback
        if self._control is not None:
            callback(self._control)


def aiortc_transport_factory(config: TransportConfig) -> AiortcTransport:
    return AiortcTransport(config)

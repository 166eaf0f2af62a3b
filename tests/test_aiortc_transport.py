from __future__ import annotations

import pytest

pytest.importorskip("aiortc")

from deskbridge.core.transport import TransportConfig  # noqa: E402
from deskbridge.rtc.aiortc_transport import aiortc_transport_factory  # noqa: E402


@pytest.mark.asyncio
async def test_offer_carries_video_and_control_channel() -> None:
    offerer = aiortc_transport_factory(TransportConfig(initiator=True))
    answerer = aiortc_transport_factory(TransportConfig(initiator=False))
    channels: list[object] = []
    offerer.on_control_channel(channels.append)

    try:
        offer = await offerer.create_offer()
        offer = await offerer.set_local_description(offer, "offer")
        assert "m=video" in offer
        assert "m=application" in offer
        assert len(channels) == 1
        assert channels[0].ready_state == "connecting"

        await answerer.set_remote_description(offer, "offer")
        answer = await answerer.create_answer()
        answer = await answerer.set_local_description(answer, "answer")
        assert "m=video" in answer

        await offerer.set_remote_description(answer, "answer")
    finally:
        await offerer.close()
        await answerer.close()


@pytest.mark.asyncio
async def test_end_of_candidates_is_accepted() -> None:
    transport = aiortc_transport_factory(TransportConfig(initiator=False))
    try:
        await transport.add_ice_candidate(None)
        await transport.add_ice_candidate({"candidate": "", "sdpMid": "0", "sdpMLineIndex": 0})
    finally:
        await transport.close()

from __future__ import annotations

import json
import logging

import pytest

from deskbridge.core.control import (
    ButtonPayload,
    ControlChannel,
    KeyPress,
    KeyPressPayload,
    KeyRelease,
    KeyReleasePayload,
    MouseClick,
    MouseDown,
    MouseMove,
    MouseUp,
    PointerPayload,
    Scroll,
    ScrollPayload,
    Viewport,
    decode,
    denormalize_event,
    denormalize_point,
    encode,
    normalize_event,
    normalize_point,
)
from deskbridge.errors import UnknownEventType
from fakes import FakeChannel


EVENTS = [
    MouseMove(payload=PointerPayload(x=0.25, y=0.75)),
    MouseClick(payload=ButtonPayload(x=0.5, y=0.5, button=2)),
    MouseDown(payload=ButtonPayload(x=0.1, y=0.2)),
    MouseUp(payload=ButtonPayload(x=0.1, y=0.2)),
    KeyPress(payload=KeyPressPayload(key="a", code="KeyA", ctrl_key=True, shift_key=True)),
    KeyRelease(payload=KeyReleasePayload(key="a", code="KeyA")),
    Scroll(payload=ScrollPayload(delta_x=0, delta_y=-120)),
]


@pytest.mark.parametrize("event", EVENTS, ids=lambda e: e.type)
def test_every_tag_survives_the_wire(event) -> None:
    assert decode(encode(event)) == event


def test_wire_format_uses_camel_case_payload_keys() -> None:
    wire = json.loads(encode(EVENTS[4]))
    assert wire == {
        "type": "key-press",
        "payload": {
            "key": "a",
            "code": "KeyA",
            "ctrlKey": True,
            "altKey": False,
            "shiftKey": True,
            "metaKey": False,
        },
    }
    assert json.loads(encode(EVENTS[6]))["payload"] == {"deltaX": 0.0, "deltaY": -120.0}


def test_decodes_browser_payloads() -> None:
    event = decode('{"type": "mouse-click", "payload": {"x": 0.3, "y": 0.4, "button": 0}}')
    assert isinstance(event, MouseClick)
    assert event.payload.button == 0


def test_unknown_tag_is_rejected() -> None:
    with pytest.raises(UnknownEventType):
        decode('{"type": "mouse-teleport", "payload": {}}')


def test_malformed_payload_is_a_value_error() -> None:
    with pytest.raises(ValueError):
        decode('{"type": "mouse-move", "payload": {"x": "left"}}')
    with pytest.raises(ValueError):
        decode("[1, 2]")


def test_normalize_clamps_to_unit_square() -> None:
    frame = Viewport(width=1920, height=1080)
    assert normalize_point(960, 540, frame) == (0.5, 0.5)
    assert normalize_point(-10, 5000, frame) == (0.0, 1.0)
    assert normalize_point(10, 10, Viewport(width=0, height=0)) == (0.0, 0.0)


def test_denormalize_rounds_to_pixels() -> None:
    viewport = Viewport(width=1280, height=720)
    assert denormalize_point(0.5, 0.5, viewport) == (640, 360)
    assert denormalize_point(0.3333, 0.6667, viewport) == (427, 480)
    assert denormalize_point(1.5, -1, viewport) == (1280, 0)


def test_event_mapping_touches_pointer_events_only() -> None:
    frame = Viewport(width=200, height=100)
    moved = normalize_event(MouseMove(payload=PointerPayload(x=50, y=25)), frame)
    assert (moved.payload.x, moved.payload.y) == (0.25, 0.25)

    back = denormalize_event(moved, Viewport(width=800, height=400))
    assert (back.payload.x, back.payload.y) == (200, 100)

    key = EVENTS[4]
    assert normalize_event(key, frame) is key


def test_channel_drops_sends_while_not_open(caplog) -> None:
    raw = FakeChannel(ready_state="connecting")
    channel = ControlChannel(raw)

    with caplog.at_level(logging.WARNING):
        assert channel.send(EVENTS[0]) is False
    assert raw.sent == []
    assert "not open" in caplog.text

    raw.ready_state = "open"
    assert channel.send(EVENTS[0]) is True
    assert json.loads(raw.sent[0])["type"] == "mouse-move"


def test_channel_delivers_in_order_and_skips_bad_messages(caplog) -> None:
    raw = FakeChannel()
    channel = ControlChannel(raw)
    received: list[object] = []
    channel.on_event(received.append)

    with caplog.at_level(logging.WARNING):
        raw.deliver(encode(EVENTS[0]))
        raw.deliver('{"type": "mouse-teleport", "payload": {}}')
        raw.deliver("not json")
        raw.deliver(encode(EVENTS[6]))

    assert received == [EVENTS[0], EVENTS[6]]
    assert "mouse-teleport" in caplog.text

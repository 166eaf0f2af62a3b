"""Remote-input events carried over the peer control channel.

One channel message is one JSON object `{"type": <tag>, "payload": {...}}`. Pointer
coordinates travel normalized to [0, 1] of the sender's video frame; the receiver maps
them back onto its own viewport.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from deskbridge.core.transport import DataChannel
from deskbridge.errors import UnknownEventType


logger = logging.getLogger(__name__)

EVENT_TYPES = frozenset(
    {"mouse-move", "mouse-click", "mouse-down", "mouse-up", "key-press", "key-release", "scroll"}
)


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PointerPayload(_Payload):
    x: float
    y: float


class ButtonPayload(_Payload):
    x: float
    y: float
    button: int = 0


class KeyPressPayload(_Payload):
    key: str
    code: str
    ctrl_key: bool = Field(default=False, alias="ctrlKey")
    alt_key: bool = Field(default=False, alias="altKey")
    shift_key: bool = Field(default=False, alias="shiftKey")
    meta_key: bool = Field(default=False, alias="metaKey")


class KeyReleasePayload(_Payload):
    key: str
    code: str


class ScrollPayload(_Payload):
    delta_x: float = Field(default=0.0, alias="deltaX")
    delta_y: float = Field(default=0.0, alias="deltaY")


class MouseMove(BaseModel):
    type: Literal["mouse-move"] = "mouse-move"
    payload: PointerPayload


class MouseClick(BaseModel):
    type: Literal["mouse-click"] = "mouse-click"
    payload: ButtonPayload


class MouseDown(BaseModel):
    type: Literal["mouse-down"] = "mouse-down"
    payload: ButtonPayload


class MouseUp(BaseModel):
    type: Literal["mouse-up"] = "mouse-up"
    payload: ButtonPayload


class KeyPress(BaseModel):
    type: Literal["key-press"] = "key-press"
    payload: KeyPressPayload


class KeyRelease(BaseModel):
    type: Literal["key-release"] = "key-release"
    payload: KeyReleasePayload


class Scroll(BaseModel):
    type: Literal["scroll"] = "scroll"
    payload: ScrollPayload


RemoteInputEvent = Annotated[
    Union[MouseMove, MouseClick, MouseDown, MouseUp, KeyPress, KeyRelease, Scroll],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter[Any] = TypeAdapter(RemoteInputEvent)

_POINTER_EVENTS = (MouseMove, MouseClick, MouseDown, MouseUp)


def encode(event: BaseModel) -> str:
    return json.dumps(event.model_dump(mode="json", by_alias=True), separators=(",", ":"))


def decode(text: str | bytes):
    """Parse one channel message.

    Raises `UnknownEventType` for a tag outside the closed set, and `ValueError`
    (pydantic's `ValidationError` included) for anything else malformed.
    """

    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("Control message must be a JSON object")
    tag = data.get("type")
    if tag not in EVENT_TYPES:
        raise UnknownEventType(f"Unknown control event type: {tag!r}")
    return _event_adapter.validate_python(data)


@dataclass(frozen=True, slots=True)
class Viewport:
    width: int
    height: int


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


def normalize_point(x: float, y: float, frame: Viewport) -> tuple[float, float]:
    if frame.width <= 0 or frame.height <= 0:
        return 0.0, 0.0
    return _clamp(x / frame.width), _clamp(y / frame.height)


def denormalize_point(x: float, y: float, viewport: Viewport) -> tuple[int, int]:
    # Lossy by construction: integer pixels on the receiver's viewport.
    return round(_clamp(x) * viewport.width), round(_clamp(y) * viewport.height)


def normalize_event(event, frame: Viewport):
    """Return a copy of a pointer event with coordinates in [0, 1] of `frame`."""

    if not isinstance(event, _POINTER_EVENTS):
        return event
    x, y = normalize_point(event.payload.x, event.payload.y, frame)
    return event.model_copy(update={"payload": event.payload.model_copy(update={"x": x, "y": y})})


def denormalize_event(event, viewport: Viewport):
    if not isinstance(event, _POINTER_EVENTS):
        return event
    x, y = denormalize_point(event.payload.x, event.payload.y, viewport)
    return event.model_copy(update={"payload": event.payload.model_copy(update={"x": x, "y": y})})


class ControlChannel:
    """Codec bound to one data channel.

    Outbound events are dropped with a warning while the channel is not open.
    Inbound messages that fail to decode are logged and dropped; the channel stays up.
    """

    def __init__(self, channel: DataChannel) -> None:
        self._channel = channel
        self._handler: Callable[[Any], None] | None = None
        channel.on_message(self._on_raw)

    @property
    def is_open(self) -> bool:
        return self._channel.ready_state == "open"

    def on_event(self, handler: Callable[[Any], None]) -> None:
        self._handler = handler

    def send(self, event: BaseModel) -> bool:
        if not self.is_open:
            logger.warning("Control channel not open (%s), dropping %s", self._channel.ready_state, getattr(event, "type", "event"))
            return False
        self._channel.send(encode(event))
        return True

    def _on_raw(self, text: str) -> None:
        try:
            event = decode(text)
        except UnknownEventType as e:
            logger.warning("%s", e)
            return
        except (ValueError, ValidationError):
            logger.warning("Malformed control message dropped", exc_info=True)
            return
        if self._handler is not None:
            self._handler(event)

    def close(self) -> None:
        self._channel.close()

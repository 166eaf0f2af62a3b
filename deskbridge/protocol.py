"""Signaling wire format shared by the relay and the participant signaling client.

Both directions are closed tagged unions keyed on `type`; decoding anything else
is an error at the decode site rather than a silently ignored default.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from deskbridge.api.models import Role


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")


# Participant -> relay.


class JoinSession(_WireModel):
    type: Literal["join-session"] = "join-session"
    session_code: str = Field(..., alias="sessionCode")
    role: Role


class LeaveSession(_WireModel):
    type: Literal["leave-session"] = "leave-session"


class Offer(_WireModel):
    type: Literal["offer"] = "offer"
    sdp: str
    target: str


class Answer(_WireModel):
    type: Literal["answer"] = "answer"
    sdp: str
    target: str


class IceCandidate(_WireModel):
    type: Literal["ice-candidate"] = "ice-candidate"
    # None marks end-of-candidates.
    candidate: dict[str, Any] | None = None
    target: str


ClientMessage = Annotated[
    Union[JoinSession, LeaveSession, Offer, Answer, IceCandidate],
    Field(discriminator="type"),
]


# Relay -> participant.


class SessionJoined(_WireModel):
    type: Literal["session-joined"] = "session-joined"
    peer_id: str = Field(..., alias="peerId")
    session_code: str = Field(..., alias="sessionCode")
    role: Role
    ice_servers: list[dict[str, Any]] = Field(default_factory=list, alias="iceServers")


class SessionErrorMessage(_WireModel):
    type: Literal["session-error"] = "session-error"
    error: str
    code: str = "error"


class PeerJoined(_WireModel):
    type: Literal["peer-joined"] = "peer-joined"
    peer_id: str = Field(..., alias="peerId")
    role: Role


class PeerLeft(_WireModel):
    type: Literal["peer-left"] = "peer-left"
    peer_id: str = Field(..., alias="peerId")
    role: Role


class SessionExpired(_WireModel):
    type: Literal["session-expired"] = "session-expired"
    session_code: str = Field(..., alias="sessionCode")


class SessionClosed(_WireModel):
    type: Literal["session-closed"] = "session-closed"
    session_code: str = Field(..., alias="sessionCode")


class RelayedOffer(_WireModel):
    type: Literal["offer"] = "offer"
    sdp: str
    sender: str = Field(..., alias="from")


class RelayedAnswer(_WireModel):
    type: Literal["answer"] = "answer"
    sdp: str
    sender: str = Field(..., alias="from")


class RelayedIceCandidate(_WireModel):
    type: Literal["ice-candidate"] = "ice-candidate"
    candidate: dict[str, Any] | None = None
    sender: str = Field(..., alias="from")


ServerMessage = Annotated[
    Union[
        SessionJoined,
        SessionErrorMessage,
        PeerJoined,
        PeerLeft,
        SessionExpired,
        SessionClosed,
        RelayedOffer,
        RelayedAnswer,
        RelayedIceCandidate,
    ],
    Field(discriminator="type"),
]

client_message_adapter: TypeAdapter[Any] = TypeAdapter(ClientMessage)
server_message_adapter: TypeAdapter[Any] = TypeAdapter(ServerMessage)


def parse_client_message(data: dict[str, Any]):
    return client_message_adapter.validate_python(data)


def parse_server_message(data: dict[str, Any]):
    return server_message_adapter.validate_python(data)


def dump(message: BaseModel) -> dict[str, Any]:
    return message.model_dump(mode="json", by_alias=True)

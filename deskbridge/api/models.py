from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class Role(StrEnum):
    host = "host"
    client = "client"


class SessionStatus(StrEnum):
    waiting = "waiting"
    active = "active"
    connected = "connected"
    closed = "closed"


def derive_status(*, host_identity: str | None, client_identity: str | None, closed: bool = False) -> SessionStatus:
    """Status is a pure function of slot occupancy; it is never stored on its own."""

    if closed:
        return SessionStatus.closed
    if host_identity is None:
        return SessionStatus.waiting
    if client_identity is None:
        return SessionStatus.active
    return SessionStatus.connected


class SessionRecord(BaseModel):
    code: str
    session_id: str
    created_at: datetime
    expires_at: datetime

    # Transport-level peer ids; owned by the relay, only referenced here.
    host_identity: str | None = None
    client_identity: str | None = None

    closed: bool = False

    @property
    def status(self) -> SessionStatus:
        return derive_status(
            host_identity=self.host_identity,
            client_identity=self.client_identity,
            closed=self.closed,
        )

    @property
    def has_host(self) -> bool:
        return self.host_identity is not None

    @property
    def has_client(self) -> bool:
        return self.client_identity is not None

    @property
    def identities(self) -> tuple[str, ...]:
        return tuple(i for i in (self.host_identity, self.client_identity) if i is not None)

    def identity_for(self, role: Role) -> str | None:
        return self.host_identity if role == Role.host else self.client_identity

    def role_of(self, identity: str) -> Role | None:
        if self.host_identity == identity:
            return Role.host
        if self.client_identity == identity:
            return Role.client
        return None

    def is_expired(self, *, now: datetime) -> bool:
        return self.expires_at <= now


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SessionCreatedResponse(_CamelModel):
    session_id: str = Field(..., alias="sessionId")
    session_code: str = Field(..., alias="sessionCode")
    expires_at: datetime = Field(..., alias="expiresAt")


class SessionInfoResponse(_CamelModel):
    session_id: str = Field(..., alias="sessionId")
    status: SessionStatus
    expires_at: datetime = Field(..., alias="expiresAt")
    has_host: bool = Field(..., alias="hasHost")
    has_client: bool = Field(..., alias="hasClient")

    @staticmethod
    def from_record(record: SessionRecord) -> "SessionInfoResponse":
        return SessionInfoResponse(
            session_id=record.session_id,
            status=record.status,
            expires_at=record.expires_at,
            has_host=record.has_host,
            has_client=record.has_client,
        )


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime

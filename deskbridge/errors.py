from __future__ import annotations


class DeskBridgeError(ValueError):
    """Base class for every typed failure surfaced by the registry, relay and peers.

    `code` is the stable machine-readable tag sent over the wire (`session-error.code`)
    and used by the lifecycle manager to describe an `error` state.
    """

    code = "error"
    default_message = "Unexpected error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class NotFound(DeskBridgeError):
    code = "not-found"
    default_message = "Session not found"


class Expired(DeskBridgeError):
    code = "expired"
    default_message = "Session expired"


class RoleConflict(DeskBridgeError):
    code = "role-conflict"
    default_message = "Role already taken"


class InvalidSessionCode(DeskBridgeError):
    code = "invalid-code"
    default_message = "Invalid session code"


class CodespaceExhausted(DeskBridgeError):
    code = "codespace-exhausted"
    default_message = "Unable to generate a unique session code"


class NegotiationNotReady(DeskBridgeError):
    code = "negotiation-not-ready"
    default_message = "Target peer is not known yet"


class NegotiationTimeout(DeskBridgeError):
    code = "negotiation-timeout"
    default_message = "Peer negotiation timed out"


class TransportFailure(DeskBridgeError):
    code = "transport-failure"
    default_message = "Peer transport failed"


class CapturePermissionDenied(DeskBridgeError):
    code = "capture-denied"
    default_message = "Screen capture was refused"


class UnknownEventType(DeskBridgeError):
    code = "unknown-event"
    default_message = "Unknown control event type"


class SessionBusy(DeskBridgeError):
    code = "busy"
    default_message = "Session is busy"

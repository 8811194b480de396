"""Error taxonomy for the relay.

Every error carries a fixed ``code`` and a fixed ``client_message``. The
exception text itself is for server-side logs only; clients only ever see the
fixed strings rendered by :meth:`RelayError.to_notice`.
"""

from __future__ import annotations

from typing import ClassVar, Literal, TypeAlias

ValidationReason: TypeAlias = Literal[
    "input_empty",
    "input_too_long",
    "invalid_session_id",
    "invalid_project_name",
    "malformed_message",
]


class RelayError(Exception):
    code: ClassVar[str] = "internal_error"
    client_message: ClassVar[str] = "Failed to process request"

    def to_notice(self) -> dict[str, object]:
        return {"type": "error", "code": self.code, "message": self.client_message}


class ValidationError(RelayError):
    """Malformed control message, bad token format, or unacceptable input."""

    code = "validation_error"
    client_message = "Invalid request"

    def __init__(self, reason: ValidationReason, detail: str | None = None) -> None:
        super().__init__(detail or reason)
        self.reason: ValidationReason = reason

    def to_notice(self) -> dict[str, object]:
        notice = super().to_notice()
        notice["reason"] = self.reason
        return notice


class ResourceLimitError(RelayError):
    code = "resource_limit"
    client_message = "Resource limit exceeded"


class BufferOverflowError(ResourceLimitError):
    """Decoder buffer grew past its ceiling before a delimiter arrived."""

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"buffer size {size} exceeds limit {limit}")
        self.size = size
        self.limit = limit


class ProcessFault(RelayError):
    code = "process_error"
    client_message = "CLI process encountered an error"


class ProtocolStateError(RelayError):
    """A request arrived in a state that does not accept it."""

    code = "protocol_state"
    client_message = "Request not allowed in current state"


class NoActiveTurnError(ProtocolStateError):
    code = "no_active_turn"
    client_message = "No active turn"


class TurnActiveError(ProtocolStateError):
    code = "turn_active"
    client_message = "A turn is already active"


__all__ = [
    "BufferOverflowError",
    "NoActiveTurnError",
    "ProcessFault",
    "ProtocolStateError",
    "RelayError",
    "ResourceLimitError",
    "TurnActiveError",
    "ValidationError",
    "ValidationReason",
]

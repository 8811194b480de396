"""Client control messages, decoded from the WebSocket text frames.

Only the envelope is checked here (type tag, field types). Semantic checks
such as input length and token format belong to ``ccrelay.validation`` so the
orchestrator can report them with a specific reason.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ccrelay.errors import ValidationError


class _ControlMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class StartRequest(_ControlMessage):
    type: Literal["start"]
    session_id: str | None = Field(default=None, alias="sessionId")


class InputRequest(_ControlMessage):
    type: Literal["input"]
    text: str


class StopRequest(_ControlMessage):
    type: Literal["stop"]


class ListProjectsRequest(_ControlMessage):
    type: Literal["list-projects"]


class ListSessionsRequest(_ControlMessage):
    type: Literal["list-sessions"]
    project_name: str | None = Field(default=None, alias="projectName")


ControlMessage = Annotated[
    StartRequest | InputRequest | StopRequest | ListProjectsRequest | ListSessionsRequest,
    Field(discriminator="type"),
]

_CONTROL_ADAPTER: TypeAdapter[Any] = TypeAdapter(ControlMessage)


def parse_control_message(payload: str) -> ControlMessage:
    try:
        raw = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ValidationError("malformed_message", "control message is not valid JSON") from exc
    if not isinstance(raw, dict):
        raise ValidationError("malformed_message", "control message must be a JSON object")
    try:
        return _CONTROL_ADAPTER.validate_python(raw)
    except PydanticValidationError as exc:
        raise ValidationError(
            "malformed_message",
            f"unsupported control message type={str(raw.get('type'))[:40]!r}",
        ) from exc


def started(session_id: str | None) -> dict[str, object]:
    return {"type": "started", "sessionId": session_id}


def exited(code: int | None) -> dict[str, object]:
    return {"type": "exit", "code": code}


def projects(names: list[str], default_project: str | None) -> dict[str, object]:
    return {"type": "projects", "projects": names, "defaultProject": default_project}


def sessions(items: list[Any]) -> dict[str, object]:
    return {"type": "sessions", "sessions": items}


__all__ = [
    "ControlMessage",
    "InputRequest",
    "ListProjectsRequest",
    "ListSessionsRequest",
    "StartRequest",
    "StopRequest",
    "exited",
    "parse_control_message",
    "projects",
    "sessions",
    "started",
]

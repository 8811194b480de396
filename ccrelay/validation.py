"""Trust-boundary checks shared by the orchestrator and the CLI runner."""

from __future__ import annotations

import re
from pathlib import Path

from ccrelay.errors import ValidationError

SESSION_ID_PATTERN = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
    re.IGNORECASE,
)


def validate_input(text: object, max_length: int) -> str:
    """Reject non-string, blank, or oversized prompt text and return it unchanged."""
    if not isinstance(text, str):
        raise ValidationError("malformed_message", "input text must be a string")
    if not text.strip():
        raise ValidationError("input_empty", "input cannot be empty")
    if len(text) > max_length:
        raise ValidationError(
            "input_too_long",
            f"input length {len(text)} exceeds maximum {max_length}",
        )
    return text


def validate_session_id(session_id: str) -> str:
    if not SESSION_ID_PATTERN.fullmatch(session_id):
        raise ValidationError("invalid_session_id", "invalid session id format")
    return session_id


def resolve_project_dir(base_dir: Path, project_name: str) -> Path:
    """Resolve ``project_name`` under ``base_dir``, refusing anything that escapes it.

    The resolved path must be the base itself or a descendant of it, so
    ``..`` segments, absolute names, and symlinks pointing outside all fail.
    """
    base = base_dir.expanduser().resolve()
    if not project_name or "\x00" in project_name:
        raise ValidationError("invalid_project_name", "project name must be non-empty")
    candidate = (base / project_name).resolve()
    if candidate != base and base not in candidate.parents:
        raise ValidationError(
            "invalid_project_name",
            "project name resolves outside the projects base directory",
        )
    return candidate


__all__ = [
    "SESSION_ID_PATTERN",
    "resolve_project_dir",
    "validate_input",
    "validate_session_id",
]

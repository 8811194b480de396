"""Read-only view over the CLI's on-disk project and session records.

Each project is a directory under the projects base; each session inside it is
a ``.jsonl`` transcript written by the CLI itself. Only names, previews and
timestamps leave this module, never absolute paths.
"""

from __future__ import annotations

import asyncio
import json
import logging
from itertools import islice
from pathlib import Path
from typing import Any, TypedDict

logger = logging.getLogger(__name__)

SESSION_SUFFIX = ".jsonl"
EMPTY_PREVIEW = "(empty session)"
NO_USER_PREVIEW = "(no user messages)"
READ_ERROR_PREVIEW = "(read error)"


class SessionSummary(TypedDict):
    filename: str
    preview: str
    modified: float


class SessionDirectory:
    def __init__(self, max_preview_length: int = 100, max_preview_lines: int = 100) -> None:
        self._max_preview_length = max_preview_length
        self._max_preview_lines = max_preview_lines

    async def list_projects(self, base_dir: Path) -> list[str]:
        return await asyncio.to_thread(self._list_projects_sync, base_dir)

    async def list_sessions(self, project_dir: Path) -> list[SessionSummary]:
        return await asyncio.to_thread(self._list_sessions_sync, project_dir)

    def _list_projects_sync(self, base_dir: Path) -> list[str]:
        try:
            entries = list(base_dir.iterdir())
        except FileNotFoundError:
            return []
        return sorted(entry.name for entry in entries if entry.is_dir())

    def _list_sessions_sync(self, project_dir: Path) -> list[SessionSummary]:
        try:
            entries = list(project_dir.iterdir())
        except FileNotFoundError:
            return []

        sessions: list[SessionSummary] = []
        for entry in entries:
            if entry.suffix != SESSION_SUFFIX or entry.is_dir():
                continue
            try:
                modified = entry.stat().st_mtime * 1000
            except OSError:
                logger.debug("Skipping unreadable session file %s", entry.name)
                continue
            sessions.append(
                SessionSummary(
                    filename=entry.name,
                    preview=self.extract_preview(entry),
                    modified=modified,
                )
            )

        sessions.sort(key=lambda item: item["modified"], reverse=True)
        return sessions

    def extract_preview(self, path: Path) -> str:
        """Return the first user message in ``path``, truncated for display."""
        line_count = 0
        try:
            with path.open(encoding="utf-8", errors="replace") as handle:
                for line in islice(handle, self._max_preview_lines):
                    line_count += 1
                    text = _user_text(line)
                    if text:
                        return self._truncate(text)
        except OSError:
            return READ_ERROR_PREVIEW
        return EMPTY_PREVIEW if line_count == 0 else NO_USER_PREVIEW

    def _truncate(self, text: str) -> str:
        if len(text) > self._max_preview_length:
            return text[: self._max_preview_length] + "..."
        return text


def _user_text(line: str) -> str | None:
    if not line.strip():
        return None
    try:
        record = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(record, dict) or record.get("type") != "user":
        return None
    message = record.get("message")
    if not isinstance(message, dict):
        return None
    return _content_text(message.get("content"))


def _content_text(content: Any) -> str | None:
    if isinstance(content, str):
        return content.strip() or None
    if isinstance(content, list):
        parts = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        joined = " ".join(part.strip() for part in parts if isinstance(part, str)).strip()
        return joined or None
    return None


__all__ = ["SessionDirectory", "SessionSummary"]

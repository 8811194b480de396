"""Structured logging setup with per-connection correlation.

Every record carries the ``connection_id`` and ``turn_id`` of the flow that
emitted it. Output pump tasks are created inside the turn's scope, so they
inherit both IDs through ``contextvars`` without passing them around.
"""

from __future__ import annotations

import contextvars
import json
import logging
import re
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_CORRELATION_FIELDS = ("connection_id", "turn_id")


@dataclass(frozen=True, slots=True)
class CorrelationContext:
    """IDs of the WebSocket link and CLI turn a log line belongs to."""

    connection_id: str | None = None
    turn_id: str | None = None


_EMPTY_CONTEXT = CorrelationContext()
_CORRELATION_CONTEXT: contextvars.ContextVar[CorrelationContext | None] = contextvars.ContextVar(
    "ccrelay_correlation_context",
    default=None,
)


def get_correlation_context() -> CorrelationContext:
    context = _CORRELATION_CONTEXT.get()
    if context is None:
        return _EMPTY_CONTEXT
    return context


def sanitize_log_value(value: object, max_length: int = 2_000) -> str:
    """Strip newlines and other control characters so untrusted text cannot forge log lines."""
    cleaned = _CONTROL_CHARS.sub("", str(value))
    if len(cleaned) > max_length:
        return cleaned[:max_length] + "..."
    return cleaned


class CorrelationFilter(logging.Filter):
    """Stamp each record with the connection and turn it was logged under."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = get_correlation_context()
        record.connection_id = context.connection_id
        record.turn_id = context.turn_id
        return True


class _JsonFormatter(logging.Formatter):
    """One JSON object per line; correlation keys appear only when set."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in _CORRELATION_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True)


_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s conn=%(connection_id)s turn=%(turn_id)s %(message)s"


def _build_formatter(json_output: bool) -> logging.Formatter:
    if json_output:
        return _JsonFormatter()
    return logging.Formatter(_TEXT_FORMAT)


def setup_logging(level: int | str = logging.INFO, json_output: bool = False) -> None:
    """Route all logging, uvicorn's included, through one stdout handler.

    The correlation filter sits on both the root logger and the handler:
    records propagated from child loggers skip root-logger filters, so the
    handler copy is what guarantees ``%(connection_id)s`` always resolves.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.filters.clear()

    correlation_filter = CorrelationFilter()
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(_build_formatter(json_output))
    handler.addFilter(correlation_filter)
    root_logger.addFilter(correlation_filter)
    root_logger.addHandler(handler)


@contextmanager
def correlation_scope(
    *,
    connection_id: str | None = None,
    turn_id: str | None = None,
) -> Iterator[None]:
    """Tag everything logged inside the block with a connection and/or turn.

    ``WebRelay`` opens a connection scope per link and the orchestrator nests
    a turn scope inside it; an argument left as ``None`` keeps the outer value.
    Tasks created inside the block copy the context, so process pumps keep
    logging under the turn that spawned them.
    """
    current = get_correlation_context()
    updated = replace(
        current,
        connection_id=current.connection_id if connection_id is None else connection_id,
        turn_id=current.turn_id if turn_id is None else turn_id,
    )
    token = _CORRELATION_CONTEXT.set(updated)
    try:
        yield
    finally:
        _CORRELATION_CONTEXT.reset(token)


__all__ = [
    "CorrelationContext",
    "CorrelationFilter",
    "correlation_scope",
    "get_correlation_context",
    "sanitize_log_value",
    "setup_logging",
]

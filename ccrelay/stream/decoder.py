"""Newline-delimited JSON decoder for the CLI's ``stream-json`` output.

The CLI writes one JSON object per line, but pipe reads hand us arbitrary
slices of that stream. ``StreamDecoder`` buffers the unterminated tail between
calls and only emits a message once its closing newline has arrived.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any, TypeAlias

from ccrelay.errors import BufferOverflowError

logger = logging.getLogger(__name__)

MessageCallback: TypeAlias = Callable[[dict[str, Any]], None]

DEFAULT_MAX_BUFFER_SIZE = 1024 * 1024
SYSTEM_MESSAGE_TYPE = "system"


class StreamDecoder:
    def __init__(self, max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE) -> None:
        if max_buffer_size <= 0:
            raise ValueError("max_buffer_size must be greater than zero")
        self._max_buffer_size = max_buffer_size
        self._buffer = ""
        self._callback: MessageCallback | None = None
        self._failed = False

    @property
    def buffered(self) -> str:
        return self._buffer

    @property
    def failed(self) -> bool:
        return self._failed

    def on_message(self, callback: MessageCallback) -> None:
        self._callback = callback

    def feed(self, chunk: str) -> None:
        """Consume ``chunk`` and dispatch every message it completes, in order.

        Raises ``BufferOverflowError`` when the pending data grows past the
        ceiling. The buffer is dropped at that point and the decoder refuses
        further input; callers should discard it along with its turn.
        """
        if self._failed:
            raise BufferOverflowError(len(chunk), self._max_buffer_size)

        self._buffer += chunk
        if len(self._buffer) > self._max_buffer_size:
            size = len(self._buffer)
            self._buffer = ""
            self._failed = True
            raise BufferOverflowError(size, self._max_buffer_size)

        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self._decode_line(line)

    def _decode_line(self, line: str) -> None:
        stripped = line.strip()
        if not stripped:
            return
        try:
            message = json.loads(stripped)
        except json.JSONDecodeError:
            # stream-json occasionally interleaves plain text
            logger.debug("Skipping non-JSON line (%d chars)", len(stripped))
            return
        if not isinstance(message, dict):
            return
        self._dispatch(message)

    def _dispatch(self, message: dict[str, Any]) -> None:
        if message.get("type") == SYSTEM_MESSAGE_TYPE:
            return
        if self._callback is not None:
            self._callback(message)


__all__ = ["DEFAULT_MAX_BUFFER_SIZE", "MessageCallback", "StreamDecoder", "SYSTEM_MESSAGE_TYPE"]

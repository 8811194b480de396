"""Per-connection turn orchestration.

A connection alternates between ``idle`` and ``turn_active``. Each turn owns a
fresh ``CLIRunner`` and ``StreamDecoder``; both are dropped when the process
exits, when the client sends ``stop``, or when the link goes away.

Control messages are handled one at a time under ``_lock``. Process callbacks
run on the runner's pump task and never await, so every state change is a
single step on the event loop. Every server-to-client message goes through one
outbound queue drained by one writer task, which fixes delivery order to
enqueue order.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any, TypeAlias

from ccrelay.config import RelaySettings
from ccrelay.core.logging import correlation_scope, sanitize_log_value
from ccrelay.core.metrics import (
    DECODER_OVERFLOWS_TOTAL,
    TURN_DURATION_SECONDS,
    TURNS_FINISHED_TOTAL,
    TURNS_STARTED_TOTAL,
)
from ccrelay.errors import (
    BufferOverflowError,
    NoActiveTurnError,
    ProcessFault,
    RelayError,
    TurnActiveError,
)
from ccrelay.execution.runner import CLIRunner
from ccrelay.models import protocol
from ccrelay.models.protocol import (
    InputRequest,
    ListProjectsRequest,
    ListSessionsRequest,
    StartRequest,
    StopRequest,
    parse_control_message,
)
from ccrelay.sessions.directory import SessionDirectory
from ccrelay.stream.decoder import StreamDecoder
from ccrelay.validation import resolve_project_dir, validate_input, validate_session_id

logger = logging.getLogger(__name__)

Sender: TypeAlias = Callable[[dict[str, Any]], Awaitable[None]]
RunnerFactory: TypeAlias = Callable[[str | None], CLIRunner]

_INTERNAL_ERROR_NOTICE: dict[str, Any] = {
    "type": "error",
    "code": "internal_error",
    "message": "Failed to process request",
}


class ConnectionState(enum.StrEnum):
    idle = "idle"
    turn_active = "turn_active"


class ConnectionOrchestrator:
    def __init__(
        self,
        send: Sender,
        settings: RelaySettings | None = None,
        *,
        session_directory: SessionDirectory | None = None,
        runner_factory: RunnerFactory | None = None,
        connection_id: str | None = None,
    ) -> None:
        self.connection_id = connection_id or uuid.uuid4().hex
        self._send = send
        self._settings = settings or RelaySettings()
        limits = self._settings.limits
        self._directory = session_directory or SessionDirectory(
            max_preview_length=limits.max_preview_length,
            max_preview_lines=limits.max_preview_lines,
        )
        self._runner_factory = runner_factory or self._build_runner
        self._state = ConnectionState.idle
        self._runner: CLIRunner | None = None
        self._decoder: StreamDecoder | None = None
        self._turn_id: str | None = None
        self._turn_started_at: float | None = None
        self._stderr_reported = False
        self._lock = asyncio.Lock()
        self._outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._writer_task: asyncio.Task[None] | None = None
        self._link_lost = False
        self._closed = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def runner(self) -> CLIRunner | None:
        return self._runner

    @property
    def turn_id(self) -> str | None:
        return self._turn_id

    def open(self) -> None:
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._write_loop())

    async def close(self) -> None:
        """Tear down the connection; an active runner is stopped before any await."""
        if self._closed:
            return
        self._closed = True
        if self._runner is not None:
            logger.info("Connection closed during active turn; stopping CLI process")
            self._end_turn(outcome="disconnected", stop=True)

        writer, self._writer_task = self._writer_task, None
        if writer is not None:
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass

    async def flush(self) -> None:
        """Wait until every queued outbound message has been handed to the sender."""
        await self._outbox.join()

    def emit(self, payload: dict[str, Any]) -> None:
        if self._closed:
            return
        self._outbox.put_nowait(payload)

    async def handle_message(self, payload: str) -> None:
        async with self._lock:
            try:
                request = parse_control_message(payload)
                await self._dispatch(request)
            except RelayError as exc:
                logger.warning(
                    "Request failed (%s): %s",
                    exc.code,
                    sanitize_log_value(exc),
                )
                self.emit(exc.to_notice())
            except Exception:  # noqa: BLE001
                logger.exception("Unexpected error while handling control message")
                self.emit(dict(_INTERNAL_ERROR_NOTICE))

    async def _dispatch(self, request: object) -> None:
        if isinstance(request, StartRequest):
            await self._start_turn(request.session_id or None)
        elif isinstance(request, InputRequest):
            self._send_input(request.text)
        elif isinstance(request, StopRequest):
            self._stop_turn()
        elif isinstance(request, ListProjectsRequest):
            await self._list_projects()
        elif isinstance(request, ListSessionsRequest):
            await self._list_sessions(request.project_name or None)
        else:  # pragma: no cover - parse_control_message is exhaustive
            raise TypeError(f"unhandled control message: {type(request).__name__}")

    # -- turn lifecycle --

    async def _start_turn(self, session_id: str | None) -> None:
        if self._state is ConnectionState.turn_active:
            raise TurnActiveError("start requested while a turn is active")
        if session_id is not None:
            validate_session_id(session_id)

        turn_id = uuid.uuid4().hex
        runner = self._runner_factory(session_id)
        decoder = StreamDecoder(self._settings.limits.max_buffer_size)
        decoder.on_message(lambda message: self._forward(runner, message))
        runner.on_output(lambda chunk: self._handle_output(runner, decoder, chunk))
        runner.on_error(lambda chunk: self._handle_error(runner, chunk))
        runner.on_exit(lambda code: self._handle_exit(runner, code))

        self._runner = runner
        self._decoder = decoder
        self._turn_id = turn_id
        self._stderr_reported = False
        self._state = ConnectionState.turn_active
        with correlation_scope(turn_id=turn_id):
            try:
                await runner.start()
            except ProcessFault:
                self._reset_turn()
                raise
            self._turn_started_at = time.monotonic()
            TURNS_STARTED_TOTAL.inc()
            # No await between start() returning and this enqueue, so the
            # acknowledgement is queued ahead of any process output.
            self.emit(protocol.started(session_id))
            logger.info("Turn started")

    def _send_input(self, text: str) -> None:
        validate_input(text, self._settings.limits.max_input_length)
        runner = self._runner
        if self._state is not ConnectionState.turn_active or runner is None:
            raise NoActiveTurnError("input received with no active turn")
        runner.send_input(text)

    def _stop_turn(self) -> None:
        if self._runner is None:
            return
        logger.info("Turn stopped by client")
        self._end_turn(outcome="stopped", stop=True)

    def _end_turn(self, outcome: str, *, stop: bool) -> None:
        runner = self._runner
        started_at = self._turn_started_at
        self._reset_turn()
        if stop and runner is not None:
            runner.stop()
        TURNS_FINISHED_TOTAL.labels(outcome=outcome).inc()
        if started_at is not None:
            TURN_DURATION_SECONDS.observe(time.monotonic() - started_at)

    def _reset_turn(self) -> None:
        self._runner = None
        self._decoder = None
        self._turn_id = None
        self._turn_started_at = None
        self._state = ConnectionState.idle

    # -- runner callbacks --

    def _forward(self, runner: CLIRunner, message: dict[str, Any]) -> None:
        if runner is self._runner:
            self.emit(message)

    def _handle_output(self, runner: CLIRunner, decoder: StreamDecoder, chunk: str) -> None:
        if runner is not self._runner:
            return
        try:
            decoder.feed(chunk)
        except BufferOverflowError as exc:
            logger.warning("Aborting turn: %s", exc)
            DECODER_OVERFLOWS_TOTAL.inc()
            self.emit(exc.to_notice())
            self._end_turn(outcome="overflow", stop=True)
            self.emit(protocol.exited(None))

    def _handle_error(self, runner: CLIRunner, chunk: str) -> None:
        if runner is not self._runner:
            return
        logger.warning("CLI stderr: %s", sanitize_log_value(chunk))
        if not self._stderr_reported:
            self._stderr_reported = True
            self.emit(ProcessFault("stderr output").to_notice())

    def _handle_exit(self, runner: CLIRunner, code: int | None) -> None:
        if runner is not self._runner:
            return
        logger.info("Turn finished with exit code %s", code)
        self._end_turn(outcome="success" if code == 0 else "failure", stop=False)
        self.emit(protocol.exited(code))

    # -- session directory --

    async def _list_projects(self) -> None:
        projects_config = self._settings.projects
        names = await self._directory.list_projects(projects_config.resolved_base_dir)
        self.emit(protocol.projects(names, projects_config.default_project_name))

    async def _list_sessions(self, project_name: str | None) -> None:
        projects_config = self._settings.projects
        if project_name is None:
            target = projects_config.resolved_default_dir
        else:
            target = resolve_project_dir(projects_config.resolved_base_dir, project_name)
        items = await self._directory.list_sessions(target)
        self.emit(protocol.sessions(list(items)))

    # -- outbound --

    async def _write_loop(self) -> None:
        while True:
            payload = await self._outbox.get()
            try:
                if not self._link_lost:
                    await self._send(payload)
            except Exception:  # noqa: BLE001
                self._link_lost = True
                logger.info("Client link lost while sending %s", payload.get("type"))
            finally:
                self._outbox.task_done()

    def _build_runner(self, session_id: str | None) -> CLIRunner:
        return CLIRunner(
            session_id,
            command=self._settings.cli.command,
            cwd=self._settings.cli.working_dir,
            max_input_length=self._settings.limits.max_input_length,
        )


__all__ = ["ConnectionOrchestrator", "ConnectionState", "RunnerFactory", "Sender"]

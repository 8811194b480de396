from __future__ import annotations

import asyncio
import codecs
import enum
import inspect
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeAlias, TypeVar

from ccrelay.errors import ProcessFault, ProtocolStateError
from ccrelay.validation import validate_input, validate_session_id

logger = logging.getLogger(__name__)

ChunkCallback: TypeAlias = Callable[[str], Awaitable[None] | None]
ExitCallback: TypeAlias = Callable[[int | None], Awaitable[None] | None]
_C = TypeVar("_C")

BASE_ARGS: tuple[str, ...] = ("-p", "--output-format", "stream-json")
RESUME_FLAG = "-r"
DEFAULT_MAX_INPUT_LENGTH = 10_000
_READ_SIZE = 64 * 1024
# strong references for fire-and-forget tasks until they finish
_BACKGROUND_TASKS: set[asyncio.Future[None]] = set()


class RunnerState(enum.StrEnum):
    created = "created"
    running = "running"
    input_sent = "input_sent"
    exited = "exited"
    stopped = "stopped"


class CLIRunner:
    """One ``claude -p`` invocation, bound to a single turn.

    The argument vector is fixed; the only client-influenced argument is a
    resumption token that has already matched ``SESSION_ID_PATTERN``. The
    prompt travels over stdin, never argv, and no shell is involved.

    Output, stderr and exit are delivered through callbacks. A callback may be
    registered before or after ``start()``: chunks that arrive while a slot is
    still empty are held and replayed on registration.
    """

    def __init__(
        self,
        session_id: str | None = None,
        *,
        command: str = "claude",
        cwd: str | Path | None = None,
        max_input_length: int = DEFAULT_MAX_INPUT_LENGTH,
    ) -> None:
        if session_id is not None:
            validate_session_id(session_id)
        self.session_id = session_id
        self._command = command
        self._cwd = str(cwd) if cwd is not None else None
        self._max_input_length = max_input_length
        self._state = RunnerState.created
        self._process: asyncio.subprocess.Process | None = None
        self._output_callback: ChunkCallback | None = None
        self._error_callback: ChunkCallback | None = None
        self._exit_callback: ExitCallback | None = None
        self._pending_output: list[str] = []
        self._pending_error: list[str] = []
        self._exit_pending = False
        self._exit_code: int | None = None
        self._watch_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> RunnerState:
        return self._state

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> int | None:
        return self._exit_code

    def build_args(self) -> list[str]:
        args = [self._command, *BASE_ARGS]
        if self.session_id:
            args.extend([RESUME_FLAG, self.session_id])
        return args

    async def start(self) -> None:
        if self._state is not RunnerState.created:
            raise ProtocolStateError(f"CLI runner cannot start from state {self._state}")

        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_args(),
                cwd=self._cwd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            self._state = RunnerState.stopped
            raise ProcessFault(f"failed to spawn {self._command}: {exc}") from exc

        self._process = process
        self._state = RunnerState.running
        logger.info("Spawned CLI process pid=%d resume=%s", process.pid, bool(self.session_id))
        self._watch_task = asyncio.create_task(self._watch(process))

    def send_input(self, text: str) -> None:
        """Write the single prompt for this invocation and close stdin.

        ``claude -p`` reads one prompt then runs to completion, so a second
        call is a contract violation rather than something to retry.
        """
        if self._state is RunnerState.created:
            raise ProtocolStateError("CLI process not started")
        if self._state is not RunnerState.running:
            raise ProtocolStateError(f"CLI runner cannot accept input in state {self._state}")
        validate_input(text, self._max_input_length)

        process = self._process
        if process is None or process.stdin is None:
            raise ProtocolStateError("CLI process has no input channel")
        self._state = RunnerState.input_sent
        try:
            process.stdin.write((text + "\n").encode("utf-8"))
            # close() flushes the buffered payload before shutting the pipe
            process.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise ProcessFault(f"CLI process closed its input channel: {exc}") from exc

    def on_output(self, callback: ChunkCallback) -> None:
        self._output_callback = self._attach(self._output_callback, callback, "output")
        self._replay(callback, self._pending_output)

    def on_error(self, callback: ChunkCallback) -> None:
        self._error_callback = self._attach(self._error_callback, callback, "error")
        self._replay(callback, self._pending_error)

    def on_exit(self, callback: ExitCallback) -> None:
        self._exit_callback = self._attach(self._exit_callback, callback, "exit")
        if self._exit_pending:
            self._exit_pending = False
            self._schedule(callback(self._exit_code))

    def stop(self) -> None:
        """Terminate the process if alive and drop every callback. Idempotent."""
        if self._state in (RunnerState.created, RunnerState.exited, RunnerState.stopped):
            if self._state is RunnerState.created:
                self._state = RunnerState.stopped
            self._process = None
            return

        self._state = RunnerState.stopped
        process, self._process = self._process, None
        if self._watch_task is not None:
            self._watch_task.cancel()
        self._output_callback = None
        self._error_callback = None
        self._exit_callback = None
        if process is not None and process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                return
            logger.info("Terminated CLI process pid=%d", process.pid)
            _keep_alive(asyncio.ensure_future(self._reap(process)))

    @staticmethod
    async def _reap(process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        logger.debug("Reaped stopped CLI process pid=%d code=%s", process.pid, code)

    @staticmethod
    def _attach(current: _C | None, callback: _C, slot: str) -> _C:
        if current is not None and current != callback:
            raise ProtocolStateError(f"{slot} callback already registered")
        return callback

    def _replay(self, callback: ChunkCallback, pending: list[str]) -> None:
        held = list(pending)
        pending.clear()
        for chunk in held:
            self._schedule(callback(chunk))

    @staticmethod
    def _schedule(result: Awaitable[None] | None) -> None:
        if inspect.isawaitable(result):
            _keep_alive(asyncio.ensure_future(result))

    async def _emit_chunk(self, slot: str, chunk: str) -> None:
        callback = self._output_callback if slot == "output" else self._error_callback
        if callback is None:
            pending = self._pending_output if slot == "output" else self._pending_error
            pending.append(chunk)
            return
        result = callback(chunk)
        if inspect.isawaitable(result):
            await result

    async def _pump(self, stream: asyncio.StreamReader, slot: str) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(_READ_SIZE)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    await self._emit_chunk(slot, tail)
                return
            text = decoder.decode(data)
            if text:
                await self._emit_chunk(slot, text)

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None and process.stderr is not None
        await asyncio.gather(
            self._pump(process.stdout, "output"),
            self._pump(process.stderr, "error"),
        )
        code = await process.wait()
        self._exit_code = code
        if self._state is RunnerState.stopped:
            return
        self._state = RunnerState.exited
        self._process = None
        logger.info("CLI process pid=%d exited with code %s", process.pid, code)

        callback = self._exit_callback
        if callback is None:
            self._exit_pending = True
            return
        result = callback(code)
        if inspect.isawaitable(result):
            await result


def _keep_alive(task: asyncio.Future[None]) -> None:
    _BACKGROUND_TASKS.add(task)
    task.add_done_callback(_BACKGROUND_TASKS.discard)


__all__ = ["BASE_ARGS", "CLIRunner", "RESUME_FLAG", "RunnerState"]

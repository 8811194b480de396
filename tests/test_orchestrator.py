from __future__ import annotations

import asyncio
import json
import os
import stat
import sys
from pathlib import Path
from typing import Any

import pytest
from ccrelay.config import CLIConfig, LimitsConfig, ProjectsConfig, RelaySettings
from ccrelay.core.orchestrator import ConnectionOrchestrator, ConnectionState
from ccrelay.execution.runner import CLIRunner, RunnerState

from tests.fakes import (
    ASSISTANT_HI,
    RESULT_OK,
    SYSTEM_INIT,
    FakeRunnerFactory,
    FakeSessionDirectory,
    RecordingSender,
)

SESSION_ID = "123e4567-e89b-42d3-a456-426614174000"


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def factory() -> FakeRunnerFactory:
    return FakeRunnerFactory(script=[SYSTEM_INIT + "\n", ASSISTANT_HI + "\n", RESULT_OK + "\n"])


@pytest.fixture
def directory() -> FakeSessionDirectory:
    return FakeSessionDirectory(projects=["alpha", "beta"])


@pytest.fixture
def settings(tmp_path: Path) -> RelaySettings:
    return RelaySettings(projects=ProjectsConfig(base_dir=tmp_path / "projects"))


@pytest.fixture
async def orchestrator(
    sender: RecordingSender,
    factory: FakeRunnerFactory,
    directory: FakeSessionDirectory,
    settings: RelaySettings,
) -> ConnectionOrchestrator:
    orch = ConnectionOrchestrator(
        sender,
        settings,
        session_directory=directory,
        runner_factory=factory,
        connection_id="conn-test",
    )
    orch.open()
    yield orch
    await orch.close()


async def _send(orch: ConnectionOrchestrator, message: dict[str, Any] | str) -> None:
    payload = message if isinstance(message, str) else json.dumps(message)
    await orch.handle_message(payload)
    # let scheduled runner playback enqueue its output before draining
    await asyncio.sleep(0)
    await orch.flush()


class TestTurnLifecycle:
    async def test_full_turn_forwards_filtered_output_then_exit(
        self,
        orchestrator: ConnectionOrchestrator,
        sender: RecordingSender,
        factory: FakeRunnerFactory,
    ) -> None:
        await _send(orchestrator, {"type": "start"})
        assert sender.payloads == [{"type": "started", "sessionId": None}]
        assert orchestrator.state is ConnectionState.turn_active

        await _send(orchestrator, {"type": "input", "text": "Hello"})

        assert sender.types == ["started", "assistant", "result", "exit"]
        assert sender.payloads[1] == json.loads(ASSISTANT_HI)
        assert sender.payloads[-1] == {"type": "exit", "code": 0}
        assert factory.latest.inputs == ["Hello"]
        assert orchestrator.state is ConnectionState.idle
        assert orchestrator.runner is None

    async def test_resume_token_is_passed_to_runner(
        self,
        orchestrator: ConnectionOrchestrator,
        sender: RecordingSender,
        factory: FakeRunnerFactory,
    ) -> None:
        await _send(orchestrator, {"type": "start", "sessionId": SESSION_ID})
        assert factory.latest.session_id == SESSION_ID
        assert sender.payloads == [{"type": "started", "sessionId": SESSION_ID}]

    async def test_uppercase_resume_token_is_accepted(
        self,
        orchestrator: ConnectionOrchestrator,
        sender: RecordingSender,
    ) -> None:
        await _send(orchestrator, {"type": "start", "sessionId": SESSION_ID.upper()})
        assert sender.types == ["started"]

    async def test_empty_session_id_means_new_session(
        self,
        orchestrator: ConnectionOrchestrator,
        factory: FakeRunnerFactory,
    ) -> None:
        await _send(orchestrator, {"type": "start", "sessionId": ""})
        assert factory.latest.session_id is None

    async def test_nonzero_exit_returns_to_idle_and_allows_new_turn(
        self,
        sender: RecordingSender,
        directory: FakeSessionDirectory,
        settings: RelaySettings,
    ) -> None:
        factory = FakeRunnerFactory(exit_code=1)
        orch = ConnectionOrchestrator(
            sender, settings, session_directory=directory, runner_factory=factory
        )
        orch.open()
        try:
            await _send(orch, {"type": "start"})
            await _send(orch, {"type": "input", "text": "x"})
            assert sender.payloads[-1] == {"type": "exit", "code": 1}
            assert orch.state is ConnectionState.idle

            await _send(orch, {"type": "start"})
            assert sender.types[-1] == "started"
            assert len(factory.runners) == 2
        finally:
            await orch.close()

    async def test_start_while_active_is_rejected(
        self,
        orchestrator: ConnectionOrchestrator,
        sender: RecordingSender,
        factory: FakeRunnerFactory,
    ) -> None:
        await _send(orchestrator, {"type": "start"})
        await _send(orchestrator, {"type": "start"})

        assert sender.payloads[-1]["code"] == "turn_active"
        assert len(factory.runners) == 1
        assert orchestrator.state is ConnectionState.turn_active

    async def test_input_without_turn_is_rejected(
        self,
        orchestrator: ConnectionOrchestrator,
        sender: RecordingSender,
        factory: FakeRunnerFactory,
    ) -> None:
        await _send(orchestrator, {"type": "input", "text": "hello"})
        assert sender.payloads == [
            {"type": "error", "code": "no_active_turn", "message": "No active turn"},
        ]
        assert factory.runners == []

    async def test_second_input_in_same_turn_is_a_state_error(
        self,
        sender: RecordingSender,
        directory: FakeSessionDirectory,
        settings: RelaySettings,
    ) -> None:
        factory = FakeRunnerFactory(exit_code=None)
        orch = ConnectionOrchestrator(
            sender, settings, session_directory=directory, runner_factory=factory
        )
        orch.open()
        try:
            await _send(orch, {"type": "start"})
            await _send(orch, {"type": "input", "text": "one"})
            await _send(orch, {"type": "input", "text": "two"})
            assert sender.payloads[-1]["code"] == "protocol_state"
            assert factory.latest.inputs == ["one"]
        finally:
            await orch.close()

    async def test_stop_ends_turn_silently_and_drops_late_output(
        self,
        sender: RecordingSender,
        directory: FakeSessionDirectory,
        settings: RelaySettings,
    ) -> None:
        factory = FakeRunnerFactory(exit_code=None)
        orch = ConnectionOrchestrator(
            sender, settings, session_directory=directory, runner_factory=factory
        )
        orch.open()
        try:
            await _send(orch, {"type": "start"})
            await _send(orch, {"type": "input", "text": "long task"})
            runner = factory.latest

            await _send(orch, {"type": "stop"})
            assert runner.stopped is True
            assert orch.state is ConnectionState.idle

            runner.stopped = False
            runner.emit_output(ASSISTANT_HI + "\n")
            runner.emit_exit(0)
            await orch.flush()
            assert sender.types == ["started"]
        finally:
            await orch.close()

    async def test_stop_when_idle_is_a_noop(
        self,
        orchestrator: ConnectionOrchestrator,
        sender: RecordingSender,
    ) -> None:
        await _send(orchestrator, {"type": "stop"})
        assert sender.payloads == []
        assert orchestrator.state is ConnectionState.idle

    async def test_spawn_failure_reports_process_error_and_stays_idle(
        self,
        sender: RecordingSender,
        directory: FakeSessionDirectory,
        settings: RelaySettings,
    ) -> None:
        factory = FakeRunnerFactory(fail_on_start=True)
        orch = ConnectionOrchestrator(
            sender, settings, session_directory=directory, runner_factory=factory
        )
        orch.open()
        try:
            await _send(orch, {"type": "start"})
            assert sender.payloads == [
                {
                    "type": "error",
                    "code": "process_error",
                    "message": "CLI process encountered an error",
                },
            ]
            assert orch.state is ConnectionState.idle
            assert orch.runner is None
        finally:
            await orch.close()

    async def test_close_stops_active_runner(
        self,
        sender: RecordingSender,
        directory: FakeSessionDirectory,
        settings: RelaySettings,
    ) -> None:
        factory = FakeRunnerFactory(exit_code=None)
        orch = ConnectionOrchestrator(
            sender, settings, session_directory=directory, runner_factory=factory
        )
        orch.open()
        await _send(orch, {"type": "start"})
        await orch.close()

        assert factory.latest.stopped is True
        assert orch.state is ConnectionState.idle
        orch.emit({"type": "exit", "code": 0})
        assert sender.types == ["started"]


class TestValidation:
    async def test_oversized_input_is_rejected_before_the_runner(
        self,
        orchestrator: ConnectionOrchestrator,
        sender: RecordingSender,
        factory: FakeRunnerFactory,
    ) -> None:
        await _send(orchestrator, {"type": "start"})
        await _send(orchestrator, {"type": "input", "text": "a" * 10_001})

        assert sender.payloads[-1] == {
            "type": "error",
            "code": "validation_error",
            "message": "Invalid request",
            "reason": "input_too_long",
        }
        assert factory.latest.inputs == []
        assert orchestrator.state is ConnectionState.turn_active

    async def test_oversized_input_is_reported_even_when_idle(
        self,
        orchestrator: ConnectionOrchestrator,
        sender: RecordingSender,
    ) -> None:
        await _send(orchestrator, {"type": "input", "text": "a" * 10_001})
        assert sender.payloads[-1]["reason"] == "input_too_long"

    async def test_input_at_limit_is_accepted(
        self,
        orchestrator: ConnectionOrchestrator,
        factory: FakeRunnerFactory,
    ) -> None:
        await _send(orchestrator, {"type": "start"})
        await _send(orchestrator, {"type": "input", "text": "a" * 10_000})
        assert factory.latest.inputs == ["a" * 10_000]

    async def test_blank_input_is_rejected(
        self,
        orchestrator: ConnectionOrchestrator,
        sender: RecordingSender,
        factory: FakeRunnerFactory,
    ) -> None:
        await _send(orchestrator, {"type": "start"})
        await _send(orchestrator, {"type": "input", "text": "  \n\t"})
        assert sender.payloads[-1]["reason"] == "input_empty"
        assert factory.latest.inputs == []

    async def test_invalid_session_id_never_reaches_a_runner(
        self,
        orchestrator: ConnectionOrchestrator,
        sender: RecordingSender,
        factory: FakeRunnerFactory,
    ) -> None:
        await _send(orchestrator, {"type": "start", "sessionId": "abc; rm -rf /"})
        assert sender.payloads == [
            {
                "type": "error",
                "code": "validation_error",
                "message": "Invalid request",
                "reason": "invalid_session_id",
            },
        ]
        assert factory.runners == []
        assert orchestrator.state is ConnectionState.idle

    @pytest.mark.parametrize(
        "payload",
        [
            "not json",
            "[1, 2, 3]",
            '"start"',
            '{"type": "delete-everything"}',
            '{"text": "no type"}',
            '{"type": "input", "text": 42}',
        ],
    )
    async def test_malformed_messages_are_reported(
        self,
        orchestrator: ConnectionOrchestrator,
        sender: RecordingSender,
        payload: str,
    ) -> None:
        await _send(orchestrator, payload)
        assert sender.payloads[-1]["code"] == "validation_error"
        assert sender.payloads[-1]["reason"] == "malformed_message"
        assert orchestrator.state is ConnectionState.idle

    async def test_traversal_project_name_never_reaches_the_directory(
        self,
        orchestrator: ConnectionOrchestrator,
        sender: RecordingSender,
        directory: FakeSessionDirectory,
    ) -> None:
        await _send(orchestrator, {"type": "list-sessions", "projectName": "../etc"})
        assert sender.payloads[-1]["reason"] == "invalid_project_name"
        assert directory.calls == []


class TestProcessOutput:
    async def test_overflow_aborts_turn_with_resource_limit_then_exit(
        self,
        sender: RecordingSender,
        directory: FakeSessionDirectory,
        tmp_path: Path,
    ) -> None:
        settings = RelaySettings(
            limits=LimitsConfig(max_buffer_size=64),
            projects=ProjectsConfig(base_dir=tmp_path),
        )
        factory = FakeRunnerFactory(script=["x" * 65], exit_code=None)
        orch = ConnectionOrchestrator(
            sender, settings, session_directory=directory, runner_factory=factory
        )
        orch.open()
        try:
            await _send(orch, {"type": "start"})
            await _send(orch, {"type": "input", "text": "go"})

            assert sender.payloads[1:] == [
                {"type": "error", "code": "resource_limit", "message": "Resource limit exceeded"},
                {"type": "exit", "code": None},
            ]
            assert factory.latest.stopped is True
            assert orch.state is ConnectionState.idle
        finally:
            await orch.close()

    async def test_stderr_reported_once_per_turn(
        self,
        sender: RecordingSender,
        directory: FakeSessionDirectory,
        settings: RelaySettings,
    ) -> None:
        factory = FakeRunnerFactory(
            script=[ASSISTANT_HI + "\n"],
            stderr=["warning: one\n", "warning: two\n"],
        )
        orch = ConnectionOrchestrator(
            sender, settings, session_directory=directory, runner_factory=factory
        )
        orch.open()
        try:
            await _send(orch, {"type": "start"})
            await _send(orch, {"type": "input", "text": "go"})
            assert sender.types == ["started", "assistant", "error", "exit"]
            assert sender.of_type("error") == [
                {
                    "type": "error",
                    "code": "process_error",
                    "message": "CLI process encountered an error",
                },
            ]

            await _send(orch, {"type": "start"})
            await _send(orch, {"type": "input", "text": "again"})
            assert len(sender.of_type("error")) == 2
        finally:
            await orch.close()

    async def test_stderr_text_is_not_forwarded(
        self,
        sender: RecordingSender,
        directory: FakeSessionDirectory,
        settings: RelaySettings,
    ) -> None:
        factory = FakeRunnerFactory(stderr=["secret path /home/user/.token\n"])
        orch = ConnectionOrchestrator(
            sender, settings, session_directory=directory, runner_factory=factory
        )
        orch.open()
        try:
            await _send(orch, {"type": "start"})
            await _send(orch, {"type": "input", "text": "go"})
            assert "secret" not in json.dumps(sender.payloads)
        finally:
            await orch.close()

    async def test_chunks_split_mid_line_are_reassembled(
        self,
        sender: RecordingSender,
        directory: FakeSessionDirectory,
        settings: RelaySettings,
    ) -> None:
        line = ASSISTANT_HI + "\n"
        factory = FakeRunnerFactory(script=[line[:10], line[10:30], line[30:]])
        orch = ConnectionOrchestrator(
            sender, settings, session_directory=directory, runner_factory=factory
        )
        orch.open()
        try:
            await _send(orch, {"type": "start"})
            await _send(orch, {"type": "input", "text": "go"})
            assert sender.of_type("assistant") == [json.loads(ASSISTANT_HI)]
        finally:
            await orch.close()


class TestSessionDirectory:
    async def test_list_projects(
        self,
        orchestrator: ConnectionOrchestrator,
        sender: RecordingSender,
        directory: FakeSessionDirectory,
        settings: RelaySettings,
    ) -> None:
        await _send(orchestrator, {"type": "list-projects"})
        assert sender.payloads == [
            {"type": "projects", "projects": ["alpha", "beta"], "defaultProject": None},
        ]
        assert directory.calls == [("list_projects", settings.projects.resolved_base_dir)]

    async def test_list_sessions_for_named_project(
        self,
        sender: RecordingSender,
        settings: RelaySettings,
        factory: FakeRunnerFactory,
    ) -> None:
        summary = {"filename": "abc.jsonl", "preview": "Hello", "modified": 1_700_000_000_000}
        directory = FakeSessionDirectory(sessions=[summary])
        orch = ConnectionOrchestrator(
            sender, settings, session_directory=directory, runner_factory=factory
        )
        orch.open()
        try:
            await _send(orch, {"type": "list-sessions", "projectName": "alpha"})
            assert sender.payloads == [{"type": "sessions", "sessions": [summary]}]
            assert directory.calls == [
                ("list_sessions", settings.projects.resolved_base_dir / "alpha"),
            ]
        finally:
            await orch.close()

    async def test_list_sessions_without_project_uses_default_dir(
        self,
        orchestrator: ConnectionOrchestrator,
        directory: FakeSessionDirectory,
        settings: RelaySettings,
    ) -> None:
        await _send(orchestrator, {"type": "list-sessions"})
        assert directory.calls == [("list_sessions", settings.projects.resolved_default_dir)]

    async def test_directory_failure_is_an_internal_error(
        self,
        sender: RecordingSender,
        settings: RelaySettings,
        factory: FakeRunnerFactory,
    ) -> None:
        directory = FakeSessionDirectory(error=PermissionError("denied: /secret"))
        orch = ConnectionOrchestrator(
            sender, settings, session_directory=directory, runner_factory=factory
        )
        orch.open()
        try:
            await _send(orch, {"type": "list-projects"})
            assert sender.payloads == [
                {"type": "error", "code": "internal_error", "message": "Failed to process request"},
            ]
        finally:
            await orch.close()

    async def test_listing_allowed_during_active_turn(
        self,
        orchestrator: ConnectionOrchestrator,
        sender: RecordingSender,
    ) -> None:
        await _send(orchestrator, {"type": "start"})
        await _send(orchestrator, {"type": "list-projects"})
        assert sender.types == ["started", "projects"]
        assert orchestrator.state is ConnectionState.turn_active


class TestOutbound:
    async def test_send_failure_marks_link_lost_and_drops_later_messages(
        self,
        factory: FakeRunnerFactory,
        directory: FakeSessionDirectory,
        settings: RelaySettings,
    ) -> None:
        attempts: list[dict[str, Any]] = []

        async def broken_send(payload: dict[str, Any]) -> None:
            attempts.append(payload)
            raise ConnectionResetError("peer went away")

        orch = ConnectionOrchestrator(
            broken_send, settings, session_directory=directory, runner_factory=factory
        )
        orch.open()
        try:
            await _send(orch, {"type": "list-projects"})
            await _send(orch, {"type": "list-projects"})
            assert len(attempts) == 1
        finally:
            await orch.close()


_EXIT_ONE_CLI = """#!/bin/sh
IFS= read -r line
printf '{"type":"system","subtype":"init"}\\n'
printf '{"type":"assistant","message":{"content":[{"type":"text","text":"hi"}]}}\\n'
exit 1
"""

_FLOOD_CLI = """#!/bin/sh
IFS= read -r line
printf '%0200d' 0
exec sleep 30
"""


def _cli_script(tmp_path: Path, body: str) -> str:
    path = tmp_path / "fake-claude"
    path.write_text(body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


async def _wait_for(sender: RecordingSender, message_type: str, count: int = 1) -> None:
    for _ in range(200):
        if len(sender.of_type(message_type)) >= count:
            return
        await asyncio.sleep(0.05)
    raise AssertionError(f"no {message_type!r} message; got {sender.types}")


async def _wait_reaped(pid: int) -> None:
    for _ in range(200):
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return
        await asyncio.sleep(0.05)
    raise AssertionError(f"process {pid} was not reaped")


@pytest.mark.skipif(sys.platform == "win32", reason="requires /bin/sh")
class TestWithRealProcess:
    async def test_nonzero_exit_is_the_last_message_of_the_turn(
        self, sender: RecordingSender, tmp_path: Path
    ) -> None:
        settings = RelaySettings(
            cli=CLIConfig(command=_cli_script(tmp_path, _EXIT_ONE_CLI)),
            projects=ProjectsConfig(base_dir=tmp_path),
        )
        orch = ConnectionOrchestrator(sender, settings)
        orch.open()
        try:
            await _send(orch, {"type": "start"})
            await _send(orch, {"type": "input", "text": "hello"})
            await _wait_for(sender, "exit")
            await orch.flush()

            assert sender.types == ["started", "assistant", "exit"]
            assert sender.payloads[1]["message"]["content"][0]["text"] == "hi"
            assert sender.payloads[-1] == {"type": "exit", "code": 1}
            assert orch.state is ConnectionState.idle

            await _send(orch, {"type": "start"})
            assert sender.types[-1] == "started"
            assert orch.state is ConnectionState.turn_active
        finally:
            await orch.close()

    async def test_overflow_stops_and_reaps_the_process(
        self, sender: RecordingSender, tmp_path: Path
    ) -> None:
        settings = RelaySettings(
            limits=LimitsConfig(max_buffer_size=64),
            cli=CLIConfig(command=_cli_script(tmp_path, _FLOOD_CLI)),
            projects=ProjectsConfig(base_dir=tmp_path),
        )
        orch = ConnectionOrchestrator(sender, settings)
        orch.open()
        try:
            await _send(orch, {"type": "start"})
            runner = orch.runner
            assert isinstance(runner, CLIRunner)
            pid = runner.pid
            assert pid is not None

            await _send(orch, {"type": "input", "text": "go"})
            await _wait_for(sender, "exit")
            await orch.flush()

            assert sender.payloads[1:] == [
                {"type": "error", "code": "resource_limit", "message": "Resource limit exceeded"},
                {"type": "exit", "code": None},
            ]
            assert orch.state is ConnectionState.idle
            assert runner.state is RunnerState.stopped
            await _wait_reaped(pid)

            await _send(orch, {"type": "start"})
            assert sender.types[-1] == "started"
            assert orch.state is ConnectionState.turn_active
        finally:
            await orch.close()

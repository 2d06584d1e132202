from __future__ import annotations

import json
import os
import sys
import threading
import time
from pathlib import Path

import allure
import pytest

from work_loop.engine.backend import (
    AgentEvent,
    AgentEventKind,
    ClaudeCliInvoker,
    InvocationRequest,
    InvocationState,
    ToolConfig,
    build_agent_args,
)
from work_loop.engine.backend.cli_backend import _STDERR_TAIL_BYTES
from work_loop.errors import (
    AbortedError,
    AgentNotInstalledError,
    AgentReportedError,
    InvocationTimeoutError,
    ProcessFailureError,
)

pytestmark = [
    allure.epic("Agent Invoker"),
    allure.feature("Subprocess Lifecycle"),
]


def _request(prompt: str = "hello", *, mode: str = "ok", **kwargs) -> InvocationRequest:
    env = {"WORK_LOOP_ECHO_MODE": mode, **kwargs.pop("env", {})}
    kwargs.setdefault("timeout_ms", 30_000)
    return InvocationRequest(prompt=prompt, env=env, **kwargs)


def test_build_agent_args_renders_flags_in_stable_order() -> None:
    request = InvocationRequest(
        prompt="Do the thing",
        resume_session_id="sess-1",
        system_prompt="Be brief.",
        tool_config=ToolConfig(
            allowed_tools=("Read", "Edit", "Bash(git:*)"),
            permission_mode="acceptEdits",
            mcp_config_path=Path("mcp.json"),
        ),
        max_turns=25,
        model="claude-sonnet",
        verbose=True,
    )

    assert build_agent_args(request) == [
        "-p",
        "Do the thing",
        "--output-format",
        "stream-json",
        "--resume",
        "sess-1",
        "--append-system-prompt",
        "Be brief.",
        "--mcp-config",
        "mcp.json",
        "--allowedTools",
        "Read,Edit,Bash(git:*)",
        "--permission-mode",
        "acceptEdits",
        "--max-turns",
        "25",
        "--model",
        "claude-sonnet",
        "--verbose",
    ]


def test_build_agent_args_omits_unset_options() -> None:
    request = InvocationRequest(prompt="p", max_turns=0, verbose=False, tool_config=ToolConfig())

    assert build_agent_args(request) == ["-p", "p", "--output-format", "stream-json"]


def test_invoker_rejects_empty_command() -> None:
    with pytest.raises(ValueError, match="must not be empty"):
        ClaudeCliInvoker(command=())


def test_run_returns_result_and_streams_events(echo_command) -> None:
    invoker = ClaudeCliInvoker(command=echo_command)
    events: list[AgentEvent] = []

    result = invoker.run(_request("hello\nsecond line"), listener=events.append)

    assert result.text == "Echo: hello"
    assert result.session_id.startswith("echo-")
    assert result.usage is not None
    assert result.usage.total_tokens == 19
    assert result.duration_ms >= 0
    assert invoker.state is InvocationState.COMPLETED

    texts = [event.text for event in events if event.kind is AgentEventKind.TEXT]
    assert texts == ["Working on it.", " Done."]
    data_types = [event.data["type"] for event in events if event.kind is AgentEventKind.DATA]
    assert data_types == ["system", "assistant", "content_block_delta", "result"]
    assert events[-1].kind is AgentEventKind.DONE
    assert events[-1].result == result


def test_run_resumes_requested_session(echo_command) -> None:
    result = ClaudeCliInvoker(command=echo_command).run(
        _request(resume_session_id="sess-resume-42"),
    )

    assert result.session_id == "sess-resume-42"


def test_run_passes_flags_environment_and_working_directory(
    echo_command,
    tmp_path: Path,
) -> None:
    args_file = tmp_path / "args.json"
    workdir = tmp_path / "work"
    workdir.mkdir()

    ClaudeCliInvoker(command=echo_command).run(
        _request(
            "task prompt",
            model="test-model",
            max_turns=5,
            working_directory=workdir,
            env={"WORK_LOOP_ECHO_ARGS_FILE": str(args_file), "WORK_LOOP_TASK_INDEX": "2"},
        ),
    )

    captured = json.loads(args_file.read_text("utf-8"))
    assert captured["argv"][:4] == ["-p", "task prompt", "--output-format", "stream-json"]
    assert "--model" in captured["argv"]
    assert captured["argv"][captured["argv"].index("--max-turns") + 1] == "5"
    assert Path(captured["cwd"]).resolve() == workdir.resolve()
    assert captured["task_index"] == "2"


def test_run_agent_reported_error_carries_message_and_session(echo_command) -> None:
    invoker = ClaudeCliInvoker(command=echo_command)
    events: list[AgentEvent] = []

    with pytest.raises(AgentReportedError) as error_info:
        invoker.run(_request(mode="agent_error"), listener=events.append)

    error = error_info.value
    assert str(error) == "task cannot be completed: missing credentials"
    assert error.subtype == "error_during_execution"
    assert error.transient is False
    assert error.session_id is not None and error.session_id.startswith("echo-")
    assert invoker.state is InvocationState.FAILED
    assert events[-1].kind is AgentEventKind.ERROR
    assert events[-1].error is error


def test_run_crash_raises_process_failure_with_clean_diagnostic(echo_command) -> None:
    with pytest.raises(ProcessFailureError) as error_info:
        ClaudeCliInvoker(command=echo_command).run(_request(mode="crash"))

    error = error_info.value
    assert error.exit_code == 3
    assert error.diagnostic == "fatal: echo agent crashed"
    assert "\x1b" not in str(error)
    assert error.transient is True


def test_run_missing_executable_raises_agent_not_installed() -> None:
    invoker = ClaudeCliInvoker(command=("work-loop-agent-that-does-not-exist",))

    with pytest.raises(AgentNotInstalledError) as error_info:
        invoker.run(InvocationRequest(prompt="hello"))

    assert error_info.value.executable == "work-loop-agent-that-does-not-exist"
    assert invoker.state is InvocationState.FAILED


def test_run_missing_working_directory_raises_process_failure(
    echo_command,
    tmp_path: Path,
) -> None:
    with pytest.raises(ProcessFailureError, match="working directory not found"):
        ClaudeCliInvoker(command=echo_command).run(
            _request(working_directory=tmp_path / "missing"),
        )


def test_run_timeout_terminates_agent(echo_command) -> None:
    invoker = ClaudeCliInvoker(command=echo_command)
    started = time.monotonic()

    with pytest.raises(InvocationTimeoutError) as error_info:
        invoker.run(
            _request(
                mode="sleep",
                timeout_ms=500,
                env={"WORK_LOOP_ECHO_SLEEP_SECONDS": "20"},
            ),
        )

    assert error_info.value.timeout_ms == 500
    assert error_info.value.transient is True
    assert invoker.state is InvocationState.TIMED_OUT
    assert time.monotonic() - started < 10


def test_abort_cancels_in_flight_invocation(echo_command) -> None:
    invoker = ClaudeCliInvoker(command=echo_command)
    timer = threading.Timer(0.5, invoker.abort)
    timer.start()
    started = time.monotonic()
    try:
        with pytest.raises(AbortedError):
            invoker.run(_request(mode="sleep", env={"WORK_LOOP_ECHO_SLEEP_SECONDS": "20"}))
    finally:
        timer.cancel()

    assert invoker.state is InvocationState.ABORTED
    assert time.monotonic() - started < 10


def test_shutdown_requested_before_spawn_aborts_without_running_agent(
    echo_command,
    tmp_path: Path,
) -> None:
    args_file = tmp_path / "args.json"
    invoker = ClaudeCliInvoker(command=echo_command)

    with pytest.raises(AbortedError):
        invoker.run(
            _request(
                shutdown_requested=lambda: True,
                env={"WORK_LOOP_ECHO_ARGS_FILE": str(args_file)},
            ),
        )

    assert not args_file.exists()
    assert invoker.state is InvocationState.ABORTED


def test_abort_when_idle_is_a_no_op(echo_command) -> None:
    invoker = ClaudeCliInvoker(command=echo_command)

    invoker.abort()

    assert invoker.state is InvocationState.IDLE
    assert invoker.run(_request()).text == "Echo: hello"


def test_run_parses_final_result_line_without_trailing_newline(echo_command) -> None:
    result = ClaudeCliInvoker(command=echo_command).run(_request(mode="partial"))

    assert result.text == "Echo: hello"
    assert result.usage is not None


def test_run_surfaces_non_json_output_as_text(echo_command) -> None:
    events: list[AgentEvent] = []

    result = ClaudeCliInvoker(command=echo_command).run(
        _request(mode="garbage"),
        listener=events.append,
    )

    texts = [event.text for event in events if event.kind is AgentEventKind.TEXT]
    assert "this line is not json" in texts
    assert "warning: colored noise" in texts
    assert result.text == "Echo: hello"


def test_nonzero_exit_after_success_result_still_succeeds(echo_command) -> None:
    result = ClaudeCliInvoker(command=echo_command).run(_request(mode="nonzero_after_result"))

    assert result.text == "Echo: hello"


def test_listener_failure_does_not_break_invocation(echo_command) -> None:
    def _broken_listener(_: AgentEvent) -> None:
        raise RuntimeError("observer bug")

    result = ClaudeCliInvoker(command=echo_command).run(_request(), listener=_broken_listener)

    assert result.text == "Echo: hello"


def test_clean_exit_without_result_event_is_empty_success() -> None:
    events: list[AgentEvent] = []
    invoker = ClaudeCliInvoker(command=(sys.executable, "-c", "print('plain output')"))

    result = invoker.run(InvocationRequest(prompt="hello", timeout_ms=30_000), events.append)

    assert result.text == ""
    assert result.session_id == ""
    assert result.usage is None
    assert [event.text for event in events if event.kind is AgentEventKind.TEXT] == [
        "plain output",
    ]


def test_interrupt_while_waiting_terminates_agent(echo_command, tmp_path: Path) -> None:
    args_file = tmp_path / "args.json"
    invoker = ClaudeCliInvoker(command=echo_command)

    def _interrupt_once_agent_started() -> bool:
        try:
            json.loads(args_file.read_text("utf-8"))
        except (OSError, ValueError):
            return False
        raise KeyboardInterrupt

    with pytest.raises(KeyboardInterrupt):
        invoker.run(
            _request(
                mode="sleep",
                shutdown_requested=_interrupt_once_agent_started,
                env={
                    "WORK_LOOP_ECHO_SLEEP_SECONDS": "20",
                    "WORK_LOOP_ECHO_ARGS_FILE": str(args_file),
                },
            ),
        )

    pid = json.loads(args_file.read_text("utf-8"))["pid"]
    assert invoker.state is InvocationState.ABORTED
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


def test_output_after_timeout_is_not_delivered() -> None:
    script = (
        "import json, signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print(json.dumps({'type': 'system', 'subtype': 'init', 'session_id': 'late-1'}),"
        " flush=True)\n"
        "time.sleep(1.5)\n"
        "print(json.dumps({'type': 'assistant', 'message': {'content':"
        " [{'type': 'text', 'text': 'too late'}]}}), flush=True)\n"
        "print('plain late line', flush=True)\n"
        "time.sleep(30)\n"
    )
    events: list[AgentEvent] = []
    invoker = ClaudeCliInvoker(command=(sys.executable, "-c", script))

    with pytest.raises(InvocationTimeoutError):
        invoker.run(InvocationRequest(prompt="hello", timeout_ms=700), events.append)
    time.sleep(0.3)

    assert events[-1].kind is AgentEventKind.ERROR
    assert [event.kind for event in events].count(AgentEventKind.ERROR) == 1
    texts = [event.text for event in events if event.kind is AgentEventKind.TEXT]
    assert "too late" not in texts
    assert "plain late line" not in texts
    assert all(
        event.data.get("type") != "assistant"
        for event in events
        if event.kind is AgentEventKind.DATA
    )


def test_stderr_buffer_keeps_only_recent_output() -> None:
    script = (
        "import sys\n"
        "sys.stderr.write('x' * 300_000 + '\\nfinal reason\\n')\n"
        "sys.exit(2)\n"
    )
    invoker = ClaudeCliInvoker(command=(sys.executable, "-c", script))

    with pytest.raises(ProcessFailureError) as error_info:
        invoker.run(InvocationRequest(prompt="hello", timeout_ms=30_000))

    assert error_info.value.exit_code == 2
    assert error_info.value.diagnostic.endswith("final reason")
    assert invoker._current is not None
    assert len(invoker._current._stderr_tail) <= _STDERR_TAIL_BYTES


def test_abort_does_not_deadlock_when_lock_is_held_by_same_thread(echo_command) -> None:
    invoker = ClaudeCliInvoker(command=echo_command)

    with invoker._lock:
        invoker.abort()
        assert invoker.state is InvocationState.IDLE

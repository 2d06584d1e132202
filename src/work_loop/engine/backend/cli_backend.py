"""Subprocess-based invoker for stream-json CLI agents."""

from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from collections.abc import Sequence
from typing import IO

from work_loop.engine.backend.base import (
    AgentEvent,
    AgentEventKind,
    AgentListener,
    InvocationRequest,
    InvocationResult,
    InvocationState,
)
from work_loop.engine.backend.stream import (
    NdjsonLineBuffer,
    ResultCapture,
    decode_line,
    extract_text_deltas,
)
from work_loop.errors import (
    AbortedError,
    AgentNotInstalledError,
    AgentReportedError,
    InvocationError,
    InvocationTimeoutError,
    ProcessFailureError,
)
from work_loop.sanitization import sanitize_diagnostic

logger = logging.getLogger(__name__)

DEFAULT_AGENT_COMMAND: tuple[str, ...] = ("claude",)

_READ_CHUNK_BYTES = 65_536
_READER_JOIN_SECONDS = 5.0
_STDERR_TAIL_BYTES = 65_536


class ClaudeCliInvoker:
    """Run one agent subprocess per call and turn its stream into a result.

    ``abort()`` may be called from any thread; it unblocks the waiting
    ``run()`` which then terminates the child and raises ``AbortedError``.
    """

    def __init__(
        self,
        *,
        command: Sequence[str] = DEFAULT_AGENT_COMMAND,
        poll_interval_seconds: float = 0.05,
    ) -> None:
        if not command:
            raise ValueError("Agent command must not be empty.")
        self.command = tuple(command)
        self.poll_interval_seconds = poll_interval_seconds
        # Reentrant: abort() may run from a signal handler while run() holds the lock.
        self._lock = threading.RLock()
        self._current: _Invocation | None = None

    @property
    def state(self) -> InvocationState:
        with self._lock:
            current = self._current
        return InvocationState.IDLE if current is None else current.state

    def abort(self) -> None:
        with self._lock:
            current = self._current
        if current is not None and not current.state.is_terminal:
            current.cancel()

    def run(
        self,
        request: InvocationRequest,
        listener: AgentListener | None = None,
    ) -> InvocationResult:
        invocation = _Invocation(
            request=request,
            listener=listener,
            poll_interval_seconds=self.poll_interval_seconds,
        )
        with self._lock:
            self._current = invocation
        argv = [*self.command, *build_agent_args(request)]
        logger.debug("Starting agent: %s (%d args)", argv[0], len(argv) - 1)
        return invocation.execute(argv)


def build_agent_args(request: InvocationRequest) -> list[str]:
    """Translate an invocation request into agent command-line flags."""

    args = ["-p", request.prompt, "--output-format", "stream-json"]
    if request.resume_session_id:
        args.extend(["--resume", request.resume_session_id])
    if request.system_prompt:
        args.extend(["--append-system-prompt", request.system_prompt])
    tool_config = request.tool_config
    if tool_config is not None:
        if tool_config.mcp_config_path is not None:
            args.extend(["--mcp-config", str(tool_config.mcp_config_path)])
        if tool_config.allowed_tools:
            args.extend(["--allowedTools", ",".join(tool_config.allowed_tools)])
        if tool_config.permission_mode:
            args.extend(["--permission-mode", tool_config.permission_mode])
    if request.max_turns is not None and request.max_turns > 0:
        args.extend(["--max-turns", str(request.max_turns)])
    if request.model:
        args.extend(["--model", request.model])
    if request.verbose:
        args.append("--verbose")
    return args


class _Invocation:
    """State for exactly one agent execution."""

    def __init__(
        self,
        *,
        request: InvocationRequest,
        listener: AgentListener | None,
        poll_interval_seconds: float,
    ) -> None:
        self.request = request
        self.listener = listener
        self.poll_interval_seconds = poll_interval_seconds
        self.state = InvocationState.IDLE
        self._cancel = threading.Event()
        self._emit_lock = threading.Lock()
        self._closed = False
        self._capture = ResultCapture()
        self._observed_session_id: str | None = None
        self._stderr_tail = bytearray()

    def cancel(self) -> None:
        self._cancel.set()

    def _cancel_requested(self) -> bool:
        if self._cancel.is_set():
            return True
        shutdown_requested = self.request.shutdown_requested
        return shutdown_requested is not None and shutdown_requested()

    def execute(self, argv: list[str]) -> InvocationResult:
        start_monotonic = time.monotonic()
        self.state = InvocationState.SPAWNING
        if self._cancel_requested():
            raise self._fail(AbortedError("Agent invocation was aborted"), InvocationState.ABORTED)

        working_directory = self.request.working_directory
        if working_directory is not None and not working_directory.is_dir():
            raise self._fail(
                ProcessFailureError(
                    f"working directory not found: {working_directory}",
                    exit_code=None,
                ),
                InvocationState.FAILED,
            )

        env = os.environ.copy()
        env.update(self.request.env)
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                cwd=working_directory,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise self._fail(
                AgentNotInstalledError(argv[0]),
                InvocationState.FAILED,
            ) from error
        except OSError as error:
            raise self._fail(
                ProcessFailureError(f"failed to start: {error}", exit_code=None),
                InvocationState.FAILED,
            ) from error

        self.state = InvocationState.STREAMING
        readers = [
            threading.Thread(
                target=self._pump_stdout,
                args=(process.stdout,),
                name="agent-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=self._pump_stderr,
                args=(process.stderr,),
                name="agent-stderr",
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        try:
            returncode = self._wait_for_exit(process, start_monotonic=start_monotonic)
            for reader in readers:
                reader.join(timeout=_READER_JOIN_SECONDS)
        except BaseException:
            # KeyboardInterrupt from a second signal must not leave the agent running.
            self._close()
            _terminate_process(process)
            if not self.state.is_terminal:
                self.state = InvocationState.ABORTED
            raise
        self._close()
        return self._finish(returncode=returncode, start_monotonic=start_monotonic)

    def _wait_for_exit(self, process: subprocess.Popen[bytes], *, start_monotonic: float) -> int:
        timeout_ms = self.request.timeout_ms
        deadline: float | None = None
        if timeout_ms is not None and timeout_ms > 0:
            deadline = start_monotonic + timeout_ms / 1000
        graceful_seconds = max(0.0, self.request.graceful_shutdown_seconds or 0.0)
        shutdown_deadline: float | None = None

        while True:
            returncode = process.poll()
            if returncode is not None:
                return returncode

            now = time.monotonic()
            if deadline is not None and now >= deadline:
                self._close()
                _terminate_process(process)
                logger.warning("Agent timed out after %dms; process terminated", timeout_ms)
                raise self._fail(InvocationTimeoutError(timeout_ms), InvocationState.TIMED_OUT)

            if self._cancel_requested():
                if shutdown_deadline is None:
                    shutdown_deadline = now + graceful_seconds
                if now >= shutdown_deadline:
                    self._close()
                    _terminate_process(process)
                    raise self._fail(
                        AbortedError("Agent invocation was aborted"),
                        InvocationState.ABORTED,
                    )
                time.sleep(self.poll_interval_seconds)
                continue

            self._cancel.wait(self.poll_interval_seconds)

    def _finish(self, *, returncode: int, start_monotonic: float) -> InvocationResult:
        capture = self._capture
        if capture.seen and capture.failed:
            raise self._fail(
                AgentReportedError(capture.failure_message(), subtype=capture.subtype),
                InvocationState.FAILED,
            )
        if returncode != 0 and not capture.seen:
            stderr_text = bytes(self._stderr_tail).decode("utf-8", errors="replace")
            diagnostic = sanitize_diagnostic(stderr_text) or f"exit code {returncode}"
            raise self._fail(
                ProcessFailureError(diagnostic, exit_code=returncode),
                InvocationState.FAILED,
            )

        result = InvocationResult(
            text=capture.text,
            session_id=capture.session_id,
            usage=capture.usage,
            duration_ms=int((time.monotonic() - start_monotonic) * 1000),
        )
        self.state = InvocationState.COMPLETED
        self._publish(AgentEvent(kind=AgentEventKind.DONE, result=result))
        return result

    def _pump_stdout(self, pipe: IO[bytes]) -> None:
        buffer = NdjsonLineBuffer()
        try:
            fd = pipe.fileno()
            while True:
                chunk = os.read(fd, _READ_CHUNK_BYTES)
                if not chunk:
                    break
                for line in buffer.feed(chunk):
                    self._handle_line(line)
            trailing = buffer.flush()
            if trailing is not None:
                self._handle_line(trailing)
        except OSError as error:
            logger.warning("Agent stdout reader stopped: %s", error)
        finally:
            pipe.close()

    def _pump_stderr(self, pipe: IO[bytes]) -> None:
        try:
            fd = pipe.fileno()
            while True:
                chunk = os.read(fd, _READ_CHUNK_BYTES)
                if not chunk:
                    break
                self._stderr_tail.extend(chunk)
                if len(self._stderr_tail) > _STDERR_TAIL_BYTES:
                    del self._stderr_tail[:-_STDERR_TAIL_BYTES]
        except OSError as error:
            logger.warning("Agent stderr reader stopped: %s", error)
        finally:
            pipe.close()

    def _handle_line(self, raw: str) -> None:
        decoded = decode_line(raw)
        with self._emit_lock:
            if self._closed:
                return
            if decoded.raw_text is not None:
                logger.debug("Non-JSON agent output: %.200s", decoded.raw_text)
                self._publish(AgentEvent(kind=AgentEventKind.TEXT, text=decoded.raw_text))
                return
            event = decoded.event
            if event is None:
                return
            if isinstance(event.get("session_id"), str) and event["session_id"]:
                self._observed_session_id = event["session_id"]
            self._publish(AgentEvent(kind=AgentEventKind.DATA, data=event))
            for chunk in extract_text_deltas(event):
                self._publish(AgentEvent(kind=AgentEventKind.TEXT, text=chunk))
            if event.get("type") == "result":
                self._capture.update(event)

    def _close(self) -> None:
        with self._emit_lock:
            self._closed = True

    def _fail(self, error: InvocationError, state: InvocationState) -> InvocationError:
        self.state = state
        error.session_id = self._capture.session_id or self._observed_session_id
        self._publish(AgentEvent(kind=AgentEventKind.ERROR, error=error))
        return error

    def _publish(self, event: AgentEvent) -> None:
        if self.listener is None:
            return
        try:
            self.listener(event)
        except Exception:
            logger.exception("Invocation listener failed on %s event", event.kind.value)


def _terminate_process(process: subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)

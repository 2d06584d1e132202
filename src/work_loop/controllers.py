"""Controllers for work-loop CLI commands."""

from __future__ import annotations

import logging
import shutil
import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from work_loop.config import SelectionPolicy, Settings, WorkDomain
from work_loop.engine.backend.base import InvocationRequest
from work_loop.engine.backend.cli_backend import ClaudeCliInvoker
from work_loop.engine.coordinator import (
    ProgressEvent,
    ProgressEventType,
    RunSummary,
    WorkLoopEngine,
)
from work_loop.errors import InvocationError
from work_loop.plan.models import TaskStatus
from work_loop.plan.mutator import update_task_status
from work_loop.plan.parser import count_by_status, parse_plan, read_plan

logger = logging.getLogger(__name__)

SMOKE_PROMPT = "Reply with exactly: OK"
SMOKE_EXPECT_SUBSTRING = "OK"

LineSink = Callable[[str], None]


@dataclass(slots=True)
class RunCommand:
    """CLI input for one work loop run."""

    plan_path: Path
    model: str | None = None
    max_attempts: int | None = None
    max_iterations: int | None = None
    max_turns: int | None = None
    timeout_ms: int | None = None
    working_directory: Path | None = None
    verify_command: str | None = None
    domain: str | None = None
    selection_policy: str | None = None
    auto_commit: bool | None = None
    verbose: bool = False


@dataclass(slots=True)
class PlanShowCommand:
    """CLI input for plan listing."""

    plan_path: Path


@dataclass(slots=True)
class PlanSetStatusCommand:
    """CLI input for a manual task status change."""

    plan_path: Path
    index: int
    status: str


@dataclass(slots=True)
class SmokeCommand:
    """CLI input for direct agent smoke check."""

    agent_command: str | None
    timeout_ms: int


@dataclass(slots=True)
class CommandResult:
    """Report lines to render in CLI plus overall success."""

    lines: list[str]
    success: bool


class WorkLoopCliController:
    """Coordinates work loop runs and plan inspection CLI operations."""

    def run(self, command: RunCommand, *, emit: LineSink) -> CommandResult:
        settings = _run_settings(command)
        settings.validate()

        engine = WorkLoopEngine(invoker=ClaudeCliInvoker(command=settings.agent.argv))
        engine.subscribe(_progress_printer(emit=emit, verbose=command.verbose))
        with _signal_handlers(engine):
            summary = engine.run(command.plan_path, settings)
        return CommandResult(lines=_summary_lines(summary), success=summary.ok)

    def show_plan(self, command: PlanShowCommand) -> list[str]:
        tasks = parse_plan(read_plan(command.plan_path))
        if not tasks:
            return [f"Plan {command.plan_path}: no tasks"]

        counts = count_by_status(tasks)
        lines = [
            f"Plan {command.plan_path}: {len(tasks)} task(s)",
            "Status: "
            + " ".join(f"{status.value}={counts.get(status, 0)}" for status in TaskStatus),
        ]
        for task in tasks:
            lines.append(f"  {task.index:>3} [{task.status.marker}] {task.text}")
        return lines

    def set_status(self, command: PlanSetStatusCommand) -> list[str]:
        status = TaskStatus(command.status.strip().lower())
        changed = update_task_status(command.plan_path, command.index, status)
        if not changed:
            return [f"Task {command.index} already {status.value}; plan unchanged"]
        return [f"Task {command.index} set to {status.value}"]

    def smoke(self, command: SmokeCommand) -> CommandResult:
        settings = Settings.from_env()
        if command.agent_command is not None:
            settings.agent.command = command.agent_command
        settings.validate()
        argv = settings.agent.argv

        lines = [
            "Agent smoke check:",
            f"command={' '.join(argv)}",
            f"prompt={SMOKE_PROMPT!r}",
            f"timeout_ms={command.timeout_ms}",
        ]
        available = shutil.which(argv[0]) is not None
        lines.append(f"available={'yes' if available else 'no'}")

        try:
            result = ClaudeCliInvoker(command=argv).run(
                InvocationRequest(
                    prompt=SMOKE_PROMPT,
                    model=settings.agent.model,
                    max_turns=1,
                    timeout_ms=command.timeout_ms,
                    verbose=settings.agent.verbose,
                ),
            )
        except InvocationError as error:
            lines.append(f"run=failed error={error.code}: {error}")
            lines.append("Smoke status: failed")
            lines.append(
                "Hint: configure the agent with WORK_LOOP_AGENT_COMMAND or --agent-command.",
            )
            return CommandResult(lines=lines, success=False)

        success = SMOKE_EXPECT_SUBSTRING in result.text
        lines.append(
            f"run={'ok' if success else 'unexpected'} session={result.session_id or '-'} "
            f"tokens={result.usage.total_tokens if result.usage else '-'} "
            f"duration_ms={result.duration_ms}",
        )
        lines.append(f"  text={result.text[:200]!r}")
        lines.append(f"Smoke status: {'passed' if success else 'failed'}")
        return CommandResult(lines=lines, success=success)


def _run_settings(command: RunCommand) -> Settings:
    settings = Settings.from_env()
    if command.model is not None:
        settings.agent.model = command.model
    if command.max_turns is not None:
        settings.agent.max_turns = command.max_turns
    if command.timeout_ms is not None:
        settings.agent.timeout_ms = command.timeout_ms
    if command.max_attempts is not None:
        settings.loop.max_attempts = command.max_attempts
    if command.max_iterations is not None:
        settings.loop.max_iterations = command.max_iterations
    if command.working_directory is not None:
        settings.loop.working_directory = command.working_directory
    if command.verify_command is not None:
        settings.loop.verify_command = command.verify_command
    if command.domain is not None:
        settings.loop.domain = WorkDomain(command.domain.lower())
    if command.selection_policy is not None:
        settings.loop.selection_policy = SelectionPolicy(command.selection_policy.lower())
    if command.auto_commit is not None:
        settings.loop.auto_commit = command.auto_commit
    return settings


def _progress_printer(*, emit: LineSink, verbose: bool) -> Callable[[ProgressEvent], None]:
    def _print(event: ProgressEvent) -> None:
        if event.type is ProgressEventType.TASK_TEXT:
            if verbose and event.incremental_text:
                emit(f"    {event.incremental_text.rstrip()}")
            return
        if event.type is ProgressEventType.LOOP_DONE:
            return
        emit(f"[{event.iteration}] {event.message}")

    return _print


def _summary_lines(summary: RunSummary) -> list[str]:
    lines = [
        "Work loop summary: "
        f"halt={summary.halt_reason.value if summary.halt_reason else '-'} "
        f"iterations={summary.iterations} invocations={summary.invocations} "
        f"done={summary.done} blocked={summary.blocked} remaining={summary.remaining} "
        f"duration_ms={summary.duration_ms}",
    ]
    if summary.error is not None:
        lines.append(f"Error: {summary.error.code}: {summary.error}")
    return lines


@contextmanager
def _signal_handlers(engine: WorkLoopEngine) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        if engine.abort_requested:
            raise KeyboardInterrupt
        logger.warning("Received %s; finishing current step and stopping", name)
        engine.abort()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        try:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
        except ValueError:
            pass

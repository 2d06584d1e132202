"""Loop coordinator that drives plan tasks through the agent one at a time."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from work_loop.config import SelectionPolicy, Settings
from work_loop.engine.autocommit import commit_work
from work_loop.engine.backend.base import (
    AgentEvent,
    AgentEventKind,
    AgentInvoker,
    InvocationRequest,
    InvocationResult,
)
from work_loop.engine.failure_classifier import FailureDisposition, classify_invocation_failure
from work_loop.engine.prompts import build_work_prompt
from work_loop.engine.verify import run_verification
from work_loop.errors import (
    AbortedError,
    InvocationError,
    PlanError,
    TaskNotFoundError,
    WorkLoopError,
)
from work_loop.plan.models import PlanTask, TaskStatus
from work_loop.plan.mutator import update_task_status
from work_loop.plan.parser import (
    count_by_status,
    is_settled,
    parse_plan,
    read_plan,
    select_next_task,
)

logger = logging.getLogger(__name__)


class HaltReason(str, Enum):
    """Why a run stopped."""

    EMPTY_PLAN = "empty_plan"
    ALL_SETTLED = "all_settled"
    MAX_ITERATIONS = "max_iterations"
    ABORTED = "aborted"
    ERROR = "error"


class ProgressEventType(str, Enum):
    LOOP_START = "loop_start"
    TASK_START = "task_start"
    TASK_TEXT = "task_text"
    TASK_DONE = "task_done"
    TASK_RETRY = "task_retry"
    TASK_BLOCKED = "task_blocked"
    TASK_ERROR = "task_error"
    LOOP_DONE = "loop_done"


@dataclass(slots=True)
class ProgressEvent:
    """Read-only notification describing loop progress."""

    type: ProgressEventType
    iteration: int
    message: str
    task_index: int | None = None
    task_text: str | None = None
    previous_status: TaskStatus | None = None
    new_status: TaskStatus | None = None
    incremental_text: str | None = None
    result: InvocationResult | None = None
    error: WorkLoopError | None = None
    duration_ms: int | None = None


ProgressObserver = Callable[[ProgressEvent], None]


@dataclass(slots=True)
class RunSummary:
    """Aggregate outcome of one ``run()`` call."""

    iterations: int = 0
    invocations: int = 0
    status_counts: dict[TaskStatus, int] = field(default_factory=dict)
    halt_reason: HaltReason | None = None
    error: WorkLoopError | None = None
    duration_ms: int = 0
    events: list[ProgressEvent] = field(default_factory=list)

    @property
    def done(self) -> int:
        return self.status_counts.get(TaskStatus.DONE, 0)

    @property
    def blocked(self) -> int:
        return self.status_counts.get(TaskStatus.BLOCKED, 0)

    @property
    def remaining(self) -> int:
        return self.status_counts.get(TaskStatus.OPEN, 0) + self.status_counts.get(
            TaskStatus.IN_PROGRESS,
            0,
        )

    @property
    def aborted(self) -> bool:
        return self.halt_reason is HaltReason.ABORTED

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class _RunState:
    """Per-run bookkeeping, discarded when ``run()`` returns."""

    failures: dict[int, int] = field(default_factory=dict)
    session_ids: dict[int, str] = field(default_factory=dict)
    last_errors: dict[int, str] = field(default_factory=dict)


class WorkLoopEngine:
    """Select, execute and record plan tasks until the plan settles or abort is requested.

    Only one invocation is ever in flight. ``abort()`` is idempotent, may be
    called from any thread, and stays in effect until ``reset()``.
    """

    def __init__(
        self,
        *,
        invoker: AgentInvoker,
        observers: Iterable[ProgressObserver] = (),
    ) -> None:
        self.invoker = invoker
        self._observers: list[ProgressObserver] = list(observers)
        self._abort_requested = threading.Event()
        self._running = False

    @property
    def abort_requested(self) -> bool:
        return self._abort_requested.is_set()

    def subscribe(self, observer: ProgressObserver) -> None:
        self._observers.append(observer)

    def abort(self) -> None:
        """Stop before the next iteration and cancel the in-flight invocation."""

        if not self._abort_requested.is_set():
            logger.info("Abort requested")
        self._abort_requested.set()
        self.invoker.abort()

    def reset(self) -> None:
        """Clear a previous abort so the engine can run again."""

        if self._running:
            raise RuntimeError("Cannot reset a running work loop.")
        self._abort_requested.clear()

    def run(self, plan_path: Path, config: Settings) -> RunSummary:
        """Run the loop against ``plan_path`` and return the run summary."""

        if self._running:
            raise RuntimeError("Work loop is already running.")
        summary = RunSummary()
        start_monotonic = time.monotonic()
        self._running = True
        try:
            self._loop(plan_path=plan_path, config=config, summary=summary)
        finally:
            self._running = False
        summary.status_counts = _final_counts(plan_path)
        summary.duration_ms = int((time.monotonic() - start_monotonic) * 1000)
        halt = summary.halt_reason.value if summary.halt_reason else None
        self._emit(
            summary,
            ProgressEvent(
                type=ProgressEventType.LOOP_DONE,
                iteration=summary.iterations + 1,
                message=(
                    f"Work loop finished ({halt or '-'}): "
                    f"{summary.done} done, {summary.blocked} blocked, "
                    f"{summary.remaining} remaining"
                ),
                error=summary.error,
                duration_ms=summary.duration_ms,
            ),
        )
        logger.info(
            "Work loop finished: reason=%s iterations=%d invocations=%d done=%d blocked=%d",
            halt,
            summary.iterations,
            summary.invocations,
            summary.done,
            summary.blocked,
        )
        return summary

    def _loop(self, *, plan_path: Path, config: Settings, summary: RunSummary) -> None:
        if self._abort_requested.is_set():
            _halt(summary, HaltReason.ABORTED, AbortedError("Work loop was aborted before start"))
            return

        self._emit(
            summary,
            ProgressEvent(
                type=ProgressEventType.LOOP_START,
                iteration=0,
                message=f"Starting work loop with plan: {plan_path}",
            ),
        )
        state = _RunState()
        max_iterations = config.loop.max_iterations
        while True:
            if self._abort_requested.is_set():
                _halt(summary, HaltReason.ABORTED, AbortedError())
                return
            if max_iterations > 0 and summary.iterations >= max_iterations:
                _halt(summary, HaltReason.MAX_ITERATIONS)
                return

            try:
                tasks = parse_plan(read_plan(plan_path))
            except PlanError as error:
                _halt(summary, HaltReason.ERROR, error)
                return
            if not tasks:
                logger.info("Plan %s has no tasks; nothing to do", plan_path)
                _halt(summary, HaltReason.EMPTY_PLAN)
                return
            if is_settled(tasks):
                _halt(summary, HaltReason.ALL_SETTLED)
                return

            task = select_next_task(
                tasks,
                resume_first=config.loop.selection_policy is SelectionPolicy.RESUME_FIRST,
            )
            if task is None:
                _halt(summary, HaltReason.ALL_SETTLED)
                return

            summary.iterations += 1
            terminal_error = self._run_iteration(
                plan_path=plan_path,
                config=config,
                task=task,
                iteration=summary.iterations,
                state=state,
                summary=summary,
            )
            if terminal_error is not None:
                aborted = isinstance(terminal_error, AbortedError)
                reason = HaltReason.ABORTED if aborted else HaltReason.ERROR
                _halt(summary, reason, terminal_error)
                return

    def _run_iteration(  # noqa: PLR0913
        self,
        *,
        plan_path: Path,
        config: Settings,
        task: PlanTask,
        iteration: int,
        state: _RunState,
        summary: RunSummary,
    ) -> WorkLoopError | None:
        try:
            update_task_status(plan_path, task.index, TaskStatus.IN_PROGRESS)
            self._emit(
                summary,
                _task_event(
                    ProgressEventType.TASK_START,
                    iteration=iteration,
                    task=task,
                    new_status=TaskStatus.IN_PROGRESS,
                    message=f"Starting task {task.index + 1}: {task.text}",
                ),
            )
            logger.info("Iteration %d: task %d %r", iteration, task.index, task.text)

            request = self._build_request(
                plan_path=plan_path,
                config=config,
                task=task,
                iteration=iteration,
                state=state,
            )
            summary.invocations += 1
            try:
                result = self.invoker.run(
                    request,
                    listener=lambda event: self._forward_agent_event(
                        summary,
                        iteration,
                        task,
                        event,
                    ),
                )
                if result.session_id:
                    state.session_ids[task.index] = result.session_id
                if config.loop.verify_command:
                    run_verification(
                        config.loop.verify_command,
                        cwd=config.loop.working_directory,
                        timeout_seconds=config.loop.verify_timeout_seconds,
                        shutdown_requested=self._abort_requested.is_set,
                    )
            except InvocationError as error:
                return self._handle_failure(
                    plan_path=plan_path,
                    config=config,
                    task=task,
                    iteration=iteration,
                    state=state,
                    summary=summary,
                    error=error,
                )

            update_task_status(plan_path, task.index, TaskStatus.DONE)
            self._emit(
                summary,
                _task_event(
                    ProgressEventType.TASK_DONE,
                    iteration=iteration,
                    task=task,
                    new_status=TaskStatus.DONE,
                    message=f"Completed task {task.index + 1}: {task.text}",
                    result=result,
                    duration_ms=result.duration_ms,
                ),
            )
            logger.info("Task %d done in %dms", task.index, result.duration_ms)
            if config.loop.commit_after_task:
                commit_work(f"Complete: {task.text}", cwd=config.loop.working_directory)
            return None
        except TaskNotFoundError as error:
            logger.warning("Plan changed during iteration %d: %s", iteration, error)
            self._emit(
                summary,
                _task_event(
                    ProgressEventType.TASK_ERROR,
                    iteration=iteration,
                    task=task,
                    new_status=None,
                    message=str(error),
                    error=error,
                ),
            )
            return None
        except PlanError as error:
            return error

    def _handle_failure(  # noqa: PLR0913
        self,
        *,
        plan_path: Path,
        config: Settings,
        task: PlanTask,
        iteration: int,
        state: _RunState,
        summary: RunSummary,
        error: InvocationError,
    ) -> WorkLoopError | None:
        classification = classify_invocation_failure(error)
        if error.session_id:
            state.session_ids[task.index] = error.session_id

        if classification.disposition is FailureDisposition.TERMINATE:
            self._emit(
                summary,
                _task_event(
                    ProgressEventType.TASK_ERROR,
                    iteration=iteration,
                    task=task,
                    new_status=TaskStatus.IN_PROGRESS,
                    message=f"Error on task {task.index + 1}: {error}",
                    error=error,
                ),
            )
            return error

        failures = state.failures.get(task.index, 0) + 1
        state.failures[task.index] = failures
        state.last_errors[task.index] = str(error)

        if (
            classification.disposition is FailureDisposition.BLOCK
            or failures >= config.loop.max_attempts
        ):
            update_task_status(plan_path, task.index, TaskStatus.BLOCKED)
            self._emit(
                summary,
                _task_event(
                    ProgressEventType.TASK_BLOCKED,
                    iteration=iteration,
                    task=task,
                    new_status=TaskStatus.BLOCKED,
                    message=(
                        f"Blocked task {task.index + 1} after {failures} failed attempt(s) "
                        f"({classification.reason_code}): {error}"
                    ),
                    error=error,
                ),
            )
            logger.info(
                "Task %d blocked: reason=%s attempts=%d",
                task.index,
                classification.reason_code,
                failures,
            )
            return None

        self._emit(
            summary,
            _task_event(
                ProgressEventType.TASK_RETRY,
                iteration=iteration,
                task=task,
                new_status=TaskStatus.IN_PROGRESS,
                message=(
                    f"Retrying task {task.index + 1} "
                    f"(attempt {failures + 1}/{config.loop.max_attempts}): {error}"
                ),
                error=error,
            ),
        )
        logger.warning(
            "Task %d failed (%s), will retry: %s",
            task.index,
            classification.reason_code,
            error,
        )
        return None

    def _build_request(
        self,
        *,
        plan_path: Path,
        config: Settings,
        task: PlanTask,
        iteration: int,
        state: _RunState,
    ) -> InvocationRequest:
        resume_session_id = (
            state.session_ids.get(task.index) if config.loop.resume_sessions else None
        )
        return InvocationRequest(
            prompt=build_work_prompt(
                task,
                domain=config.loop.domain,
                verify_command=config.loop.verify_command,
                previous_error=state.last_errors.get(task.index),
            ),
            resume_session_id=resume_session_id,
            system_prompt=config.agent.system_prompt,
            tool_config=config.agent.tool_config(),
            max_turns=config.agent.max_turns or None,
            model=config.agent.model,
            working_directory=config.loop.working_directory,
            timeout_ms=config.agent.timeout_ms or None,
            verbose=config.agent.verbose,
            shutdown_requested=self._abort_requested.is_set,
            graceful_shutdown_seconds=config.agent.graceful_shutdown_seconds,
            env={
                "WORK_LOOP_PLAN_PATH": str(plan_path),
                "WORK_LOOP_TASK_INDEX": str(task.index),
                "WORK_LOOP_ITERATION": str(iteration),
            },
        )

    def _forward_agent_event(
        self,
        summary: RunSummary,
        iteration: int,
        task: PlanTask,
        event: AgentEvent,
    ) -> None:
        if event.kind is not AgentEventKind.TEXT or not event.text:
            return
        self._emit(
            summary,
            _task_event(
                ProgressEventType.TASK_TEXT,
                iteration=iteration,
                task=task,
                new_status=TaskStatus.IN_PROGRESS,
                message=event.text,
                incremental_text=event.text,
            ),
        )

    def _emit(self, summary: RunSummary, event: ProgressEvent) -> None:
        summary.events.append(event)
        for observer in self._observers:
            try:
                observer(event)
            except Exception:
                logger.exception("Progress observer failed on %s event", event.type.value)


def _task_event(  # noqa: PLR0913
    event_type: ProgressEventType,
    *,
    iteration: int,
    task: PlanTask,
    new_status: TaskStatus | None,
    message: str,
    incremental_text: str | None = None,
    result: InvocationResult | None = None,
    error: WorkLoopError | None = None,
    duration_ms: int | None = None,
) -> ProgressEvent:
    return ProgressEvent(
        type=event_type,
        iteration=iteration,
        message=message,
        task_index=task.index,
        task_text=task.text,
        previous_status=task.status,
        new_status=new_status,
        incremental_text=incremental_text,
        result=result,
        error=error,
        duration_ms=duration_ms,
    )


def _halt(summary: RunSummary, reason: HaltReason, error: WorkLoopError | None = None) -> None:
    summary.halt_reason = reason
    summary.error = error
    if error is not None:
        logger.warning("Work loop halted (%s): %s", reason.value, error)


def _final_counts(plan_path: Path) -> dict[TaskStatus, int]:
    try:
        return count_by_status(parse_plan(read_plan(plan_path)))
    except PlanError as error:
        logger.warning("Cannot read final plan state: %s", error)
        return {}

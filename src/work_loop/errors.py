"""Error taxonomy shared by plan handling, agent invocation and the loop engine."""

from __future__ import annotations

from pathlib import Path


class WorkLoopError(RuntimeError):
    """Base error with a machine-readable code."""

    code = "work_loop_error"


class PlanError(WorkLoopError):
    """Plan file could not be read, decoded or updated."""

    code = "plan_error"

    def __init__(self, message: str, *, path: Path) -> None:
        super().__init__(message)
        self.path = path


class PlanIOError(PlanError):
    code = "plan_io"


class MalformedPlanError(PlanError):
    code = "malformed_plan"


class TaskNotFoundError(PlanError):
    code = "task_not_found"

    def __init__(self, *, path: Path, index: int) -> None:
        super().__init__(f"Task index {index} not found in {path}", path=path)
        self.index = index


class InvocationError(WorkLoopError):
    """Agent invocation failure with retryability hint."""

    code = "invocation_error"

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient
        self.session_id: str | None = None


class AgentNotInstalledError(InvocationError):
    code = "agent_not_installed"

    def __init__(self, executable: str) -> None:
        super().__init__(
            f"Agent executable not found: {executable}. "
            "Install the claude CLI or set WORK_LOOP_AGENT_COMMAND.",
            transient=False,
        )
        self.executable = executable


class ProcessFailureError(InvocationError):
    code = "process_failure"

    def __init__(self, diagnostic: str, *, exit_code: int | None) -> None:
        super().__init__(f"Agent process failed: {diagnostic}", transient=True)
        self.diagnostic = diagnostic
        self.exit_code = exit_code


class AgentReportedError(InvocationError):
    code = "agent_error"

    def __init__(self, message: str, *, subtype: str | None = None) -> None:
        super().__init__(message, transient=False)
        self.subtype = subtype


class InvocationTimeoutError(InvocationError):
    code = "timeout"

    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"Agent process timed out after {timeout_ms}ms", transient=True)
        self.timeout_ms = timeout_ms


class AbortedError(InvocationError):
    code = "aborted"

    def __init__(self, message: str = "Work loop was aborted") -> None:
        super().__init__(message, transient=False)


class VerificationFailedError(InvocationError):
    code = "verification_failed"

    def __init__(self, *, command: str, output: str) -> None:
        super().__init__(f"Verification command failed: {command}", transient=True)
        self.command = command
        self.output = output

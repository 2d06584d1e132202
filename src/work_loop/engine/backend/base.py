"""Backend interface for one agent invocation."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol


class InvocationState(str, Enum):
    """Per-invocation lifecycle; terminal states never transition again."""

    IDLE = "idle"
    SPAWNING = "spawning"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (
            InvocationState.COMPLETED,
            InvocationState.FAILED,
            InvocationState.TIMED_OUT,
            InvocationState.ABORTED,
        )


@dataclass(slots=True)
class ToolConfig:
    """Tool and permission configuration forwarded to the agent."""

    allowed_tools: tuple[str, ...] = ()
    permission_mode: str | None = None
    mcp_config_path: Path | None = None


@dataclass(slots=True)
class InvocationRequest:
    """Inputs required to execute one agent invocation."""

    prompt: str
    resume_session_id: str | None = None
    system_prompt: str | None = None
    tool_config: ToolConfig | None = None
    max_turns: int | None = None
    model: str | None = None
    working_directory: Path | None = None
    timeout_ms: int | None = None
    verbose: bool = True
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: float | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class TokenUsage:
    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(slots=True)
class InvocationResult:
    """Terminal outcome of a successful invocation."""

    text: str
    session_id: str
    usage: TokenUsage | None
    duration_ms: int


class AgentEventKind(str, Enum):
    DATA = "data"
    TEXT = "text"
    ERROR = "error"
    DONE = "done"


@dataclass(slots=True)
class AgentEvent:
    """Notification published to invocation listeners in arrival order."""

    kind: AgentEventKind
    data: dict[str, Any] | None = None
    text: str | None = None
    error: Exception | None = None
    result: InvocationResult | None = None


AgentListener = Callable[[AgentEvent], None]


class AgentInvoker(Protocol):
    """Protocol implemented by agent invokers."""

    def run(
        self,
        request: InvocationRequest,
        listener: AgentListener | None = None,
    ) -> InvocationResult:
        """Run one invocation and return its result or raise an ``InvocationError``."""

    def abort(self) -> None:
        """Cancel any in-flight invocation; safe to call at any time."""

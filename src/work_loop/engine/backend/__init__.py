"""Agent invocation backends."""

from work_loop.engine.backend.base import (
    AgentEvent,
    AgentEventKind,
    AgentInvoker,
    AgentListener,
    InvocationRequest,
    InvocationResult,
    InvocationState,
    TokenUsage,
    ToolConfig,
)
from work_loop.engine.backend.cli_backend import ClaudeCliInvoker, build_agent_args

__all__ = [
    "AgentEvent",
    "AgentEventKind",
    "AgentInvoker",
    "AgentListener",
    "ClaudeCliInvoker",
    "InvocationRequest",
    "InvocationResult",
    "InvocationState",
    "TokenUsage",
    "ToolConfig",
    "build_agent_args",
]

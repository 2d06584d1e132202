"""Runtime configuration for the agent invoker and the work loop."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TypeVar

from work_loop.engine.backend.base import ToolConfig

_E = TypeVar("_E", bound=Enum)


class SelectionPolicy(str, Enum):
    """Which actionable task the loop picks when open and in-progress tasks coexist."""

    PREFER_OPEN = "prefer_open"
    RESUME_FIRST = "resume_first"


class WorkDomain(str, Enum):
    """Domain selecting the guidelines embedded in work prompts."""

    CODING = "coding"
    RESEARCH = "research"
    OPS = "ops"
    GENERAL = "general"


@dataclass(slots=True)
class AgentSettings:
    """Agent executable and per-invocation settings."""

    command: str = "claude"
    model: str | None = None
    timeout_ms: int = 1_800_000
    max_turns: int = 25
    system_prompt: str | None = None
    allowed_tools: tuple[str, ...] = ()
    permission_mode: str | None = None
    mcp_config_path: Path | None = None
    verbose: bool = True
    graceful_shutdown_seconds: float = 0.0

    @property
    def argv(self) -> tuple[str, ...]:
        return tuple(shlex.split(self.command))

    def tool_config(self) -> ToolConfig | None:
        if not self.allowed_tools and not self.permission_mode and self.mcp_config_path is None:
            return None
        return ToolConfig(
            allowed_tools=self.allowed_tools,
            permission_mode=self.permission_mode,
            mcp_config_path=self.mcp_config_path,
        )


@dataclass(slots=True)
class LoopSettings:
    """Work loop policy settings."""

    max_attempts: int = 3
    max_iterations: int = 50
    selection_policy: SelectionPolicy = SelectionPolicy.PREFER_OPEN
    resume_sessions: bool = True
    working_directory: Path | None = None
    domain: WorkDomain = WorkDomain.GENERAL
    verify_command: str | None = None
    verify_timeout_seconds: int = 300
    auto_commit: bool | None = None

    @property
    def commit_after_task(self) -> bool:
        """Commit after each done task; unset means only for the coding domain."""

        if self.auto_commit is not None:
            return self.auto_commit
        return self.domain is WorkDomain.CODING


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    agent: AgentSettings = field(default_factory=AgentSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults suited to a local checkout."""

        mcp_config = os.getenv("WORK_LOOP_MCP_CONFIG", "").strip()
        workdir = os.getenv("WORK_LOOP_WORKDIR", "").strip()
        return cls(
            agent=AgentSettings(
                command=os.getenv("WORK_LOOP_AGENT_COMMAND", "claude"),
                model=_env_optional("WORK_LOOP_MODEL"),
                timeout_ms=int(os.getenv("WORK_LOOP_TIMEOUT_MS", "1800000")),
                max_turns=int(os.getenv("WORK_LOOP_MAX_TURNS", "25")),
                system_prompt=_env_optional("WORK_LOOP_SYSTEM_PROMPT"),
                allowed_tools=_env_csv("WORK_LOOP_ALLOWED_TOOLS"),
                permission_mode=_env_optional("WORK_LOOP_PERMISSION_MODE"),
                mcp_config_path=Path(mcp_config) if mcp_config else None,
                verbose=_env_bool("WORK_LOOP_AGENT_VERBOSE", default=True),
                graceful_shutdown_seconds=float(
                    os.getenv("WORK_LOOP_GRACEFUL_SHUTDOWN_SECONDS", "0"),
                ),
            ),
            loop=LoopSettings(
                max_attempts=int(os.getenv("WORK_LOOP_MAX_ATTEMPTS", "3")),
                max_iterations=int(os.getenv("WORK_LOOP_MAX_ITERATIONS", "50")),
                selection_policy=_env_enum(
                    "WORK_LOOP_SELECTION_POLICY",
                    SelectionPolicy,
                    SelectionPolicy.PREFER_OPEN,
                ),
                resume_sessions=_env_bool("WORK_LOOP_RESUME_SESSIONS", default=True),
                working_directory=Path(workdir) if workdir else None,
                domain=_env_enum("WORK_LOOP_DOMAIN", WorkDomain, WorkDomain.GENERAL),
                verify_command=_env_optional("WORK_LOOP_VERIFY_COMMAND"),
                verify_timeout_seconds=int(os.getenv("WORK_LOOP_VERIFY_TIMEOUT_SECONDS", "300")),
                auto_commit=_env_optional_bool("WORK_LOOP_AUTO_COMMIT"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the loop cannot run with."""

        if not self.agent.argv:
            raise ValueError("WORK_LOOP_AGENT_COMMAND must not be empty.")
        if self.agent.timeout_ms < 0:
            raise ValueError("WORK_LOOP_TIMEOUT_MS must be >= 0 (0 disables the timeout).")
        if self.agent.max_turns < 0:
            raise ValueError("WORK_LOOP_MAX_TURNS must be >= 0.")
        if self.agent.graceful_shutdown_seconds < 0:
            raise ValueError("WORK_LOOP_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.loop.max_attempts <= 0:
            raise ValueError("WORK_LOOP_MAX_ATTEMPTS must be a positive integer.")
        if self.loop.max_iterations < 0:
            raise ValueError("WORK_LOOP_MAX_ITERATIONS must be >= 0 (0 means unbounded).")
        if self.loop.verify_timeout_seconds <= 0:
            raise ValueError("WORK_LOOP_VERIFY_TIMEOUT_SECONDS must be a positive integer.")
        if self.loop.working_directory is not None and not self.loop.working_directory.is_dir():
            raise ValueError(
                f"Working directory does not exist: {self.loop.working_directory}",
            )


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_enum(name: str, enum_type: type[_E], default: _E) -> _E:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return enum_type(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(member.value for member in enum_type)
        raise ValueError(
            f"Invalid value for {name}: {value!r} (expected one of {allowed})",
        ) from error


def _env_optional_bool(name: str) -> bool | None:
    if not os.getenv(name, "").strip():
        return None
    return _env_bool(name, default=False)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")

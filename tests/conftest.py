"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

ECHO_AGENT_COMMAND: tuple[str, ...] = (
    sys.executable,
    "-m",
    "work_loop.engine.backend.echo_agent",
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch) -> None:
    """Drop WORK_LOOP_* variables leaking in from the developer shell."""

    for name in list(os.environ):
        if name.startswith("WORK_LOOP_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def echo_command() -> tuple[str, ...]:
    return ECHO_AGENT_COMMAND


@pytest.fixture()
def write_plan(tmp_path: Path) -> Callable[[str], Path]:
    """Write plan text byte-for-byte (no newline translation) and return its path."""

    def _write(text: str, name: str = "PLAN.md") -> Path:
        path = tmp_path / name
        path.write_bytes(text.encode("utf-8"))
        return path

    return _write

"""Best-effort git commit of the agent's work after a completed task."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from work_loop.sanitization import sanitize_diagnostic

logger = logging.getLogger(__name__)


def commit_work(message: str, *, cwd: Path | None, timeout_seconds: int = 30) -> bool:
    """Stage every change under ``cwd`` and commit it; return whether a commit was made.

    Git problems are logged and never fail the loop: the task is already done.
    """

    try:
        inside = _git(["rev-parse", "--is-inside-work-tree"], cwd=cwd, timeout=timeout_seconds)
        if inside.returncode != 0:
            logger.debug("Not a git work tree, skipping commit: %s", cwd or ".")
            return False
        _git(["add", "-A"], cwd=cwd, timeout=timeout_seconds, check=True)
        staged = _git(["diff", "--cached", "--quiet"], cwd=cwd, timeout=timeout_seconds)
        if staged.returncode == 0:
            logger.info("Nothing to commit after task")
            return False
        _git(["commit", "-m", message], cwd=cwd, timeout=timeout_seconds, check=True)
    except subprocess.CalledProcessError as error:
        logger.warning(
            "Auto-commit failed (git %s): %s",
            error.cmd[1] if len(error.cmd) > 1 else "?",
            sanitize_diagnostic(f"{error.stdout or ''}\n{error.stderr or ''}") or error,
        )
        return False
    except (OSError, subprocess.TimeoutExpired) as error:
        logger.warning("Auto-commit skipped: %s", error)
        return False

    logger.info("Committed task work: %s", message)
    return True


def _git(
    args: list[str],
    *,
    cwd: Path | None,
    timeout: int,
    check: bool = False,
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(  # noqa: S603
        ["git", *args],  # noqa: S607
        cwd=cwd,
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        timeout=timeout,
        check=check,
    )

"""In-place status rewrites for checklist plans."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from work_loop.errors import PlanIOError, TaskNotFoundError
from work_loop.plan.models import TaskStatus
from work_loop.plan.parser import TASK_LINE_RE, parse_plan, read_plan

logger = logging.getLogger(__name__)


def update_task_status(path: Path, index: int, status: TaskStatus) -> bool:
    """Rewrite one task's marker, leaving every other byte untouched.

    The target is located by re-parsing the current file content. Returns
    ``False`` when the task already had ``status`` and nothing was written.
    """

    content = read_plan(path)
    tasks = parse_plan(content)
    if index < 0 or index >= len(tasks):
        raise TaskNotFoundError(path=path, index=index)

    task = tasks[index]
    if task.status is status:
        return False

    lines = content.split("\n")
    line = lines[task.line_number]
    match = TASK_LINE_RE.match(line)
    if match is None:
        raise TaskNotFoundError(path=path, index=index)
    start, end = match.span("marker")
    lines[task.line_number] = f"{line[:start]}{status.marker}{line[end:]}"

    _write_text_atomic(path, "\n".join(lines))
    logger.debug(
        "Plan task %d status %s -> %s in %s",
        index,
        task.status.value,
        status.value,
        path,
    )
    return True


def _write_text_atomic(path: Path, text: str) -> None:
    try:
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    except OSError as error:
        raise PlanIOError(f"Cannot write plan file {path}: {error}", path=path) from error
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        _copy_mode(source=path, target=Path(tmp))
        os.replace(tmp, path)
    except OSError as error:
        raise PlanIOError(f"Cannot write plan file {path}: {error}", path=path) from error
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)


def _copy_mode(*, source: Path, target: Path) -> None:
    try:
        mode = source.stat().st_mode
    except FileNotFoundError:
        return
    os.chmod(target, mode & 0o7777)

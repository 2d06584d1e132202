"""Checklist plan parser.

A task line is ``- [marker] text`` at any indentation, where the marker is
one of `` `` (open), ``x``/``X`` (done), ``~`` (in progress) or ``!`` (blocked).
Every other line is inert context. Lines are split on ``\\n`` only so that line
numbers match what the mutator rewrites.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Iterable, Sequence
from pathlib import Path

from work_loop.errors import MalformedPlanError, PlanIOError
from work_loop.plan.models import PlanTask, TaskStatus

TASK_LINE_RE = re.compile(r"^\s*-\s*\[(?P<marker>[xX !~])\]\s+(?P<text>.+)$")


def parse_plan(text: str) -> list[PlanTask]:
    """Parse plan text into tasks in document order."""

    tasks: list[PlanTask] = []
    for line_number, line in enumerate(text.split("\n")):
        match = TASK_LINE_RE.match(line)
        if match is None:
            continue
        tasks.append(
            PlanTask(
                index=len(tasks),
                text=match.group("text").strip(),
                status=TaskStatus.from_marker(match.group("marker")),
                line_number=line_number,
            ),
        )
    return tasks


def is_settled(tasks: Iterable[PlanTask]) -> bool:
    """Halt predicate: every task is done or blocked."""

    return all(task.status.is_settled for task in tasks)


def count_by_status(tasks: Iterable[PlanTask]) -> dict[TaskStatus, int]:
    counts = Counter(task.status for task in tasks)
    return {status: counts.get(status, 0) for status in TaskStatus}


def select_next_task(
    tasks: Sequence[PlanTask],
    *,
    resume_first: bool = False,
) -> PlanTask | None:
    """Pick the next actionable task.

    Default order is the first open task, then the earliest in-progress one.
    ``resume_first`` flips that preference.
    """

    first_open = next((task for task in tasks if task.status is TaskStatus.OPEN), None)
    first_in_progress = next(
        (task for task in tasks if task.status is TaskStatus.IN_PROGRESS),
        None,
    )
    if resume_first:
        return first_in_progress or first_open
    return first_open or first_in_progress


def read_plan(path: Path) -> str:
    """Read raw plan text without newline translation."""

    try:
        with path.open("r", encoding="utf-8", newline="") as handle:
            return handle.read()
    except UnicodeDecodeError as error:
        raise MalformedPlanError(f"Plan file is not valid UTF-8: {path}", path=path) from error
    except OSError as error:
        raise PlanIOError(f"Cannot read plan file {path}: {error}", path=path) from error

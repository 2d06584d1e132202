"""Domain models for checklist plans."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class TaskStatus(str, Enum):
    """Checklist task lifecycle states."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    BLOCKED = "blocked"

    @property
    def marker(self) -> str:
        return _STATUS_TO_MARKER[self]

    @property
    def is_settled(self) -> bool:
        """Settled tasks are never picked up again by the loop."""

        return self in (TaskStatus.DONE, TaskStatus.BLOCKED)

    @classmethod
    def from_marker(cls, marker: str) -> TaskStatus:
        try:
            return _MARKER_TO_STATUS[marker.lower()]
        except KeyError as error:
            raise ValueError(f"Unknown checklist marker: {marker!r}") from error


_STATUS_TO_MARKER: dict[TaskStatus, str] = {
    TaskStatus.OPEN: " ",
    TaskStatus.IN_PROGRESS: "~",
    TaskStatus.DONE: "x",
    TaskStatus.BLOCKED: "!",
}
_MARKER_TO_STATUS: dict[str, TaskStatus] = {
    marker: status for status, marker in _STATUS_TO_MARKER.items()
}


@dataclass(slots=True, frozen=True)
class PlanTask:
    """One checklist entry; valid only for the parse that produced it."""

    index: int
    text: str
    status: TaskStatus
    line_number: int

"""Checklist plan parsing and in-place status updates."""

from work_loop.plan.models import PlanTask, TaskStatus
from work_loop.plan.mutator import update_task_status
from work_loop.plan.parser import count_by_status, is_settled, parse_plan, read_plan

__all__ = [
    "PlanTask",
    "TaskStatus",
    "count_by_status",
    "is_settled",
    "parse_plan",
    "read_plan",
    "update_task_status",
]

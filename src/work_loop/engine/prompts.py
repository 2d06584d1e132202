"""Work prompt assembly."""

from __future__ import annotations

from work_loop.config import WorkDomain
from work_loop.plan.models import PlanTask

_GUIDELINES: dict[WorkDomain, tuple[str, ...]] = {
    WorkDomain.CODING: (
        "Focus exclusively on the current task.",
        "Write clean, production-quality code.",
        "Make sure all existing tests still pass.",
        "Do not modify code unrelated to this task.",
        "If you encounter a blocker that prevents completion, explain it clearly.",
    ),
    WorkDomain.RESEARCH: (
        "Focus on finding accurate, well-sourced information for this task.",
        "Cross-reference claims across multiple sources when possible.",
        "Distinguish between facts, expert opinions, and speculation.",
        "If you cannot find reliable information, say so clearly.",
    ),
    WorkDomain.OPS: (
        "Diagnose the issue systematically: check logs, metrics, and recent changes.",
        "Attempt automated remediation within your permission bounds.",
        "Document what you found and what you did.",
        "If the issue requires human intervention, escalate with a clear recommendation.",
    ),
    WorkDomain.GENERAL: (
        "Focus exclusively on completing this task to a high standard.",
        "Verify your work is correct before finishing.",
        "If you encounter a blocker, explain it clearly with a recommendation.",
        "Come back with results, not questions.",
    ),
}


def build_work_prompt(
    task: PlanTask,
    *,
    domain: WorkDomain = WorkDomain.GENERAL,
    verify_command: str | None = None,
    previous_error: str | None = None,
) -> str:
    """Render the prompt for one task iteration."""

    sections = [f"## Current Task\n\n{task.text}"]

    if previous_error:
        sections.append(
            "## Previous Attempt\n\n"
            f"The last attempt at this task failed:\n\n{previous_error}\n\n"
            "Address the failure before doing anything else.",
        )

    if verify_command:
        sections.append(
            "## Verification\n\n"
            "After you finish, this command will be run to verify the task:\n"
            f"```\n{verify_command}\n```\n"
            "Make sure your changes pass it.",
        )

    guidelines = "\n".join(f"- {line}" for line in _GUIDELINES[domain])
    sections.append(f"## Guidelines\n\n{guidelines}")
    return "\n\n".join(sections)

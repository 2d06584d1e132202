"""CLI entrypoint for work-loop."""

import logging
from pathlib import Path

import rich_click as click

from work_loop import __version__
from work_loop.config import SelectionPolicy, WorkDomain
from work_loop.controllers import (
    PlanSetStatusCommand,
    PlanShowCommand,
    RunCommand,
    SmokeCommand,
    WorkLoopCliController,
)
from work_loop.errors import WorkLoopError
from work_loop.plan.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = WorkLoopCliController()

_PLAN_OPTION = click.option(
    "--plan",
    "plan_path",
    type=click.Path(path_type=Path, dir_okay=False),
    required=True,
    help="Markdown plan file with `- [ ]` task lines.",
)


@click.group()
@click.version_option(version=__version__, prog_name="work-loop")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for diagnostics on stderr.",
)
def work_loop(log_level: str) -> None:
    """Drive a coding agent through a Markdown task plan."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@work_loop.command("run")
@_PLAN_OPTION
@click.option("--model", default=None, help="Model id passed to the agent.")
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=None,
    help="Failed attempts per task before it is blocked (default 3).",
)
@click.option(
    "--max-iterations",
    type=click.IntRange(min=0),
    default=None,
    help="Stop after this many iterations; 0 means unbounded (default 50).",
)
@click.option(
    "--max-turns",
    type=click.IntRange(min=0),
    default=None,
    help="Agent turn limit per invocation (default 25).",
)
@click.option(
    "--timeout-ms",
    type=click.IntRange(min=0),
    default=None,
    help="Per-invocation timeout in milliseconds; 0 disables it.",
)
@click.option(
    "--cwd",
    "working_directory",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Working directory for the agent and the verification command.",
)
@click.option(
    "--verify",
    "verify_command",
    default=None,
    help="Shell command that must succeed after each task, for example `pytest -q`.",
)
@click.option(
    "--domain",
    type=click.Choice([domain.value for domain in WorkDomain], case_sensitive=False),
    default=None,
    help="Guidelines embedded in the work prompt.",
)
@click.option(
    "--selection-policy",
    type=click.Choice([policy.value for policy in SelectionPolicy], case_sensitive=False),
    default=None,
    help="Pick open tasks first or resume in-progress tasks first.",
)
@click.option(
    "--auto-commit/--no-auto-commit",
    default=None,
    help="Commit the working tree after each done task (default: on for the coding domain).",
)
@click.option(
    "--verbose/--no-verbose",
    default=False,
    show_default=True,
    help="Print streamed agent text.",
)
def run(  # noqa: PLR0913
    plan_path: Path,
    model: str | None,
    max_attempts: int | None,
    max_iterations: int | None,
    max_turns: int | None,
    timeout_ms: int | None,
    working_directory: Path | None,
    verify_command: str | None,
    domain: str | None,
    selection_policy: str | None,
    auto_commit: bool | None,
    verbose: bool,
) -> None:
    """Run the work loop until every task is done or blocked.

    The first Ctrl-C stops after the current step; the task stays `in_progress`.
    """

    try:
        result = CONTROLLER.run(
            RunCommand(
                plan_path=plan_path,
                model=model,
                max_attempts=max_attempts,
                max_iterations=max_iterations,
                max_turns=max_turns,
                timeout_ms=timeout_ms,
                working_directory=working_directory,
                verify_command=verify_command,
                domain=domain,
                selection_policy=selection_policy,
                auto_commit=auto_commit,
                verbose=verbose,
            ),
            emit=click.echo,
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Work loop ended with an error.")


@work_loop.group()
def plan() -> None:
    """Plan file commands."""


@plan.command("show")
@_PLAN_OPTION
def plan_show(plan_path: Path) -> None:
    """List plan tasks with their status."""

    try:
        lines = CONTROLLER.show_plan(PlanShowCommand(plan_path=plan_path))
    except WorkLoopError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@plan.command("set-status")
@_PLAN_OPTION
@click.option("--index", type=click.IntRange(min=0), required=True, help="Zero-based task index.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    required=True,
    help="New task status.",
)
def plan_set_status(plan_path: Path, index: int, status: str) -> None:
    """Change one task status, for example to reopen a blocked task."""

    try:
        lines = CONTROLLER.set_status(
            PlanSetStatusCommand(plan_path=plan_path, index=index, status=status),
        )
    except WorkLoopError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@work_loop.command("smoke")
@click.option(
    "--agent-command",
    default=None,
    help="Agent command line; defaults to WORK_LOOP_AGENT_COMMAND or `claude`.",
)
@click.option(
    "--timeout-ms",
    type=click.IntRange(min=1000),
    default=120_000,
    show_default=True,
    help="Timeout for the smoke invocation.",
)
def smoke(agent_command: str | None, timeout_ms: int) -> None:
    """Run one tiny agent invocation to check the agent is usable."""

    try:
        result = CONTROLLER.smoke(SmokeCommand(agent_command=agent_command, timeout_ms=timeout_ms))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Agent smoke check failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    work_loop()

"""CLI entrypoint for doyaken."""

import logging
import os
import sys
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from doyaken import __version__
from doyaken.orchestrator.agents import SUPPORTED_AGENTS
from doyaken.orchestrator.controllers import (
    AuditCommand,
    CreateTaskCommand,
    DoyakenCliController,
    ListTasksCommand,
    ProjectCommand,
    ReleaseCommand,
    RunCommand,
    RunResult,
)
from doyaken.orchestrator.errors import DoyakenError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = DoyakenCliController(progress_sink=click.echo)

_project_option = click.option(
    "--project",
    "project_dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Project directory (defaults to the current directory).",
)
_agent_option = click.option(
    "--agent",
    type=click.Choice(list(SUPPORTED_AGENTS), case_sensitive=False),
    default=None,
    help="Agent CLI to drive.",
)
_model_option = click.option("--model", default=None, help="Starting model for the agent.")
_quiet_option = click.option("--quiet", is_flag=True, help="Print only the final summary.")
_verbose_option = click.option(
    "--verbose",
    is_flag=True,
    help="Print phase starts and raw agent output.",
)


@click.group()
@click.version_option(version=__version__, prog_name="doyaken")
def doyaken() -> None:
    """Run coding tasks through the **EXPAND → VERIFY** phase pipeline."""

    _configure_logging(verbose=False)


@doyaken.command("run")
@click.argument("max_tasks", type=click.IntRange(min=1), required=False, default=1)
@click.option("--task-id", default=None, help="Run exactly this task.")
@click.option("--dry-run", is_flag=True, help="Show what would run without invoking agents.")
@_quiet_option
@_verbose_option
@_agent_option
@_model_option
@_project_option
def run_command(  # noqa: PLR0913
    max_tasks: int,
    task_id: str | None,
    dry_run: bool,
    quiet: bool,
    verbose: bool,
    agent: str | None,
    model: str | None,
    project_dir: Path | None,
) -> None:
    """Run up to MAX_TASKS tasks through all phases.

    Exit code is 0 when every task reached DONE, 1 when any task was
    aborted and 130 when the run was cancelled.
    """

    verbosity = _verbosity(quiet=quiet, verbose=verbose)
    _configure_logging(verbose=verbosity == "verbose")
    _emit_result(
        lambda: CONTROLLER.run(
            RunCommand(
                project_dir=project_dir,
                max_tasks=max_tasks,
                task_id=task_id,
                dry_run=dry_run,
                verbosity=verbosity,
                agent=agent,
                model=model,
            ),
        ),
    )


@doyaken.command("task")
@click.argument("prompt")
@click.option(
    "--priority",
    type=click.IntRange(min=1, max=4),
    default=2,
    show_default=True,
    help="1 critical, 2 high, 3 medium, 4 low.",
)
@click.option("--no-run", is_flag=True, help="Only create the task file.")
@_quiet_option
@_verbose_option
@_agent_option
@_model_option
@_project_option
def task_command(  # noqa: PLR0913
    prompt: str,
    priority: int,
    no_run: bool,
    quiet: bool,
    verbose: bool,
    agent: str | None,
    model: str | None,
    project_dir: Path | None,
) -> None:
    """Create a task from PROMPT and run it immediately."""

    verbosity = _verbosity(quiet=quiet, verbose=verbose)
    _configure_logging(verbose=verbosity == "verbose")
    _emit_result(
        lambda: CONTROLLER.create_task(
            CreateTaskCommand(
                project_dir=project_dir,
                prompt=prompt,
                priority=priority,
                run=not no_run,
                verbosity=verbosity,
                agent=agent,
                model=model,
            ),
        ),
    )


@doyaken.command("tasks")
@click.option(
    "--state",
    type=click.Choice(["todo", "doing", "done"], case_sensitive=False),
    default=None,
    help="Only list tasks in this state.",
)
@_project_option
def tasks_command(state: str | None, project_dir: Path | None) -> None:
    """List tasks in priority order."""

    _emit_lines(
        _invoke(
            lambda: CONTROLLER.list_tasks(
                ListTasksCommand(
                    project_dir=project_dir,
                    state=state.lower() if state else None,
                ),
            ),
        ),
    )


@doyaken.command("status")
@_project_option
def status_command(project_dir: Path | None) -> None:
    """Show task counts, locks and in-flight checkpoints."""

    _emit_lines(_invoke(lambda: CONTROLLER.status(ProjectCommand(project_dir=project_dir))))


@doyaken.command("audit")
@click.option(
    "--last",
    type=click.IntRange(min=1),
    default=20,
    show_default=True,
    help="Number of most recent entries.",
)
@_project_option
def audit_command(last: int, project_dir: Path | None) -> None:
    """Show recent audit log entries."""

    _emit_lines(
        _invoke(lambda: CONTROLLER.audit(AuditCommand(project_dir=project_dir, last=last))),
    )


@doyaken.command("config")
@_project_option
def config_command(project_dir: Path | None) -> None:
    """Show the effective configuration."""

    _emit_lines(_invoke(lambda: CONTROLLER.show_config(ProjectCommand(project_dir=project_dir))))


@doyaken.command("release")
@click.option("--task-id", required=True, help="Task to release.")
@click.option(
    "--outcome",
    type=click.Choice(["failure", "success", "cancelled"], case_sensitive=False),
    default="failure",
    show_default=True,
    help="success moves the task to done; otherwise back to todo.",
)
@click.option(
    "--force",
    is_flag=True,
    help="Release even when another live agent holds the lock.",
)
@_project_option
def release_command(task_id: str, outcome: str, force: bool, project_dir: Path | None) -> None:
    """Release a task and drop its lock.

    A task still locked by another live agent is only released with `--force`.
    A success release is refused while acceptance criteria are unchecked.
    """

    _emit_lines(
        _invoke(
            lambda: CONTROLLER.release(
                ReleaseCommand(
                    project_dir=project_dir,
                    task_id=task_id,
                    outcome=outcome.lower(),
                    force=force,
                ),
            ),
        ),
    )


def _verbosity(*, quiet: bool, verbose: bool) -> str | None:
    if quiet and verbose:
        raise click.UsageError("--quiet and --verbose are mutually exclusive.")
    if quiet:
        return "quiet"
    if verbose:
        return "verbose"
    return None


def _configure_logging(*, verbose: bool) -> None:
    level = logging.INFO if verbose else logging.WARNING
    if os.getenv("DOYAKEN_DEBUG", "") == "1":
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )


def _invoke(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except DoyakenError as error:
        raise click.ClickException(str(error)) from error


def _emit_result(action: Callable[[], RunResult]) -> None:
    try:
        result = action()
    except DoyakenError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if result.exit_code:
        sys.exit(result.exit_code)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    doyaken()

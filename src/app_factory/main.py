"""CLI entrypoint for app-factory."""

import logging
from pathlib import Path

import rich_click as click

from app_factory import __version__
from app_factory.orchestrator.controllers import (
    RUN_MODES,
    TEST_TARGETS,
    AddTaskCommand,
    CommandResult,
    ListTasksCommand,
    OrchestratorCliController,
    RunCommand,
    TaskRefCommand,
)
from app_factory.orchestrator.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_project_root_option = click.option(
    "--project-root",
    type=click.Path(path_type=Path),
    default=None,
    help="Project root; defaults to APP_FACTORY_PROJECT_ROOT or `..`.",
)
_task_file_option = click.option(
    "--task-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Task list path; defaults to `<project-root>/task_list.json`.",
)


@click.group()
@click.version_option(version=__version__, prog_name="app-factory")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging verbosity.",
)
def app_factory(log_level: str) -> None:
    """Autonomous app factory: plan, execute, test and self-correct backlog tasks."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@app_factory.command("run")
@click.option(
    "--mode",
    type=click.Choice(list(RUN_MODES), case_sensitive=False),
    default="continuous",
    show_default=True,
    help="`continuous` drains the backlog; `single` runs one task by id.",
)
@click.option("--task-id", default=None, help="Task id to run in single mode.")
@_project_root_option
@_task_file_option
@click.option(
    "--test-target",
    type=click.Choice(list(TEST_TARGETS), case_sensitive=False),
    default="backend",
    show_default=True,
    help="Which configured verification command to run.",
)
@click.option(
    "--test-command",
    default=None,
    help="Explicit verification shell command; overrides --test-target.",
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=1),
    default=None,
    help="Override APP_FACTORY_MAX_RETRIES.",
)
def run(  # noqa: PLR0913
    mode: str,
    task_id: str | None,
    project_root: Path | None,
    task_file: Path | None,
    test_target: str,
    test_command: str | None,
    max_retries: int | None,
) -> None:
    """Run the autonomous loop over the task backlog."""

    if mode.lower() == "single" and not task_id:
        raise click.UsageError("--task-id is required when --mode single is used.")
    _emit_result(
        _guarded(
            lambda: ORCHESTRATOR_CONTROLLER.run(
                RunCommand(
                    project_root=project_root,
                    task_file=task_file,
                    mode=mode.lower(),
                    task_id=task_id,
                    test_target=test_target.lower(),
                    test_command=test_command,
                    max_retries=max_retries,
                ),
            ),
        ),
    )


@app_factory.group()
def tasks() -> None:
    """Task backlog commands."""


@tasks.command("list")
@_project_root_option
@_task_file_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
def tasks_list(project_root: Path | None, task_file: Path | None, status: str | None) -> None:
    """List tasks in file order."""

    _emit_result(
        _guarded(
            lambda: ORCHESTRATOR_CONTROLLER.list_tasks(
                ListTasksCommand(
                    project_root=project_root,
                    task_file=task_file,
                    status=status.lower() if status else None,
                ),
            ),
        ),
    )


@tasks.command("add")
@_project_root_option
@_task_file_option
@click.option("--title", required=True, help="Short task title.")
@click.option("--description", default="", help="Detailed task description.")
@click.option("--priority", type=int, default=0, show_default=True, help="Higher runs first.")
@click.option(
    "--depends-on",
    "depends_on",
    multiple=True,
    help="Id of a prerequisite task. Can be repeated.",
)
@click.option("--task-id", default=None, help="Explicit id; generated when omitted.")
def tasks_add(  # noqa: PLR0913
    project_root: Path | None,
    task_file: Path | None,
    title: str,
    description: str,
    priority: int,
    depends_on: tuple[str, ...],
    task_id: str | None,
) -> None:
    """Append a pending task, creating the task file when missing."""

    _emit_result(
        _guarded(
            lambda: ORCHESTRATOR_CONTROLLER.add_task(
                AddTaskCommand(
                    project_root=project_root,
                    task_file=task_file,
                    title=title,
                    description=description,
                    priority=priority,
                    depends_on=depends_on,
                    task_id=task_id,
                ),
            ),
        ),
    )


@tasks.command("inspect")
@click.argument("task_id")
@_project_root_option
@_task_file_option
def tasks_inspect(task_id: str, project_root: Path | None, task_file: Path | None) -> None:
    """Show one task with its last recorded error."""

    _emit_result(
        _guarded(
            lambda: ORCHESTRATOR_CONTROLLER.inspect_task(
                TaskRefCommand(project_root=project_root, task_file=task_file, task_id=task_id),
            ),
        ),
    )


@tasks.command("retry")
@click.argument("task_id")
@_project_root_option
@_task_file_option
def tasks_retry(task_id: str, project_root: Path | None, task_file: Path | None) -> None:
    """Requeue a failed or interrupted task as pending."""

    _emit_result(
        _guarded(
            lambda: ORCHESTRATOR_CONTROLLER.retry_task(
                TaskRefCommand(project_root=project_root, task_file=task_file, task_id=task_id),
            ),
        ),
    )


def _guarded(call) -> CommandResult:
    try:
        return call()
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_result(result: CommandResult) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(result.error or "Command failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    app_factory()

"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

import logging
import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from app_factory.agents import (
    AgentSet,
    ChatCompletionClient,
    ChatSettings,
    CliExecutorAgent,
    DebuggerAgent,
    PlannerAgent,
)
from app_factory.config import AgentEndpointSettings, Settings
from app_factory.orchestrator.cancellation import CancelToken
from app_factory.orchestrator.driver import run_continuous, run_single
from app_factory.orchestrator.loop import (
    AutonomousLoop,
    LoopCancelledError,
    LoopConfig,
    LoopError,
)
from app_factory.orchestrator.models import Task, TaskStatus
from app_factory.orchestrator.store import TaskNotFoundError, TaskStore, TaskStoreError
from app_factory.project import ProjectPaths

logger = logging.getLogger(__name__)

RUN_MODES = ("continuous", "single")
TEST_TARGETS = ("backend", "web")


@dataclass(slots=True)
class RunCommand:
    """CLI input for the orchestrator run."""

    project_root: Path | None
    task_file: Path | None
    mode: str
    task_id: str | None
    test_target: str = "backend"
    test_command: str | None = None
    max_retries: int | None = None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    project_root: Path | None
    task_file: Path | None
    status: str | None


@dataclass(slots=True)
class AddTaskCommand:
    """CLI input for appending a task."""

    project_root: Path | None
    task_file: Path | None
    title: str
    description: str
    priority: int
    depends_on: tuple[str, ...]
    task_id: str | None = None


@dataclass(slots=True)
class TaskRefCommand:
    """CLI input for inspect/retry of one task."""

    project_root: Path | None
    task_file: Path | None
    task_id: str


@dataclass(slots=True)
class CommandResult:
    """Lines to render plus overall outcome."""

    lines: list[str]
    success: bool = True
    error: str | None = None


def build_agent_set(settings: Settings, paths: ProjectPaths) -> AgentSet:
    """Wire the configured planner, executor and debugger."""

    planner = PlannerAgent(ChatCompletionClient(_chat_settings(settings.engine)))
    debugger = DebuggerAgent(ChatCompletionClient(_chat_settings(settings.debugger)))
    executor = CliExecutorAgent(
        paths.root,
        command_template=settings.executor.command_template,
        timeout_seconds=settings.executor.timeout_seconds,
        graceful_shutdown_seconds=settings.executor.graceful_shutdown_seconds,
    )
    return AgentSet(planner=planner, executor=executor, debugger=debugger)


class OrchestratorCliController:
    """Coordinates backlog runs and task inspection CLI operations."""

    def __init__(
        self,
        agent_factory: Callable[[Settings, ProjectPaths], AgentSet] = build_agent_set,
    ) -> None:
        self.agent_factory = agent_factory

    def run(self, command: RunCommand, cancel: CancelToken | None = None) -> CommandResult:
        cancel = cancel or CancelToken()
        settings = Settings.from_env(project_root=command.project_root, task_file=command.task_file)
        if command.max_retries is not None:
            settings.loop.max_retries = command.max_retries
        try:
            settings.validate_for_run()
            paths = ProjectPaths.discover(settings.project_root)
            test_command = command.test_command or settings.test_command_for(command.test_target)
        except ValueError as error:
            return CommandResult(lines=[], success=False, error=str(error))
        if command.mode not in RUN_MODES:
            return CommandResult(lines=[], success=False, error=f"Unknown mode: {command.mode}")
        if command.mode == "single" and not command.task_id:
            return CommandResult(
                lines=[],
                success=False,
                error="--task-id is required in single mode",
            )

        lines = [
            f"Project root: {paths.root}",
            f"Backend found: {paths.has_backend}",
            f"Mobile found: {paths.has_mobile}",
            f"Task file found: {paths.has_task_file}",
        ]
        store = TaskStore(settings.task_file or paths.task_file)
        agents = self.agent_factory(settings, paths)
        loop = AutonomousLoop(
            agents,
            LoopConfig(max_retries=settings.loop.max_retries, test_command=test_command),
        )

        with _signal_handlers(cancel):
            try:
                if command.mode == "single":
                    result = run_single(store, loop, command.task_id or "", cancel)
                    lines.append(
                        f"Task completed: task_id={result.task_id} attempts={result.attempts}",
                    )
                else:
                    summary = run_continuous(store, loop, cancel)
                    lines.append(
                        "Run summary: "
                        f"processed={summary.processed} succeeded={summary.succeeded} "
                        f"failed={summary.failed} blocked={summary.blocked}",
                    )
            except LoopCancelledError as error:
                return CommandResult(lines=lines, success=False, error=f"Cancelled: {error}")
            except TaskNotFoundError as error:
                return CommandResult(
                    lines=lines,
                    success=False,
                    error=f"Task {error.task_id} not found",
                )
            except LoopError as error:
                return CommandResult(lines=lines, success=False, error=f"Task failed: {error}")
            except TaskStoreError as error:
                return CommandResult(
                    lines=lines,
                    success=False,
                    error=f"Failed to load tasks: {error}",
                )
            finally:
                agents.close()

        lines.append("Orchestrator finished.")
        return CommandResult(lines=lines)

    def list_tasks(self, command: ListTasksCommand) -> CommandResult:
        store = _store(command.project_root, command.task_file)
        status_filter = TaskStatus(command.status) if command.status else None
        try:
            snapshot = store.load()
        except TaskStoreError as error:
            return CommandResult(lines=[], success=False, error=str(error))

        tasks = [task for task in snapshot.tasks if status_filter in (None, task.status)]
        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            deps = ",".join(task.depends_on) or "-"
            lines.append(
                f"  {task.id} status={task.status.value} priority={task.priority} "
                f"depends_on={deps} title={task.title}",
            )
        return CommandResult(lines=lines)

    def add_task(self, command: AddTaskCommand) -> CommandResult:
        store = _store(command.project_root, command.task_file)
        task = Task(
            id=command.task_id or uuid4().hex[:12],
            title=command.title,
            description=command.description,
            priority=command.priority,
            depends_on=list(command.depends_on),
        )
        try:
            store.append(task)
        except (ValueError, TaskStoreError) as error:
            return CommandResult(lines=[], success=False, error=str(error))
        return CommandResult(
            lines=[f"Task added: task_id={task.id} status={task.status.value}"],
        )

    def inspect_task(self, command: TaskRefCommand) -> CommandResult:
        store = _store(command.project_root, command.task_file)
        try:
            task = store.get(command.task_id)
        except TaskNotFoundError:
            return CommandResult(
                lines=[],
                success=False,
                error=f"Task not found: {command.task_id}",
            )
        except TaskStoreError as error:
            return CommandResult(lines=[], success=False, error=str(error))
        return CommandResult(
            lines=[
                f"Task: {task.id}",
                f"Title: {task.title}",
                f"Status: {task.status.value}",
                f"Priority: {task.priority}",
                f"Depends on: {', '.join(task.depends_on) or '-'}",
                f"Created: {task.created_at or '-'}",
                f"Updated: {task.updated_at or '-'}",
                f"Error: {task.error or '-'}",
                f"Description: {task.description or '-'}",
            ],
        )

    def retry_task(self, command: TaskRefCommand) -> CommandResult:
        store = _store(command.project_root, command.task_file)
        try:
            task = store.reset(command.task_id)
        except TaskNotFoundError:
            return CommandResult(
                lines=[],
                success=False,
                error=f"Task not found: {command.task_id}",
            )
        except (ValueError, TaskStoreError) as error:
            return CommandResult(lines=[], success=False, error=str(error))
        return CommandResult(lines=[f"Task requeued: task_id={task.id} status={task.status.value}"])


def _chat_settings(endpoint: AgentEndpointSettings) -> ChatSettings:
    return ChatSettings(
        api_key=endpoint.api_key,
        api_url=endpoint.api_url,
        model=endpoint.model,
        timeout_seconds=endpoint.timeout_seconds,
    )


def _store(project_root: Path | None, task_file: Path | None) -> TaskStore:
    settings = Settings.from_env(project_root=project_root, task_file=task_file)
    if settings.task_file is not None:
        return TaskStore(settings.task_file)
    return TaskStore(ProjectPaths.discover(settings.project_root).task_file)


@contextmanager
def _signal_handlers(cancel: CancelToken) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.warning("Shutting down orchestrator (%s)...", name)
        cancel.cancel(reason=name)

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)

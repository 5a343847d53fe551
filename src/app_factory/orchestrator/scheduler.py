"""Dependency-aware selection of the next task to run."""

from __future__ import annotations

from dataclasses import dataclass

from app_factory.orchestrator.models import Task, TaskList, TaskStatus


class NoEligibleTaskError(LookupError):
    """No pending task has all of its dependencies completed."""


@dataclass(slots=True)
class BlockedTask:
    """Pending task that cannot run yet, with the dependency ids holding it back."""

    task: Task
    unmet_dependencies: list[str]


def next_pending(snapshot: TaskList) -> Task:
    """Return the highest-priority pending task whose dependencies are all completed.

    Ties go to the task listed first: a later candidate only replaces the
    current best on strictly greater priority.
    """

    completed_ids = _completed_ids(snapshot)
    best: Task | None = None
    for task in snapshot.tasks:
        if task.status != TaskStatus.PENDING:
            continue
        if not all(dep in completed_ids for dep in task.depends_on):
            continue
        if best is None or task.priority > best.priority:
            best = task

    if best is None:
        raise NoEligibleTaskError("no pending tasks available")
    return best


def blocked_tasks(snapshot: TaskList) -> list[BlockedTask]:
    """List pending tasks that are not eligible, in store order."""

    completed_ids = _completed_ids(snapshot)
    blocked: list[BlockedTask] = []
    for task in snapshot.tasks:
        if task.status != TaskStatus.PENDING:
            continue
        unmet = [dep for dep in task.depends_on if dep not in completed_ids]
        if unmet:
            blocked.append(BlockedTask(task=task, unmet_dependencies=unmet))
    return blocked


def _completed_ids(snapshot: TaskList) -> set[str]:
    return {task.id for task in snapshot.tasks if task.status == TaskStatus.COMPLETED}

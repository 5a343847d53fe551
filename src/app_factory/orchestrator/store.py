"""JSON file-backed task store.

The whole backlog lives in one ``{"tasks": [...]}`` document that is read and
fully rewritten on every mutation. Writes go through a temporary sibling file
and ``os.replace`` so a reader sees either the old or the new snapshot.

The store assumes a single writer process. Two drivers sharing one file race
``load -> mutate -> save`` and the last write wins. Running more than one
driver needs an advisory file lock or a transactional table first.
"""

from __future__ import annotations

import json
import logging
import os
import stat
import tempfile
from pathlib import Path
from typing import Any

from app_factory.orchestrator.models import Task, TaskList, TaskStatus, utc_timestamp

logger = logging.getLogger(__name__)

NEW_FILE_MODE = 0o644


class TaskStoreError(RuntimeError):
    """Base class for task store failures."""


class TaskFileReadError(TaskStoreError):
    """Task file could not be read."""


class TaskFileFormatError(TaskStoreError):
    """Task file content does not match the task list contract."""


class TaskFileWriteError(TaskStoreError):
    """Task list could not be serialized or written."""


class TaskNotFoundError(LookupError):
    """No task with the requested id."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"task {task_id} not found")
        self.task_id = task_id


class TaskStore:
    """Durable task table with whole-file load/save semantics."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> TaskList:
        try:
            raw = self.path.read_text("utf-8")
        except OSError as error:
            raise TaskFileReadError(f"read task file {self.path}: {error}") from error
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as error:
            raise TaskFileFormatError(f"parse task file {self.path}: {error}") from error
        return parse_task_list(payload)

    def save(self, task_list: TaskList) -> None:
        try:
            text = json.dumps(task_list.to_payload(), ensure_ascii=False, indent=2)
        except (TypeError, ValueError) as error:
            raise TaskFileWriteError(f"marshal task list: {error}") from error
        try:
            _write_text_atomic(self.path, text)
        except OSError as error:
            raise TaskFileWriteError(f"write task file {self.path}: {error}") from error

    def get(self, task_id: str) -> Task:
        task = self.load().find(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def update_status(self, task_id: str, status: TaskStatus) -> None:
        task_list = self.load()
        task = task_list.find(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        task.status = status
        if status != TaskStatus.FAILED:
            task.error = ""
        task.updated_at = utc_timestamp()
        self.save(task_list)
        logger.debug("Task %s -> %s", task_id, status.value)

    def set_error(self, task_id: str, message: str) -> None:
        task_list = self.load()
        task = task_list.find(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        task.status = TaskStatus.FAILED
        task.error = message
        task.updated_at = utc_timestamp()
        self.save(task_list)
        logger.debug("Task %s -> failed: %s", task_id, message)

    def append(self, task: Task) -> Task:
        """Add a new task, starting an empty backlog only when the file is missing.

        An existing file that cannot be read or parsed is left untouched and the
        load error propagates.
        """

        if self.path.exists():
            task_list = self.load()
        else:
            logger.info("Starting a new task list at %s", self.path)
            task_list = TaskList()

        _validate_new_task(task, task_list)
        task.created_at = utc_timestamp()
        task.updated_at = task.created_at
        if not task.status:
            task.status = TaskStatus.PENDING
        task_list.tasks.append(task)
        self.save(task_list)
        return task

    def reset(self, task_id: str) -> Task:
        """Requeue a failed or abandoned in-progress task."""

        task_list = self.load()
        task = task_list.find(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if task.status not in (TaskStatus.FAILED, TaskStatus.IN_PROGRESS):
            raise ValueError(
                f"Only failed or in_progress tasks can be requeued: {task_id} is "
                f"{task.status.value}",
            )
        task.status = TaskStatus.PENDING
        task.error = ""
        task.updated_at = utc_timestamp()
        self.save(task_list)
        return task


def parse_task_list(payload: Any) -> TaskList:
    """Validate a decoded task list document."""

    if not isinstance(payload, dict):
        raise TaskFileFormatError("task file must contain a JSON object")
    raw_tasks = payload.get("tasks")
    if raw_tasks is None:
        return TaskList()
    if not isinstance(raw_tasks, list):
        raise TaskFileFormatError("tasks must be an array")

    tasks: list[Task] = []
    seen: set[str] = set()
    for item in raw_tasks:
        task = _parse_task(item)
        if task.id in seen:
            raise TaskFileFormatError(f"duplicate task id: {task.id}")
        seen.add(task.id)
        tasks.append(task)
    return TaskList(tasks=tasks)


def _parse_task(item: Any) -> Task:  # noqa: C901
    if not isinstance(item, dict):
        raise TaskFileFormatError("task entry must be an object")
    task_id = item.get("id")
    if not isinstance(task_id, str) or not task_id.strip():
        raise TaskFileFormatError("task.id must be a non-empty string")

    for key in ("title", "description", "created_at", "updated_at", "error"):
        value = item.get(key, "")
        if not isinstance(value, str):
            raise TaskFileFormatError(f"task {task_id}: {key} must be a string")

    raw_status = item.get("status") or TaskStatus.PENDING.value
    try:
        status = TaskStatus(raw_status)
    except ValueError as error:
        raise TaskFileFormatError(f"task {task_id}: unknown status {raw_status!r}") from error

    priority = item.get("priority", 0)
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise TaskFileFormatError(f"task {task_id}: priority must be an integer")

    depends_on = item.get("depends_on") or []
    if not isinstance(depends_on, list) or not all(isinstance(dep, str) for dep in depends_on):
        raise TaskFileFormatError(f"task {task_id}: depends_on must be an array of strings")
    if task_id in depends_on:
        raise TaskFileFormatError(f"task {task_id} depends on itself")

    return Task(
        id=task_id,
        title=item.get("title", ""),
        description=item.get("description", ""),
        status=status,
        priority=priority,
        depends_on=list(depends_on),
        created_at=item.get("created_at", ""),
        updated_at=item.get("updated_at", ""),
        error=item.get("error", ""),
    )


def _validate_new_task(task: Task, task_list: TaskList) -> None:
    if not task.id or not task.id.strip():
        raise ValueError("task id is required")
    if task.id in task.depends_on:
        raise ValueError(f"task {task.id} cannot depend on itself")
    if task_list.find(task.id) is not None:
        raise ValueError(f"duplicate task id: {task.id}")


def _write_text_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        mode = stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        mode = NEW_FILE_MODE
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        # mkstemp creates 0600; carry over the mode of the file being replaced.
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)

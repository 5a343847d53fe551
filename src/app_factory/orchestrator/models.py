"""Domain models for the task backlog and agent contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class FixType(str, Enum):
    """Kinds of fix a debugger may propose. Advisory only."""

    CODE_PATCH = "code_patch"
    COMMAND = "command"
    CONFIG_CHANGE = "config_change"


@dataclass(slots=True)
class Task:
    """One unit of backlog work."""

    id: str
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    priority: int = 0
    depends_on: list[str] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""
    error: str = ""

    def to_payload(self) -> dict[str, object]:
        """Serialize to the persisted JSON shape (``error`` omitted when empty)."""

        payload: dict[str, object] = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority,
            "depends_on": list(self.depends_on),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class TaskList:
    """Full backlog snapshot in store order."""

    tasks: list[Task] = field(default_factory=list)

    def find(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def to_payload(self) -> dict[str, object]:
        return {"tasks": [task.to_payload() for task in self.tasks]}


@dataclass(slots=True)
class DebugResult:
    """Structured fix returned by the debugger agent."""

    analysis: str
    fix_type: str
    fix_content: str

    @property
    def known_fix_type(self) -> FixType | None:
        try:
            return FixType(self.fix_type)
        except ValueError:
            return None


def utc_timestamp(now: datetime | None = None) -> str:
    """Return an RFC3339 UTC timestamp with second precision."""

    moment = now or datetime.now(tz=UTC)
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")

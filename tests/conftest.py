"""Shared test fixtures."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from app_factory.agents import AgentSet


class ScriptedAgent:
    """Agent double returning queued responses; queued exceptions are raised."""

    def __init__(self, name: str, responses=()) -> None:
        self.name = name
        self.responses = list(responses)
        self.prompts: list[str] = []
        self.closed = False

    def execute(self, prompt, cancel):
        self.prompts.append(prompt)
        return _next(self.responses, default="ok")

    def close(self) -> None:
        self.closed = True


class ScriptedExecutor(ScriptedAgent):
    """Executor double with a separate queue for shell command outcomes."""

    def __init__(self, responses=(), shell_results=()) -> None:
        super().__init__("Executioner", responses)
        self.shell_results = list(shell_results)
        self.commands: list[str] = []

    def run_shell(self, command, cancel):
        self.commands.append(command)
        return _next(self.shell_results, default="")


def _next(queue: list, *, default):
    if not queue:
        return default
    item = queue.pop(0)
    if callable(item) and not isinstance(item, type):
        item = item()
    if isinstance(item, BaseException):
        raise item
    return item


@pytest.fixture()
def make_agents():
    def _make(*, plans=(), executions=(), shell_results=(), fixes=()) -> AgentSet:
        return AgentSet(
            planner=ScriptedAgent("Engine", plans),
            executor=ScriptedExecutor(executions, shell_results),
            debugger=ScriptedAgent("Debugger", fixes),
        )

    return _make


@pytest.fixture()
def write_tasks(tmp_path: Path):
    """Write a ``{"tasks": [...]}`` document and return its path."""

    def _write(tasks: list[dict], path: Path | None = None) -> Path:
        target = path or tmp_path / "task_list.json"
        target.write_text(json.dumps({"tasks": tasks}, indent=2), "utf-8")
        return target

    return _write

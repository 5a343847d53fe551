"""Agent interface shared by planner, executor and debugger."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from app_factory.orchestrator.cancellation import CancelToken


class CallError(RuntimeError):
    """Agent call failure with details for logging."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        body: str = "",
        transient: bool = True,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body
        self.transient = transient


class CallCancelledError(CallError):
    """Agent call aborted because cancellation was requested."""

    def __init__(self, message: str = "agent call cancelled") -> None:
        super().__init__(message, transient=False)


class CommandError(CallError):
    """Shell command exited non-zero (or timed out)."""

    def __init__(self, message: str, *, exit_code: int, output: str, timed_out: bool = False):
        super().__init__(message, status=exit_code, body=output, transient=False)
        self.exit_code = exit_code
        self.output = output
        self.timed_out = timed_out


class Agent(Protocol):
    """Capability implemented by every collaborator."""

    name: str

    def execute(self, prompt: str, cancel: CancelToken) -> str:
        """Run one prompt and return the agent's text output."""


class ShellRunner(Protocol):
    """Extra capability of the executor: run a command in the project root."""

    def run_shell(self, command: str, cancel: CancelToken) -> str:
        """Return combined output; raise CommandError on non-zero exit."""


class ExecutorAgent(Agent, ShellRunner, Protocol):
    """Executor exposes both prompt execution and shell commands."""


@dataclass(slots=True)
class AgentSet:
    """Collaborators used by the autonomous loop."""

    planner: Agent
    executor: ExecutorAgent
    debugger: Agent

    def close(self) -> None:
        """Release resources held by collaborators that expose ``close()``."""

        for agent in (self.planner, self.executor, self.debugger):
            close = getattr(agent, "close", None)
            if callable(close):
                close()

"""Agent implementations behind the uniform ``execute`` capability."""

from app_factory.agents.base import (
    Agent,
    AgentSet,
    CallCancelledError,
    CallError,
    CommandError,
    ExecutorAgent,
    ShellRunner,
)
from app_factory.agents.chat import (
    ChatCompletionClient,
    ChatSettings,
    DebuggerAgent,
    DebugResultParseError,
    PlannerAgent,
    parse_debug_result,
)
from app_factory.agents.executor import CliExecutorAgent

__all__ = [
    "Agent",
    "AgentSet",
    "CallCancelledError",
    "CallError",
    "ChatCompletionClient",
    "ChatSettings",
    "CliExecutorAgent",
    "CommandError",
    "DebugResultParseError",
    "DebuggerAgent",
    "ExecutorAgent",
    "PlannerAgent",
    "ShellRunner",
    "parse_debug_result",
]

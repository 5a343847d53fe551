"""Runtime configuration for the orchestrator and its agents."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from app_factory.agents.base import CallError
from app_factory.agents.executor import build_run_args

DEFAULT_CHAT_API_URL = "https://api.deepseek.com/v1/chat/completions"
DEFAULT_CHAT_MODEL = "deepseek-chat"


@dataclass(slots=True)
class AgentEndpointSettings:
    """Chat-completion endpoint used by the planner or the debugger."""

    api_key: str = ""
    api_url: str = DEFAULT_CHAT_API_URL
    model: str = DEFAULT_CHAT_MODEL
    timeout_seconds: float = 120.0


@dataclass(slots=True)
class ExecutorSettings:
    """Agent CLI used for file edits and shell commands."""

    command_template: str = "claude -p --dangerously-skip-permissions {prompt}"
    timeout_seconds: int = 600
    graceful_shutdown_seconds: int = 0


@dataclass(slots=True)
class LoopSettings:
    """Retry budget and verification commands for the autonomous loop."""

    max_retries: int = 5
    test_command_backend: str = "cd backend && go build ./..."
    test_command_web: str = "cd mobile && npx tsc --noEmit"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    project_root: Path = Path("..")
    task_file: Path | None = None
    engine: AgentEndpointSettings = field(default_factory=AgentEndpointSettings)
    debugger: AgentEndpointSettings = field(default_factory=AgentEndpointSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)

    @classmethod
    def from_env(
        cls,
        *,
        project_root: Path | None = None,
        task_file: Path | None = None,
    ) -> Settings:
        """Load settings from environment with defaults for local development."""

        env_task_file = os.getenv("APP_FACTORY_TASK_FILE", "").strip()
        return cls(
            project_root=project_root or Path(os.getenv("APP_FACTORY_PROJECT_ROOT", "..")),
            task_file=task_file or (Path(env_task_file) if env_task_file else None),
            engine=AgentEndpointSettings(
                api_key=os.getenv("APP_FACTORY_ENGINE_API_KEY", ""),
                api_url=os.getenv("APP_FACTORY_ENGINE_API_URL", DEFAULT_CHAT_API_URL),
                model=os.getenv("APP_FACTORY_ENGINE_MODEL", DEFAULT_CHAT_MODEL),
                timeout_seconds=float(os.getenv("APP_FACTORY_ENGINE_TIMEOUT_SECONDS", "120")),
            ),
            debugger=AgentEndpointSettings(
                api_key=os.getenv("APP_FACTORY_DEBUGGER_API_KEY", ""),
                api_url=os.getenv("APP_FACTORY_DEBUGGER_API_URL", DEFAULT_CHAT_API_URL),
                model=os.getenv("APP_FACTORY_DEBUGGER_MODEL", DEFAULT_CHAT_MODEL),
                timeout_seconds=float(os.getenv("APP_FACTORY_DEBUGGER_TIMEOUT_SECONDS", "120")),
            ),
            executor=ExecutorSettings(
                command_template=os.getenv(
                    "APP_FACTORY_EXECUTOR_COMMAND_TEMPLATE",
                    "claude -p --dangerously-skip-permissions {prompt}",
                ),
                timeout_seconds=int(os.getenv("APP_FACTORY_EXECUTOR_TIMEOUT_SECONDS", "600")),
                graceful_shutdown_seconds=int(
                    os.getenv("APP_FACTORY_EXECUTOR_GRACEFUL_SHUTDOWN_SECONDS", "0"),
                ),
            ),
            loop=LoopSettings(
                max_retries=int(os.getenv("APP_FACTORY_MAX_RETRIES", "5")),
                test_command_backend=os.getenv(
                    "APP_FACTORY_TEST_COMMAND_BACKEND",
                    "cd backend && go build ./...",
                ),
                test_command_web=os.getenv(
                    "APP_FACTORY_TEST_COMMAND_WEB",
                    "cd mobile && npx tsc --noEmit",
                ),
            ),
        )

    def test_command_for(self, target: str) -> str:
        """Return the verification command for ``backend`` or ``web``."""

        if target == "backend":
            return self.loop.test_command_backend
        if target == "web":
            return self.loop.test_command_web
        raise ValueError(f"Unknown test target: {target!r}")

    def validate_for_run(self) -> None:
        """Raise configuration error if the autonomous loop cannot start."""

        if not self.engine.api_key.strip():
            raise ValueError("APP_FACTORY_ENGINE_API_KEY is required")
        _validate_api_url(self.engine.api_url, name="APP_FACTORY_ENGINE_API_URL")
        _validate_api_url(self.debugger.api_url, name="APP_FACTORY_DEBUGGER_API_URL")
        if self.loop.max_retries < 1:
            raise ValueError("APP_FACTORY_MAX_RETRIES must be >= 1.")
        if self.executor.timeout_seconds <= 0:
            raise ValueError("APP_FACTORY_EXECUTOR_TIMEOUT_SECONDS must be > 0.")
        if "{prompt}" not in self.executor.command_template:
            raise ValueError("APP_FACTORY_EXECUTOR_COMMAND_TEMPLATE must include {prompt}.")
        try:
            build_run_args(command_template=self.executor.command_template, prompt="check")
        except CallError as error:
            raise ValueError(f"Invalid APP_FACTORY_EXECUTOR_COMMAND_TEMPLATE: {error}") from error


def _validate_api_url(value: str, *, name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )

from __future__ import annotations

import shlex
import sys
import threading
import time
from pathlib import Path

import allure
import pytest

from app_factory.agents import CallCancelledError, CallError, CliExecutorAgent, CommandError
from app_factory.agents.executor import build_run_args
from app_factory.orchestrator.cancellation import CancelToken

pytestmark = [
    allure.epic("Agents"),
    allure.feature("CLI Executor"),
]

_PYTHON = shlex.quote(sys.executable)


def _echo_template(tmp_path: Path) -> str:
    script = tmp_path / "fake_agent.py"
    script.write_text(
        "import sys\n"
        "print('applied: ' + sys.argv[1])\n"
        "if 'warn' in sys.argv[1]:\n"
        "    print('deprecated flag', file=sys.stderr)\n"
        "if 'crash' in sys.argv[1]:\n"
        "    raise SystemExit(3)\n",
        "utf-8",
    )
    return f"{_PYTHON} {shlex.quote(str(script))} {{prompt}}"


def test_build_run_args_quotes_prompt_as_single_argument() -> None:
    args = build_run_args(
        command_template="claude -p --dangerously-skip-permissions {prompt}",
        prompt="fix 'quotes' and $HOME; rm -rf /",
    )

    assert args == [
        "claude",
        "-p",
        "--dangerously-skip-permissions",
        "fix 'quotes' and $HOME; rm -rf /",
    ]


def test_build_run_args_requires_prompt_placeholder() -> None:
    with pytest.raises(CallError, match=r"must include \{prompt\}"):
        build_run_args(command_template="claude -p", prompt="x")


def test_execute_returns_stripped_stdout(tmp_path: Path) -> None:
    agent = CliExecutorAgent(tmp_path, command_template=_echo_template(tmp_path))

    assert agent.execute("add login screen", CancelToken()) == "applied: add login screen"


def test_execute_appends_stderr_section(tmp_path: Path) -> None:
    agent = CliExecutorAgent(tmp_path, command_template=_echo_template(tmp_path))

    output = agent.execute("warn me", CancelToken())

    assert output == "applied: warn me\n\n--- stderr ---\ndeprecated flag"


def test_execute_non_zero_exit_raises(tmp_path: Path) -> None:
    agent = CliExecutorAgent(tmp_path, command_template=_echo_template(tmp_path))

    with pytest.raises(CallError, match="CLI error: exit status 3") as excinfo:
        agent.execute("crash now", CancelToken())

    assert excinfo.value.status == 3
    assert not excinfo.value.transient


def test_execute_missing_binary(tmp_path: Path) -> None:
    agent = CliExecutorAgent(tmp_path, command_template="definitely-not-installed-cli {prompt}")

    with pytest.raises(CallError, match="command not found: definitely-not-installed-cli"):
        agent.execute("x", CancelToken())


def test_run_shell_runs_in_project_root(tmp_path: Path) -> None:
    (tmp_path / "backend").mkdir()
    (tmp_path / "backend" / "marker.txt").write_text("here", "utf-8")
    agent = CliExecutorAgent(tmp_path)

    assert agent.run_shell("cd backend && cat marker.txt", CancelToken()) == "here"


def test_run_shell_combines_output_on_failure(tmp_path: Path) -> None:
    agent = CliExecutorAgent(tmp_path)

    with pytest.raises(CommandError) as excinfo:
        agent.run_shell("echo building; echo 'undefined: Foo' >&2; exit 2", CancelToken())

    error = excinfo.value
    assert error.exit_code == 2
    assert error.output == "building\nundefined: Foo"
    assert str(error).startswith("command failed: exit status 2\n")


def test_run_shell_timeout(tmp_path: Path) -> None:
    agent = CliExecutorAgent(tmp_path, timeout_seconds=1)

    with pytest.raises(CommandError) as excinfo:
        agent.run_shell("sleep 5", CancelToken())

    assert excinfo.value.timed_out
    assert excinfo.value.exit_code == 124


def test_run_shell_refuses_to_start_when_cancelled(tmp_path: Path) -> None:
    cancel = CancelToken()
    cancel.cancel()

    with pytest.raises(CallCancelledError):
        CliExecutorAgent(tmp_path).run_shell("true", cancel)


@pytest.mark.parametrize("template", ['echo "{prompt}', "echo {prompt} }"])
def test_build_run_args_rejects_malformed_template(template: str) -> None:
    with pytest.raises(CallError, match="Malformed command template") as excinfo:
        build_run_args(command_template=template, prompt="x")

    assert not excinfo.value.transient


def test_run_shell_aborts_running_child_on_cancellation(tmp_path: Path) -> None:
    agent = CliExecutorAgent(tmp_path, timeout_seconds=60)
    cancel = CancelToken()
    timer = threading.Timer(0.3, cancel.cancel, kwargs={"reason": "SIGINT"})
    started = time.monotonic()
    timer.start()
    try:
        with pytest.raises(CallCancelledError):
            agent.run_shell("sleep 30", cancel)
    finally:
        timer.cancel()

    assert time.monotonic() - started < 10

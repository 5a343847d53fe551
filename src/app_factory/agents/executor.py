"""Subprocess-based executor: agent CLI prompts and shell commands."""

from __future__ import annotations

import logging
import shlex
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from app_factory.agents.base import CallCancelledError, CallError, CommandError
from app_factory.orchestrator.cancellation import CancelToken

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TEMPLATE = "claude -p --dangerously-skip-permissions {prompt}"
DEFAULT_TIMEOUT_SECONDS = 600
TIMEOUT_EXIT_CODE = 124
_POLL_SECONDS = 0.1


@dataclass(slots=True)
class ProcessResult:
    """Captured outcome of one child process."""

    exit_code: int
    timed_out: bool
    stdout: str
    stderr: str


class CliExecutorAgent:
    """Runs an agent CLI with file and terminal access inside the project root."""

    name = "Executioner"

    def __init__(
        self,
        work_dir: Path,
        *,
        command_template: str = DEFAULT_COMMAND_TEMPLATE,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        graceful_shutdown_seconds: int = 0,
    ) -> None:
        self.work_dir = Path(work_dir)
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds

    def execute(self, prompt: str, cancel: CancelToken) -> str:
        run_args = build_run_args(command_template=self.command_template, prompt=prompt)
        result = self._run(run_args, cancel=cancel)
        if result.timed_out:
            raise CallError(
                f"{run_args[0]} CLI timed out after {self.timeout_seconds}s",
                status=result.exit_code,
                body=result.stdout,
            )
        if result.exit_code != 0:
            raise CallError(
                f"{run_args[0]} CLI error: exit status {result.exit_code}\n"
                f"stdout: {result.stdout}\nstderr: {result.stderr}",
                status=result.exit_code,
                body=result.stderr or result.stdout,
                transient=False,
            )

        output = result.stdout
        if result.stderr:
            output += "\n--- stderr ---\n" + result.stderr
        return output.strip()

    def run_shell(self, command: str, cancel: CancelToken) -> str:
        result = self._run(["sh", "-c", command], cancel=cancel)
        output = _combine_output(result.stdout, result.stderr)
        if result.timed_out:
            raise CommandError(
                f"command timed out after {self.timeout_seconds}s: {command}",
                exit_code=result.exit_code,
                output=output,
                timed_out=True,
            )
        if result.exit_code != 0:
            raise CommandError(
                f"command failed: exit status {result.exit_code}\n{output}",
                exit_code=result.exit_code,
                output=output,
            )
        return output

    def _run(self, run_args: list[str], *, cancel: CancelToken) -> ProcessResult:
        if cancel.cancelled:
            raise CallCancelledError()
        try:
            with (
                tempfile.TemporaryFile("w+", encoding="utf-8") as stdout_handle,
                tempfile.TemporaryFile("w+", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out = run_subprocess_with_shutdown(
                    run_args=run_args,
                    cwd=self.work_dir,
                    timeout_seconds=self.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    shutdown_requested=cancel,
                    graceful_shutdown_seconds=self.graceful_shutdown_seconds,
                )
                stdout = _read_back(stdout_handle)
                stderr = _read_back(stderr_handle)
        except FileNotFoundError as error:
            raise CallError(f"command not found: {run_args[0]}", transient=False) from error
        except OSError as error:
            raise CallError(f"failed to start {run_args[0]}: {error}") from error

        if cancel.cancelled and (timed_out or exit_code != 0):
            raise CallCancelledError(f"{run_args[0]} interrupted by cancellation")
        return ProcessResult(exit_code=exit_code, timed_out=timed_out, stdout=stdout, stderr=stderr)


def build_run_args(*, command_template: str, prompt: str) -> list[str]:
    """Render a POSIX command template containing a ``{prompt}`` placeholder."""

    stripped = command_template.strip()
    if not stripped:
        raise CallError("executor command template is empty.", transient=False)
    if "{prompt}" not in stripped:
        raise CallError("executor command template must include {prompt}.", transient=False)
    try:
        rendered = stripped.format(prompt=shlex.quote(prompt))
    except (KeyError, IndexError) as error:
        raise CallError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error
    except ValueError as error:
        raise CallError(f"Malformed command template: {error}", transient=False) from error
    try:
        return shlex.split(rendered)
    except ValueError as error:
        raise CallError(f"Malformed command template: {error}", transient=False) from error


def run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: list[str],
    cwd: Path,
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    shutdown_requested: CancelToken | None,
    graceful_shutdown_seconds: int,
) -> tuple[int, bool]:
    """Run a child process, enforcing timeout and cooperative shutdown.

    Returns ``(exit_code, timed_out)``; a forced stop reports exit code 124.
    """

    process = subprocess.Popen(  # noqa: S603
        run_args,
        cwd=str(cwd),
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0, graceful_shutdown_seconds)

    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False

        now = time.monotonic()
        if now - start_monotonic >= timeout_seconds:
            logger.warning("Terminating %s after %ss timeout", run_args[0], timeout_seconds)
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, True

        if shutdown_requested is not None and shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                logger.warning("Terminating %s on shutdown request", run_args[0])
                _terminate_process(process)
                return TIMEOUT_EXIT_CODE, True

        time.sleep(_POLL_SECONDS)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _read_back(handle: IO[str]) -> str:
    handle.flush()
    handle.seek(0)
    return handle.read()


def _combine_output(stdout: str, stderr: str) -> str:
    parts = [part.strip() for part in (stdout, stderr) if part.strip()]
    return "\n".join(parts)

"""Autonomous plan -> execute -> test -> correct loop for a single task.

The loop is an explicit state machine. ``transition`` is a pure function of
(state, event, attempt, max_retries); ``AutonomousLoop`` performs the agent
calls for each state and feeds the resulting event back into it. The loop
never touches the task store; status bookkeeping belongs to the driver.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from app_factory.agents.base import AgentSet, CallCancelledError, CallError, CommandError
from app_factory.agents.chat import DebugResultParseError, parse_debug_result
from app_factory.orchestrator.cancellation import CancelToken
from app_factory.orchestrator.models import DebugResult, Task

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    """Phases of one task run."""

    PLANNING = "planning"
    EXECUTING = "executing"
    TESTING = "testing"
    CORRECTING = "correcting"
    DONE = "done"
    FAILED = "failed"


class LoopEvent(str, Enum):
    """Outcomes reported by a phase."""

    PLAN_READY = "plan_ready"
    PLAN_FAILED = "plan_failed"
    EXECUTION_SUCCEEDED = "execution_succeeded"
    EXECUTION_FAILED = "execution_failed"
    FIX_APPLY_FAILED = "fix_apply_failed"
    TESTS_PASSED = "tests_passed"
    TESTS_FAILED = "tests_failed"
    FIX_READY = "fix_ready"
    FIX_UNAVAILABLE = "fix_unavailable"


TERMINAL_STATES = frozenset({LoopState.DONE, LoopState.FAILED})

_TRANSITIONS: dict[tuple[LoopState, LoopEvent], LoopState] = {
    (LoopState.PLANNING, LoopEvent.PLAN_READY): LoopState.EXECUTING,
    (LoopState.PLANNING, LoopEvent.PLAN_FAILED): LoopState.FAILED,
    (LoopState.EXECUTING, LoopEvent.EXECUTION_SUCCEEDED): LoopState.TESTING,
    (LoopState.EXECUTING, LoopEvent.EXECUTION_FAILED): LoopState.FAILED,
    (LoopState.EXECUTING, LoopEvent.FIX_APPLY_FAILED): LoopState.TESTING,
    (LoopState.TESTING, LoopEvent.TESTS_PASSED): LoopState.DONE,
    (LoopState.CORRECTING, LoopEvent.FIX_READY): LoopState.EXECUTING,
    (LoopState.CORRECTING, LoopEvent.FIX_UNAVAILABLE): LoopState.TESTING,
}


class InvalidTransitionError(ValueError):
    """Event is not accepted in the current state."""


class LoopError(RuntimeError):
    """Terminal failure of a task run."""

    def __init__(self, message: str, *, task_id: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.attempts = attempts


class PlanningFailedError(LoopError):
    """Planner call failed; nothing was executed."""


class ExecutionFailedError(LoopError):
    """Executing the original plan failed."""


class RetriesExhaustedError(LoopError):
    """Every allowed test attempt failed."""


class LoopCancelledError(RuntimeError):
    """Cancellation was requested before or during a phase."""

    def __init__(self, message: str = "cancelled", *, task_id: str | None = None) -> None:
        super().__init__(message)
        self.task_id = task_id


def transition(
    state: LoopState,
    event: LoopEvent,
    *,
    attempt: int,
    max_retries: int,
) -> LoopState:
    """Return the next state; the last allowed failed test ends the run."""

    if state == LoopState.TESTING and event == LoopEvent.TESTS_FAILED:
        return LoopState.CORRECTING if attempt < max_retries else LoopState.FAILED
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError as error:
        raise InvalidTransitionError(
            f"event {event.value} is not valid in state {state.value}",
        ) from error


@dataclass(slots=True)
class LoopConfig:
    """Per-run settings of the autonomous loop."""

    max_retries: int
    test_command: str


@dataclass(slots=True, frozen=True)
class PhaseTrace:
    """Progress record emitted after every phase."""

    task_id: str
    state: LoopState
    event: LoopEvent
    attempt: int
    max_retries: int
    output_chars: int


@dataclass(slots=True)
class LoopResult:
    """Successful run summary."""

    task_id: str
    attempts: int
    plan: str
    execution_output: str
    test_output: str
    traces: list[PhaseTrace] = field(default_factory=list)


@dataclass(slots=True)
class _RunContext:
    task: Task
    cancel: CancelToken
    attempt: int = 1
    tests_run: int = 0
    plan: str = ""
    instruction: str = ""
    execution_output: str = ""
    test_output: str = ""
    fix: DebugResult | None = None
    last_error: Exception | None = None
    traces: list[PhaseTrace] = field(default_factory=list)


class AutonomousLoop:
    """Drives one task through planning, execution, testing and correction."""

    def __init__(
        self,
        agents: AgentSet,
        config: LoopConfig,
        *,
        on_trace: Callable[[PhaseTrace], None] | None = None,
    ) -> None:
        if config.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        self.agents = agents
        self.config = config
        self.on_trace = on_trace
        self._handlers: dict[LoopState, Callable[[_RunContext], tuple[LoopEvent, int]]] = {
            LoopState.PLANNING: self._plan,
            LoopState.EXECUTING: self._execute,
            LoopState.TESTING: self._test,
            LoopState.CORRECTING: self._correct,
        }

    def run(self, task: Task, cancel: CancelToken) -> LoopResult:
        """Run ``task`` to a terminal state.

        Raises:
            PlanningFailedError: the planner call failed.
            ExecutionFailedError: executing the original plan failed.
            RetriesExhaustedError: ``max_retries`` test attempts failed.
            LoopCancelledError: cancellation was observed.
        """

        logger.info("[LOOP] Starting task: %s (%s)", task.title, task.id)
        ctx = _RunContext(task=task, cancel=cancel)
        state = LoopState.PLANNING
        event: LoopEvent | None = None

        while state not in TERMINAL_STATES:
            if cancel.cancelled:
                raise LoopCancelledError(
                    f"task {task.id} cancelled before {state.value}",
                    task_id=task.id,
                )
            event, output_chars = self._handlers[state](ctx)
            self._emit(ctx, state=state, event=event, output_chars=output_chars)
            next_state = transition(
                state,
                event,
                attempt=ctx.attempt,
                max_retries=self.config.max_retries,
            )
            if next_state == LoopState.TESTING and ctx.tests_run >= ctx.attempt:
                ctx.attempt += 1
            state = next_state

        if state == LoopState.FAILED:
            raise self._failure(ctx, event)

        logger.info("[LOOP] Task done: %s after %d attempt(s)", task.id, ctx.attempt)
        return LoopResult(
            task_id=task.id,
            attempts=ctx.attempt,
            plan=ctx.plan,
            execution_output=ctx.execution_output,
            test_output=ctx.test_output,
            traces=ctx.traces,
        )

    def _plan(self, ctx: _RunContext) -> tuple[LoopEvent, int]:
        try:
            prompt = plan_prompt(ctx.task)
            plan = self._call(ctx, lambda: self.agents.planner.execute(prompt, ctx.cancel))
        except CallError as error:
            ctx.last_error = error
            return LoopEvent.PLAN_FAILED, 0
        ctx.plan = plan
        ctx.instruction = execution_prompt(ctx.task, plan)
        return LoopEvent.PLAN_READY, len(plan)

    def _execute(self, ctx: _RunContext) -> tuple[LoopEvent, int]:
        try:
            instruction = ctx.instruction
            output = self._call(ctx, lambda: self.agents.executor.execute(instruction, ctx.cancel))
        except CallError as error:
            ctx.last_error = error
            if ctx.fix is None:
                return LoopEvent.EXECUTION_FAILED, 0
            logger.warning("[LOOP] Fix application failed: %s", error)
            return LoopEvent.FIX_APPLY_FAILED, 0
        ctx.execution_output = output
        return LoopEvent.EXECUTION_SUCCEEDED, len(output)

    def _test(self, ctx: _RunContext) -> tuple[LoopEvent, int]:
        ctx.tests_run += 1
        command = self.config.test_command
        try:
            output = self._call(ctx, lambda: self.agents.executor.run_shell(command, ctx.cancel))
        except CommandError as error:
            ctx.last_error = error
            ctx.test_output = error.output
            logger.info("[LOOP] Tests failed: %s", error)
            return LoopEvent.TESTS_FAILED, len(error.output)
        except CallError as error:
            ctx.last_error = error
            ctx.test_output = str(error)
            logger.info("[LOOP] Test command could not run: %s", error)
            return LoopEvent.TESTS_FAILED, 0
        ctx.test_output = output
        logger.info("[LOOP] Tests passed")
        return LoopEvent.TESTS_PASSED, len(output)

    def _correct(self, ctx: _RunContext) -> tuple[LoopEvent, int]:
        prompt = debug_prompt(
            test_command=self.config.test_command,
            test_output=ctx.test_output,
            execution_output=ctx.execution_output,
        )
        try:
            raw = self._call(ctx, lambda: self.agents.debugger.execute(prompt, ctx.cancel))
        except CallError as error:
            logger.warning("[LOOP] Debugger error: %s", error)
            return LoopEvent.FIX_UNAVAILABLE, 0
        try:
            fix = parse_debug_result(raw)
        except DebugResultParseError as error:
            logger.warning("[LOOP] Debugger output rejected: %s", error)
            return LoopEvent.FIX_UNAVAILABLE, len(raw)
        if fix.known_fix_type is None:
            logger.warning("[LOOP] Unknown fix type %r, passing it on as is", fix.fix_type)
        else:
            logger.info(
                "[LOOP] Debugger proposed %s fix: %s",
                fix.known_fix_type.value,
                fix.analysis,
            )
        ctx.fix = fix
        ctx.instruction = fix_prompt(fix)
        return LoopEvent.FIX_READY, len(raw)

    def _call(self, ctx: _RunContext, fn: Callable[[], str]) -> str:
        try:
            return fn()
        except CallCancelledError as error:
            raise LoopCancelledError(str(error), task_id=ctx.task.id) from error
        except CallError as error:
            if ctx.cancel.cancelled:
                raise LoopCancelledError(str(error), task_id=ctx.task.id) from error
            raise

    def _emit(
        self,
        ctx: _RunContext,
        *,
        state: LoopState,
        event: LoopEvent,
        output_chars: int,
    ) -> None:
        trace = PhaseTrace(
            task_id=ctx.task.id,
            state=state,
            event=event,
            attempt=ctx.attempt,
            max_retries=self.config.max_retries,
            output_chars=output_chars,
        )
        ctx.traces.append(trace)
        logger.info(
            "[LOOP] phase=%s event=%s attempt=%d/%d output_chars=%d",
            state.value,
            event.value,
            trace.attempt,
            trace.max_retries,
            output_chars,
        )
        if self.on_trace is not None:
            self.on_trace(trace)

    def _failure(self, ctx: _RunContext, event: LoopEvent | None) -> LoopError:
        task_id = ctx.task.id
        if event == LoopEvent.PLAN_FAILED:
            return PlanningFailedError(
                f"planning failed: {ctx.last_error}",
                task_id=task_id,
                attempts=0,
            )
        if event == LoopEvent.EXECUTION_FAILED:
            return ExecutionFailedError(
                f"execution failed: {ctx.last_error}",
                task_id=task_id,
                attempts=0,
            )
        return RetriesExhaustedError(
            f"tests failed after {self.config.max_retries} retries: {ctx.last_error}",
            task_id=task_id,
            attempts=ctx.tests_run,
        )


def plan_prompt(task: Task) -> str:
    return (
        "Create a detailed implementation plan for the following task:\n\n"
        f"Title: {task.title}\nDescription: {task.description}\n\n"
        "Output a step-by-step plan with file paths and code changes needed."
    )


def execution_prompt(task: Task, plan: str) -> str:
    return (
        "Implement the following plan. Create or modify files as needed.\n\n"
        f"Plan:\n{plan}\n\n"
        f"Task: {task.title}\nDescription: {task.description}"
    )


def debug_prompt(*, test_command: str, test_output: str, execution_output: str) -> str:
    return (
        f"The following test command failed:\n\nCommand: {test_command}\n\n"
        f"Error output:\n{test_output}\n\n"
        f"Previous execution result:\n{execution_output}\n\n"
        "Analyze the error and provide a fix."
    )


def fix_prompt(fix: DebugResult) -> str:
    return (
        "Apply the following fix to the codebase:\n\n"
        f"Root cause: {fix.analysis}\n"
        f"Fix type: {fix.fix_type}\n\n"
        f"{fix.fix_content}"
    )

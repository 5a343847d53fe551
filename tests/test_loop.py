from __future__ import annotations

import json

import allure
import pytest

from app_factory.agents import CallError, CommandError
from app_factory.orchestrator.cancellation import CancelToken
from app_factory.orchestrator.loop import (
    AutonomousLoop,
    ExecutionFailedError,
    InvalidTransitionError,
    LoopCancelledError,
    LoopConfig,
    LoopEvent,
    LoopState,
    PlanningFailedError,
    RetriesExhaustedError,
    transition,
)
from app_factory.orchestrator.models import Task

pytestmark = [
    allure.epic("Autonomous Loop"),
    allure.feature("Plan, Execute, Test, Correct"),
]

TEST_COMMAND = "cd backend && go build ./..."


def _fix(content: str = "add the missing import") -> str:
    return json.dumps(
        {"analysis": "missing import", "fix_type": "code_patch", "fix_content": content},
    )


def _failed_build(output: str = "undefined: Foo") -> CommandError:
    return CommandError(f"command failed: exit status 1\n{output}", exit_code=1, output=output)


def _loop(agents, max_retries: int = 3, **kwargs) -> AutonomousLoop:
    return AutonomousLoop(
        agents,
        LoopConfig(max_retries=max_retries, test_command=TEST_COMMAND),
        **kwargs,
    )


def _task() -> Task:
    return Task(id="t1", title="Add login", description="Email + password login screen")


@pytest.mark.parametrize(
    ("state", "event", "attempt", "expected"),
    [
        (LoopState.PLANNING, LoopEvent.PLAN_READY, 1, LoopState.EXECUTING),
        (LoopState.PLANNING, LoopEvent.PLAN_FAILED, 1, LoopState.FAILED),
        (LoopState.EXECUTING, LoopEvent.EXECUTION_SUCCEEDED, 1, LoopState.TESTING),
        (LoopState.EXECUTING, LoopEvent.EXECUTION_FAILED, 1, LoopState.FAILED),
        (LoopState.EXECUTING, LoopEvent.FIX_APPLY_FAILED, 2, LoopState.TESTING),
        (LoopState.TESTING, LoopEvent.TESTS_PASSED, 3, LoopState.DONE),
        (LoopState.TESTING, LoopEvent.TESTS_FAILED, 2, LoopState.CORRECTING),
        (LoopState.TESTING, LoopEvent.TESTS_FAILED, 3, LoopState.FAILED),
        (LoopState.CORRECTING, LoopEvent.FIX_READY, 1, LoopState.EXECUTING),
        (LoopState.CORRECTING, LoopEvent.FIX_UNAVAILABLE, 1, LoopState.TESTING),
    ],
)
def test_transition_table(state, event, attempt, expected) -> None:
    assert transition(state, event, attempt=attempt, max_retries=3) == expected


@pytest.mark.parametrize(
    ("state", "event"),
    [
        (LoopState.PLANNING, LoopEvent.TESTS_PASSED),
        (LoopState.DONE, LoopEvent.PLAN_READY),
        (LoopState.FAILED, LoopEvent.FIX_READY),
        (LoopState.CORRECTING, LoopEvent.EXECUTION_SUCCEEDED),
    ],
)
def test_transition_rejects_invalid_pairs(state, event) -> None:
    with pytest.raises(InvalidTransitionError):
        transition(state, event, attempt=1, max_retries=3)


def test_first_try_success_runs_one_test(make_agents) -> None:
    agents = make_agents(plans=["the plan"], executions=["built"], shell_results=["ok"])
    traces = []

    result = _loop(agents, on_trace=traces.append).run(_task(), CancelToken())

    assert result.attempts == 1
    assert result.plan == "the plan"
    assert result.execution_output == "built"
    assert result.test_output == "ok"
    assert [trace.state for trace in traces] == [
        LoopState.PLANNING,
        LoopState.EXECUTING,
        LoopState.TESTING,
    ]
    assert agents.debugger.prompts == []
    assert "Title: Add login" in agents.planner.prompts[0]
    assert "Plan:\nthe plan" in agents.executor.prompts[0]


def test_success_on_third_attempt(make_agents) -> None:
    agents = make_agents(
        plans=["plan"],
        executions=["built", "fixed once", "fixed twice"],
        shell_results=[_failed_build(), _failed_build("still broken"), "ok"],
        fixes=[_fix("first fix"), _fix("second fix")],
    )

    result = _loop(agents, max_retries=3).run(_task(), CancelToken())

    assert result.attempts == 3
    assert agents.executor.commands == [TEST_COMMAND] * 3
    assert len(agents.debugger.prompts) == 2
    assert len(agents.executor.prompts) == 3
    assert agents.executor.prompts[1].startswith("Apply the following fix to the codebase:")
    assert "first fix" in agents.executor.prompts[1]
    assert "second fix" in agents.executor.prompts[2]
    assert "undefined: Foo" in agents.debugger.prompts[0]
    assert f"Command: {TEST_COMMAND}" in agents.debugger.prompts[0]


def test_exhaustion_after_exactly_max_retries_tests(make_agents) -> None:
    agents = make_agents(
        plans=["plan"],
        executions=["built", "fixed"],
        shell_results=[_failed_build(), _failed_build("final error")],
        fixes=[_fix()],
    )

    with pytest.raises(RetriesExhaustedError) as excinfo:
        _loop(agents, max_retries=2).run(_task(), CancelToken())

    assert excinfo.value.attempts == 2
    assert excinfo.value.task_id == "t1"
    assert str(excinfo.value).startswith("tests failed after 2 retries:")
    assert "final error" in str(excinfo.value)
    assert len(agents.executor.commands) == 2
    assert len(agents.debugger.prompts) == 1


def test_single_retry_budget_never_consults_debugger(make_agents) -> None:
    agents = make_agents(shell_results=[_failed_build()])

    with pytest.raises(RetriesExhaustedError):
        _loop(agents, max_retries=1).run(_task(), CancelToken())

    assert len(agents.executor.commands) == 1
    assert agents.debugger.prompts == []


def test_planning_failure_skips_execution_and_tests(make_agents) -> None:
    agents = make_agents(plans=[CallError("API returned 500: overloaded", status=500)])

    with pytest.raises(PlanningFailedError) as excinfo:
        _loop(agents).run(_task(), CancelToken())

    assert str(excinfo.value).startswith("planning failed:")
    assert agents.executor.prompts == []
    assert agents.executor.commands == []


def test_initial_execution_failure_skips_tests(make_agents) -> None:
    agents = make_agents(executions=[CallError("claude CLI error: exit status 1")])

    with pytest.raises(ExecutionFailedError) as excinfo:
        _loop(agents).run(_task(), CancelToken())

    assert str(excinfo.value).startswith("execution failed:")
    assert agents.executor.commands == []


def test_debugger_error_consumes_attempt_without_executing(make_agents) -> None:
    agents = make_agents(
        shell_results=[_failed_build(), "ok"],
        fixes=[CallError("API returned 503", status=503)],
    )

    result = _loop(agents, max_retries=2).run(_task(), CancelToken())

    assert result.attempts == 2
    assert len(agents.executor.prompts) == 1
    assert len(agents.executor.commands) == 2


def test_unparsable_fix_consumes_attempt(make_agents) -> None:
    agents = make_agents(
        shell_results=[_failed_build(), _failed_build()],
        fixes=["I think you should add an import."],
    )

    with pytest.raises(RetriesExhaustedError):
        _loop(agents, max_retries=2).run(_task(), CancelToken())

    assert len(agents.executor.prompts) == 1


def test_fenced_fix_is_accepted(make_agents) -> None:
    agents = make_agents(
        executions=["built", "fixed"],
        shell_results=[_failed_build(), "ok"],
        fixes=[f"Here you go:\n```json\n{_fix('fenced fix')}\n```"],
    )

    result = _loop(agents, max_retries=2).run(_task(), CancelToken())

    assert result.attempts == 2
    assert "fenced fix" in agents.executor.prompts[1]


def test_unknown_fix_type_is_logged_and_still_applied(make_agents, caplog) -> None:
    raw_fix = json.dumps({"analysis": "a", "fix_type": "rewrite", "fix_content": "start over"})
    agents = make_agents(
        executions=["built", "fixed"],
        shell_results=[_failed_build(), "ok"],
        fixes=[raw_fix],
    )

    with caplog.at_level("INFO", logger="app_factory.orchestrator.loop"):
        result = _loop(agents, max_retries=2).run(_task(), CancelToken())

    assert result.attempts == 2
    assert "start over" in agents.executor.prompts[1]
    assert "Unknown fix type 'rewrite'" in caplog.text


def test_known_fix_type_is_logged(make_agents, caplog) -> None:
    agents = make_agents(
        executions=["built", "fixed"],
        shell_results=[_failed_build(), "ok"],
        fixes=[_fix()],
    )

    with caplog.at_level("INFO", logger="app_factory.orchestrator.loop"):
        _loop(agents, max_retries=2).run(_task(), CancelToken())

    assert "Debugger proposed code_patch fix: missing import" in caplog.text

def test_fix_application_failure_still_retests(make_agents) -> None:
    agents = make_agents(
        executions=["built", CallError("claude CLI error: exit status 2")],
        shell_results=[_failed_build(), "ok"],
        fixes=[_fix()],
    )

    result = _loop(agents, max_retries=2).run(_task(), CancelToken())

    assert result.attempts == 2
    assert result.execution_output == "built"
    assert len(agents.executor.commands) == 2


def test_cancelled_before_start_makes_no_calls(make_agents) -> None:
    agents = make_agents()
    cancel = CancelToken()
    cancel.cancel("SIGINT")

    with pytest.raises(LoopCancelledError) as excinfo:
        _loop(agents).run(_task(), cancel)

    assert excinfo.value.task_id == "t1"
    assert agents.planner.prompts == []


def test_cancellation_during_execution_stops_the_run(make_agents) -> None:
    cancel = CancelToken()

    def _interrupted():
        cancel.cancel("SIGTERM")
        return CallError("claude CLI timed out after 600s")

    agents = make_agents(executions=[_interrupted])

    with pytest.raises(LoopCancelledError):
        _loop(agents).run(_task(), cancel)

    assert agents.executor.commands == []


def test_max_retries_below_one_is_rejected(make_agents) -> None:
    with pytest.raises(ValueError, match="max_retries"):
        _loop(make_agents(), max_retries=0)

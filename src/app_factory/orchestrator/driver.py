"""Backlog driver: scheduler + autonomous loop + status bookkeeping."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from app_factory.orchestrator.cancellation import CancelToken
from app_factory.orchestrator.loop import (
    AutonomousLoop,
    LoopCancelledError,
    LoopError,
    LoopResult,
)
from app_factory.orchestrator.models import TaskStatus
from app_factory.orchestrator.scheduler import NoEligibleTaskError, blocked_tasks, next_pending
from app_factory.orchestrator.store import TaskNotFoundError, TaskStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DriverSummary:
    """Aggregate counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    blocked: int = 0


def run_continuous(store: TaskStore, loop: AutonomousLoop, cancel: CancelToken) -> DriverSummary:
    """Run eligible tasks one at a time until the backlog drains.

    Cancellation is checked between tasks. A task interrupted mid-run stays
    ``in_progress`` for manual inspection and ``LoopCancelledError`` is raised.
    """

    summary = DriverSummary()
    while True:
        if cancel.cancelled:
            raise LoopCancelledError(f"driver stopped: {cancel.reason or 'cancelled'}")

        snapshot = store.load()
        try:
            task = next_pending(snapshot)
        except NoEligibleTaskError as error:
            blocked = blocked_tasks(snapshot)
            summary.blocked = len(blocked)
            if not snapshot.tasks:
                logger.info("[LOOP] Task list is empty")
            elif blocked:
                logger.warning(
                    "[LOOP] %s; %d pending task(s) blocked by unmet dependencies",
                    error,
                    len(blocked),
                )
                for item in blocked:
                    logger.warning(
                        "[LOOP]   %s waits on %s",
                        item.task.id,
                        ", ".join(item.unmet_dependencies),
                    )
            else:
                logger.info("[LOOP] No pending tasks: %s", error)
            return summary

        logger.info("[LOOP] Picked task: %s (%s)", task.title, task.id)
        summary.processed += 1
        if not _write_status(store, task.id, TaskStatus.IN_PROGRESS):
            continue

        try:
            loop.run(task, cancel)
        except LoopError as error:
            summary.failed += 1
            logger.error("[LOOP] Task failed: %s", error)
            try:
                store.set_error(task.id, str(error))
            except TaskNotFoundError:
                logger.warning("[LOOP] Task %s vanished before its error was recorded", task.id)
            continue

        summary.succeeded += 1
        _write_status(store, task.id, TaskStatus.COMPLETED)
        logger.info("[LOOP] Task completed: %s", task.title)


def run_single(
    store: TaskStore,
    loop: AutonomousLoop,
    task_id: str,
    cancel: CancelToken,
) -> LoopResult:
    """Run one task by id without the scheduler; mark it completed on success."""

    task = store.get(task_id)
    result = loop.run(task, cancel)
    store.update_status(task.id, TaskStatus.COMPLETED)
    return result


def _write_status(store: TaskStore, task_id: str, status: TaskStatus) -> bool:
    try:
        store.update_status(task_id, status)
    except TaskNotFoundError:
        logger.warning(
            "[LOOP] Task %s vanished before it could be marked %s",
            task_id,
            status.value,
        )
        return False
    return True

from __future__ import annotations

import logging
from pathlib import Path

from conductor.engine.runner import TaskOutcome, TaskRunner
from conductor.errors import (
    AgentInvocationError,
    IntegrityError,
    MaxRetriesExceededError,
    PlanCancelledError,
)
from conductor.models import Plan, Task
from conductor.signals import EventSink
from conductor.state.store import PlanStore

logger = logging.getLogger(__name__)

MAX_RETRIES = 3


def exhausted_error(error: str, max_retries: int, attempts: int) -> str:
    return f"{error}\n\nMax retries ({max_retries}) exhausted after {attempts} attempts."


class RetryPolicy:
    """Runs a task until it succeeds or ``max_retries`` attempts are used up.

    The attempt counter is persisted before each run, so a resumed task picks
    up numbering where the last process left off. Failed attempts feed their
    error back into the next prompt through ``Task.last_error``.
    """

    def __init__(
        self,
        runner: TaskRunner,
        store: PlanStore,
        events: EventSink | None = None,
        *,
        max_retries: int = MAX_RETRIES,
    ) -> None:
        self.runner = runner
        self.store = store
        self.events = events or EventSink()
        self.max_retries = max(1, int(max_retries))

    def _fail(self, task: Task, error: str) -> MaxRetriesExceededError:
        if "\n\nMax retries (" in error:
            last_error = error
        else:
            last_error = exhausted_error(error, self.max_retries, task.attempts)
        self.store.update_task(task.plan_id, task.id, status="failed", last_error=last_error)
        self.events.emit(
            "task_failed",
            {
                "plan_id": task.plan_id,
                "task_id": task.id,
                "attempts": task.attempts,
                "error": error,
            },
        )
        logger.error("Task %s failed after %d attempt(s): %s", task.id, task.attempts, error)
        return MaxRetriesExceededError(task.id, task.attempts, last_error)

    async def execute(self, task: Task, plan: Plan, working_dir: Path) -> TaskOutcome:
        current = self.store.get_task(plan.id, task.id)
        if current is None:
            raise IntegrityError(f"Task not found: {task.id}")

        if current.attempts >= self.max_retries:
            raise self._fail(current, current.last_error or "Retry limit already reached")

        while True:
            current = self.store.increment_attempts(plan.id, task.id)
            if current.attempts > 1:
                self.events.emit(
                    "task_retry",
                    {
                        "plan_id": plan.id,
                        "task_id": current.id,
                        "attempt": current.attempts,
                        "last_error": current.last_error,
                    },
                )
            try:
                outcome = await self.runner.run_once(current, plan, working_dir)
            except PlanCancelledError:
                self.store.update_task(plan.id, task.id, status="pending")
                logger.info("Task %s stopped because plan %s was cancelled", task.id, plan.id)
                raise
            except AgentInvocationError as exc:
                error = str(exc)
                current = self.store.update_task(plan.id, task.id, last_error=error)
                self.events.emit(
                    "task_attempt_failed",
                    {
                        "plan_id": plan.id,
                        "task_id": task.id,
                        "attempt": current.attempts,
                        "error": error,
                    },
                )
                logger.warning(
                    "Task %s attempt %d/%d failed: %s",
                    task.id,
                    current.attempts,
                    self.max_retries,
                    error,
                )
                if current.attempts >= self.max_retries:
                    raise self._fail(current, error) from exc
                continue

            completed = self.store.record_task_completion(
                plan.id, task.id, commit_id=outcome.commit_id
            )
            self.events.emit(
                "task_completed",
                {
                    "plan_id": plan.id,
                    "task_id": task.id,
                    "attempts": completed.attempts,
                    "commit_id": outcome.commit_id,
                    "changed": outcome.changed,
                },
            )
            return outcome

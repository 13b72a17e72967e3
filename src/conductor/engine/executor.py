from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from conductor.engine.scheduler import PhaseScheduler
from conductor.errors import (
    IntegrityError,
    MaxRetriesExceededError,
    PlanAlreadyRunningError,
    PlanCancelledError,
    PlanStateError,
)
from conductor.models import (
    PAUSE_MANUAL_APPROVAL,
    PAUSE_PHASE_COMPLETE,
    PAUSE_TASK_FAILED,
    Plan,
    Task,
    utcnow_iso,
)
from conductor.signals import EventSink
from conductor.state.store import PlanStore

logger = logging.getLogger(__name__)

RESUMABLE_STATUSES = frozenset({"paused", "running", "completed"})


@dataclass(slots=True)
class ExecutionSummary:
    plan_id: str
    status: str
    pause_reason: str | None
    current_phase_id: str | None
    current_task_id: str | None
    completed_phases: int
    total_phases: int
    completed_tasks: int
    total_tasks: int

    @classmethod
    def from_plan(cls, plan: Plan) -> ExecutionSummary:
        return cls(
            plan_id=plan.id,
            status=plan.status,
            pause_reason=plan.pause_reason,
            current_phase_id=plan.current_phase_id,
            current_task_id=plan.current_task_id,
            completed_phases=plan.completed_phases,
            total_phases=plan.total_phases,
            completed_tasks=plan.completed_tasks,
            total_tasks=plan.total_tasks,
        )


class PlanExecutor:
    """Drives a plan through its phases and owns the plan-level state machine.

    Only one execution loop may be active per plan id in this process;
    ``execute_plan`` and ``resume_plan`` share the same lock.
    """

    def __init__(
        self,
        store: PlanStore,
        scheduler: PhaseScheduler,
        events: EventSink | None = None,
        *,
        base_dir: Path | None = None,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.events = events or EventSink()
        self.base_dir = (base_dir or Path.cwd()).resolve()
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, plan_id: str) -> asyncio.Lock:
        lock = self._locks.get(plan_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[plan_id] = lock
        if lock.locked():
            raise PlanAlreadyRunningError(f"Plan {plan_id} is already being executed")
        return lock

    def _require_plan(self, plan_id: str) -> Plan:
        plan = self.store.get_plan(plan_id)
        if plan is None:
            raise IntegrityError(f"Plan not found: {plan_id}")
        return plan

    def _require_task(self, plan_id: str, task_id: str) -> Task:
        task = self.store.get_task(plan_id, task_id)
        if task is None:
            raise IntegrityError(f"Task not found: {task_id}")
        return task

    def working_dir(self, plan: Plan) -> Path:
        repo_path = Path(plan.repo_path or ".")
        if not repo_path.is_absolute():
            repo_path = self.base_dir / repo_path
        return repo_path.resolve()

    def _summary(self, plan_id: str) -> ExecutionSummary:
        return ExecutionSummary.from_plan(self._require_plan(plan_id))

    def _pause(self, plan_id: str, reason: str, *, task_id: str | None = None) -> None:
        changes: dict[str, Any] = {"status": "paused", "pause_reason": reason}
        if task_id is not None:
            changes["current_task_id"] = task_id
        self.store.update_plan(plan_id, **changes)
        self.events.emit("plan_paused", {"plan_id": plan_id, "reason": reason, "task_id": task_id})
        logger.info("Plan %s paused: %s", plan_id, reason)

    async def execute_plan(self, plan_id: str) -> ExecutionSummary:
        async with self._lock_for(plan_id):
            return await self._execute(plan_id)

    async def resume_plan(self, plan_id: str) -> ExecutionSummary:
        async with self._lock_for(plan_id):
            plan = self._require_plan(plan_id)
            if plan.status not in RESUMABLE_STATUSES:
                raise PlanStateError(
                    f"Plan {plan_id} cannot be resumed from status {plan.status!r}"
                )
            if (
                plan.status == "paused"
                and plan.pause_reason == PAUSE_MANUAL_APPROVAL
                and plan.current_task_id
            ):
                self.store.update_plan(plan_id, approved_task_id=plan.current_task_id)
                logger.info("Approved task %s of plan %s", plan.current_task_id, plan_id)
            self.events.emit("plan_resumed", {"plan_id": plan_id, "from_status": plan.status})
            return await self._execute(plan_id)

    async def _execute(self, plan_id: str) -> ExecutionSummary:
        plan = self._require_plan(plan_id)
        if plan.status == "failed":
            raise PlanStateError(
                f"Plan {plan_id} has failed; reset or skip its tasks before running it again"
            )
        if plan.status == "completed":
            logger.info("Plan %s is already completed", plan_id)
            return ExecutionSummary.from_plan(plan)

        plan = self.store.update_plan(
            plan_id,
            status="running",
            started_at=plan.started_at or utcnow_iso(),
            pause_reason=None,
        )
        self.events.emit("plan_started", {"plan_id": plan_id, "title": plan.title})
        working_dir = self.working_dir(plan)
        logger.info("Executing plan %s (%s) in %s", plan_id, plan.title, working_dir)

        for phase in self.store.list_phases(plan_id):
            if phase.status == "completed":
                continue

            plan = self._require_plan(plan_id)
            if plan.status == "failed":
                logger.info("Plan %s was cancelled before phase %s", plan_id, phase.id)
                return ExecutionSummary.from_plan(plan)

            self.store.update_phase(
                plan_id,
                phase.id,
                status="running",
                started_at=phase.started_at or utcnow_iso(),
            )
            plan = self.store.update_plan(plan_id, current_phase_id=phase.id)
            self.events.emit(
                "phase_started",
                {
                    "plan_id": plan_id,
                    "phase_id": phase.id,
                    "order": phase.order,
                    "mode": phase.execution_mode,
                },
            )
            logger.info(
                "Executing phase %d: %s (%s)", phase.order, phase.title, phase.execution_mode
            )

            tasks = self.store.list_tasks(plan_id, phase.id)
            try:
                result = await self.scheduler.run(plan, phase, tasks, working_dir)
            except MaxRetriesExceededError as exc:
                self.store.update_phase(plan_id, phase.id, status="failed")
                if self._require_plan(plan_id).status == "failed":
                    # cancelled while the task was exhausting its retries
                    self.events.emit("plan_stopped", {"plan_id": plan_id, "phase_id": phase.id})
                    logger.info("Plan %s stopped after cancellation", plan_id)
                    return self._summary(plan_id)
                self._pause(plan_id, PAUSE_TASK_FAILED, task_id=exc.task_id)
                raise
            except PlanCancelledError:
                self.store.update_phase(plan_id, phase.id, status="pending")
                self.events.emit("plan_stopped", {"plan_id": plan_id, "phase_id": phase.id})
                logger.info("Plan %s stopped after cancellation", plan_id)
                return self._summary(plan_id)
            except Exception as exc:
                self.store.update_phase(plan_id, phase.id, status="failed")
                self.store.update_plan(plan_id, status="failed", pause_reason=None)
                self.events.emit(
                    "plan_failed",
                    {"plan_id": plan_id, "phase_id": phase.id, "error": str(exc)},
                )
                logger.error("Plan %s failed in phase %s: %s", plan_id, phase.id, exc)
                raise

            if result.status == "paused":
                self._pause(plan_id, result.reason or PAUSE_MANUAL_APPROVAL, task_id=result.task_id)
                return self._summary(plan_id)

            self.store.update_phase(
                plan_id, phase.id, status="completed", completed_at=utcnow_iso()
            )
            self.store.refresh_completed_phases(plan_id)
            self.events.emit("phase_completed", {"plan_id": plan_id, "phase_id": phase.id})
            logger.info("Phase %d completed", phase.order)

            if phase.pause_after:
                self._pause(plan_id, PAUSE_PHASE_COMPLETE)
                return self._summary(plan_id)

        self.store.update_plan(
            plan_id,
            status="completed",
            completed_at=utcnow_iso(),
            current_task_id=None,
            pause_reason=None,
        )
        self.events.emit("plan_completed", {"plan_id": plan_id})
        logger.info("Plan %s completed successfully", plan_id)
        return self._summary(plan_id)

    def cancel_plan(self, plan_id: str) -> ExecutionSummary:
        plan = self._require_plan(plan_id)
        if plan.status == "completed":
            raise PlanStateError(f"Plan {plan_id} is already completed")
        self.store.update_plan(plan_id, status="failed", pause_reason=None, approved_task_id=None)
        self.events.emit("plan_cancelled", {"plan_id": plan_id, "from_status": plan.status})
        logger.info("Plan %s cancelled", plan_id)
        return self._summary(plan_id)

    def _ensure_idle(self, plan: Plan) -> None:
        lock = self._locks.get(plan.id)
        if plan.status == "running" or (lock is not None and lock.locked()):
            raise PlanStateError(f"Plan {plan.id} is running; cancel or wait before editing tasks")

    def _reopen(self, plan: Plan, task: Task) -> None:
        phase = self.store.get_phase(plan.id, task.phase_id)
        if phase is not None and phase.status == "failed":
            self.store.update_phase(plan.id, phase.id, status="pending")
        if plan.status == "failed":
            self.store.update_plan(plan.id, status="paused", pause_reason=None)

    def reset_task(self, plan_id: str, task_id: str) -> Task:
        plan = self._require_plan(plan_id)
        self._ensure_idle(plan)
        task = self._require_task(plan_id, task_id)
        if task.status not in {"failed", "pending"}:
            raise PlanStateError(f"Task {task_id} is {task.status}; only failed tasks can be reset")
        updated = self.store.update_task(plan_id, task_id, status="pending", attempts=0)
        self._reopen(plan, task)
        self.events.emit("task_reset", {"plan_id": plan_id, "task_id": task_id})
        logger.info("Task %s reset", task_id)
        return updated

    def skip_task(self, plan_id: str, task_id: str) -> Task:
        plan = self._require_plan(plan_id)
        self._ensure_idle(plan)
        task = self._require_task(plan_id, task_id)
        if task.is_done:
            raise PlanStateError(f"Task {task_id} is already {task.status}")
        updated = self.store.update_task(plan_id, task_id, status="skipped")
        self._reopen(plan, task)
        self.events.emit("task_skipped", {"plan_id": plan_id, "task_id": task_id})
        logger.info("Task %s skipped", task_id)
        return updated

    def status(self, plan_id: str, *, event_limit: int = 20) -> dict[str, Any]:
        plan = self._require_plan(plan_id)
        events = self.store.get_events(plan_id)
        return {
            "plan": plan.to_dict(),
            "summary": ExecutionSummary.from_plan(plan),
            "phases": [phase.to_dict() for phase in self.store.list_phases(plan_id)],
            "tasks": [task.to_dict() for task in self.store.list_tasks(plan_id)],
            "events": events[-event_limit:] if event_limit > 0 else [],
        }

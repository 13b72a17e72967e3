from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from conductor.engine.retry import RetryPolicy
from conductor.errors import DependencyGraphStuckError, MaxRetriesExceededError
from conductor.models import PAUSE_MANUAL_APPROVAL, Phase, Plan, Task
from conductor.signals import EventSink
from conductor.state.store import PlanStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_PARALLEL_TASKS = 4


@dataclass(slots=True)
class PhaseResult:
    status: Literal["completed", "paused"]
    reason: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class TaskGraph:
    """Dependency edges of one phase, resolved from sibling positions to task ids."""

    task_ids: list[str]
    edges: dict[str, tuple[str, ...]] = field(default_factory=dict)
    invalid: dict[str, tuple[int, ...]] = field(default_factory=dict)

    @classmethod
    def build(cls, tasks: list[Task]) -> TaskGraph:
        ordered = sorted(tasks, key=lambda task: task.order)
        task_ids = [task.id for task in ordered]
        edges: dict[str, tuple[str, ...]] = {}
        invalid: dict[str, tuple[int, ...]] = {}
        for position, task in enumerate(ordered):
            resolved: list[str] = []
            bad: list[int] = []
            for index in task.depends_on:
                if (
                    not isinstance(index, int)
                    or index < 0
                    or index >= len(task_ids)
                    or index == position
                ):
                    bad.append(index)
                    continue
                resolved.append(task_ids[index])
            edges[task.id] = tuple(dict.fromkeys(resolved))
            if bad:
                invalid[task.id] = tuple(bad)
        return cls(task_ids=task_ids, edges=edges, invalid=invalid)

    def ready(self, done: set[str]) -> list[str]:
        return [
            task_id
            for task_id in self.task_ids
            if task_id not in done
            and task_id not in self.invalid
            and all(dep in done for dep in self.edges.get(task_id, ()))
        ]


class PhaseScheduler:
    """Chooses the order in which a phase's tasks run, per execution mode."""

    def __init__(
        self,
        store: PlanStore,
        retry_policy: RetryPolicy,
        events: EventSink | None = None,
        *,
        max_parallel_tasks: int = DEFAULT_MAX_PARALLEL_TASKS,
    ) -> None:
        self.store = store
        self.retry_policy = retry_policy
        self.events = events or EventSink()
        self.max_parallel_tasks = max(1, int(max_parallel_tasks))

    async def run(
        self, plan: Plan, phase: Phase, tasks: list[Task], working_dir: Path
    ) -> PhaseResult:
        ordered = sorted(tasks, key=lambda task: task.order)
        if phase.execution_mode == "parallel":
            return await self._run_parallel(plan, phase, ordered, working_dir)
        if phase.execution_mode == "manual":
            return await self._run_manual(plan, phase, ordered, working_dir)
        return await self._run_sequential(plan, ordered, working_dir)

    def _reload(self, plan_id: str, phase_id: str) -> dict[str, Task]:
        return {task.id: task for task in self.store.list_tasks(plan_id, phase_id)}

    async def _run_sequential(
        self, plan: Plan, tasks: list[Task], working_dir: Path
    ) -> PhaseResult:
        for task in tasks:
            if task.is_done:
                continue
            await self.retry_policy.execute(task, plan, working_dir)
        return PhaseResult(status="completed")

    async def _run_manual(
        self, plan: Plan, phase: Phase, tasks: list[Task], working_dir: Path
    ) -> PhaseResult:
        for task in tasks:
            if task.is_done:
                continue
            current_plan = self.store.get_plan(plan.id) or plan
            if current_plan.approved_task_id != task.id:
                self.events.emit(
                    "approval_required",
                    {"plan_id": plan.id, "phase_id": phase.id, "task_id": task.id},
                )
                logger.info("Task %s is waiting for manual approval", task.id)
                return PhaseResult(status="paused", reason=PAUSE_MANUAL_APPROVAL, task_id=task.id)
            self.store.update_plan(plan.id, approved_task_id=None)
            await self.retry_policy.execute(task, plan, working_dir)
        return PhaseResult(status="completed")

    async def _run_parallel(
        self, plan: Plan, phase: Phase, tasks: list[Task], working_dir: Path
    ) -> PhaseResult:
        graph = TaskGraph.build(tasks)
        if graph.invalid:
            logger.warning("Phase %s has unsatisfiable dependencies: %s", phase.id, graph.invalid)
        semaphore = asyncio.Semaphore(self.max_parallel_tasks)

        async def _bounded(task: Task) -> None:
            async with semaphore:
                await self.retry_policy.execute(task, plan, working_dir)

        while True:
            current = self._reload(plan.id, phase.id)
            done = {task_id for task_id, task in current.items() if task.is_done}
            if len(done) >= len(graph.task_ids):
                return PhaseResult(status="completed")

            ready = [current[task_id] for task_id in graph.ready(done)]
            if not ready:
                pending = [task_id for task_id in graph.task_ids if task_id not in done]
                self.events.emit(
                    "dependency_graph_stuck",
                    {"plan_id": plan.id, "phase_id": phase.id, "pending": pending},
                )
                raise DependencyGraphStuckError(phase.id, pending)

            concurrent = [task for task in ready if task.can_run_in_parallel]
            one_at_a_time = [task for task in ready if not task.can_run_in_parallel]

            if concurrent:
                logger.info(
                    "Phase %s: running %d task(s) concurrently", phase.id, len(concurrent)
                )
                results = await asyncio.gather(
                    *(_bounded(task) for task in concurrent), return_exceptions=True
                )
                errors = [result for result in results if isinstance(result, BaseException)]
                if errors:
                    exhausted = [
                        error for error in errors if isinstance(error, MaxRetriesExceededError)
                    ]
                    raise (exhausted or errors)[0]

            for task in one_at_a_time:
                await self.retry_policy.execute(task, plan, working_dir)

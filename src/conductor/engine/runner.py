from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from conductor.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError
from conductor.engine.activity import ActivityTracker, tracking_key
from conductor.errors import (
    ActivityTimeoutError,
    AgentInvocationError,
    IntegrityError,
    PlanCancelledError,
)
from conductor.models import Plan, Task, utcnow_iso
from conductor.signals import EventSink, SignalBus
from conductor.state.store import PlanStore
from conductor.state.workspace import GitWorkspace, WorkspaceError

logger = logging.getLogger(__name__)

DEFAULT_AGENT_TIMEOUT_SECONDS = 300.0
DEFAULT_POLL_INTERVAL_SECONDS = 5.0


@dataclass(slots=True)
class TaskOutcome:
    changed: bool
    commit_id: str | None = None
    output: str = ""
    files: list[str] = field(default_factory=list)


def build_prompt(task: Task, plan: Plan) -> str:
    plan_context = f"Plan: {plan.title}"
    if plan.description:
        plan_context = f"{plan_context}\n{plan.description}"
    prompt = f"{plan_context}\n\nTask: {task.title}\n{task.description}"
    if task.attempts > 1 and task.last_error:
        prompt = (
            f"Previous attempt failed. Error:\n{task.last_error}\n\n"
            f"Please fix and try again.\n\n{prompt}"
        )
    return prompt


def build_commit_message(task: Task, plan: Plan) -> tuple[str, str]:
    return task.title, f"Plan: {plan.title}"


class TaskRunner:
    """Runs a single attempt of a task: agent call, tree inspection, commit."""

    def __init__(
        self,
        backend: AgentBackend,
        store: PlanStore,
        tracker: ActivityTracker,
        bus: SignalBus,
        events: EventSink | None = None,
        *,
        agent_timeout_seconds: float = DEFAULT_AGENT_TIMEOUT_SECONDS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self.backend = backend
        self.store = store
        self.tracker = tracker
        self.bus = bus
        self.events = events or EventSink()
        self.agent_timeout_seconds = agent_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._workspaces: dict[Path, tuple[asyncio.AbstractEventLoop, GitWorkspace]] = {}

    def workspace(self, working_dir: Path) -> GitWorkspace:
        # commit_lock binds to the loop that first waits on it
        loop = asyncio.get_running_loop()
        key = working_dir.resolve()
        cached = self._workspaces.get(key)
        if cached is None or cached[0] is not loop:
            cached = (loop, GitWorkspace(key))
            self._workspaces[key] = cached
        return cached[1]

    def _ensure_not_cancelled(self, plan_id: str) -> None:
        plan = self.store.get_plan(plan_id)
        if plan is None:
            raise IntegrityError(f"Plan not found: {plan_id}")
        if plan.status == "failed":
            raise PlanCancelledError(f"Plan {plan_id} was cancelled")

    async def run_once(self, task: Task, plan: Plan, working_dir: Path) -> TaskOutcome:
        self._ensure_not_cancelled(plan.id)
        correlation_id = f"{task.id}:{task.attempts}:{uuid4().hex[:8]}"
        activity_key = tracking_key(plan.id, task.id)
        prompt = build_prompt(task, plan)

        self.store.update_task(
            plan.id,
            task.id,
            status="running",
            started_at=task.started_at or utcnow_iso(),
        )
        self.store.update_plan(plan.id, current_task_id=task.id)
        self.tracker.start_tracking(activity_key, correlation_id)
        self.bus.publish(correlation_id, "status_change", "running")
        if task.attempts > 1:
            self.bus.publish(correlation_id, "agent_retry", str(task.attempts))
        self.events.emit(
            "task_started",
            {"plan_id": plan.id, "task_id": task.id, "attempt": task.attempts},
        )
        logger.info("Running task %s (%s), attempt %d", task.id, task.title, task.attempts)

        try:
            output = await self._invoke_agent(task, plan, prompt, working_dir, correlation_id)
            workspace = self.workspace(working_dir)
            async with workspace.commit_lock:
                diff = workspace.diff()
                self.bus.publish(correlation_id, "diff_captured", f"{len(diff)} bytes")
                if not diff.strip():
                    logger.info("Task %s produced no changes", task.id)
                    return TaskOutcome(changed=False, output=output)
                files = workspace.changed_paths()
                subject, body = build_commit_message(task, plan)
                commit_id = workspace.commit_all(subject, body)
            self.bus.publish(correlation_id, "status_change", "committed")
            logger.info("Task %s committed %s (%d files)", task.id, commit_id[:10], len(files))
            return TaskOutcome(changed=True, commit_id=commit_id, output=output, files=files)
        except (AgentInvocationError, PlanCancelledError, IntegrityError):
            raise
        except (BackendExecutionError, WorkspaceError) as exc:
            raise AgentInvocationError(str(exc) or type(exc).__name__) from exc
        except Exception as exc:
            logger.exception("Unexpected failure while running task %s", task.id)
            raise AgentInvocationError(str(exc) or type(exc).__name__) from exc
        finally:
            self.tracker.stop_tracking(activity_key)

    async def _invoke_agent(
        self,
        task: Task,
        plan: Plan,
        prompt: str,
        working_dir: Path,
        correlation_id: str,
    ) -> str:
        async def _consume() -> str:
            chunks: list[str] = []
            async for chunk in self.backend.execute(prompt, working_dir):
                chunks.append(chunk)
                self.bus.publish(correlation_id, "agent_output")
            return "".join(chunks)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.agent_timeout_seconds
        agent = asyncio.create_task(_consume())
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise BackendTimeoutError(
                        f"Agent invocation timed out after {self.agent_timeout_seconds:g}s",
                        backend=self.backend.name,
                    )
                done, _ = await asyncio.wait(
                    {agent}, timeout=min(self.poll_interval_seconds, remaining)
                )
                if agent in done:
                    return agent.result()

                reason = self.tracker.check_timeout(tracking_key(plan.id, task.id))
                if reason:
                    self.events.emit(
                        "activity_timeout",
                        {"plan_id": plan.id, "task_id": task.id, "reason": reason},
                    )
                    logger.warning("Task %s is stuck: %s", task.id, reason)
                    raise ActivityTimeoutError(reason)
                self._ensure_not_cancelled(plan.id)
        finally:
            if not agent.done():
                agent.cancel()
                await asyncio.gather(agent, return_exceptions=True)

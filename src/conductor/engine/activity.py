from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace

from conductor.signals import ActivitySource, ExecutionSignal, SignalBus

logger = logging.getLogger(__name__)


def tracking_key(plan_id: str, task_id: str) -> str:
    # task ids repeat across plans (task-1-1 in every plan file)
    return f"{plan_id}/{task_id}"


@dataclass(slots=True, frozen=True)
class ActivityTimeoutConfig:
    inactivity_threshold_seconds: float = 120.0
    min_runtime_seconds: float = 30.0


@dataclass(slots=True)
class TaskActivityState:
    task_id: str
    correlation_id: str
    started_at: float
    last_activity_at: float
    last_activity_source: ActivitySource = "status_change"
    is_active: bool = True


class ActivityTracker:
    """Decides whether a running task is stuck from its most recent activity.

    A task is only reported once it has run for ``min_runtime_seconds`` and
    no signal (agent output, status change, QA gate, diff capture, retry or a
    manual ping) arrived for ``inactivity_threshold_seconds``. Total elapsed
    time alone never triggers a timeout.
    """

    def __init__(
        self,
        bus: SignalBus,
        config: ActivityTimeoutConfig | None = None,
        *,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.bus = bus
        self._config = config or ActivityTimeoutConfig()
        self._clock = clock or bus.clock
        self._states: dict[str, TaskActivityState] = {}
        self._queues: dict[str, asyncio.Queue[ExecutionSignal]] = {}

    @property
    def config(self) -> ActivityTimeoutConfig:
        return self._config

    def update_config(self, **changes: float) -> ActivityTimeoutConfig:
        self._config = replace(self._config, **changes)
        logger.info("Activity timeout configuration updated: %s", self._config)
        return self._config

    @property
    def tracked_task_ids(self) -> list[str]:
        return sorted(self._states)

    def start_tracking(self, task_id: str, correlation_id: str) -> None:
        if task_id in self._states:
            self.stop_tracking(task_id)
        now = self._clock()
        self._states[task_id] = TaskActivityState(
            task_id=task_id,
            correlation_id=correlation_id,
            started_at=now,
            last_activity_at=now,
        )
        self._queues[task_id] = self.bus.subscribe(correlation_id)
        logger.debug("Started tracking task %s (correlation %s)", task_id, correlation_id)

    def stop_tracking(self, task_id: str) -> None:
        state = self._states.pop(task_id, None)
        self._queues.pop(task_id, None)
        if state is None:
            return
        state.is_active = False
        self.bus.unsubscribe(state.correlation_id)
        logger.debug("Stopped tracking task %s", task_id)

    def record_activity(
        self, task_id: str, source: ActivitySource, at: float | None = None
    ) -> None:
        state = self._states.get(task_id)
        if state is None:
            return
        timestamp = self._clock() if at is None else at
        if timestamp >= state.last_activity_at:
            state.last_activity_at = timestamp
            state.last_activity_source = source
        if source != "agent_output":
            logger.debug("Activity recorded for %s: %s", task_id, source)

    def _drain(self, task_id: str) -> None:
        queue = self._queues.get(task_id)
        if queue is None:
            return
        while not queue.empty():
            signal = queue.get_nowait()
            self.record_activity(task_id, signal.source, at=signal.at)

    def get_state(self, task_id: str) -> TaskActivityState | None:
        self._drain(task_id)
        return self._states.get(task_id)

    def check_timeout(self, task_id: str) -> str | None:
        self._drain(task_id)
        state = self._states.get(task_id)
        if state is None:
            return None

        now = self._clock()
        runtime_seconds = now - state.started_at
        inactivity_seconds = now - state.last_activity_at
        if runtime_seconds < self._config.min_runtime_seconds:
            return None
        if inactivity_seconds < self._config.inactivity_threshold_seconds:
            return None

        total_minutes = int(runtime_seconds // 60)
        inactive_minutes = int(inactivity_seconds // 60)
        inactive_seconds = int(inactivity_seconds % 60)
        return (
            "Task timed out due to inactivity. "
            f"No activity for {inactive_minutes}m {inactive_seconds}s "
            f"(last activity: {state.last_activity_source}). "
            f"Total runtime: {total_minutes} minutes."
        )

    def time_until_timeout(self, task_id: str) -> float | None:
        self._drain(task_id)
        state = self._states.get(task_id)
        if state is None:
            return None
        now = self._clock()
        runtime_seconds = now - state.started_at
        if runtime_seconds < self._config.min_runtime_seconds:
            return (
                self._config.min_runtime_seconds - runtime_seconds
            ) + self._config.inactivity_threshold_seconds
        inactivity_seconds = now - state.last_activity_at
        return max(0.0, self._config.inactivity_threshold_seconds - inactivity_seconds)

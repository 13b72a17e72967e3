from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

from conductor.state.store import PlanStore

logger = logging.getLogger(__name__)

ActivitySource = Literal[
    "agent_output",
    "status_change",
    "qa_gate_running",
    "qa_gate_result",
    "diff_captured",
    "agent_retry",
    "manual",
]

EventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True, frozen=True)
class ExecutionSignal:
    correlation_id: str
    source: ActivitySource
    at: float
    detail: str = ""


class SignalBus:
    """Routes execution signals to one bounded queue per correlation id.

    Publishing never blocks: when a subscriber's queue is full the oldest
    signal is dropped, since consumers only care about the most recent one.
    """

    def __init__(self, *, maxsize: int = 256, clock: Callable[[], float] = time.monotonic) -> None:
        self.maxsize = maxsize
        self.clock = clock
        self._queues: dict[str, asyncio.Queue[ExecutionSignal]] = {}
        self.dropped = 0

    def subscribe(self, correlation_id: str) -> asyncio.Queue[ExecutionSignal]:
        queue = self._queues.get(correlation_id)
        if queue is None:
            queue = asyncio.Queue(maxsize=self.maxsize)
            self._queues[correlation_id] = queue
        return queue

    def unsubscribe(self, correlation_id: str) -> None:
        self._queues.pop(correlation_id, None)

    def is_subscribed(self, correlation_id: str) -> bool:
        return correlation_id in self._queues

    def publish(self, correlation_id: str, source: ActivitySource, detail: str = "") -> bool:
        queue = self._queues.get(correlation_id)
        if queue is None:
            return False
        signal = ExecutionSignal(
            correlation_id=correlation_id,
            source=source,
            at=self.clock(),
            detail=detail,
        )
        if queue.full():
            queue.get_nowait()
            self.dropped += 1
        queue.put_nowait(signal)
        return True


class EventSink:
    """Fire-and-forget progress events fanned out to registered hooks."""

    def __init__(self, hooks: list[EventHook] | None = None) -> None:
        self.hooks: list[EventHook] = list(hooks or [])

    def add_hook(self, hook: EventHook) -> None:
        self.hooks.append(hook)

    def emit(self, event_type: str, payload: dict[str, Any] | None = None) -> None:
        event = {"event": event_type, **(payload or {})}
        for hook in self.hooks:
            try:
                hook(event)
            except Exception:
                logger.exception("Event hook failed for %s", event_type)


def record_to_store(store: PlanStore) -> EventHook:
    """Hook persisting plan-scoped events into the plan document."""

    def _hook(event: dict[str, Any]) -> None:
        plan_id = event.get("plan_id")
        if isinstance(plan_id, str) and plan_id:
            store.append_event(plan_id, event)

    return _hook

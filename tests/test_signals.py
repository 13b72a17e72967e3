import asyncio
from pathlib import Path
from typing import Any

from conductor.models import Phase, Plan
from conductor.signals import EventSink, SignalBus, record_to_store
from conductor.state.store import PlanStore


def test_event_sink_isolates_failing_hooks() -> None:
    seen: list[dict[str, Any]] = []

    def _broken(event: dict[str, Any]) -> None:
        raise ValueError("hook exploded")

    sink = EventSink([_broken])
    sink.add_hook(seen.append)

    sink.emit("task_started", {"plan_id": "plan-1", "task_id": "task-1-1"})

    assert seen == [{"event": "task_started", "plan_id": "plan-1", "task_id": "task-1-1"}]


def test_record_to_store_keeps_plan_scoped_events(tmp_path: Path) -> None:
    store = PlanStore(tmp_path / "state", event_history=2)
    store.create_plan(
        Plan(id="plan-1", title="Billing"), [Phase(id="phase-1", plan_id="plan-1", order=1)], []
    )
    sink = EventSink()
    sink.add_hook(record_to_store(store))

    sink.emit("plan_started", {"plan_id": "plan-1"})
    sink.emit("heartbeat")
    sink.emit("phase_started", {"plan_id": "plan-1", "phase_id": "phase-1"})
    sink.emit("phase_completed", {"plan_id": "plan-1", "phase_id": "phase-1"})

    assert [event["event"] for event in store.get_events("plan-1")] == [
        "phase_started",
        "phase_completed",
    ]


def test_signal_bus_drops_oldest_when_full() -> None:
    bus = SignalBus(maxsize=2, clock=lambda: 5.0)

    async def _run() -> list[str]:
        queue = bus.subscribe("task-1:1:abc")
        assert bus.publish("task-1:1:abc", "status_change", "running")
        assert bus.publish("task-1:1:abc", "agent_output")
        assert bus.publish("task-1:1:abc", "diff_captured")
        assert not bus.publish("other", "agent_output")
        return [queue.get_nowait().source for _ in range(queue.qsize())]

    assert asyncio.run(_run()) == ["agent_output", "diff_captured"]
    assert bus.dropped == 1

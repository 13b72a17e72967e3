import json
from pathlib import Path

import pytest

from conductor.errors import IntegrityError
from conductor.models import Phase, Plan, Task
from conductor.state.store import PlanStore, StateError


def _seed(store: PlanStore, plan_id: str = "plan-1") -> Plan:
    plan = Plan(id=plan_id, title="Billing", description="Add invoices")
    phases = [
        Phase(id="phase-2", plan_id=plan_id, order=2, title="API"),
        Phase(id="phase-1", plan_id=plan_id, order=1, title="Schema"),
    ]
    tasks = [
        Task(id="task-2-1", phase_id="phase-2", plan_id=plan_id, order=0, title="Endpoints"),
        Task(id="task-1-2", phase_id="phase-1", plan_id=plan_id, order=1, title="Indexes"),
        Task(id="task-1-1", phase_id="phase-1", plan_id=plan_id, order=0, title="Tables"),
    ]
    return store.create_plan(plan, phases, tasks)


def test_create_plan_computes_totals_and_orders_records(tmp_path: Path) -> None:
    store = PlanStore(tmp_path / "state")
    _seed(store)

    plan = store.get_plan("plan-1")
    assert plan is not None
    assert plan.total_phases == 2
    assert plan.total_tasks == 3
    assert plan.status == "draft"

    assert [phase.id for phase in store.list_phases("plan-1")] == ["phase-1", "phase-2"]
    assert store.get_phase("plan-1", "phase-1").total_tasks == 2
    assert [task.id for task in store.list_tasks("plan-1")] == [
        "task-1-1",
        "task-1-2",
        "task-2-1",
    ]
    assert [task.id for task in store.list_tasks("plan-1", "phase-2")] == ["task-2-1"]


def test_document_uses_versioned_envelope(tmp_path: Path) -> None:
    store = PlanStore(tmp_path / "state")
    _seed(store)
    first_revision = store.get_envelope("plan-1")["revision"]

    store.update_plan("plan-1", status="running")

    envelope = store.get_envelope("plan-1")
    assert envelope["schema_version"] == PlanStore.SCHEMA_VERSION
    assert envelope["revision"] == first_revision + 1
    on_disk = json.loads((tmp_path / "state" / "plans" / "plan-1.json").read_text("utf-8"))
    assert on_disk["data"]["plan"]["status"] == "running"
    assert not list((tmp_path / "state" / "plans").glob(".*.lock"))


def test_duplicate_plan_and_unknown_phase_are_rejected(tmp_path: Path) -> None:
    store = PlanStore(tmp_path / "state")
    _seed(store)

    with pytest.raises(StateError):
        _seed(store)

    orphan = Task(id="t", phase_id="missing", plan_id="plan-2", order=0, title="Orphan")
    with pytest.raises(IntegrityError):
        store.create_plan(Plan(id="plan-2", title="Other"), [], [orphan])


def test_updates_reject_unknown_fields_and_missing_records(tmp_path: Path) -> None:
    store = PlanStore(tmp_path / "state")
    _seed(store)

    with pytest.raises(StateError):
        store.update_task("plan-1", "task-1-1", colour="red")
    with pytest.raises(IntegrityError):
        store.update_task("plan-1", "task-9-9", status="running")
    with pytest.raises(IntegrityError):
        store.update_plan("nope", status="running")
    assert store.get_plan("nope") is None
    assert store.get_task("plan-1", "task-9-9") is None


def test_record_task_completion_counts_each_task_once(tmp_path: Path) -> None:
    store = PlanStore(tmp_path / "state")
    _seed(store)

    store.increment_attempts("plan-1", "task-1-1")
    task = store.record_task_completion("plan-1", "task-1-1", commit_id="abc123")
    store.record_task_completion("plan-1", "task-1-1", commit_id="abc123")

    assert task.status == "completed"
    assert task.attempts == 1
    assert task.commit_id == "abc123"
    assert task.completed_at is not None
    assert store.get_phase("plan-1", "phase-1").completed_tasks == 1
    assert store.get_plan("plan-1").completed_tasks == 1


def test_refresh_completed_phases_reads_persisted_statuses(tmp_path: Path) -> None:
    store = PlanStore(tmp_path / "state")
    _seed(store)

    store.update_phase("plan-1", "phase-1", status="completed")

    assert store.refresh_completed_phases("plan-1") == 1
    assert store.get_plan("plan-1").completed_phases == 1


def test_events_are_capped_to_history(tmp_path: Path) -> None:
    store = PlanStore(tmp_path / "state", event_history=3)
    _seed(store)

    for index in range(5):
        store.append_event("plan-1", {"event": "tick", "index": index})

    events = store.get_events("plan-1")
    assert [event["index"] for event in events] == [2, 3, 4]
    assert all("at" in event for event in events)


def test_list_plans_returns_every_stored_plan(tmp_path: Path) -> None:
    store = PlanStore(tmp_path / "state")
    assert store.list_plans() == []

    _seed(store, "plan-a")
    _seed(store, "plan-b")

    assert {plan.id for plan in store.list_plans()} == {"plan-a", "plan-b"}


def test_corrupt_document_raises_state_error(tmp_path: Path) -> None:
    store = PlanStore(tmp_path / "state")
    (tmp_path / "state" / "plans" / "broken.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(StateError):
        store.get_plan("broken")

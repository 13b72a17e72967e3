from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from conductor.errors import IntegrityError
from conductor.models import Phase, Plan, Task, utcnow_iso


class StateError(RuntimeError):
    """Raised when plan-state operations fail."""


PlanDocument = dict[str, Any]


class PlanStore:
    """Persists one JSON document per plan holding the plan, its phases and tasks.

    Every mutation is a read-modify-write performed under a per-plan lock file,
    so counter updates from concurrent task completions are applied as single
    increments instead of last-write-wins snapshots.
    """

    SCHEMA_VERSION = 1

    def __init__(self, root: Path, *, event_history: int = 200) -> None:
        self.root = root.resolve()
        self.plans_dir = self.root / "plans"
        self.plans_dir.mkdir(parents=True, exist_ok=True)
        self.event_history = max(1, int(event_history))

    def _plan_file(self, plan_id: str) -> Path:
        return self.plans_dir / f"{plan_id}.json"

    def _lock_file(self, plan_id: str) -> Path:
        return self.plans_dir / f".{plan_id}.lock"

    @contextmanager
    def _plan_lock(self, plan_id: str, timeout_seconds: float = 3.0):
        lock_file = self._lock_file(plan_id)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateError(f"Timed out waiting for plan lock: {plan_id}") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_envelope(self, plan_id: str) -> dict[str, Any] | None:
        plan_file = self._plan_file(plan_id)
        if not plan_file.exists():
            return None
        try:
            payload = json.loads(plan_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateError(f"Plan document is corrupt: {plan_file}") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
            raise StateError(f"Plan document has an unexpected shape: {plan_file}")
        return payload

    def _write_envelope(self, plan_id: str, data: PlanDocument, revision: int) -> None:
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": utcnow_iso(),
            "data": data,
        }
        plan_file = self._plan_file(plan_id)
        temp_file = plan_file.with_suffix(".json.tmp")
        temp_file.write_text(
            json.dumps(envelope, ensure_ascii=False, separators=(",", ":")),
            encoding="utf-8",
        )
        os.replace(temp_file, plan_file)

    def _document(self, plan_id: str) -> PlanDocument | None:
        envelope = self._read_envelope(plan_id)
        if envelope is None:
            return None
        return envelope["data"]

    def _update(self, plan_id: str, updater: Callable[[PlanDocument], Any]) -> Any:
        with self._plan_lock(plan_id):
            envelope = self._read_envelope(plan_id)
            if envelope is None:
                raise IntegrityError(f"Plan not found: {plan_id}")
            data = envelope["data"]
            result = updater(data)
            self._write_envelope(plan_id, data, int(envelope.get("revision") or 1) + 1)
            return result

    @staticmethod
    def _find(items: list[dict[str, Any]], item_id: str, kind: str) -> dict[str, Any]:
        for item in items:
            if item.get("id") == item_id:
                return item
        raise IntegrityError(f"{kind} not found: {item_id}")

    @staticmethod
    def _apply(record: dict[str, Any], changes: dict[str, Any], kind: str) -> None:
        unknown = sorted(key for key in changes if key not in record)
        if unknown:
            raise StateError(f"Unknown {kind} field(s): {', '.join(unknown)}")
        record.update(changes)
        record["updated_at"] = utcnow_iso()

    def get_envelope(self, plan_id: str) -> dict[str, Any] | None:
        return self._read_envelope(plan_id)

    def create_plan(self, plan: Plan, phases: list[Phase], tasks: list[Task]) -> Plan:
        phase_ids = {phase.id for phase in phases}
        for task in tasks:
            if task.phase_id not in phase_ids:
                raise IntegrityError(f"Task {task.id} references unknown phase {task.phase_id}")
        for phase in phases:
            phase.total_tasks = sum(1 for task in tasks if task.phase_id == phase.id)
        plan.total_phases = len(phases)
        plan.total_tasks = len(tasks)

        data: PlanDocument = {
            "plan": plan.to_dict(),
            "phases": [phase.to_dict() for phase in phases],
            "tasks": [task.to_dict() for task in tasks],
            "events": [],
        }
        with self._plan_lock(plan.id):
            if self._plan_file(plan.id).exists():
                raise StateError(f"Plan already exists: {plan.id}")
            self._write_envelope(plan.id, data, 1)
        return plan

    def list_plans(self) -> list[Plan]:
        plans: list[Plan] = []
        for plan_file in sorted(self.plans_dir.glob("*.json")):
            data = self._document(plan_file.stem)
            if data is not None:
                plans.append(Plan.from_dict(data["plan"]))
        plans.sort(key=lambda plan: plan.created_at)
        return plans

    def get_plan(self, plan_id: str) -> Plan | None:
        data = self._document(plan_id)
        if data is None:
            return None
        return Plan.from_dict(data["plan"])

    def list_phases(self, plan_id: str) -> list[Phase]:
        data = self._document(plan_id)
        if data is None:
            raise IntegrityError(f"Plan not found: {plan_id}")
        phases = [Phase.from_dict(item) for item in data["phases"]]
        phases.sort(key=lambda phase: phase.order)
        return phases

    def get_phase(self, plan_id: str, phase_id: str) -> Phase | None:
        for phase in self.list_phases(plan_id):
            if phase.id == phase_id:
                return phase
        return None

    def list_tasks(self, plan_id: str, phase_id: str | None = None) -> list[Task]:
        data = self._document(plan_id)
        if data is None:
            raise IntegrityError(f"Plan not found: {plan_id}")
        phase_order = {item["id"]: item["order"] for item in data["phases"]}
        tasks = [
            Task.from_dict(item)
            for item in data["tasks"]
            if phase_id is None or item.get("phase_id") == phase_id
        ]
        tasks.sort(key=lambda task: (phase_order.get(task.phase_id, 0), task.order))
        return tasks

    def get_task(self, plan_id: str, task_id: str) -> Task | None:
        for task in self.list_tasks(plan_id):
            if task.id == task_id:
                return task
        return None

    def update_plan(self, plan_id: str, **changes: Any) -> Plan:
        def _updater(data: PlanDocument) -> Plan:
            self._apply(data["plan"], changes, "plan")
            return Plan.from_dict(data["plan"])

        return self._update(plan_id, _updater)

    def update_phase(self, plan_id: str, phase_id: str, **changes: Any) -> Phase:
        def _updater(data: PlanDocument) -> Phase:
            record = self._find(data["phases"], phase_id, "Phase")
            self._apply(record, changes, "phase")
            return Phase.from_dict(record)

        return self._update(plan_id, _updater)

    def update_task(self, plan_id: str, task_id: str, **changes: Any) -> Task:
        def _updater(data: PlanDocument) -> Task:
            record = self._find(data["tasks"], task_id, "Task")
            self._apply(record, changes, "task")
            return Task.from_dict(record)

        return self._update(plan_id, _updater)

    def increment_attempts(self, plan_id: str, task_id: str) -> Task:
        def _updater(data: PlanDocument) -> Task:
            record = self._find(data["tasks"], task_id, "Task")
            self._apply(record, {"attempts": int(record["attempts"]) + 1}, "task")
            return Task.from_dict(record)

        return self._update(plan_id, _updater)

    def record_task_completion(
        self, plan_id: str, task_id: str, *, commit_id: str | None = None
    ) -> Task:
        """Complete a task and bump the phase and plan counters in one write."""

        def _updater(data: PlanDocument) -> Task:
            record = self._find(data["tasks"], task_id, "Task")
            already_completed = record.get("status") == "completed"
            self._apply(
                record,
                {
                    "status": "completed",
                    "completed_at": utcnow_iso(),
                    "commit_id": commit_id,
                },
                "task",
            )
            if not already_completed:
                phase = self._find(data["phases"], record["phase_id"], "Phase")
                self._apply(phase, {"completed_tasks": int(phase["completed_tasks"]) + 1}, "phase")
                plan = data["plan"]
                self._apply(plan, {"completed_tasks": int(plan["completed_tasks"]) + 1}, "plan")
            return Task.from_dict(record)

        return self._update(plan_id, _updater)

    def refresh_completed_phases(self, plan_id: str) -> int:
        def _updater(data: PlanDocument) -> int:
            count = sum(1 for phase in data["phases"] if phase.get("status") == "completed")
            self._apply(data["plan"], {"completed_phases": count}, "plan")
            return count

        return self._update(plan_id, _updater)

    def append_event(self, plan_id: str, event: dict[str, Any]) -> None:
        def _updater(data: PlanDocument) -> None:
            events = data.get("events")
            if not isinstance(events, list):
                events = []
            payload = dict(event)
            payload.setdefault("at", utcnow_iso())
            events.append(payload)
            data["events"] = events[-self.event_history :]

        self._update(plan_id, _updater)

    def get_events(self, plan_id: str) -> list[dict[str, Any]]:
        data = self._document(plan_id)
        if data is None:
            raise IntegrityError(f"Plan not found: {plan_id}")
        events = data.get("events", [])
        return events if isinstance(events, list) else []

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from typing import Any, Literal

PlanStatus = Literal["draft", "running", "paused", "completed", "failed"]
PhaseStatus = Literal["pending", "running", "completed", "failed"]
TaskStatus = Literal["pending", "running", "completed", "failed", "skipped"]
ExecutionMode = Literal["sequential", "parallel", "manual"]

EXECUTION_MODES = ("sequential", "parallel", "manual")
DONE_TASK_STATUSES = frozenset({"completed", "skipped"})

PAUSE_PHASE_COMPLETE = "phase_complete"
PAUSE_MANUAL_APPROVAL = "manual_approval_required"
PAUSE_TASK_FAILED = "task_failed"


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class _Record:
    """Shared dict conversion for persisted records."""

    __slots__ = ()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)  # type: ignore[call-overload]

    @classmethod
    def from_dict(cls, payload: dict[str, Any]):
        known = {item.name for item in fields(cls)}  # type: ignore[arg-type]
        return cls(**{key: value for key, value in payload.items() if key in known})


@dataclass(slots=True)
class Plan(_Record):
    id: str
    title: str
    description: str = ""
    repo_path: str = "."
    status: PlanStatus = "draft"
    current_phase_id: str | None = None
    current_task_id: str | None = None
    pause_reason: str | None = None
    approved_task_id: str | None = None
    total_phases: int = 0
    completed_phases: int = 0
    total_tasks: int = 0
    completed_tasks: int = 0
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None


@dataclass(slots=True)
class Phase(_Record):
    id: str
    plan_id: str
    order: int
    title: str = ""
    execution_mode: ExecutionMode = "sequential"
    pause_after: bool = False
    status: PhaseStatus = "pending"
    total_tasks: int = 0
    completed_tasks: int = 0
    started_at: str | None = None
    completed_at: str | None = None
    updated_at: str = field(default_factory=utcnow_iso)


@dataclass(slots=True)
class Task(_Record):
    id: str
    phase_id: str
    plan_id: str
    order: int
    title: str
    description: str = ""
    depends_on: list[int] = field(default_factory=list)
    can_run_in_parallel: bool = False
    status: TaskStatus = "pending"
    attempts: int = 0
    last_error: str | None = None
    commit_id: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    updated_at: str = field(default_factory=utcnow_iso)

    @property
    def is_done(self) -> bool:
        return self.status in DONE_TASK_STATUSES

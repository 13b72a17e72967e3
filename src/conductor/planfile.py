"""Plan documents authored as TOML.

A plan file looks like::

    title = "Add billing"
    description = "Stripe integration"
    repo_path = "."

    [[phases]]
    title = "Schema"
    execution_mode = "sequential"
    pause_after = false

    [[phases.tasks]]
    title = "Create tables"
    description = "..."
    depends_on = []
    can_run_in_parallel = false

``depends_on`` holds zero-based positions of sibling tasks in the same phase.
"""

from __future__ import annotations

import tomllib
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from conductor.errors import ConductorError
from conductor.models import EXECUTION_MODES, Phase, Plan, Task

PLAN_KEYS = {"title", "description", "repo_path", "phases"}
PHASE_KEYS = {"title", "execution_mode", "pause_after", "tasks"}
TASK_KEYS = {"title", "description", "depends_on", "can_run_in_parallel"}


class PlanFileError(ConductorError):
    """Raised when a plan document is malformed."""


def new_plan_id() -> str:
    return f"plan-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


def _check_keys(payload: dict[str, Any], allowed: set[str], where: str) -> None:
    unknown = sorted(set(payload) - allowed)
    if unknown:
        raise PlanFileError(f"{where}: unknown key(s) {', '.join(unknown)}")


def _require_text(payload: dict[str, Any], key: str, where: str, *, required: bool) -> str:
    value = payload.get(key, "")
    if not isinstance(value, str):
        raise PlanFileError(f"{where}: {key} must be a string")
    if required and not value.strip():
        raise PlanFileError(f"{where}: {key} is required")
    return value.strip() if required else value


def _require_bool(payload: dict[str, Any], key: str, where: str) -> bool:
    value = payload.get(key, False)
    if not isinstance(value, bool):
        raise PlanFileError(f"{where}: {key} must be true or false")
    return value


def _find_cycle(dependencies: list[list[int]]) -> list[int] | None:
    visiting: set[int] = set()
    visited: set[int] = set()
    path: list[int] = []

    def _visit(node: int) -> list[int] | None:
        visiting.add(node)
        path.append(node)
        for dep in dependencies[node]:
            if dep in visiting:
                return path[path.index(dep) :] + [dep]
            if dep not in visited:
                cycle = _visit(dep)
                if cycle:
                    return cycle
        visiting.discard(node)
        visited.add(node)
        path.pop()
        return None

    for node in range(len(dependencies)):
        if node not in visited:
            cycle = _visit(node)
            if cycle:
                return cycle
    return None


def validate_dependencies(dependencies: list[list[int]], where: str) -> None:
    count = len(dependencies)
    for position, deps in enumerate(dependencies):
        for dep in deps:
            if dep == position:
                raise PlanFileError(f"{where}: task {position} depends on itself")
            if dep < 0 or dep >= count:
                raise PlanFileError(
                    f"{where}: task {position} depends on {dep}, "
                    f"valid positions are 0..{count - 1}"
                )
    cycle = _find_cycle(dependencies)
    if cycle:
        rendered = " -> ".join(str(item) for item in cycle)
        raise PlanFileError(f"{where}: dependency cycle {rendered}")


def parse_plan(
    data: dict[str, Any], *, plan_id: str | None = None
) -> tuple[Plan, list[Phase], list[Task]]:
    _check_keys(data, PLAN_KEYS, "plan")
    plan = Plan(
        id=plan_id or new_plan_id(),
        title=_require_text(data, "title", "plan", required=True),
        description=_require_text(data, "description", "plan", required=False),
        repo_path=_require_text(data, "repo_path", "plan", required=False) or ".",
    )

    raw_phases = data.get("phases")
    if not isinstance(raw_phases, list) or not raw_phases:
        raise PlanFileError("plan: at least one [[phases]] entry is required")

    phases: list[Phase] = []
    tasks: list[Task] = []
    for phase_number, raw_phase in enumerate(raw_phases, start=1):
        where = f"phase {phase_number}"
        if not isinstance(raw_phase, dict):
            raise PlanFileError(f"{where}: must be a table")
        _check_keys(raw_phase, PHASE_KEYS, where)
        mode = raw_phase.get("execution_mode", "sequential")
        if mode not in EXECUTION_MODES:
            raise PlanFileError(
                f"{where}: execution_mode must be one of {', '.join(EXECUTION_MODES)}"
            )
        phase = Phase(
            id=f"phase-{phase_number}",
            plan_id=plan.id,
            order=phase_number,
            title=_require_text(raw_phase, "title", where, required=True),
            execution_mode=mode,
            pause_after=_require_bool(raw_phase, "pause_after", where),
        )

        raw_tasks = raw_phase.get("tasks", [])
        if not isinstance(raw_tasks, list):
            raise PlanFileError(f"{where}: tasks must be an array of tables")
        dependencies: list[list[int]] = []
        for position, raw_task in enumerate(raw_tasks):
            task_where = f"{where}, task {position}"
            if not isinstance(raw_task, dict):
                raise PlanFileError(f"{task_where}: must be a table")
            _check_keys(raw_task, TASK_KEYS, task_where)
            depends_on = raw_task.get("depends_on", [])
            if not isinstance(depends_on, list) or not all(
                isinstance(item, int) and not isinstance(item, bool) for item in depends_on
            ):
                raise PlanFileError(f"{task_where}: depends_on must be a list of integers")
            dependencies.append(list(depends_on))
            tasks.append(
                Task(
                    id=f"task-{phase_number}-{position + 1}",
                    phase_id=phase.id,
                    plan_id=plan.id,
                    order=position,
                    title=_require_text(raw_task, "title", task_where, required=True),
                    description=_require_text(
                        raw_task, "description", task_where, required=False
                    ),
                    depends_on=list(depends_on),
                    can_run_in_parallel=_require_bool(raw_task, "can_run_in_parallel", task_where),
                )
            )
        validate_dependencies(dependencies, where)
        phases.append(phase)

    return plan, phases, tasks


def load_plan_file(
    path: Path, *, plan_id: str | None = None
) -> tuple[Plan, list[Phase], list[Task]]:
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise PlanFileError(f"Plan file not found: {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise PlanFileError(f"Could not parse {path}: {exc}") from exc
    return parse_plan(data, plan_id=plan_id)

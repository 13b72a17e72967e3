from __future__ import annotations


class ConductorError(RuntimeError):
    """Base class for plan execution failures."""


class IntegrityError(ConductorError):
    """Raised when a referenced plan, phase or task cannot be loaded."""


class PlanStateError(ConductorError):
    """Raised when a plan is asked to make an invalid transition."""


class PlanAlreadyRunningError(PlanStateError):
    """Raised when a second execution loop is requested for the same plan."""


class PlanCancelledError(ConductorError):
    """Raised inside an attempt once its plan has been cancelled."""


class AgentInvocationError(ConductorError):
    """Raised when a single task attempt fails."""


class ActivityTimeoutError(AgentInvocationError):
    """Raised when a task produced no activity signal for too long."""


class MaxRetriesExceededError(ConductorError):
    def __init__(self, task_id: str, attempts: int, last_error: str) -> None:
        super().__init__(
            f"Task {task_id} failed after {attempts} attempt(s): {last_error}"
        )
        self.task_id = task_id
        self.attempts = attempts
        self.last_error = last_error


class DependencyGraphStuckError(ConductorError):
    def __init__(self, phase_id: str, pending_task_ids: list[str]) -> None:
        super().__init__(
            f"Phase {phase_id} cannot make progress; no task is ready. "
            f"Pending tasks: {pending_task_ids}"
        )
        self.phase_id = phase_id
        self.pending_task_ids = pending_task_ids

from conductor.engine.activity import ActivityTimeoutConfig, ActivityTracker, TaskActivityState
from conductor.engine.executor import ExecutionSummary, PlanExecutor
from conductor.engine.retry import MAX_RETRIES, RetryPolicy
from conductor.engine.runner import TaskOutcome, TaskRunner, build_prompt
from conductor.engine.scheduler import PhaseResult, PhaseScheduler, TaskGraph

__all__ = [
    "MAX_RETRIES",
    "ActivityTimeoutConfig",
    "ActivityTracker",
    "ExecutionSummary",
    "PhaseResult",
    "PhaseScheduler",
    "PlanExecutor",
    "RetryPolicy",
    "TaskActivityState",
    "TaskGraph",
    "TaskOutcome",
    "TaskRunner",
    "build_prompt",
]

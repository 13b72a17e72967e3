from conductor.state.store import PlanStore, StateError
from conductor.state.workspace import GitWorkspace, WorkspaceError

__all__ = ["GitWorkspace", "PlanStore", "StateError", "WorkspaceError"]

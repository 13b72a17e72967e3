from conductor.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    SubprocessBackend,
)
from conductor.backends.claude import ClaudeCodeBackend
from conductor.backends.codex import CodexBackend

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "SubprocessBackend",
]

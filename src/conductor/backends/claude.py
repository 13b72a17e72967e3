from __future__ import annotations

from typing import Any

from conductor.backends.base import BackendEventHook, SubprocessBackend


class ClaudeCodeBackend(SubprocessBackend):
    name = "claude"

    def __init__(self, binary: str = "claude", event_hook: BackendEventHook | None = None) -> None:
        super().__init__(binary, event_hook=event_hook)

    def build_command(self, prompt: str) -> list[str]:
        return [
            self.binary,
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
        ]

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        content = SubprocessBackend._extract_content(event)
        if content:
            return content
        # stream-json wraps assistant turns as {"type": "assistant", "message": {...}}
        message = event.get("message")
        if isinstance(message, dict):
            return SubprocessBackend._extract_content(message)
        return ""

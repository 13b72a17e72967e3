from __future__ import annotations

from typing import Any

from conductor.backends.base import BackendEventHook, SubprocessBackend


class CodexBackend(SubprocessBackend):
    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
        model: str | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        super().__init__(binary, event_hook=event_hook)
        self.model = model

    def build_command(self, prompt: str) -> list[str]:
        command = [self.binary, "exec", "--json", "--full-auto"]
        if self.model and self.model.strip():
            command.extend(["-m", self.model.strip()])
        command.append(prompt)
        return command

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        content = SubprocessBackend._extract_content(event)
        if content:
            return content
        message = event.get("message")
        if isinstance(message, str):
            return message
        if isinstance(message, dict):
            msg_content = message.get("content")
            if isinstance(msg_content, str):
                return msg_content
        return ""

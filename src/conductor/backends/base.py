from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


class AgentBackend(ABC):
    name: str = "agent"

    @abstractmethod
    def execute(self, prompt: str, working_directory: Path) -> AsyncIterator[str]:
        """Run the agent in ``working_directory`` and stream textual chunks."""


class SubprocessBackend(AgentBackend):
    """Runs an agent CLI that prints JSON lines (or plain text) on stdout.

    Cancelling the consuming task terminates the child process.
    """

    terminate_grace_seconds: float = 5.0

    def __init__(self, binary: str, event_hook: BackendEventHook | None = None) -> None:
        self.binary = binary
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @abstractmethod
    def build_command(self, prompt: str) -> list[str]:
        """Return the argv used to invoke the agent."""

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=self.terminate_grace_seconds)
        except TimeoutError:
            process.kill()
            await process.wait()
        self._emit({"event": "agent_process_terminated", "backend": self.name})
        logger.info("Terminated %s agent process %s", self.name, process.pid)

    async def execute(self, prompt: str, working_directory: Path) -> AsyncIterator[str]:
        command = self.build_command(prompt)
        self._emit(
            {
                "event": "agent_process_start",
                "backend": self.name,
                "command": command[:2],
                "cwd": str(working_directory),
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(working_directory),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.name} binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                f"{self.name} backend did not expose stdout.", backend=self.name, retriable=False
            )

        try:
            parse_buffer = ""
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    yield line
                    continue

                if not isinstance(event, dict):
                    continue
                content = self._extract_content(event)
                if content:
                    yield content

            if parse_buffer:
                yield parse_buffer

            return_code = await process.wait()
        finally:
            await self._terminate(process)

        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        self._emit({"event": "agent_process_exit", "backend": self.name, "exit_code": return_code})
        if return_code != 0:
            raise BackendExecutionError(
                f"{self.name} backend failed with exit code {return_code}: {stderr_output}",
                backend=self.name,
                exit_code=return_code,
            )

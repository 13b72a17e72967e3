import asyncio
from pathlib import Path
from typing import Any

import pytest

from conductor.backends.base import BackendExecutionError, BackendProcessError
from conductor.backends.claude import ClaudeCodeBackend
from conductor.backends.codex import CodexBackend


class FakeStdout:
    def __init__(self, lines: list[bytes], *, block: bool = False) -> None:
        self._lines = lines
        self._index = 0
        self._block = block

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            if self._block:
                await asyncio.Event().wait()
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStderr:
    def __init__(self, payload: bytes = b"") -> None:
        self._payload = payload

    async def read(self) -> bytes:
        return self._payload


class FakeProcess:
    pid = 4242

    def __init__(
        self,
        lines: list[bytes],
        *,
        exit_code: int = 0,
        stderr: bytes = b"",
        block: bool = False,
    ) -> None:
        self.stdout = FakeStdout(lines, block=block)
        self.stderr = FakeStderr(stderr)
        self.returncode: int | None = None
        self._exit_code = exit_code
        self.terminated = False

    async def wait(self) -> int:
        self.returncode = -15 if self.terminated else self._exit_code
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True

    def kill(self) -> None:
        self.terminated = True


def _patch_subprocess(
    monkeypatch: pytest.MonkeyPatch, process: FakeProcess, captured: dict[str, Any]
) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["args"] = list(args)
        captured["cwd"] = kwargs.get("cwd")
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)


async def _collect(backend: Any, prompt: str, cwd: Path) -> str:
    chunks: list[str] = []
    async for chunk in backend.execute(prompt, cwd):
        chunks.append(chunk)
    return "".join(chunks)


def test_claude_build_command_shape() -> None:
    command = ClaudeCodeBackend(binary="claude").build_command("implement feature")

    assert command[0:3] == ["claude", "-p", "implement feature"]
    assert "--output-format" in command
    assert "stream-json" in command


def test_codex_build_command_shape() -> None:
    command = CodexBackend(binary="codex", model="gpt-5-codex").build_command("implement")

    assert command[0:2] == ["codex", "exec"]
    assert "--json" in command
    assert command[command.index("-m") + 1] == "gpt-5-codex"
    assert command[-1] == "implement"


def test_claude_backend_streams_message_text(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    events: list[dict[str, Any]] = []
    captured: dict[str, Any] = {}
    process = FakeProcess(
        [
            b'{"type":"assistant","message":{"content":[{"type":"text","text":"hello "}]}}\n',
            b"plain text line\n",
            b'{"type":"result","subtype":"success"}\n',
        ]
    )
    _patch_subprocess(monkeypatch, process, captured)

    backend = ClaudeCodeBackend(event_hook=events.append)
    output = asyncio.run(_collect(backend, "do it", tmp_path))

    assert output == "hello plain text line"
    assert captured["cwd"] == str(tmp_path)
    event_names = [event["event"] for event in events]
    assert event_names[0] == "agent_process_start"
    assert event_names[-1] == "agent_process_exit"


def test_codex_backend_reassembles_split_json(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    process = FakeProcess(
        [
            b'{"type":"item.completed","message":\n',
            b'"done"}\n',
        ]
    )
    _patch_subprocess(monkeypatch, process, {})

    output = asyncio.run(_collect(CodexBackend(), "do it", tmp_path))

    assert output == "done"


def test_non_zero_exit_raises_with_stderr(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    process = FakeProcess([], exit_code=2, stderr=b"rate limited")
    _patch_subprocess(monkeypatch, process, {})

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(_collect(ClaudeCodeBackend(), "do it", tmp_path))

    assert excinfo.value.exit_code == 2
    assert "rate limited" in str(excinfo.value)


def test_missing_binary_is_not_retriable(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    async def missing(*args: Any, **kwargs: Any) -> FakeProcess:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(asyncio, "create_subprocess_exec", missing)

    with pytest.raises(BackendProcessError) as excinfo:
        asyncio.run(_collect(ClaudeCodeBackend(binary="no-such-claude"), "do it", tmp_path))

    assert excinfo.value.retriable is False
    assert "no-such-claude" in str(excinfo.value)


def test_cancelling_the_consumer_terminates_the_process(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    events: list[dict[str, Any]] = []
    process = FakeProcess([b'{"content":"working"}\n'], block=True)
    _patch_subprocess(monkeypatch, process, {})
    backend = CodexBackend(event_hook=events.append)

    async def _run() -> None:
        consumer = asyncio.create_task(_collect(backend, "do it", tmp_path))
        await asyncio.sleep(0.05)
        consumer.cancel()
        await asyncio.gather(consumer, return_exceptions=True)

    asyncio.run(_run())

    assert process.terminated is True
    assert "agent_process_terminated" in [event["event"] for event in events]

import json
import re
import subprocess
from collections.abc import AsyncIterator
from pathlib import Path

import pytest
from click.testing import CliRunner

from conductor.backends.base import AgentBackend, BackendExecutionError
from conductor.cli import cli
from conductor.config import load_config

PLAN_TOML = """
title = "Add billing"

[[phases]]
title = "Schema"

[[phases.tasks]]
title = "Create tables"

[[phases.tasks]]
title = "Seed data"
"""


class WritingBackend(AgentBackend):
    name = "fake"

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0

    async def execute(self, prompt: str, working_directory: Path) -> AsyncIterator[str]:
        self.calls += 1
        if self.fail:
            raise BackendExecutionError("agent crashed", backend="fake")
        (working_directory / f"change-{self.calls}.txt").write_text(prompt, encoding="utf-8")
        yield "ok"


def _init_git_repo(repo_path: Path) -> None:
    subprocess.run(["git", "init"], cwd=repo_path, check=True, text=True, capture_output=True)
    subprocess.run(
        ["git", "config", "user.email", "test@example.com"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Test User"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    subprocess.run(
        ["git", "add", "README.md"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "commit", "-m", "seed"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )


def _extract_plan_id(output: str) -> str:
    match = re.search(r"Imported plan (\S+):", output)
    assert match, output
    return match.group(1)


def _prepare(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, backend: WritingBackend) -> str:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    monkeypatch.chdir(repo)
    monkeypatch.setattr("conductor.cli._build_backend", lambda config: backend)
    (repo / "plan.toml").write_text(PLAN_TOML, encoding="utf-8")

    runner = CliRunner()
    init_result = runner.invoke(cli, ["init", "--agent", "codex"])
    assert init_result.exit_code == 0, init_result.output
    import_result = runner.invoke(cli, ["import", "plan.toml"])
    assert import_result.exit_code == 0, import_result.output
    assert "Tasks: 2" in import_result.output
    return _extract_plan_id(import_result.output)


def test_cli_import_run_and_status(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    backend = WritingBackend()
    plan_id = _prepare(tmp_path, monkeypatch, backend)
    runner = CliRunner()

    assert load_config(Path("conductor.toml")).backend.agent == "codex"

    listed = runner.invoke(cli, ["list"])
    assert listed.exit_code == 0, listed.output
    assert plan_id in listed.output
    assert "draft" in listed.output

    run_result = runner.invoke(cli, ["run", plan_id])
    assert run_result.exit_code == 0, run_result.output
    assert f"Plan {plan_id}: completed" in run_result.output
    assert "Tasks: 2/2" in run_result.output
    assert backend.calls == 2

    status_result = runner.invoke(cli, ["status", plan_id])
    assert status_result.exit_code == 0, status_result.output
    assert "task-1-1" in status_result.output
    assert "Create tables" in status_result.output

    verbose = runner.invoke(cli, ["status", plan_id, "--verbose"])
    assert verbose.exit_code == 0, verbose.output
    payload = json.loads(verbose.output)
    assert payload["summary"]["status"] == "completed"
    assert [task["status"] for task in payload["tasks"]] == ["completed", "completed"]
    assert payload["events"][-1]["event"] == "plan_completed"

    log = subprocess.run(
        ["git", "log", "--format=%s"], check=True, text=True, capture_output=True
    ).stdout
    assert "Create tables" in log
    assert "Seed data" in log

    cancel = runner.invoke(cli, ["cancel", plan_id])
    assert cancel.exit_code != 0
    assert "already completed" in cancel.output


def test_cli_failed_task_can_be_skipped(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    backend = WritingBackend(fail=True)
    plan_id = _prepare(tmp_path, monkeypatch, backend)
    runner = CliRunner()

    run_result = runner.invoke(cli, ["run", plan_id])
    assert run_result.exit_code != 0
    assert "task-1-1" in run_result.output
    assert backend.calls == 3

    status_result = runner.invoke(cli, ["status", plan_id])
    assert "Paused: task_failed (task task-1-1)" in status_result.output

    skip = runner.invoke(cli, ["skip-task", plan_id, "task-1-1"])
    assert skip.exit_code == 0, skip.output
    assert "Skipped task-1-1." in skip.output

    backend.fail = False
    resumed = runner.invoke(cli, ["resume", plan_id])
    assert resumed.exit_code == 0, resumed.output
    assert f"Plan {plan_id}: completed" in resumed.output
    assert "Tasks: 1/2" in resumed.output


def test_cli_reset_and_cancel(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    backend = WritingBackend(fail=True)
    plan_id = _prepare(tmp_path, monkeypatch, backend)
    runner = CliRunner()

    runner.invoke(cli, ["run", plan_id])
    reset = runner.invoke(cli, ["reset-task", plan_id, "task-1-1"])
    assert reset.exit_code == 0, reset.output
    assert f"conductor resume {plan_id}" in reset.output

    cancel = runner.invoke(cli, ["cancel", plan_id])
    assert cancel.exit_code == 0, cancel.output
    assert f"Cancelled plan {plan_id}." in cancel.output

    rerun = runner.invoke(cli, ["run", plan_id])
    assert rerun.exit_code != 0
    assert "has failed" in rerun.output


def test_cli_reports_missing_plan_and_bad_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    listed = runner.invoke(cli, ["list"])
    assert listed.exit_code == 0
    assert "No plans found." in listed.output

    missing = runner.invoke(cli, ["status", "plan-nope"])
    assert missing.exit_code != 0
    assert "Plan not found: plan-nope" in missing.output

    (tmp_path / "bad.toml").write_text('title = "x"\n', encoding="utf-8")
    bad = runner.invoke(cli, ["import", "bad.toml"])
    assert bad.exit_code != 0
    assert "at least one" in bad.output

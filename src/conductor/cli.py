from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import click

from conductor.backends import AgentBackend, ClaudeCodeBackend, CodexBackend
from conductor.config import (
    DEFAULT_CONFIG_FILE,
    ConductorConfig,
    ConfigError,
    load_config,
    save_config,
)
from conductor.engine import (
    ActivityTimeoutConfig,
    ActivityTracker,
    ExecutionSummary,
    PhaseScheduler,
    PlanExecutor,
    RetryPolicy,
    TaskRunner,
)
from conductor.errors import ConductorError
from conductor.planfile import load_plan_file
from conductor.signals import EventSink, SignalBus, record_to_store
from conductor.state import PlanStore, StateError, WorkspaceError

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

HANDLED_ERRORS = (ConductorError, StateError, WorkspaceError, ConfigError)


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ConductorConfig
    store: PlanStore
    bus: SignalBus
    events: EventSink
    tracker: ActivityTracker
    executor: PlanExecutor


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def _log_backend_event(event: dict[str, Any]) -> None:
    logger.debug("Backend event: %s", event)


def _log_plan_event(event: dict[str, Any]) -> None:
    logger.debug("Plan event: %s", event)


def _build_backend(config: ConductorConfig) -> AgentBackend:
    if config.backend.agent == "codex":
        return CodexBackend(binary=config.backend.executable, event_hook=_log_backend_event)
    return ClaudeCodeBackend(binary=config.backend.executable, event_hook=_log_backend_event)


def _state_root(repo_root: Path, config: ConductorConfig) -> Path:
    state_dir = Path(config.state.directory)
    if not state_dir.is_absolute():
        state_dir = repo_root / state_dir
    return state_dir


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    _configure_logging(config.logging.level)

    store = PlanStore(_state_root(repo_root, config), event_history=config.state.event_history)
    bus = SignalBus()
    events = EventSink([record_to_store(store)])
    events.add_hook(_log_plan_event)
    tracker = ActivityTracker(
        bus,
        ActivityTimeoutConfig(
            inactivity_threshold_seconds=float(config.activity.inactivity_threshold_seconds),
            min_runtime_seconds=float(config.activity.min_runtime_seconds),
        ),
    )
    runner = TaskRunner(
        _build_backend(config),
        store,
        tracker,
        bus,
        events,
        agent_timeout_seconds=float(config.backend.timeout_seconds),
        poll_interval_seconds=float(config.executor.poll_interval_seconds),
    )
    retry_policy = RetryPolicy(runner, store, events, max_retries=config.executor.max_retries)
    scheduler = PhaseScheduler(
        store,
        retry_policy,
        events,
        max_parallel_tasks=config.executor.max_parallel_tasks,
    )
    executor = PlanExecutor(store, scheduler, events, base_dir=repo_root)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        bus=bus,
        events=events,
        tracker=tracker,
        executor=executor,
    )


def _echo_summary(summary: ExecutionSummary) -> None:
    click.echo(f"Plan {summary.plan_id}: {summary.status}")
    if summary.status == "paused" and summary.pause_reason:
        message = f"Paused: {summary.pause_reason}"
        if summary.current_task_id:
            message += f" (task {summary.current_task_id})"
        click.echo(message)
    click.echo(f"Phases: {summary.completed_phases}/{summary.total_phases}")
    click.echo(f"Tasks: {summary.completed_tasks}/{summary.total_tasks}")


@click.group()
def cli() -> None:
    """Conductor CLI."""


@cli.command("init")
@click.option("--agent", type=click.Choice(["claude", "codex"]), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def init_command(agent: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    if agent:
        config.backend.agent = agent  # type: ignore[assignment]
    save_config(config_path, config)

    store = PlanStore(_state_root(repo_root, config), event_history=config.state.event_history)

    click.echo(f"Initialized Conductor in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Agent: {config.backend.agent}")
    click.echo(f"State: {store.root}")


@cli.command("import")
@click.argument("plan_file", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def import_command(plan_file: Path, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        plan, phases, tasks = load_plan_file(plan_file)
        plan = runtime.store.create_plan(plan, phases, tasks)
    except HANDLED_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    runtime.events.emit("plan_imported", {"plan_id": plan.id, "source": str(plan_file)})
    click.echo(f"Imported plan {plan.id}: {plan.title}")
    click.echo(f"Phases: {plan.total_phases}")
    click.echo(f"Tasks: {plan.total_tasks}")


@cli.command("list")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def list_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        plans = runtime.store.list_plans()
    except HANDLED_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    if not plans:
        click.echo("No plans found.")
        return
    for plan in plans:
        click.echo(
            f"{plan.id} {plan.status:<9} "
            f"{plan.completed_tasks}/{plan.total_tasks} {plan.title}"
        )


@cli.command("run")
@click.argument("plan_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def run_command(plan_id: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        summary = asyncio.run(runtime.executor.execute_plan(plan_id))
    except HANDLED_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_summary(summary)


@cli.command("resume")
@click.argument("plan_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def resume_command(plan_id: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        summary = asyncio.run(runtime.executor.resume_plan(plan_id))
    except HANDLED_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_summary(summary)


@cli.command("cancel")
@click.argument("plan_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def cancel_command(plan_id: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        summary = runtime.executor.cancel_plan(plan_id)
    except HANDLED_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Cancelled plan {summary.plan_id}.")


@cli.command("status")
@click.argument("plan_id")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def status_command(plan_id: str, verbose: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        payload = runtime.executor.status(plan_id)
    except HANDLED_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc

    if verbose:
        payload["summary"] = asdict(payload["summary"])
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return

    _echo_summary(payload["summary"])
    for task in payload["tasks"]:
        line = f"  {task['id']:<12} {task['status']:<9} {task['attempts']} {task['title']}"
        click.echo(line)


@cli.command("reset-task")
@click.argument("plan_id")
@click.argument("task_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def reset_task_command(plan_id: str, task_id: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        task = runtime.executor.reset_task(plan_id, task_id)
    except HANDLED_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Reset {task.id}; run `conductor resume {plan_id}` to continue.")


@cli.command("skip-task")
@click.argument("plan_id")
@click.argument("task_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def skip_task_command(plan_id: str, task_id: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        task = runtime.executor.skip_task(plan_id, task_id)
    except HANDLED_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Skipped {task.id}.")

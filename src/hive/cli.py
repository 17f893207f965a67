from __future__ import annotations

import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from hive.backends import (
    AgentBackend,
    BackendRouter,
    ClaudeCodeBackend,
    CodexBackend,
    ResilientBackend,
    RetryPolicy,
)
from hive.checks import detect_build_command
from hive.config import DEFAULT_CONFIG_FILE, BackendName, HiveConfig, load_config, save_config
from hive.engine import RunResult, WorkflowEngine
from hive.errors import HiveError
from hive.events import read_events
from hive.workflows import list_workflows

logger = logging.getLogger(__name__)

BACKEND_NAMES: tuple[BackendName, ...] = ("claude", "codex")
PHASE_MARKERS = {"done": "[x]", "current": "[>]", "pending": "[ ]"}


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: HiveConfig
    engine: WorkflowEngine


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _record_backend_event(event: dict[str, Any]) -> None:
    logger.info("backend event %s", json.dumps(event, ensure_ascii=False, default=str))


def _build_single_backend(
    backend_name: BackendName, config: HiveConfig, repo_root: Path
) -> CodexBackend | ClaudeCodeBackend:
    if backend_name == "codex":
        return CodexBackend(
            binary=config.backend.codex_binary,
            working_directory=repo_root,
            event_hook=_record_backend_event,
        )
    return ClaudeCodeBackend(binary=config.backend.claude_binary, working_directory=repo_root)


def _build_backend(config: HiveConfig, repo_root: Path) -> AgentBackend:
    backends: dict[str, AgentBackend] = {
        name: _build_single_backend(name, config, repo_root) for name in BACKEND_NAMES
    }
    primary_name = config.backend.primary
    fallback_name = config.backend.fallback
    if fallback_name != primary_name or config.backend.max_retries > 0:
        backends[primary_name] = ResilientBackend(
            primary_name=primary_name,
            primary_backend=backends[primary_name],
            fallback_name=fallback_name,
            fallback_backend=backends[fallback_name],
            retry_policy=RetryPolicy(
                max_retries=max(0, int(config.backend.max_retries)),
                backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
            ),
            event_hook=_record_backend_event,
        )
    return BackendRouter(backends, default=primary_name)


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    engine = WorkflowEngine(repo_root, config, _build_backend(config, repo_root))
    return Runtime(repo_root=repo_root, config_path=config_path, config=config, engine=engine)


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    try:
        return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    except (HiveError, TypeError, ValueError) as exc:
        raise click.ClickException(f"Cannot load configuration: {exc}") from exc


def _finish(ctx: click.Context, result: RunResult) -> None:
    click.echo(f"Run ID: {result.run_id}")
    click.echo(f"Status: {result.status}")
    if result.message:
        click.echo(result.message)
    if result.checkpoint_id:
        click.echo(f"Checkpoint: {result.checkpoint_id}")
        click.echo(f"Resume with: hive resume --checkpoint {result.checkpoint_id}")
    failure = result.state.failure or {}
    for line in failure.get("diagnostics", []):
        click.echo(f"  - {line}", err=True)
    ctx.exit(result.exit_code)


def _config_option(func):
    return click.option(
        "--config",
        "config_value",
        default=DEFAULT_CONFIG_FILE,
        show_default=True,
    )(func)


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log to stderr.")
def cli(verbose: bool) -> None:
    """hive: multi-phase orchestration of coding agents."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@cli.command("init")
@click.option("--backend", type=click.Choice(BACKEND_NAMES), default=None)
@_config_option
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
        config.agents.default_cli = backend  # type: ignore[assignment]
    if not config.project.build_command:
        config.project.build_command = detect_build_command(repo_root)
    if config.project.name == "my-project":
        config.project.name = repo_root.name
    save_config(config_path, config)

    for name in ("runs", "checkpoints", "workflows", "agents"):
        (repo_root / ".hive" / name).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized hive in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")
    click.echo(f"Build command: {config.project.build_command or '(none detected)'}")


@cli.command("run")
@click.argument("objective")
@click.option("--workflow", "-w", default=None, help="Workflow name.")
@click.option("--only", "only_agent", default=None, help="Run a single agent.")
@click.option("--auto", "autonomous", is_flag=True, default=False, help="Skip human checkpoints.")
@click.option("--context", "-c", "context_files", multiple=True, help="Extra context file.")
@_config_option
@click.pass_context
def run_command(
    ctx: click.Context,
    objective: str,
    workflow: str | None,
    only_agent: str | None,
    autonomous: bool,
    context_files: tuple[str, ...],
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    try:
        result = asyncio.run(
            runtime.engine.start(
                objective,
                workflow,
                autonomous=autonomous or None,
                context_files=context_files,
                only_agent=only_agent,
            )
        )
    except HiveError as exc:
        raise click.ClickException(str(exc)) from exc
    _finish(ctx, result)


@cli.command("resume")
@click.option("--checkpoint", "checkpoint_id", default=None)
@click.option(
    "--decision",
    type=click.Choice(["continue", "adjust", "reject"]),
    default="continue",
    show_default=True,
)
@click.option("--note", default=None, help="Guidance for an 'adjust' decision.")
@_config_option
@click.pass_context
def resume_command(
    ctx: click.Context,
    checkpoint_id: str | None,
    decision: str,
    note: str | None,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    try:
        result = asyncio.run(runtime.engine.resume(checkpoint_id, decision, note))
    except HiveError as exc:
        raise click.ClickException(str(exc)) from exc
    _finish(ctx, result)


@cli.command("abort")
@click.option("--reason", default="aborted by user", show_default=True)
@_config_option
@click.pass_context
def abort_command(ctx: click.Context, reason: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        result = runtime.engine.abort(reason)
    except HiveError as exc:
        raise click.ClickException(str(exc)) from exc
    _finish(ctx, result)


def _render_dashboard(state: dict[str, Any], events: list[dict[str, Any]]) -> str:
    lines = [
        f"hive | {state.get('run_id')} | {state.get('workflow')} | {state.get('status')}",
        f"Objective: {state.get('objective')}",
        "",
        "Phases:",
    ]
    index = int(state.get("phase_index") or 0)
    status = state.get("status")
    for position, name in enumerate(state.get("phases", [])):
        if position < index or status == "complete":
            marker = PHASE_MARKERS["done"]
        elif position == index:
            marker = PHASE_MARKERS["current"]
        else:
            marker = PHASE_MARKERS["pending"]
        lines.append(f"  {marker} {name}")
    if state.get("current_agent"):
        lines.append(f"Agent: {state['current_agent']}")
    if state.get("checkpoint_id"):
        lines.append(f"Waiting at checkpoint: {state['checkpoint_id']}")
    if state.get("failure"):
        failure = state["failure"]
        lines.append(f"Failure: {failure.get('reason')} in {failure.get('phase')}")
    cost = state.get("cost") or {}
    if cost:
        total = float(cost.get("total_cost_usd", 0.0))
        lines.append(f"Cost: ${total:.4f} over {cost.get('total_calls', 0)} calls")
    decisions = state.get("decisions") or []
    if decisions:
        lines.append("")
        lines.append("Decisions:")
        lines.extend(f"  - {item}" for item in decisions[-5:])
    if events:
        lines.append("")
        lines.append("Recent events:")
        lines.extend(_format_event(event) for event in events[-10:])
    return "\n".join(lines)


def _format_event(event: dict[str, Any]) -> str:
    detail = json.dumps(event.get("detail", {}), ensure_ascii=False, sort_keys=True, default=str)
    return (
        f"{int(event.get('seq', 0)):>5} {event.get('timestamp', '')} "
        f"{event.get('kind', ''):<20} {event.get('actor', ''):<12} {detail}"
    )


@cli.command("status")
@click.option("--tui", is_flag=True, default=False, help="Render a text dashboard.")
@_config_option
def status_command(tui: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    store = runtime.engine.store
    state = store.dashboard()
    if not state:
        click.echo("No runs yet.")
        return
    if not tui:
        click.echo(json.dumps(state, ensure_ascii=False, indent=2))
        return
    events = read_events(store.run_dir(str(state["run_id"])) / "events.jsonl")
    click.echo(_render_dashboard(state, events))


@cli.command("checkpoints")
@click.option("--run", "run_id", default=None, help="Only checkpoints of this run.")
@_config_option
def checkpoints_command(run_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    checkpoints = runtime.engine.checkpoints.list(run_id)
    if not checkpoints:
        click.echo("No checkpoints found.")
        return
    for item in checkpoints:
        resolution = item.get("resolution")
        state = f"resolved:{resolution['decision']}" if resolution else "open"
        click.echo(
            f"{item['checkpoint_id']} {item['run_id']} {item['kind']:<15} "
            f"{str(item.get('phase')):<16} {state:<17} {item.get('reason', '')}"
        )


@cli.command("events")
@click.option("--tail", "tail", type=int, default=None, help="Show only the last N events.")
@click.option("--agent", default=None, help="Only events from this actor.")
@click.option("--run", "run_id", default=None, help="Run id (defaults to the current run).")
@click.option("--json", "as_json", is_flag=True, default=False)
@_config_option
def events_command(
    tail: int | None,
    agent: str | None,
    run_id: str | None,
    as_json: bool,
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    store = runtime.engine.store
    run_id = run_id or store.current_run_id()
    if not run_id:
        click.echo("No runs yet.")
        return
    events = read_events(store.run_dir(run_id) / "events.jsonl")
    if agent:
        events = [event for event in events if event.get("actor") == agent]
    if tail is not None:
        events = events[-tail:] if tail > 0 else []
    for event in events:
        if as_json:
            click.echo(json.dumps(event, ensure_ascii=False, default=str))
        else:
            click.echo(_format_event(event))


@cli.command("comb")
@_config_option
def comb_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        outcome = asyncio.run(runtime.engine.comb())
    except HiveError as exc:
        raise click.ClickException(str(exc)) from exc
    if not outcome.merged:
        click.echo("Nothing to merge.")
        return
    click.echo(f"Merged: {', '.join(outcome.merged)}")
    if outcome.resolved:
        click.echo(f"Reconciled conflicts: {', '.join(outcome.resolved)}")


@cli.command("workflows")
@_config_option
def workflows_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    try:
        workflows = list_workflows(repo_root)
    except HiveError as exc:
        raise click.ClickException(str(exc)) from exc
    for workflow in workflows:
        marker = "*" if workflow.name == config.workflow.default_workflow else " "
        phases = " -> ".join(phase.name for phase in workflow.phases)
        click.echo(f"{marker} {workflow.name:<12} {workflow.description}")
        click.echo(f"  {'':<12} {phases}")

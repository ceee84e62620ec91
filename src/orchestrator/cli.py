from __future__ import annotations

import asyncio
import json
import logging
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from orchestrator.adapters import AgentAdapter, ClaudeCodeAdapter, CodexAdapter
from orchestrator.config import (
    CONFIG_FILENAME,
    AgentName,
    OrchestratorConfig,
    load_config,
    save_config,
)
from orchestrator.errors import GitError, OrchestratorError
from orchestrator.execution import (
    ExecutionOptions,
    OrchestrationResult,
    Orchestrator,
    ProjectContext,
)
from orchestrator.graph import DependencyResolver
from orchestrator.models import OrchestrationEvent
from orchestrator.phases import PlanImportPhase, run_phase
from orchestrator.state import ProjectStateStore
from orchestrator.vcs import CheckpointManager, GitClient

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class Runtime:
    project_root: Path
    config_path: Path
    config: OrchestratorConfig
    store: ProjectStateStore
    git: GitClient
    checkpoints: CheckpointManager


def _resolve_config_path(project_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    return config_path.resolve()


def _configure_logging(config: OrchestratorConfig, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, config.logging.level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)


def _build_adapter(config: OrchestratorConfig, project_root: Path) -> AgentAdapter:
    binary = config.agent.resolved_binary()
    if config.agent.primary == "codex":
        return CodexAdapter(binary=binary, working_directory=project_root)
    return ClaudeCodeAdapter(binary=binary, working_directory=project_root)


def _load_runtime(project_root: Path, config_path: Path, verbose: bool = False) -> Runtime:
    config = load_config(config_path)
    _configure_logging(config, verbose)
    git = GitClient(project_root)
    git_enabled = config.git.enabled
    if git_enabled and not git.is_repo():
        logger.warning("%s is not a git repository; checkpoints disabled", project_root)
        git_enabled = False
    checkpoints = CheckpointManager(
        git,
        enabled=git_enabled,
        auto_commit=config.git.auto_commit,
        branch_prefix=config.git.branch_prefix,
    )
    return Runtime(
        project_root=project_root,
        config_path=config_path,
        config=config,
        store=ProjectStateStore(project_root),
        git=git,
        checkpoints=checkpoints,
    )


def _runtime(ctx: click.Context, config_value: str) -> Runtime:
    project_root = Path.cwd().resolve()
    verbose = bool(ctx.obj.get("verbose")) if ctx.obj else False
    return _load_runtime(project_root, _resolve_config_path(project_root, config_value), verbose)


@contextmanager
def _reported_errors() -> Iterator[None]:
    try:
        yield
    except OrchestratorError as exc:
        raise click.ClickException(str(exc)) from exc


def _commit_state_change(runtime: Runtime, action: str) -> None:
    try:
        asyncio.run(runtime.checkpoints.commit_state_change(action))
    except GitError as exc:
        logger.warning("Git commit for '%s' failed: %s", action, exc)


def _echo_event(event: OrchestrationEvent) -> None:
    parts = [f"[{event.type}]"]
    if event.phase_number is not None:
        parts.append(f"phase {event.phase_number}")
    if event.task_id:
        parts.append(f"task {event.task_id}")
    line = " ".join(parts)
    if event.message:
        line = f"{line}: {event.message}"
    click.echo(line)


def _build_orchestrator(runtime: Runtime, options: ExecutionOptions) -> Orchestrator:
    project = runtime.config.project
    orchestrator = Orchestrator(
        runtime.store,
        _build_adapter(runtime.config, runtime.project_root),
        project=ProjectContext(
            name=project.name,
            architecture=project.architecture,
            tech_stack=list(project.tech_stack),
            guidelines_path=project.guidelines_path,
        ),
        checkpoints=runtime.checkpoints,
        options=options,
    )
    orchestrator.on(_echo_event)
    return orchestrator


def _drive(orchestrator: Orchestrator, *, resume: bool) -> OrchestrationResult:
    def _interrupt(signum: int, frame: Any) -> None:
        click.echo("Interrupt received, stopping after the current step...", err=True)
        orchestrator.abort()

    previous = signal.signal(signal.SIGINT, _interrupt)
    try:
        return asyncio.run(orchestrator.resume() if resume else orchestrator.execute())
    finally:
        signal.signal(signal.SIGINT, previous)


def _report_run(result: OrchestrationResult) -> None:
    for warning in result.warnings:
        click.echo(f"Warning: {warning}")
    click.echo(f"Phases: {result.phases_completed} completed, {result.phases_failed} failed")
    click.echo(
        f"Tasks: {result.tasks_completed}/{result.total_tasks} completed, "
        f"{result.tasks_failed} failed"
    )
    for phase_result in result.phase_results:
        if phase_result.blocked_task_ids:
            click.echo(
                f"Phase {phase_result.phase_number} blocked: "
                + ", ".join(phase_result.blocked_task_ids)
            )
    if result.aborted:
        click.echo("Run aborted.")
    if not result.success:
        raise click.ClickException("Implementation run did not complete successfully.")


def _execution_options(
    config: OrchestratorConfig,
    *,
    start_phase: int | None = None,
    end_phase: int | None = None,
    dry_run: bool = False,
    continue_on_failure: bool = False,
    no_validate: bool = False,
) -> ExecutionOptions:
    return ExecutionOptions(
        start_phase=start_phase,
        end_phase=end_phase,
        dry_run=dry_run,
        stop_on_failure=config.execution.stop_on_failure and not continue_on_failure,
        timeout_seconds=max(5.0, float(config.agent.timeout_seconds)),
        max_retries=config.agent.max_retries,
        retry_backoff_seconds=config.agent.retry_backoff_seconds,
        validate_results=config.agent.validate_results and not no_validate,
        event_drain_timeout_seconds=config.execution.event_drain_timeout_seconds,
    )


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Log at DEBUG level.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Phase-gated implementation orchestrator."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


@cli.command("init")
@click.option("--name", default=None, help="Project name (defaults to the directory name).")
@click.option("--agent", type=click.Choice(["claude", "codex"]), default=None)
@click.option("--force", is_flag=True, default=False, help="Reset existing project state.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
@click.pass_context
def init_command(
    ctx: click.Context, name: str | None, agent: str | None, force: bool, config_value: str
) -> None:
    project_root = Path.cwd().resolve()
    config_path = _resolve_config_path(project_root, config_value)
    config = load_config(config_path)
    if name:
        config.project.name = name
    elif not config_path.exists():
        config.project.name = project_root.name
    if agent:
        config.agent.primary = agent  # type: ignore[assignment]
    save_config(config_path, config)
    _configure_logging(config, bool(ctx.obj.get("verbose")))

    with _reported_errors():
        git = GitClient(project_root)
        if config.git.enabled and not git.is_repo():
            git.init()
        ProjectStateStore(project_root).initialize(config.project.name, force=force)

    click.echo(f"Initialized {config.project.name} in {project_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Agent: {config.agent.primary}")


@cli.command("plan")
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
@click.pass_context
def plan_command(ctx: click.Context, plan_file: Path, config_value: str) -> None:
    """Import an implementation plan from a JSON file."""
    runtime = _runtime(ctx, config_value)
    result = asyncio.run(run_phase(PlanImportPhase(runtime.store), plan_file.resolve()))
    if not result.success:
        raise click.ClickException(f"Plan import failed: {result.error}")

    phases = result.data or []
    task_count = sum(len(phase.tasks) for phase in phases)
    _commit_state_change(runtime, "import implementation plan")
    click.echo(f"Imported {len(phases)} phase(s) with {task_count} task(s).")


@cli.command("validate")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
@click.pass_context
def validate_command(ctx: click.Context, config_value: str) -> None:
    """Check the stored plan's dependency graph."""
    runtime = _runtime(ctx, config_value)
    with _reported_errors():
        resolver = DependencyResolver(runtime.store.all_tasks())
        report = resolver.validate()
        if not report.valid:
            for message in report.messages():
                click.echo(f"- {message}")
            raise click.ClickException(f"Plan has {len(report.issues)} dependency issue(s).")
        order = resolver.get_execution_order()

    click.echo(f"Plan is valid: {len(order)} task(s).")
    click.echo("Execution order: " + " ".join(task.id for task in order))


@cli.command("run")
@click.option("--start-phase", type=int, default=None)
@click.option("--end-phase", type=int, default=None)
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--continue-on-failure", is_flag=True, default=False)
@click.option("--no-validate", is_flag=True, default=False, help="Skip the validation pass.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
@click.pass_context
def run_command(
    ctx: click.Context,
    start_phase: int | None,
    end_phase: int | None,
    dry_run: bool,
    continue_on_failure: bool,
    no_validate: bool,
    config_value: str,
) -> None:
    """Execute implementation phases."""
    runtime = _runtime(ctx, config_value)
    options = _execution_options(
        runtime.config,
        start_phase=start_phase,
        end_phase=end_phase,
        dry_run=dry_run,
        continue_on_failure=continue_on_failure,
        no_validate=no_validate,
    )
    with _reported_errors():
        runtime.store.load()
        result = _drive(_build_orchestrator(runtime, options), resume=False)
    _report_run(result)


@cli.command("resume")
@click.option("--end-phase", type=int, default=None)
@click.option("--continue-on-failure", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
@click.pass_context
def resume_command(
    ctx: click.Context, end_phase: int | None, continue_on_failure: bool, config_value: str
) -> None:
    """Continue from the current implementation phase."""
    runtime = _runtime(ctx, config_value)
    options = _execution_options(
        runtime.config, end_phase=end_phase, continue_on_failure=continue_on_failure
    )
    with _reported_errors():
        click.echo(f"Resuming from phase {runtime.store.current_impl_phase()}")
        result = _drive(_build_orchestrator(runtime, options), resume=True)
    _report_run(result)


@cli.command("status")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
@click.pass_context
def status_command(ctx: click.Context, config_value: str) -> None:
    runtime = _runtime(ctx, config_value)
    with _reported_errors():
        store = runtime.store
        payload = {
            "name": store.load().get("name", ""),
            "gates": store.gates(),
            "totals": store.totals(),
            "phases": [
                {
                    "phase_number": phase.phase_number,
                    "name": phase.name,
                    "approved": store.is_approved(phase.key),
                    "tasks": {task.id: str(task.status) for task in phase.tasks},
                }
                for phase in store.phases()
            ],
        }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("retry")
@click.argument("task_id")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
@click.pass_context
def retry_command(ctx: click.Context, task_id: str, config_value: str) -> None:
    """Reset a failed task to pending."""
    runtime = _runtime(ctx, config_value)
    with _reported_errors():
        runtime.store.retry_task(task_id)
    _commit_state_change(runtime, f"retry task {task_id}")
    click.echo(f"Task {task_id} reset to pending.")


@cli.command("skip")
@click.argument("task_id")
@click.option("--reason", default="Skipped manually", show_default=True)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
@click.pass_context
def skip_command(ctx: click.Context, task_id: str, reason: str, config_value: str) -> None:
    runtime = _runtime(ctx, config_value)
    with _reported_errors():
        runtime.store.skip_task(task_id, reason)
    _commit_state_change(runtime, f"skip task {task_id}")
    click.echo(f"Task {task_id} skipped.")


@cli.command("approve")
@click.argument("phase_key")
@click.option("--notes", default=None)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
@click.pass_context
def approve_command(
    ctx: click.Context, phase_key: str, notes: str | None, config_value: str
) -> None:
    """Record approval of a stage (ideation, spec, planning) or impl-<n>."""
    runtime = _runtime(ctx, config_value)
    with _reported_errors():
        runtime.store.approve_phase(phase_key, notes)
    _commit_state_change(runtime, f"approve {phase_key}")
    click.echo(f"Approved {phase_key}.")


@cli.command("checkpoint")
@click.argument("message")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
@click.pass_context
def checkpoint_command(ctx: click.Context, message: str, config_value: str) -> None:
    runtime = _runtime(ctx, config_value)
    with _reported_errors():
        commit_hash = asyncio.run(runtime.checkpoints.checkpoint(message))
    if commit_hash is None:
        click.echo("Nothing to checkpoint.")
        return
    click.echo(f"Checkpoint {commit_hash[:10]}")


@cli.command("agent")
@click.argument("agent_name", type=click.Choice(["claude", "codex"]))
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def agent_command(agent_name: AgentName, config_value: str) -> None:
    """Switch the coding agent used for task execution."""
    project_root = Path.cwd().resolve()
    config_path = _resolve_config_path(project_root, config_value)
    config = load_config(config_path)
    config.agent.primary = agent_name
    save_config(config_path, config)
    click.echo(f"Agent set to {agent_name}")

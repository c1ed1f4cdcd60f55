from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from autoloop.adapters import build_adapters
from autoloop.config import DEFAULT_CONFIG_FILE, AutoloopConfig, load_config, save_config
from autoloop.context import RunContext, build_context, configure_logging
from autoloop.errors import AutoloopError
from autoloop.gitops import GitOps, resolve_repo_root
from autoloop.merge import MergeReport
from autoloop.models import ExecutionResult
from autoloop.rollback import RollbackManager
from autoloop.runner import AutonomousRunner
from autoloop.scheduler import Scheduler
from autoloop.security import run_security_check
from autoloop.task_queue import QueueManager
from autoloop.workflow import WorkflowRunner, load_workflow

QUEUE_TEMPLATE = """\
# Pending work for `autoloop schedule loop`. Tasks run top to bottom.
#
# tasks:
#   - id: add-health-endpoint
#     prompt: prompts/health.md
#     context_files: [src/app.py]
#     variables: {route: /health}
tasks: []
"""


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: AutoloopConfig
    context: RunContext
    runner: AutonomousRunner
    workflows: WorkflowRunner
    scheduler: Scheduler


def _repo_root() -> Path:
    try:
        return resolve_repo_root(Path.cwd())
    except AutoloopError as exc:
        raise click.ClickException(str(exc)) from exc


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _record_adapter_event(context: RunContext, event: dict[str, Any]) -> None:
    payload = dict(event)
    name = str(payload.pop("event", "adapter_event"))
    context.audit.record(name, **payload)


def _load_config(config_path: Path) -> AutoloopConfig:
    try:
        return load_config(config_path)
    except AutoloopError as exc:
        raise click.ClickException(str(exc)) from exc


def _load_runtime(
    repo_root: Path, config_path: Path, *, default_agent: str | None = None
) -> Runtime:
    config = _load_config(config_path)
    configure_logging(config.logging.level)
    context = build_context(repo_root, config, reporter=click.echo)
    adapters = build_adapters(
        config.backend,
        repo_root,
        event_hook=lambda event: _record_adapter_event(context, event),
    )
    if default_agent and default_agent not in adapters:
        raise click.ClickException(
            f"Unknown agent '{default_agent}'. Available: {', '.join(sorted(adapters))}"
        )
    runner = AutonomousRunner(context, adapters, default_agent=default_agent)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        context=context,
        runner=runner,
        workflows=WorkflowRunner(context, runner),
        scheduler=Scheduler(context, runner),
    )


def _runtime_from(config_value: str, *, default_agent: str | None = None) -> Runtime:
    repo_root = _repo_root()
    return _load_runtime(
        repo_root, _resolve_config_path(repo_root, config_value), default_agent=default_agent
    )


def _parse_vars(values: tuple[str, ...]) -> dict[str, str]:
    variables: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"Expected KEY=VALUE, got '{item}'", param_hint="--var")
        variables[key.strip()] = value
    return variables


def _echo_execution(result: ExecutionResult) -> None:
    click.echo(f"Execution: {result.execution_id}")
    click.echo(f"Status: {result.status}")
    for step in result.steps:
        line = f"  {step.step_id}: {step.status} ({step.attempts} attempt(s))"
        if step.error:
            line += f" - {step.error[:120]}"
        click.echo(line)
    if result.branch:
        click.echo(f"Branch: {result.branch}")


def _echo_merge(report: MergeReport) -> None:
    for branch in report.merged:
        click.echo(f"Merged: {branch}")
    for branch in report.conflicted:
        click.echo(f"Not merged (conflict or failed checks): {branch}")
    for branch in report.rolled_back:
        click.echo(f"Rolled back: {branch}")


config_option = click.option(
    "--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True
)


@click.group()
def cli() -> None:
    """Autoloop: prompt, edit, verify, commit; repeat."""


@cli.command("init")
@click.option("--agent", type=click.Choice(["claude", "openai"]), default=None)
@config_option
def init_command(agent: str | None, config_value: str) -> None:
    repo_root = _repo_root()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _load_config(config_path)
    if not config_path.exists():
        config.project.name = repo_root.name
    if agent:
        config.backend.primary = agent
    save_config(config_path, config)

    queue_path = repo_root / config.scheduler.queue_file
    if not queue_path.exists():
        queue_path.parent.mkdir(parents=True, exist_ok=True)
        queue_path.write_text(QUEUE_TEMPLATE, encoding="utf-8")
    (repo_root / config.scheduler.prompts_dir).mkdir(parents=True, exist_ok=True)
    build_context(repo_root, config)

    click.echo(f"Initialized autoloop in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Queue: {queue_path}")
    click.echo(f"Agent: {config.backend.primary} (fallback {config.backend.fallback})")


@cli.command("run")
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--var", "var_values", multiple=True, help="Variable override, KEY=VALUE.")
@click.option("--agent", default=None, help="Default agent for steps without one.")
@config_option
def run_command(
    workflow_file: Path, var_values: tuple[str, ...], agent: str | None, config_value: str
) -> None:
    variables = _parse_vars(var_values)
    runtime = _runtime_from(config_value, default_agent=agent)
    try:
        workflow = load_workflow(workflow_file)
        result = asyncio.run(runtime.workflows.run(workflow, variables, source=workflow_file))
    except AutoloopError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_execution(result)
    if result.status != "completed":
        raise SystemExit(1)


@cli.command("resume")
@click.argument("execution_id")
@config_option
def resume_command(execution_id: str, config_value: str) -> None:
    runtime = _runtime_from(config_value)
    try:
        result = asyncio.run(runtime.workflows.resume(execution_id))
    except AutoloopError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_execution(result)
    if result.status != "completed":
        raise SystemExit(1)


@cli.command("status")
@click.argument("execution_id", required=False)
@config_option
def status_command(execution_id: str | None, config_value: str) -> None:
    runtime = _runtime_from(config_value)
    if execution_id:
        try:
            payload = runtime.workflows.status(execution_id)
        except AutoloopError as exc:
            raise click.ClickException(str(exc)) from exc
        if payload is None:
            raise click.ClickException(f"Execution not found: {execution_id}")
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return

    executions = runtime.workflows.list()
    if not executions:
        click.echo("No executions recorded.")
        return
    for execution in executions:
        click.echo(
            f"{execution['execution_id']}  {execution.get('status', '?'):<9} "
            f"{execution.get('workflow_name', '')}  {execution.get('started_at', '')}"
        )


@cli.command("next")
@config_option
def next_command(config_value: str) -> None:
    runtime = _runtime_from(config_value)
    try:
        result = asyncio.run(runtime.scheduler.next())
    except AutoloopError as exc:
        raise click.ClickException(str(exc)) from exc
    if result is None:
        return
    if result.success:
        click.echo(f"Task {result.task_id} completed on {result.branch}")
        return
    click.echo(f"Task {result.task_id} failed: {result.error}")
    raise SystemExit(1)


@cli.group("schedule")
def schedule_group() -> None:
    """Drive the task queue."""


@schedule_group.command("loop")
@config_option
def schedule_loop_command(config_value: str) -> None:
    runtime = _runtime_from(config_value)
    try:
        report = asyncio.run(runtime.scheduler.loop())
    except AutoloopError as exc:
        raise click.ClickException(str(exc)) from exc
    if report.merge:
        _echo_merge(report.merge)
    if not report.ok:
        raise SystemExit(1)


@schedule_group.command("watch")
@click.option("--interval", type=float, default=None, help="Seconds between queue polls.")
@config_option
def schedule_watch_command(interval: float | None, config_value: str) -> None:
    runtime = _runtime_from(config_value)
    try:
        reports = asyncio.run(runtime.scheduler.watch(interval))
    except AutoloopError as exc:
        raise click.ClickException(str(exc)) from exc
    if any(not report.ok for report in reports):
        raise SystemExit(1)


@cli.group("queue", invoke_without_command=True)
@config_option
@click.pass_context
def queue_group(ctx: click.Context, config_value: str) -> None:
    """Show the task queue."""
    ctx.obj = config_value
    if ctx.invoked_subcommand is not None:
        return
    repo_root = _repo_root()
    config = _load_config(_resolve_config_path(repo_root, config_value))
    try:
        click.echo(QueueManager(repo_root / config.scheduler.queue_file).render())
    except AutoloopError as exc:
        raise click.ClickException(str(exc)) from exc


@queue_group.command("reset")
@click.argument("task_id")
@click.pass_obj
def queue_reset_command(config_value: str, task_id: str) -> None:
    repo_root = _repo_root()
    config = _load_config(_resolve_config_path(repo_root, config_value))
    try:
        task = QueueManager(repo_root / config.scheduler.queue_file).reset_task(task_id)
    except AutoloopError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Task {task.id} reset to {task.status}")


@cli.command("rollback")
@click.argument("commit")
@click.option("--reason", default="Manual rollback", show_default=True)
@config_option
def rollback_command(commit: str, reason: str, config_value: str) -> None:
    runtime = _runtime_from(config_value)
    manager = RollbackManager(
        GitOps(runtime.repo_root), runtime.context.path(runtime.config.rollback.history_file)
    )
    try:
        previous = manager.rollback_to_commit(commit, reason)
    except AutoloopError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Rolled back {previous} -> {commit}")


@cli.command("merge")
@click.argument("branch")
@config_option
def merge_command(branch: str, config_value: str) -> None:
    runtime = _runtime_from(config_value)
    try:
        report = asyncio.run(runtime.scheduler.merger.auto_merge_with_checks(branch))
    except AutoloopError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_merge(report)
    if report.unmerged:
        raise SystemExit(1)


@cli.command("security-check")
@config_option
def security_check_command(config_value: str) -> None:
    repo_root = _repo_root()
    config = _load_config(_resolve_config_path(repo_root, config_value))
    code = run_security_check(repo_root, config.guardrails.security_critical_files, echo=click.echo)
    if code:
        raise SystemExit(code)


@cli.command("costs")
@config_option
def costs_command(config_value: str) -> None:
    runtime = _runtime_from(config_value)
    costs = runtime.context.costs.summary()
    runs = runtime.context.audit.summary()
    click.echo(f"Total cost: ${costs['total_cost']:.4f} across {costs['task_count']} task(s)")
    for model, cost in sorted(costs["cost_by_model"].items()):
        click.echo(f"  {model}: ${cost:.4f}")
    click.echo(
        f"Runs: {runs['total_runs']}, success rate {runs['success_rate']:.0%}, "
        f"average {runs['avg_duration_ms'] / 1000:.1f}s"
    )

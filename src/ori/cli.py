from __future__ import annotations

import asyncio
import json
from pathlib import Path

import click

from ori.capabilities import JsonlLogStore, LocalFileMutation, TemplateModelCapability
from ori.config import DEFAULT_CONFIG_FILE, LoggingConfig, OriConfig, load_config, save_config
from ori.errors import OriError
from ori.observability import configure_logging
from ori.orchestrator import WorkflowOrchestrator, WorkflowResult
from ori.packet import WorkflowStatus
from ori.tools import analyze_task_tool, render_result, validate_config_tool


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_config(config_path: Path) -> OriConfig:
    if not config_path.exists():
        config = OriConfig.default()
    else:
        try:
            config = load_config(config_path)
        except OriError as exc:
            raise click.ClickException(str(exc)) from exc
    # --log-level wins over the configured level.
    options = click.get_current_context().find_root().obj or {}
    if options.get("log_level") is None:
        configure_logging(config.logging.level)
    return config


def _log_store(repo_root: Path, config: OriConfig) -> JsonlLogStore:
    log_directory = Path(config.logging.resolved_log_directory)
    if not log_directory.is_absolute():
        log_directory = repo_root / log_directory
    return JsonlLogStore(log_directory, retention_days=config.logging.retention_days)


def _build_orchestrator(repo_root: Path, config: OriConfig) -> WorkflowOrchestrator:
    store = _log_store(repo_root, config) if config.logging.enabled else None
    return WorkflowOrchestrator(
        config,
        TemplateModelCapability(),
        files=LocalFileMutation(repo_root),
        store=store,
    )


def _report(result: WorkflowResult, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    else:
        click.echo(render_result(result), nl=False)
    if result.status in {WorkflowStatus.FAILED, WorkflowStatus.ABORTED}:
        message = result.failure.message if result.failure else result.status.value
        raise click.ClickException(f"Workflow {result.status.value}: {message}")


@click.group()
@click.option("--log-level", default=None, help="Overrides logging.level from the config.")
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """ORI workflow engine CLI."""
    ctx.obj = {"log_level": log_level}
    configure_logging(log_level or LoggingConfig().level)


@cli.command("init")
@click.option("--sme/--no-sme", "sme_enabled", default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def init_command(sme_enabled: bool | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _load_config(config_path)
    if sme_enabled is not None:
        config.sme_agents.enabled = sme_enabled
        config.sme_agents.security.enabled = sme_enabled
    save_config(config_path, config)
    log_store = _log_store(repo_root, config)

    click.echo(f"Initialized ORI in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Logs: {log_store.log_directory}")
    click.echo(f"SME quality gates: {'enabled' if config.sme_agents.enabled else 'disabled'}")


@cli.command("analyze")
@click.argument("task")
@click.option("--json", "as_json", is_flag=True, default=False)
def analyze_command(task: str, as_json: bool) -> None:
    result = analyze_task_tool(task)
    if result.is_error:
        raise click.ClickException(result.content)
    if as_json:
        click.echo(json.dumps(result.meta, ensure_ascii=False, indent=2))
    else:
        click.echo(result.content, nl=False)


@cli.command("validate")
@click.argument("config_value", default=DEFAULT_CONFIG_FILE)
def validate_command(config_value: str) -> None:
    config_path = _resolve_config_path(Path.cwd().resolve(), config_value)
    result = validate_config_tool(config_path=str(config_path))
    if result.is_error:
        raise click.ClickException(result.content)
    click.echo(result.content)


@cli.command("run")
@click.argument("task")
@click.option("--context", "context_text", default=None)
@click.option("--trace-id", default=None)
@click.option("--sme/--no-sme", "sme_enabled", default=None)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def run_command(
    task: str,
    context_text: str | None,
    trace_id: str | None,
    sme_enabled: bool | None,
    as_json: bool,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    config = _load_config(_resolve_config_path(repo_root, config_value))
    if sme_enabled is not None:
        config.sme_agents.enabled = sme_enabled
    hints = {"context": context_text} if context_text else {}
    orchestrator = _build_orchestrator(repo_root, config)
    try:
        result = asyncio.run(orchestrator.execute(task, context_hints=hints, trace_id=trace_id))
    except OriError as exc:
        raise click.ClickException(str(exc)) from exc
    _report(result, as_json)


@cli.command("resume")
@click.argument("trace_id")
@click.option(
    "--decision",
    type=click.Choice(["proceed", "fix", "abort"]),
    required=True,
)
@click.option("--notes", default=None)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def resume_command(
    trace_id: str,
    decision: str,
    notes: str | None,
    as_json: bool,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    config = _load_config(_resolve_config_path(repo_root, config_value))
    orchestrator = _build_orchestrator(repo_root, config)
    try:
        result = asyncio.run(
            orchestrator.resume_from_log(trace_id, decision, notes)  # type: ignore[arg-type]
        )
    except OriError as exc:
        raise click.ClickException(str(exc)) from exc
    _report(result, as_json)


@cli.command("log")
@click.argument("trace_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def log_command(trace_id: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = _load_config(_resolve_config_path(repo_root, config_value))
    try:
        entries = _log_store(repo_root, config).read_log(trace_id)
    except OriError as exc:
        raise click.ClickException(str(exc)) from exc
    if not entries:
        raise click.ClickException(f"No log entries for trace {trace_id}.")
    for entry in entries:
        click.echo(json.dumps(entry, ensure_ascii=False))


if __name__ == "__main__":
    cli()

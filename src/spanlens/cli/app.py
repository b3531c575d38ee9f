from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from spanlens.db.engine import build_engine, ping_db
from spanlens.db.init_db import init_db
from spanlens.db.session import build_session_factory
from spanlens.errors import EngineError, ValidationFailure
from spanlens.logging_setup import configure_logging
from spanlens.models.domain import RuleConfig, StatusCode, TraceSpan
from spanlens.services.dataset_versions import DatasetVersionService
from spanlens.services.execution_lifecycle import ExecutionService
from spanlens.services.experiments import ExperimentService
from spanlens.services.filter_evaluator import describe_filter, matches_all, matches_span_names
from spanlens.services.hashing import canonical_json, content_hash

app = typer.Typer(help="SpanLens CLI (schema, hashing, span filters, run progress, dataset versions).")
console = Console()


@app.callback()
def main_callback(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override SPANLENS_LOG_LEVEL."),
) -> None:
    configure_logging(log_level)


def _load_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        console.print(f"[red]✗[/red] Cannot read {path}: {e}")
        raise typer.Exit(1)


def _parse_span(index: int, data: Any) -> TraceSpan:
    if not isinstance(data, dict):
        raise ValidationFailure(f"spans[{index}]: must be an object")
    if data.get("span_id") in (None, ""):
        raise ValidationFailure(f"spans[{index}]: span_id is required")
    try:
        status = StatusCode(str(data.get("status_code", "unset")).lower())
    except ValueError:
        status = StatusCode.UNSET
    return TraceSpan(
        span_id=str(data["span_id"]),
        trace_id=str(data.get("trace_id", "")),
        name=str(data.get("name", "")),
        parent_span_id=data.get("parent_span_id"),
        project_id=data.get("project_id"),
        kind=data.get("kind"),
        input=data.get("input"),
        output=data.get("output"),
        attributes=data.get("attributes") or {},
        resource_attributes=data.get("resource_attributes") or {},
        model_name=data.get("model_name"),
        provider_name=data.get("provider_name"),
        service_name=data.get("service_name"),
        status_code=status,
        has_error=bool(data.get("has_error", False)),
        duration_ns=data.get("duration_ns"),
        usage_details=data.get("usage_details") or {},
    )


def _session_factory():
    engine = build_engine()
    init_db(engine)
    return build_session_factory(engine)


@app.command("init-db")
def init_db_cmd(
    reset: bool = typer.Option(False, "--reset", help="Drop all tables first."),
) -> None:
    engine = build_engine()
    init_db(engine, reset=reset)
    typer.echo("✅ Database initialized and reachable.")


@app.command("ping-db")
def ping_db_cmd() -> None:
    result = ping_db(build_engine())
    if not result.ok:
        console.print(f"[red]✗[/red] Database unreachable: {result.detail}")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] Database reachable ({result.detail})")


@app.command("hash-record")
def hash_record_cmd(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON file holding one record."),
    show_canonical: bool = typer.Option(False, "--canonical", help="Also print the canonical form."),
) -> None:
    """Print the content hash of a JSON record."""
    record = _load_json(file)
    try:
        digest = content_hash(record)
    except EngineError as e:
        console.print(f"[red]✗[/red] {e.code}: {e.message}")
        raise typer.Exit(1)
    if show_canonical:
        typer.echo(canonical_json(record))
    typer.echo(digest)


@app.command("match-spans")
def match_spans_cmd(
    spans_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON array of spans."),
    filter_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Filter clauses or a rule config."),
) -> None:
    """Evaluate a filter against spans from a file and list the matches."""
    raw_filter = _load_json(filter_file)
    try:
        rule = RuleConfig.model_validate({"filter": raw_filter} if isinstance(raw_filter, list) else raw_filter)
    except ValueError as e:
        console.print(f"[red]✗[/red] Invalid filter: {e}")
        raise typer.Exit(1)

    raw_spans = _load_json(spans_file)
    if not isinstance(raw_spans, list):
        console.print("[red]✗[/red] Spans file must hold a JSON array")
        raise typer.Exit(1)
    try:
        spans = [_parse_span(i, s) for i, s in enumerate(raw_spans)]
    except EngineError as e:
        console.print(f"[red]✗[/red] {e.code}: {e.message}")
        raise typer.Exit(1)

    matched = [s for s in spans if matches_span_names(s, rule.span_names) and matches_all(s, rule.filter)]

    table = Table(title=f"Matches for: {describe_filter(rule.filter)}")
    table.add_column("span_id", style="cyan")
    table.add_column("trace_id", style="magenta")
    table.add_column("name", style="green")
    for s in matched:
        table.add_row(s.span_id, s.trace_id, s.name)
    console.print(table)
    console.print(f"[green]✓[/green] {len(matched)}/{len(spans)} spans matched")


@app.command("create-version")
def create_version_cmd(
    dataset_id: str = typer.Argument(..., help="Dataset ID"),
    project_id: str = typer.Option(..., "--project-id", help="Project ID"),
    description: Optional[str] = typer.Option(None, "--description", help="Version description"),
) -> None:
    """Snapshot the dataset's current items into a new version."""
    service = DatasetVersionService(_session_factory())
    try:
        version = service.create_version(dataset_id, project_id, description=description)
    except EngineError as e:
        console.print(f"[red]✗[/red] {e.code}: {e.message}")
        raise typer.Exit(1)
    console.print(
        f"[green]✓[/green] Created version {version.version} of dataset {dataset_id} "
        f"(version_id={version.id}, items={version.item_count})"
    )


@app.command("execution-status")
def execution_status_cmd(
    execution_id: str = typer.Argument(..., help="Execution ID"),
    project_id: str = typer.Option(..., "--project-id", help="Project ID"),
) -> None:
    service = ExecutionService(_session_factory())
    try:
        execution = service.get(execution_id, project_id)
    except EngineError as e:
        console.print(f"[red]✗[/red] {e.code}: {e.message}")
        raise typer.Exit(1)

    table = Table(title=f"Execution {execution.id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("rule_id", execution.rule_id)
    table.add_row("status", execution.status)
    table.add_row("trigger_type", execution.trigger_type)
    table.add_row("spans_matched", str(execution.spans_matched))
    table.add_row("spans_scored", str(execution.spans_scored))
    table.add_row("errors_count", str(execution.errors_count))
    table.add_row("started_at", execution.started_at.isoformat() if execution.started_at else "")
    table.add_row("completed_at", execution.completed_at.isoformat() if execution.completed_at else "")
    table.add_row("duration_ms", "" if execution.duration_ms is None else str(execution.duration_ms))
    if execution.error_message:
        table.add_row("error_message", execution.error_message)
    console.print(table)


@app.command("experiment-progress")
def experiment_progress_cmd(
    experiment_id: str = typer.Argument(..., help="Experiment ID"),
    project_id: str = typer.Option(..., "--project-id", help="Project ID"),
) -> None:
    service = ExperimentService(_session_factory())
    try:
        progress = service.get_progress(experiment_id, project_id)
    except EngineError as e:
        console.print(f"[red]✗[/red] {e.code}: {e.message}")
        raise typer.Exit(1)

    console.print(
        f"[bold blue]{progress.experiment_id}[/bold blue] status={progress.status} "
        f"{progress.completed_items + progress.failed_items}/{progress.total_items} "
        f"({progress.progress_pct:.1f}%) failed={progress.failed_items} pending={progress.pending_items}"
    )
    if progress.eta_seconds is not None:
        console.print(f"elapsed={progress.elapsed_seconds:.1f}s eta={progress.eta_seconds:.1f}s")


def main() -> None:
    app()


if __name__ == "__main__":
    main()

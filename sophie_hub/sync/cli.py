"""
``flask sync`` commands.

Syncs and reconciliation run inline by default so operators see the result
immediately; ``--queue`` hands the work to the Celery worker instead.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo
from sqlalchemy.exc import SQLAlchemyError

from sophie_hub.models import TabMapping, db
from sophie_hub.partners.reconciliation import DEFAULT_SCAN_LIMIT, reconcile_partner_types
from sophie_hub.settings import resolve_sheet_credential

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .engine import SyncEngine, SyncOptions, SyncResult
from .errors import SyncError
from .mapping import MappingLoadError, apply_mapping_document, load_mapping_document
from .run_service import RunFilters, SyncRunService
from .tasks import reap_stale_sync_runs


def is_sync_enabled(app) -> bool:
    return bool(app.config.get("SYNC_ENABLED", False))


@click.group(name="sync", invoke_without_command=True)
@click.pass_context
def sync_cli(ctx):
    """
    Data-enrichment sync commands.

    Lists configured tab mappings when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_sync_enabled(app):
        raise click.ClickException("Sync is disabled via SYNC_ENABLED=false. Enable it to run sync commands.")
    if ctx.invoked_subcommand is None:
        tabs = db.session.query(TabMapping).order_by(TabMapping.data_source_id, TabMapping.id).all()
        if not tabs:
            click.echo("No tab mappings configured.")
            return
        for tab in tabs:
            click.echo(f"  [{tab.id}] {tab.tab_name} -> {tab.primary_entity.value} ({tab.status.value})")


def get_disabled_sync_group() -> click.Group:
    @click.group(name="sync", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Sync commands are unavailable because SYNC_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Sync Celery app is unavailable. Ensure SYNC_ENABLED=true and the sync package "
            "initialises before running worker commands."
        )
    return celery_app


def _format_result(result: SyncResult) -> str:
    stats = result.stats
    lines = [
        f"Sync run {result.sync_run_id} for tab {result.tab_mapping_id}: {result.status}"
        + (" (dry run)" if result.dry_run else ""),
        f"  processed: {stats.rows_processed}",
        f"  created:   {stats.rows_created}",
        f"  updated:   {stats.rows_updated}",
        f"  skipped:   {stats.rows_skipped}",
        f"  errors:    {len(stats.errors)}",
        f"  duration:  {result.duration_ms} ms",
    ]
    for error in stats.errors[:10]:
        lines.append(f"    row {error.get('row')}: [{error.get('severity')}] {error.get('message')}")
    return "\n".join(lines)


def _enqueue(app, task_name: str, kwargs: dict) -> None:
    celery_app = _resolve_celery(app)
    try:
        async_result = celery_app.send_task(task_name, kwargs=kwargs, queue=DEFAULT_QUEUE_NAME)
    except Exception as exc:  # pragma: no cover - broker failures surface here
        raise click.ClickException(f"Failed to enqueue {task_name}: {exc}") from exc
    app.logger.info("Sync task queued via CLI", extra={"sync_task": task_name, "sync_task_id": async_result.id})
    click.echo(json.dumps({"status": "queued", "task": task_name, "task_id": async_result.id, **kwargs}))


@sync_cli.group(name="worker")
def worker_group():
    """Manage the sync background worker."""


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--beat/--no-beat", default=False, help="Embed the beat scheduler for nightly reconciliation.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], beat: bool):
    """Start the Celery worker in the current process."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    celery_app = _resolve_celery(app)
    app.extensions.setdefault("sync", {})["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", DEFAULT_QUEUE_NAME]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])
    if beat:
        argv.append("--beat")

    click.echo(f"Starting sync worker (queue: {DEFAULT_QUEUE_NAME}, loglevel: {loglevel})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Round-trip the heartbeat task through the worker."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    task = _resolve_celery(app).tasks.get("sync.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'sync.healthcheck' is not registered.")
    try:
        payload = task.apply_async().get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    click.echo(json.dumps(payload, indent=2))


@sync_cli.command("tab")
@click.argument("tab_mapping_id", type=int)
@click.option("--dry-run", is_flag=True, help="Preview changes without writing entities or lineage.")
@click.option("--force-overwrite", is_flag=True, help="Let reference columns overwrite existing values.")
@click.option("--row-limit", type=click.IntRange(min=1), help="Only read the first N data rows.")
@click.option("--token", envvar="GOOGLE_SHEETS_ACCESS_TOKEN", help="OAuth access token for Google Sheets.")
@click.option("--queue", "queued", is_flag=True, help="Hand the sync to the Celery worker.")
@click.option("--summary-json", is_flag=True, help="Emit the run summary as JSON.")
@click.pass_context
def sync_tab_command(
    ctx,
    tab_mapping_id: int,
    dry_run: bool,
    force_overwrite: bool,
    row_limit: Optional[int],
    token: Optional[str],
    queued: bool,
    summary_json: bool,
):
    """Sync one tab mapping."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    if queued:
        _enqueue(
            app,
            "sync.tab",
            {
                "tab_mapping_id": tab_mapping_id,
                "dry_run": dry_run,
                "force_overwrite": force_overwrite,
                "row_limit": row_limit,
                "triggered_by": "cli",
            },
        )
        return

    options = SyncOptions(dry_run=dry_run, force_overwrite=force_overwrite, row_limit=row_limit, triggered_by="cli")
    try:
        result = SyncEngine().sync_tab(tab_mapping_id, resolve_sheet_credential(token), options)
    except SyncError as exc:
        db.session.rollback()
        raise click.ClickException(f"[{exc.code}] {exc}") from exc

    if summary_json:
        click.echo(json.dumps(result.to_dict(include_changes=dry_run), indent=2, sort_keys=True, default=str))
    else:
        click.echo(_format_result(result))


@sync_cli.command("data-source")
@click.argument("data_source_id", type=int)
@click.option("--dry-run", is_flag=True)
@click.option("--force-overwrite", is_flag=True)
@click.option("--token", envvar="GOOGLE_SHEETS_ACCESS_TOKEN", help="OAuth access token for Google Sheets.")
@click.option("--queue", "queued", is_flag=True, help="Hand the sync to the Celery worker.")
@click.pass_context
def sync_data_source_command(
    ctx, data_source_id: int, dry_run: bool, force_overwrite: bool, token: Optional[str], queued: bool
):
    """Sync every active tab of a data source."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    if queued:
        _enqueue(
            app,
            "sync.data_source",
            {
                "data_source_id": data_source_id,
                "dry_run": dry_run,
                "force_overwrite": force_overwrite,
                "triggered_by": "cli",
            },
        )
        return

    options = SyncOptions(dry_run=dry_run, force_overwrite=force_overwrite, triggered_by="cli")
    try:
        outcome = SyncEngine().sync_data_source(data_source_id, resolve_sheet_credential(token), options)
    except SyncError as exc:
        db.session.rollback()
        raise click.ClickException(f"[{exc.code}] {exc}") from exc

    for result in outcome.results:
        click.echo(_format_result(result))
    for failure in outcome.failures:
        click.echo(f"Tab {failure['tab_mapping_id']} failed: [{failure['code']}] {failure['message']}", err=True)
    if outcome.failures and not outcome.results:
        raise click.ClickException("No tab synced successfully.")


@sync_cli.command("reconcile-partner-types")
@click.option("--apply", "apply_changes", is_flag=True, help="Write changes; without it the command is a dry run.")
@click.option("--mismatch-only", is_flag=True, help="Only partners whose staffing type disagrees with legacy.")
@click.option("--drift-only", is_flag=True, help="Only partners whose persisted columns are stale.")
@click.option("--limit", default=DEFAULT_SCAN_LIMIT, show_default=True, type=click.IntRange(min=1))
@click.option("--queue", "queued", is_flag=True, help="Hand the reconciliation to the Celery worker.")
@click.pass_context
def reconcile_command(ctx, apply_changes: bool, mismatch_only: bool, drift_only: bool, limit: int, queued: bool):
    """Recompute partner types and rewrite drifted rows."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    if queued:
        _enqueue(app, "sync.reconcile_partner_types", {"dry_run": not apply_changes, "limit": limit})
        return

    result = reconcile_partner_types(
        dry_run=not apply_changes, limit=limit, mismatch_only=mismatch_only, drift_only=drift_only
    )
    click.echo(json.dumps(result.to_dict(), indent=2, sort_keys=True))
    if result.failed:
        raise click.ClickException(f"{result.failed} partner(s) failed to update.")


@sync_cli.command("reap-stale")
@click.option("--max-age-minutes", type=click.IntRange(min=1), help="Defaults to SYNC_STALE_RUN_MINUTES.")
@click.pass_context
def reap_stale_command(ctx, max_age_minutes: Optional[int]):
    """Fail running syncs whose heartbeat went quiet, releasing their tab locks."""
    ctx.ensure_object(ScriptInfo).load_app()
    reaped = reap_stale_sync_runs(max_age_minutes)
    if not reaped:
        click.echo("No stale sync runs found.")
        return
    click.echo(f"Reaped {len(reaped)} stale sync run(s): {', '.join(str(run_id) for run_id in reaped)}")


@sync_cli.command("load-mapping")
@click.argument("path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option("--actor", default="cli", show_default=True, help="Name recorded in the audit log.")
@click.option("--force", is_flag=True, help="Re-apply even when the checksum is unchanged.")
@click.pass_context
def load_mapping_command(ctx, path: Path, actor: str, force: bool):
    """Load a YAML mapping document into the mapping tables."""
    ctx.ensure_object(ScriptInfo).load_app()
    try:
        document = load_mapping_document(path)
        result = apply_mapping_document(document, actor=actor, force=force)
    except MappingLoadError as exc:
        raise click.ClickException(str(exc)) from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise click.ClickException(f"Failed to apply mapping: {exc}") from exc

    if result.unchanged:
        click.echo(f"Mapping unchanged (checksum {document.checksum[:12]}); nothing applied.")
        return
    click.echo(f"Applied mapping {document.checksum[:12]} to data source {result.data_source_id}")
    for key, count in sorted(result.counts.items()):
        click.echo(f"  {key}: {count}")


@sync_cli.command("runs")
@click.option("--tab", "tab_mapping_id", type=int, help="Filter by tab mapping id.")
@click.option("--status", "statuses", multiple=True, help="Filter by status (repeatable).")
@click.option("--limit", default=20, show_default=True, type=click.IntRange(min=1, max=100))
@click.option("--json", "as_json", is_flag=True)
@click.pass_context
def runs_command(ctx, tab_mapping_id: Optional[int], statuses: tuple[str, ...], limit: int, as_json: bool):
    """List recent sync runs."""
    ctx.ensure_object(ScriptInfo).load_app()
    try:
        filters = RunFilters.coerce(page_size=limit, statuses=statuses, tab_mapping_id=tab_mapping_id)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc

    result = SyncRunService().list_runs(filters)
    if as_json:
        click.echo(json.dumps([item.to_dict() for item in result.items], indent=2))
        return
    if not result.items:
        click.echo("No sync runs recorded.")
        return
    for item in result.items:
        started = item.started_at.isoformat() if item.started_at else "-"
        click.echo(
            f"{item.id:>6}  tab={item.tab_mapping_id}  {item.status:<9}  {started}  "
            f"+{item.rows_created} ~{item.rows_updated} ={item.rows_skipped} errors={item.error_count}"
        )

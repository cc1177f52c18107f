"""
``flask sync`` commands: start runs, inspect run and change history, manage the worker.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo
from sqlalchemy.exc import NoResultFound

from identity_app.models import SyncRunStatus
from identity_app.sync.celery_app import DEFAULT_QUEUE_NAME, SYNC_EXTENSION_KEY, get_celery_app
from identity_app.sync.errors import CascadeError, DirectorySourceError, SyncAlreadyRunning, SyncDispatchError
from identity_app.sync.pipeline.cascade import CascadeManager
from identity_app.sync.pipeline.coordinator import SyncCoordinator
from identity_app.sync.pipeline.run_service import DEFAULT_RETENTION_DAYS, ChangeFilters, RunFilters, SyncRunService
from identity_app.utils.sync import get_orphan_policy, is_sync_enabled


@click.group(name="sync", invoke_without_command=True)
@click.pass_context
def sync_cli(ctx):
    """
    Directory sync commands.

    Without a subcommand, prints the configured source and current status.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_sync_enabled(app):
        raise click.ClickException("Directory sync is disabled via SYNC_ENABLED=false.")
    if ctx.invoked_subcommand is None:
        click.echo(f"Source: {app.config.get('SYNC_SOURCE')}")
        click.echo(json.dumps(SyncRunService().get_sync_status(), indent=2, default=str))


def get_disabled_sync_group() -> click.Group:
    @click.group(name="sync", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Sync commands are unavailable because SYNC_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException("Sync Celery app is unavailable. Ensure SYNC_ENABLED=true.")
    return celery_app


def _parse_since(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        raise click.BadParameter(f"'{value}' is not an ISO-8601 timestamp.", param_hint="--since") from None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _format_run(status: dict) -> str:
    counts = status["counts"]
    lines = [
        f"Sync run {status['run_id']} ({status['sync_type']}) {status['status']}",
        "  seen={seen} created={created} updated={updated} unchanged={unchanged} "
        "reactivated={reactivated} deactivated={deactivated} errors={errors}".format(**counts),
    ]
    if status.get("duration_seconds") is not None:
        lines.append(f"  duration: {status['duration_seconds']:.1f}s")
    if status.get("error_summary"):
        lines.append(f"  error: {status['error_summary']}")
    for error in status.get("errors", [])[:10]:
        target = error.get("external_id") or error.get("dn") or "-"
        lines.append(f"  [{error.get('stage')}] {target}: {error.get('message')}")
    return "\n".join(lines)


@sync_cli.command("run")
@click.option("--full", "sync_type", flag_value="full", default=True, help="Full reconciliation (default).")
@click.option("--incremental", "sync_type", flag_value="incremental", help="Only entries changed since --since.")
@click.option("--since", help="ISO timestamp for incremental runs (defaults to the last completed run).")
@click.option("--user", "users", multiple=True, help="Sync only this uid (repeatable); nothing is deactivated.")
@click.option("--gid", "gid_number", type=int, help="Sync only members of this research group gidNumber.")
@click.option(
    "--inline/--no-inline",
    default=None,
    help="Run in this process instead of queueing via Celery (default follows SYNC_WORKER_ENABLED).",
)
@click.option("--summary-json", is_flag=True, help="Emit the run status as JSON after an inline run.")
@click.option("--actor", default="cli", show_default=True, help="Recorded as the run trigger.")
@click.pass_context
def sync_run(
    ctx,
    sync_type: str,
    since: Optional[str],
    users: tuple[str, ...],
    gid_number: Optional[int],
    inline: Optional[bool],
    summary_json: bool,
    actor: str,
):
    """Start a directory sync run."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if since and sync_type != "incremental":
        raise click.ClickException("--since only applies to --incremental runs.")
    selective = bool(users) or gid_number is not None
    if selective and sync_type == "incremental":
        raise click.ClickException("--user/--gid cannot be combined with --incremental.")

    coordinator = SyncCoordinator()
    try:
        if selective:
            sync_type = "selective"
            run = coordinator.start_selective_sync(users, gid_number=gid_number, triggered_by=actor, inline=inline)
        elif sync_type == "incremental":
            run = coordinator.start_incremental_sync(_parse_since(since), triggered_by=actor, inline=inline)
        else:
            run = coordinator.start_full_sync(triggered_by=actor, inline=inline)
    except SyncAlreadyRunning as exc:
        raise click.ClickException(str(exc)) from exc
    except (SyncDispatchError, DirectorySourceError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    status = coordinator.get_run_status(run.id)
    if status["status"] == SyncRunStatus.STARTING.value:
        app.logger.info("Sync run queued via CLI", extra={"sync_run_id": run.id, "sync_task_id": run.task_id})
        click.echo(json.dumps({"run_id": run.id, "task_id": run.task_id, "status": "queued", "sync_type": sync_type}))
        return

    click.echo(_format_run(status))
    if summary_json:
        click.echo(json.dumps(status, indent=2, sort_keys=True))


@sync_cli.command("status")
@click.argument("run_id", type=int, required=False)
def sync_status(run_id: Optional[int]):
    """Show one run (or the latest run) as JSON."""
    try:
        payload = SyncCoordinator().get_run_status(run_id)
    except NoResultFound as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, indent=2))


@sync_cli.command("runs")
@click.option("--limit", default=20, show_default=True, type=int)
@click.option("--status", "statuses", multiple=True, help="Filter by status (repeatable).")
@click.option("--type", "sync_types", multiple=True, help="Filter by sync type (repeatable).")
def sync_runs(limit: int, statuses: tuple[str, ...], sync_types: tuple[str, ...]):
    """List recent runs, newest first."""
    try:
        filters = RunFilters.coerce(page_size=limit, statuses=statuses, sync_types=sync_types)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    result = SyncRunService().list_runs(filters)
    if not result.items:
        click.echo("No sync runs recorded.")
        return
    for item in result.items:
        counts = item.counts
        click.echo(
            f"{item.id:>6}  {item.sync_type:<11} {item.status:<9} "
            f"{item.started_at.isoformat() if item.started_at else '-':<32} "
            f"seen={counts.get('seen', 0)} created={counts.get('created', 0)} "
            f"updated={counts.get('updated', 0)} deactivated={counts.get('deactivated', 0)} "
            f"errors={counts.get('errors', 0)}"
        )


@sync_cli.command("protection")
@click.argument("external_id")
def sync_protection(external_id: str):
    """Show which locally-owned fields a sync pass will leave alone."""
    try:
        payload = SyncCoordinator().get_protected_fields(external_id)
    except NoResultFound as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, indent=2, default=str))


@sync_cli.command("history")
@click.option("--user", "external_id", help="Changes for one identity (by uid), including its student profile.")
@click.option("--entity-type", help="Filter by entity type (identity, student_profile).")
@click.option("--entity-id", type=int, help="Filter by entity id; needs --entity-type.")
@click.option("--run", "sync_run_id", type=int, help="Changes written by one sync run.")
@click.option("--source", "change_source", help="Filter by change source (directory_sync, role_assignment, ...).")
@click.option("--request", "request_id", type=int, help="Changes applied by one student request.")
@click.option("--since", "changed_from", help="Earliest change date (YYYY-MM-DD or ISO timestamp).")
@click.option("--limit", default=50, show_default=True, type=int)
@click.option("--page", default=1, show_default=True, type=int)
@click.option("--json", "as_json", is_flag=True, help="Emit JSON instead of one line per change.")
def sync_history(
    external_id: Optional[str],
    entity_type: Optional[str],
    entity_id: Optional[int],
    sync_run_id: Optional[int],
    change_source: Optional[str],
    request_id: Optional[int],
    changed_from: Optional[str],
    limit: int,
    page: int,
    as_json: bool,
):
    """Show recorded field changes, newest first."""
    try:
        filters = ChangeFilters.coerce(
            page=page,
            page_size=limit,
            external_id=external_id,
            entity_type=entity_type,
            entity_id=entity_id,
            sync_run_id=sync_run_id,
            change_source=change_source,
            request_id=request_id,
            changed_from=changed_from,
        )
        result = SyncRunService().get_change_history(filters)
    except (NoResultFound, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        payload = {
            "items": [item.as_dict() for item in result.items],
            "total": result.total,
            "page": result.page,
            "page_size": result.page_size,
            "total_pages": result.total_pages,
        }
        click.echo(json.dumps(payload, indent=2))
        return
    if not result.items:
        click.echo("No changes recorded.")
        return
    for item in result.items:
        stamp = item.changed_at.isoformat() if item.changed_at else "-"
        run = f" run={item.sync_run_id}" if item.sync_run_id else ""
        click.echo(
            f"{stamp:<32} {item.entity_type}:{item.entity_id} {item.field_name}: "
            f"{item.old_value!r} -> {item.new_value!r} [{item.change_source}"
            f"{' by ' + item.changed_by if item.changed_by else ''}{run}]"
        )
    if result.total_pages > result.page:
        click.echo(f"Page {result.page} of {result.total_pages}; use --page to see more.")


@sync_cli.command("prune-runs")
@click.option(
    "--older-than-days",
    type=click.IntRange(min=1),
    help="Keep runs newer than this (defaults to SYNC_RUN_RETENTION_DAYS).",
)
@click.option("--dry-run", is_flag=True, help="Report what would be deleted without deleting.")
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
@click.pass_context
def sync_prune_runs(ctx, older_than_days: Optional[int], dry_run: bool, yes: bool):
    """Delete sync run history older than the retention window."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    days = older_than_days or int(app.config.get("SYNC_RUN_RETENTION_DAYS") or DEFAULT_RETENTION_DAYS)
    if not dry_run and not yes:
        click.confirm(f"Delete sync runs that started more than {days} days ago?", abort=True)
    try:
        summary = SyncRunService().purge_runs(older_than_days=days, dry_run=dry_run)
    except (CascadeError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    verb = "Would delete" if dry_run else "Deleted"
    click.echo(f"{verb} {summary.deleted_count} sync runs started before {summary.cutoff.isoformat()}.")
    if summary.skipped_active:
        click.echo(f"Kept {summary.skipped_active} runs that are still active.")


@sync_cli.command("purge-deactivated")
@click.option("--older-than-days", default=90, show_default=True, type=click.IntRange(min=1))
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
@click.option("--actor", default="cli", show_default=True)
@click.pass_context
def sync_purge_deactivated(ctx, older_than_days: int, yes: bool, actor: str):
    """Hard-delete identities deactivated more than N days ago."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not yes:
        click.confirm(f"Delete identities deactivated more than {older_than_days} days ago?", abort=True)
    cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
    try:
        deleted = CascadeManager(orphan_policy=get_orphan_policy(app)).purge_deactivated(
            older_than=cutoff, actor=actor
        )
    except CascadeError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Deleted {len(deleted)} deactivated identities.")
    for summary in deleted:
        click.echo(f"  - {summary.external_id}")


@sync_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the sync background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not app.config.get("SYNC_WORKER_ENABLED"):
        click.echo("Warning: SYNC_WORKER_ENABLED is false; runs will execute inline unless --no-inline.", err=True)


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, default=1, show_default=True)
@click.option("--pool", type=str, help="Celery pool implementation (prefork, solo, threads).")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True)
@click.option("--beat/--no-beat", default=False, help="Embed the beat scheduler for periodic syncs.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: int, pool: Optional[str], queues: str, beat: bool):
    """Start the Celery worker in the current process."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    app.extensions.get(SYNC_EXTENSION_KEY, {})["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues, "--concurrency", str(concurrency)]
    if pool:
        argv.extend(["--pool", pool])
    if beat:
        argv.append("--beat")

    click.echo(f"Starting sync worker (queues: {queues}, loglevel: {loglevel}, beat: {'on' if beat else 'off'})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Round-trip the heartbeat task through the worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("sync.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'sync.healthcheck' is not registered.")

    try:
        payload = task.apply_async().get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    click.echo(json.dumps(payload, indent=2))


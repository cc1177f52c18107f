"""
Celery tasks for directory sync.

``sync.run_directory_sync`` executes a run reserved by the coordinator (CLI
or API). The scheduled tasks reserve and execute in the worker itself, and
report ``skipped`` when another run already holds the lock.
``sync.purge_old_runs`` applies the run retention window.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from identity_app.sync.errors import SyncAlreadyRunning
from identity_app.sync.pipeline.coordinator import SyncCoordinator
from identity_app.sync.pipeline.run_service import SyncRunService


def _run_payload(coordinator: SyncCoordinator, run_id: int) -> dict[str, Any]:
    status = coordinator.get_run_status(run_id)
    return {
        "run_id": run_id,
        "status": status["status"],
        "sync_type": status["sync_type"],
        "counts": status["counts"],
        "error_count": len(status["errors"]),
    }


@shared_task(name="sync.healthcheck", bind=True)
def sync_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by ``flask sync worker ping``."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name="sync.run_directory_sync", bind=True)
def run_directory_sync(self, *, run_id: int) -> dict[str, Any]:
    coordinator = SyncCoordinator()
    current_app.logger.info(
        "Sync worker picked up run",
        extra={"sync_run_id": run_id, "sync_task_id": self.request.id},
    )
    try:
        coordinator.execute_run(run_id)
    except Exception:
        current_app.logger.exception("Sync worker run failed", extra={"sync_run_id": run_id})
        raise
    return _run_payload(coordinator, run_id)


def _scheduled(sync_type: str) -> dict[str, Any]:
    coordinator = SyncCoordinator()
    if sync_type == "incremental" and coordinator.last_completed_watermark() is None:
        current_app.logger.warning("Scheduled incremental sync skipped; no completed run yet")
        return {"status": "skipped", "reason": "no_watermark"}
    try:
        if sync_type == "full":
            run = coordinator.start_full_sync(triggered_by="scheduler", inline=True)
        else:
            run = coordinator.start_incremental_sync(triggered_by="scheduler", inline=True)
    except SyncAlreadyRunning as exc:
        current_app.logger.info(
            "Scheduled sync skipped; another run is active",
            extra={"sync_type": sync_type, "sync_active_run_id": exc.active_run_id},
        )
        return {"status": "skipped", "reason": "already_running", "active_run_id": exc.active_run_id}
    return _run_payload(coordinator, run.id)


@shared_task(name="sync.scheduled_full_sync")
def scheduled_full_sync() -> dict[str, Any]:
    return _scheduled("full")


@shared_task(name="sync.scheduled_incremental_sync")
def scheduled_incremental_sync() -> dict[str, Any]:
    return _scheduled("incremental")


@shared_task(name="sync.purge_old_runs")
def purge_old_runs() -> dict[str, Any]:
    retention_days = int(current_app.config.get("SYNC_RUN_RETENTION_DAYS") or 0)
    if retention_days <= 0:
        return {"status": "skipped", "reason": "retention_disabled"}
    summary = SyncRunService().purge_runs(older_than_days=retention_days)
    return {
        "status": "ok",
        "deleted_runs": summary.deleted_count,
        "detached_changes": summary.detached_changes,
        "skipped_active": summary.skipped_active,
    }

"""
Celery configuration for the directory sync worker.

Defaults to a SQLite-backed broker/result store under the Flask instance
folder so a single host needs nothing beyond the application database. Set
``CELERY_BROKER_URL``/``CELERY_RESULT_BACKEND`` to point at Redis or similar.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

from celery import Celery
from celery.schedules import crontab
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "directory_sync"
DEFAULT_SQLITE_FILENAME = "celery_sync.sqlite"
SYNC_EXTENSION_KEY = "identity_sync"


def _quiet_noisy_loggers(app: Flask) -> None:
    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery.worker.strategy").setLevel(logging.WARNING)


def _sqlite_path(app: Flask) -> Path:
    configured = app.config.get("CELERY_SQLITE_PATH")
    if configured:
        path = Path(configured)
        if not path.is_absolute():
            path = Path(app.instance_path) / path
    else:
        path = Path(app.instance_path) / DEFAULT_SQLITE_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _connection_urls(app: Flask) -> tuple[str, str]:
    """Return ``(broker_url, result_backend)``, filling gaps with the SQLite transport."""
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")
    if broker_url and result_backend:
        return broker_url, result_backend

    normalized = _sqlite_path(app).as_posix()
    return broker_url or f"sqla+sqlite:///{normalized}", result_backend or f"db+sqlite:///{normalized}"


def build_beat_schedule(config: Mapping[str, Any]) -> dict[str, dict[str, Any]]:
    """
    Periodic runs: incremental every ``SYNC_INCREMENTAL_INTERVAL_MINUTES``
    (0 disables) and a full pass daily at ``SYNC_FULL_SYNC_HOUR`` UTC
    (negative disables), plus a daily purge of runs older than
    ``SYNC_RUN_RETENTION_DAYS`` (0 disables).
    """

    schedule: dict[str, dict[str, Any]] = {}
    interval_minutes = int(config.get("SYNC_INCREMENTAL_INTERVAL_MINUTES") or 0)
    if interval_minutes > 0:
        schedule["directory-sync-incremental"] = {
            "task": "sync.scheduled_incremental_sync",
            "schedule": float(interval_minutes * 60),
        }
    full_hour = config.get("SYNC_FULL_SYNC_HOUR")
    if full_hour is not None and int(full_hour) >= 0:
        schedule["directory-sync-full"] = {
            "task": "sync.scheduled_full_sync",
            "schedule": crontab(hour=int(full_hour), minute=0),
        }
    retention_days = int(config.get("SYNC_RUN_RETENTION_DAYS") or 0)
    if retention_days > 0:
        schedule["directory-sync-run-retention"] = {
            "task": "sync.purge_old_runs",
            "schedule": crontab(hour=3, minute=30),
        }
    return schedule


def create_celery_app(app: Flask) -> Celery:
    broker_url, result_backend = _connection_urls(app)
    celery_app = Celery(
        app.import_name,
        broker=broker_url,
        backend=result_backend,
        include=("identity_app.sync.tasks",),
    )
    celery_app.conf.update(
        task_default_queue=DEFAULT_QUEUE_NAME,
        task_queues=[Queue(DEFAULT_QUEUE_NAME)],
        task_default_exchange=DEFAULT_QUEUE_NAME,
        task_default_routing_key=DEFAULT_QUEUE_NAME,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        task_track_started=True,
        result_extended=True,
        broker_connection_retry_on_startup=True,
        task_time_limit=app.config.get("SYNC_TASK_TIME_LIMIT", 45 * 60),
        task_soft_time_limit=app.config.get("SYNC_TASK_SOFT_TIME_LIMIT", 40 * 60),
        worker_hijack_root_logger=False,
        timezone="UTC",
        enable_utc=True,
        beat_schedule=build_beat_schedule(app.config),
    )

    extra_conf: Mapping[str, Any] | str | None = app.config.get("CELERY_CONFIG")
    if isinstance(extra_conf, str):
        try:
            extra_conf = json.loads(extra_conf)
        except json.JSONDecodeError:
            app.logger.warning("CELERY_CONFIG is not valid JSON; ignoring value.", exc_info=True)
            extra_conf = None
    if extra_conf:
        celery_app.conf.update(extra_conf)

    app.logger.info(
        "Sync Celery configuration resolved",
        extra={
            "sync_celery_broker_url": broker_url,
            "sync_celery_result_backend": result_backend,
            "sync_celery_extra_conf": extra_conf,
            "sync_worker_enabled": app.config.get("SYNC_WORKER_ENABLED"),
        },
    )
    _quiet_noisy_loggers(app)

    class FlaskContextTask(celery_app.Task):  # type: ignore[misc]
        """Execute every task inside the Flask application context."""

        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = FlaskContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None:
        celery_app = create_celery_app(app)
        state["celery_app"] = celery_app
    return celery_app


def get_celery_app(app: Flask) -> Celery | None:
    """Celery instance for ``app``, created on first use while sync is enabled."""
    state: dict[str, Any] | None = app.extensions.get(SYNC_EXTENSION_KEY)  # type: ignore[arg-type]
    if not state:
        return None
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None and state.get("enabled"):
        celery_app = ensure_celery_app(app, state)
    return celery_app

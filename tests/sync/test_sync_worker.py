import json
from typing import Any, Dict

from celery.schedules import crontab
from flask import Flask

from identity_app.models import SyncRun, SyncRunStatus, SyncType, db
from identity_app.sync import get_celery_app, init_sync
from identity_app.sync.celery_app import DEFAULT_QUEUE_NAME, build_beat_schedule
from identity_app.sync.pipeline.coordinator import SyncCoordinator

EAGER = {"task_always_eager": True, "task_eager_propagates": True}


def build_sync_app(**overrides) -> Flask:
    """
    Construct a minimal Flask app with directory sync enabled for worker tests.
    """
    instance_path_override = overrides.pop("INSTANCE_PATH", None)
    if instance_path_override:
        app = Flask(__name__, instance_path=instance_path_override)
    else:
        app = Flask(__name__)
    app.config.update(
        SECRET_KEY="test-secret",
        TESTING=True,
        SYNC_ENABLED=True,
        SYNC_SOURCE="file",
        SYNC_FILE_PATH="directory.json",
    )
    app.config.update(overrides)
    init_sync(app)
    return app


def test_celery_defaults_to_sqlite_transport(tmp_path):
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir()
    sqlite_path = instance_dir / "custom.sqlite"

    app = build_sync_app(
        CELERY_SQLITE_PATH=str(sqlite_path),
        CELERY_CONFIG=EAGER,
        INSTANCE_PATH=str(instance_dir),
    )

    celery_app = get_celery_app(app)
    assert celery_app is not None
    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert sqlite_path.name in celery_app.conf.broker_url
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1


def test_explicit_broker_settings_win(tmp_path):
    app = build_sync_app(
        CELERY_BROKER_URL="redis://localhost:6379/0",
        CELERY_RESULT_BACKEND="redis://localhost:6379/1",
        CELERY_SQLITE_PATH=str(tmp_path / "unused.sqlite"),
    )

    celery_app = get_celery_app(app)
    assert celery_app.conf.broker_url == "redis://localhost:6379/0"
    assert celery_app.conf.result_backend == "redis://localhost:6379/1"


def test_celery_config_accepts_json_string(tmp_path):
    app = build_sync_app(
        CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"),
        CELERY_CONFIG=json.dumps({"task_always_eager": True, "worker_concurrency": 3}),
    )

    celery_app = get_celery_app(app)
    assert celery_app.conf.task_always_eager is True
    assert celery_app.conf.worker_concurrency == 3


def test_disabled_sync_has_no_celery_app():
    app = build_sync_app(SYNC_ENABLED=False)

    assert get_celery_app(app) is None
    assert app.extensions["identity_sync"]["enabled"] is False


def test_beat_schedule_from_config():
    schedule = build_beat_schedule({"SYNC_INCREMENTAL_INTERVAL_MINUTES": 15, "SYNC_FULL_SYNC_HOUR": 2})

    assert schedule["directory-sync-incremental"] == {
        "task": "sync.scheduled_incremental_sync",
        "schedule": 900.0,
    }
    assert schedule["directory-sync-full"]["task"] == "sync.scheduled_full_sync"
    assert schedule["directory-sync-full"]["schedule"] == crontab(hour=2, minute=0)

    assert build_beat_schedule({"SYNC_INCREMENTAL_INTERVAL_MINUTES": 0, "SYNC_FULL_SYNC_HOUR": -1}) == {}

    retention = build_beat_schedule({"SYNC_RUN_RETENTION_DAYS": 30})
    assert retention == {
        "directory-sync-run-retention": {"task": "sync.purge_old_runs", "schedule": crontab(hour=3, minute=30)}
    }


def test_worker_ping_cli(tmp_path):
    app = build_sync_app(
        SYNC_WORKER_ENABLED=True,
        CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"),
        CELERY_CONFIG=EAGER,
    )

    runner = app.test_cli_runner()
    result = runner.invoke(args=["sync", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert "timestamp" in payload
    assert "worker_hostname" in payload


def test_worker_run_invokes_celery(monkeypatch, tmp_path):
    app = build_sync_app(
        SYNC_WORKER_ENABLED=True,
        CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"),
        CELERY_CONFIG=EAGER,
    )
    celery_app = get_celery_app(app)
    assert celery_app is not None

    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(celery_app, "worker_main", fake_worker_main)

    runner = app.test_cli_runner()
    result = runner.invoke(
        args=[
            "sync",
            "worker",
            "run",
            "--loglevel",
            "debug",
            "--concurrency",
            "2",
            "--pool",
            "solo",
            "--queues",
            "ldap",
            "--beat",
        ]
    )

    assert result.exit_code == 0, result.output
    assert calls["argv"] == [
        "worker",
        "--loglevel",
        "debug",
        "-Q",
        "ldap",
        "--concurrency",
        "2",
        "--pool",
        "solo",
        "--beat",
    ]
    assert app.extensions["identity_sync"]["worker_enabled"] is True


def test_worker_run_defaults(monkeypatch, tmp_path):
    app = build_sync_app(CELERY_SQLITE_PATH=str(tmp_path / "celery.sqlite"), CELERY_CONFIG=EAGER)
    celery_app = get_celery_app(app)
    calls: Dict[str, Any] = {}
    monkeypatch.setattr(celery_app, "worker_main", lambda argv=None: calls.setdefault("argv", argv))

    result = app.test_cli_runner().invoke(args=["sync", "worker", "run"])

    assert result.exit_code == 0, result.output
    assert calls["argv"] == ["worker", "--loglevel", "info", "-Q", DEFAULT_QUEUE_NAME, "--concurrency", "1"]


def test_run_task_executes_reserved_run(sync_app, tmp_path, entry):
    snapshot = tmp_path / "directory.json"
    snapshot.write_text(json.dumps([entry("alice"), entry("bob")]), encoding="utf-8")
    sync_app.config["SYNC_FILE_PATH"] = str(snapshot)
    run_id = SyncCoordinator().reserve_run(SyncType.FULL, triggered_by="api").id
    task = get_celery_app(sync_app).tasks["sync.run_directory_sync"]

    payload = task.run(run_id=run_id)

    assert payload["run_id"] == run_id
    assert payload["status"] == "completed"
    assert payload["counts"]["created"] == 2
    assert payload["error_count"] == 0


def test_scheduled_incremental_skips_without_watermark(sync_app):
    task = get_celery_app(sync_app).tasks["sync.scheduled_incremental_sync"]

    assert task.run() == {"status": "skipped", "reason": "no_watermark"}


def test_scheduled_full_skips_when_run_active(sync_app, tmp_path):
    sync_app.config["SYNC_FILE_PATH"] = str(tmp_path / "directory.json")
    active_id = SyncCoordinator().reserve_run(SyncType.FULL).id
    task = get_celery_app(sync_app).tasks["sync.scheduled_full_sync"]

    payload = task.run()

    assert payload == {"status": "skipped", "reason": "already_running", "active_run_id": active_id}


def test_scheduled_full_runs_inline(sync_app, tmp_path, entry):
    snapshot = tmp_path / "directory.json"
    snapshot.write_text(json.dumps([entry("alice")]), encoding="utf-8")
    sync_app.config["SYNC_FILE_PATH"] = str(snapshot)
    task = get_celery_app(sync_app).tasks["sync.scheduled_full_sync"]

    payload = task.run()

    assert payload["status"] == "completed"
    assert payload["sync_type"] == "full"
    run = db.session.get(SyncRun, payload["run_id"])
    assert run.status is SyncRunStatus.COMPLETED
    assert run.triggered_by == "scheduler"


def test_retention_task_purges_old_runs(sync_app, run_factory):
    sync_app.config["SYNC_RUN_RETENTION_DAYS"] = 7
    old_id = run_factory(started_offset_minutes=60 * 24 * 10).id
    recent_id = run_factory(started_offset_minutes=5).id
    task = get_celery_app(sync_app).tasks["sync.purge_old_runs"]

    payload = task.run()

    assert payload == {"status": "ok", "deleted_runs": 1, "detached_changes": 0, "skipped_active": 0}
    assert db.session.get(SyncRun, old_id) is None
    assert db.session.get(SyncRun, recent_id) is not None

    sync_app.config["SYNC_RUN_RETENTION_DAYS"] = 0
    assert task.run() == {"status": "skipped", "reason": "retention_disabled"}

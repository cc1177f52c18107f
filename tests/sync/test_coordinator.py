from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import NoResultFound, OperationalError

from identity_app.models import (
    Identity,
    IdentityRole,
    StudentProfile,
    SyncLock,
    SyncRun,
    SyncRunStatus,
    SyncType,
    db,
)
from identity_app.sync.errors import DirectorySourceError, SyncAlreadyRunning, SyncDispatchError
from identity_app.sync.pipeline import coordinator as coordinator_module
from identity_app.sync.pipeline.coordinator import SYNC_LOCK_NAME, normalize_selection


def _identity(external_id):
    return db.session.execute(select(Identity).where(Identity.external_id == external_id)).scalar_one_or_none()


def test_full_sync_creates_identities_and_releases_lock(make_coordinator, static_source, entry):
    source = static_source([entry("alice", mail="alice@example.org"), entry("bob")])

    run = make_coordinator(source).start_full_sync(triggered_by="tests", inline=True)

    assert run.status is SyncRunStatus.COMPLETED
    assert run.counts["seen"] == 2
    assert run.counts["created"] == 2
    assert run.counts["errors"] == 0
    assert run.source == "static"
    assert db.session.get(SyncLock, SYNC_LOCK_NAME) is None
    alice = _identity("alice")
    assert alice.role is IdentityRole.UNASSIGNED
    assert alice.email == "alice@example.org"


def test_second_pass_respects_local_edits(make_coordinator, static_source, entry):
    source = static_source([entry("alice", cn=["Alice Directory"], mail="alice@example.org")])
    make_coordinator(source).start_full_sync(inline=True)

    alice = _identity("alice")
    alice.full_name = "Alice Local"
    db.session.commit()

    source.entries = [entry("alice", cn=["Alice Renamed"], gidNumber="900", mail="alice@example.org")]
    run = make_coordinator(source).start_full_sync(inline=True)

    assert run.counts["updated"] == 1
    alice = _identity("alice")
    assert alice.full_name == "Alice Local"
    assert alice.gid_number == 900


def test_missing_identities_are_deactivated_on_full_runs(make_coordinator, static_source, entry, pi_factory):
    pi_factory("prof")
    source = static_source([entry("alice")])

    run = make_coordinator(source).start_full_sync(inline=True)

    assert run.counts["deactivated"] == 1
    prof = _identity("prof")
    assert prof.is_active is False
    assert prof.role is IdentityRole.PI


def test_reappearing_identity_is_reactivated(make_coordinator, static_source, entry, identity_factory):
    identity_factory("alice", is_active=False, present_in_last_snapshot=False)

    run = make_coordinator(static_source([entry("alice")])).start_full_sync(inline=True)

    assert run.counts["reactivated"] == 1
    assert _identity("alice").is_active is True


def test_empty_snapshot_skips_deactivation(make_coordinator, static_source, identity_factory):
    identity_factory("alice")

    run = make_coordinator(static_source([])).start_full_sync(inline=True)

    assert run.status is SyncRunStatus.COMPLETED
    assert run.counts["deactivated"] == 0
    assert run.errors[0]["stage"] == "deactivate"
    assert _identity("alice").is_active is True


def test_empty_snapshot_sweep_can_be_allowed(make_coordinator, static_source, identity_factory):
    identity_factory("alice")

    run = make_coordinator(static_source([]), SYNC_ALLOW_EMPTY_SWEEP=True).start_full_sync(inline=True)

    assert run.counts["deactivated"] == 1
    assert _identity("alice").is_active is False


def test_bad_records_are_counted_not_fatal(make_coordinator, static_source, entry):
    source = static_source(
        [
            entry("alice"),
            {"dn": "cn=nouid,dc=example,dc=org", "cn": ["No Uid"]},
            entry("bob", uidNumber="not-a-number"),
            entry("alice", uidNumber="1"),
        ]
    )

    run = make_coordinator(source).start_full_sync(inline=True)

    assert run.status is SyncRunStatus.COMPLETED
    assert run.counts["created"] == 1
    assert run.counts["errors"] == 3
    assert {error["stage"] for error in run.errors} == {"parse"}
    assert any("Duplicate external id 'alice'" in error["message"] for error in run.errors)
    assert _identity("bob") is None


def test_unparsable_attributes_do_not_deactivate_listed_identity(make_coordinator, static_source, entry):
    source = static_source([entry("alice"), entry("bob")])
    make_coordinator(source).start_full_sync(inline=True)

    source.entries = [entry("alice", uidNumber="not-a-number"), entry("bob")]
    run = make_coordinator(source).start_full_sync(inline=True)

    assert run.status is SyncRunStatus.COMPLETED
    assert run.counts["deactivated"] == 0
    assert run.counts["errors"] == 1
    assert run.errors[0]["stage"] == "parse"
    assert run.errors[0]["external_id"] == "alice"
    alice = _identity("alice")
    assert alice.is_active is True
    assert alice.present_in_last_snapshot is True


def test_write_error_rolls_back_only_that_record(make_coordinator, static_source, entry, monkeypatch):
    original = coordinator_module.reconcile_record

    def reconcile_or_lock(session, record, *args, **kwargs):
        outcome = original(session, record, *args, **kwargs)
        if record.external_id == "bob":
            session.flush()
            raise OperationalError("UPDATE identities", {}, Exception("database is locked"))
        return outcome

    monkeypatch.setattr(coordinator_module, "reconcile_record", reconcile_or_lock)
    source = static_source([entry("alice"), entry("bob"), entry("carol")])

    run = make_coordinator(source).start_full_sync(inline=True)

    assert run.status is SyncRunStatus.COMPLETED
    assert run.counts["seen"] == 3
    assert run.counts["created"] == 2
    assert run.counts["errors"] == 1
    assert run.errors[0]["stage"] == "upsert"
    assert run.errors[0]["external_id"] == "bob"
    assert "database is locked" in run.errors[0]["message"]
    assert _identity("bob") is None
    assert _identity("alice") is not None
    assert _identity("carol") is not None
    assert db.session.get(SyncLock, SYNC_LOCK_NAME) is None


def test_unexpected_record_error_is_recorded_and_keeps_identity_active(
    make_coordinator, static_source, entry, monkeypatch
):
    source = static_source([entry("alice"), entry("bob")])
    make_coordinator(source).start_full_sync(inline=True)
    original = coordinator_module.reconcile_record

    def reconcile_or_fail(session, record, *args, **kwargs):
        if record.external_id == "bob":
            raise TypeError("unsupported attribute type")
        return original(session, record, *args, **kwargs)

    monkeypatch.setattr(coordinator_module, "reconcile_record", reconcile_or_fail)
    source.entries = [entry("alice", loginShell="/bin/zsh"), entry("bob", loginShell="/bin/zsh")]

    run = make_coordinator(source).start_full_sync(inline=True)

    assert run.status is SyncRunStatus.COMPLETED
    assert run.counts["updated"] == 1
    assert run.counts["deactivated"] == 0
    assert run.errors == [
        {
            "stage": "upsert",
            "message": "unsupported attribute type",
            "external_id": "bob",
            "dn": "uid=bob,ou=people,dc=example,dc=org",
        }
    ]
    assert _identity("bob").is_active is True
    assert _identity("bob").login_shell == "/bin/bash"
    assert _identity("alice").login_shell == "/bin/zsh"


def test_source_error_during_reconcile_still_fails_the_run(make_coordinator, static_source, entry, monkeypatch):
    def unreachable(*args, **kwargs):
        raise DirectorySourceError("connection dropped")

    monkeypatch.setattr(coordinator_module, "reconcile_record", unreachable)

    with pytest.raises(DirectorySourceError):
        make_coordinator(static_source([entry("alice")])).start_full_sync(inline=True)

    run = db.session.execute(select(SyncRun).order_by(SyncRun.id.desc())).scalars().first()
    assert run.status is SyncRunStatus.FAILED
    assert run.error_summary == "connection dropped"
    assert db.session.get(SyncLock, SYNC_LOCK_NAME) is None


def test_student_reactivated_by_full_sync_keeps_role_and_profile(
    make_coordinator, static_source, entry, pi_factory, student_factory
):
    _, pi_profile = pi_factory("prof")
    pi_profile_id = pi_profile.id
    student, profile = student_factory("stud", pi_profile=pi_profile)
    student_id, profile_id = student.id, profile.id

    source = static_source([entry("prof")])
    first = make_coordinator(source).start_full_sync(inline=True)
    assert first.counts["deactivated"] == 1
    assert db.session.get(Identity, student_id).is_active is False

    source.entries = [entry("prof"), entry("stud")]
    run = make_coordinator(source).start_full_sync(inline=True)

    assert run.counts["reactivated"] == 1
    stud = db.session.get(Identity, student_id)
    assert stud.is_active is True
    assert stud.deactivated_at is None
    assert stud.role is IdentityRole.STUDENT
    assert stud.student_profile.id == profile_id
    assert stud.student_profile.pi_profile_id == pi_profile_id
    count = db.session.execute(
        select(func.count()).select_from(StudentProfile).where(StudentProfile.identity_id == student_id)
    ).scalar_one()
    assert count == 1


def test_source_failure_fails_run_and_frees_lock(make_coordinator, static_source, identity_factory):
    identity_factory("alice")
    coordinator = make_coordinator(static_source(fail=True))

    with pytest.raises(DirectorySourceError):
        coordinator.start_full_sync(inline=True)

    run = db.session.execute(select(SyncRun).order_by(SyncRun.id.desc())).scalars().first()
    assert run.status is SyncRunStatus.FAILED
    assert run.error_summary == "directory unreachable"
    assert db.session.get(SyncLock, SYNC_LOCK_NAME) is None
    assert _identity("alice").is_active is True


def test_second_start_is_rejected_while_running(make_coordinator, static_source):
    coordinator = make_coordinator(static_source([]))
    held = coordinator.reserve_run(SyncType.FULL, triggered_by="first")

    with pytest.raises(SyncAlreadyRunning) as excinfo:
        coordinator.start_full_sync(triggered_by="second", inline=True)

    assert excinfo.value.active_run_id == held.id
    assert db.session.execute(select(SyncRun)).scalars().all() == [held]


def test_stale_run_is_reclaimed(make_coordinator, static_source, entry):
    coordinator = make_coordinator(static_source([entry("alice")]), SYNC_RUN_TIMEOUT_SECONDS=60)
    stale = coordinator.reserve_run(SyncType.FULL)
    stale_id = stale.id
    stale.started_at = datetime.now(timezone.utc) - timedelta(minutes=10)
    db.session.commit()

    run = coordinator.start_full_sync(inline=True)

    assert run.status is SyncRunStatus.COMPLETED
    reclaimed = db.session.get(SyncRun, stale_id)
    assert reclaimed.status is SyncRunStatus.FAILED
    assert "reclaimed" in reclaimed.error_summary


def test_incremental_requires_watermark(make_coordinator, static_source):
    with pytest.raises(ValueError, match="watermark"):
        make_coordinator(static_source([])).start_incremental_sync(inline=True)


def test_incremental_uses_last_completed_run_and_never_deactivates(
    make_coordinator, static_source, entry, identity_factory
):
    source = static_source([entry("alice"), entry("bob")])
    first = make_coordinator(source).start_full_sync(inline=True)
    first_started = first.started_at

    source.changed = [entry("alice", loginShell="/bin/zsh")]
    run = make_coordinator(source).start_incremental_sync(inline=True)

    assert run.sync_type is SyncType.INCREMENTAL
    assert run.counts["updated"] == 1
    assert run.counts["deactivated"] == 0
    assert source.since_calls[0].replace(tzinfo=None) == first_started.replace(tzinfo=None)
    assert _identity("bob").is_active is True
    assert _identity("alice").login_shell == "/bin/zsh"


def test_queued_dispatch_records_task_id(sync_app, make_coordinator, static_source):
    async_result = Mock()
    async_result.id = "celery-task-1"
    celery_app = Mock()
    celery_app.send_task.return_value = async_result

    with patch("identity_app.sync.pipeline.coordinator.get_celery_app", return_value=celery_app):
        run = make_coordinator(static_source([])).start_full_sync(inline=False)

    assert run.status is SyncRunStatus.STARTING
    assert run.task_id == "celery-task-1"
    celery_app.send_task.assert_called_once_with("sync.run_directory_sync", kwargs={"run_id": run.id})
    assert db.session.get(SyncLock, SYNC_LOCK_NAME).run_id == run.id


def test_dispatch_failure_marks_run_failed(sync_app, make_coordinator, static_source):
    celery_app = Mock()
    celery_app.send_task.side_effect = RuntimeError("broker down")

    with patch("identity_app.sync.pipeline.coordinator.get_celery_app", return_value=celery_app):
        with pytest.raises(SyncDispatchError):
            make_coordinator(static_source([])).start_full_sync(inline=False)

    run = db.session.execute(select(SyncRun)).scalar_one()
    assert run.status is SyncRunStatus.FAILED
    assert "broker down" in run.error_summary
    assert db.session.get(SyncLock, SYNC_LOCK_NAME) is None


def test_execute_run_rejects_non_starting_runs(make_coordinator, static_source, run_factory):
    run_id = run_factory(status=SyncRunStatus.COMPLETED).id

    with pytest.raises(ValueError):
        make_coordinator(static_source([])).execute_run(run_id)
    with pytest.raises(NoResultFound):
        make_coordinator(static_source([])).execute_run(9999)


def test_get_run_status_payload(make_coordinator, static_source, entry):
    coordinator = make_coordinator(static_source([entry("alice")]))
    run = coordinator.start_full_sync(triggered_by="cli", inline=True)

    status = coordinator.get_run_status()

    assert status["run_id"] == run.id
    assert status["status"] == "completed"
    assert status["sync_type"] == "full"
    assert status["triggered_by"] == "cli"
    assert status["counts"]["created"] == 1
    assert status["duration_seconds"] is not None


def test_get_protected_fields_lists_local_values(make_coordinator, static_source, pi_factory):
    pi_factory("prof", full_name="Prof Local", email="prof@example.org")

    payload = make_coordinator(static_source([])).get_protected_fields("prof")

    assert payload["role"] == "pi"
    assert "full_name" in payload["protected_fields"]
    assert "pi_profile.department" in payload["protected_fields"]
    assert payload["values"]["full_name"] == "Prof Local"
    assert payload["values"]["role"] == "pi"
    assert "pi_profile.department" not in payload["values"]

    with pytest.raises(NoResultFound):
        make_coordinator(static_source([])).get_protected_fields("nobody")


def test_selective_sync_by_external_id_never_deactivates(make_coordinator, static_source, entry):
    source = static_source([entry("alice"), entry("bob"), entry("carol")])
    first = make_coordinator(source).start_full_sync(inline=True)
    first_started = first.started_at

    source.entries = [entry("alice", loginShell="/bin/zsh"), entry("bob", loginShell="/bin/zsh")]
    coordinator = make_coordinator(source)
    run = coordinator.start_selective_sync([" alice ", "ghost", "alice"], triggered_by="tests", inline=True)

    assert run.status is SyncRunStatus.COMPLETED
    assert run.sync_type is SyncType.SELECTIVE
    assert run.selection == {"external_ids": ["alice", "ghost"], "gid_number": None}
    assert run.counts["seen"] == 1
    assert run.counts["updated"] == 1
    assert run.counts["deactivated"] == 0
    assert run.errors == [{"stage": "select", "message": "Not found in the directory.", "external_id": "ghost"}]
    assert _identity("alice").login_shell == "/bin/zsh"
    assert _identity("bob").login_shell == "/bin/bash"
    assert _identity("carol").is_active is True
    assert coordinator.last_completed_watermark().replace(tzinfo=None) == first_started.replace(tzinfo=None)
    assert coordinator.get_run_status(run.id)["selection"] == run.selection


def test_selective_sync_by_group(make_coordinator, static_source, entry):
    source = static_source([entry("alice"), entry("bob", gidNumber="600"), entry("carol", gidNumber=["600"])])

    run = make_coordinator(source).start_selective_sync(gid_number=600, inline=True)

    assert run.counts["created"] == 2
    assert run.errors == []
    assert _identity("alice") is None
    assert {_identity("bob").gid_number, _identity("carol").gid_number} == {600}


def test_queued_selective_sync_keeps_selection(sync_app, make_coordinator, static_source):
    async_result = Mock()
    async_result.id = "celery-task-2"
    celery_app = Mock()
    celery_app.send_task.return_value = async_result

    with patch("identity_app.sync.pipeline.coordinator.get_celery_app", return_value=celery_app):
        run = make_coordinator(static_source([])).start_selective_sync(["alice"], gid_number=700, inline=False)

    stored = db.session.get(SyncRun, run.id)
    assert stored.status is SyncRunStatus.STARTING
    assert stored.sync_type is SyncType.SELECTIVE
    assert stored.selection == {"external_ids": ["alice"], "gid_number": 700}


def test_normalize_selection_requires_a_criterion():
    assert normalize_selection(["bob", " bob", "", "amy"], None) == {"external_ids": ["bob", "amy"], "gid_number": None}
    assert normalize_selection(None, "42") == {"external_ids": [], "gid_number": 42}

    with pytest.raises(ValueError, match="at least one"):
        normalize_selection([" "], None)
    with pytest.raises(ValueError, match="non-negative"):
        normalize_selection(["bob"], -1)

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select

from identity_app.models import ChangeLogEntry, Identity, db
from identity_app.sync.pipeline.merge import apply_merge, merge
from identity_app.sync.pipeline.ownership import SyncField
from identity_app.sync.sources.records import DirectoryRecord


def _record(**values) -> DirectoryRecord:
    values.setdefault("external_id", "alice")
    return DirectoryRecord(**values)


def test_directory_owned_values_always_written():
    identity = Identity(external_id="alice", uid_number=1, login_shell="/bin/sh", full_name="Local Name")
    record = _record(uid_number=2, login_shell="/bin/zsh", full_name="Directory Name")

    plan = merge(record, identity, {SyncField.FULL_NAME})

    assert plan.write_set[SyncField.UID_NUMBER] == 2
    assert plan.write_set[SyncField.LOGIN_SHELL] == "/bin/zsh"
    assert SyncField.FULL_NAME not in plan.write_set
    assert plan.skipped_protected == (SyncField.FULL_NAME,)


def test_unprotected_local_fields_are_seeded():
    identity = Identity(external_id="alice", full_name=None, email=None)
    record = _record(full_name="Alice Example", email="alice@example.org")

    plan = merge(record, identity, frozenset())

    assert plan.changes[SyncField.FULL_NAME] == (None, "Alice Example")
    assert plan.changes[SyncField.EMAIL] == (None, "alice@example.org")
    assert plan.skipped_protected == ()


def test_missing_attributes_are_left_alone():
    identity = Identity(external_id="alice", home_directory="/home/alice", phone="555-0100")
    record = _record(uid_number=42)

    plan = merge(record, identity, frozenset())

    assert SyncField.HOME_DIRECTORY not in plan.write_set
    assert SyncField.PHONE not in plan.write_set
    assert set(plan.changes) == {SyncField.UID_NUMBER}


def test_identical_values_produce_no_changes():
    identity = Identity(external_id="alice", uid_number=7, gid_number=500)
    record = _record(uid_number=7, gid_number=500)

    plan = merge(record, identity, frozenset())

    assert not plan.has_changes
    assert SyncField.EXTERNAL_ID in plan.write_set
    assert SyncField.EXTERNAL_ID not in plan.changes


def test_apply_merge_writes_changes_and_logs_them(identity_factory):
    identity = identity_factory("alice", uid_number=1, full_name="Alice Local")
    record = _record(uid_number=99, full_name="Alice Directory")
    plan = merge(record, identity, {SyncField.FULL_NAME})
    synced_at = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    changes = apply_merge(db.session, identity, plan, synced_at=synced_at)
    db.session.commit()

    refreshed = db.session.get(Identity, identity.id)
    assert refreshed.uid_number == 99
    assert refreshed.full_name == "Alice Local"
    assert refreshed.last_synced_at.replace(tzinfo=timezone.utc) == synced_at
    assert changes == {"uid_number": (1, 99)}

    entries = db.session.execute(select(ChangeLogEntry).where(ChangeLogEntry.entity_id == identity.id)).scalars().all()
    assert [(entry.field_name, entry.old_value, entry.new_value) for entry in entries] == [("uid_number", "1", "99")]
    assert entries[0].change_source == "directory_sync"
    assert entries[0].metadata_json["skipped_protected"] == ["full_name"]

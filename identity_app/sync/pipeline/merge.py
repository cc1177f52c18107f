"""
Merge engine.

``merge`` decides which attributes of a directory record may be written to an
identity: directory-owned attributes always, locally-owned attributes only
when they are not in the protected set. ``apply_merge`` writes the resulting
changes as one UPDATE statement scoped to that identity, together with its
change-log rows, inside the caller's transaction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Collection, Mapping

from sqlalchemy import update
from sqlalchemy.orm import Session

from identity_app.models import Identity
from identity_app.sync.pipeline.changelog import record_changes
from identity_app.sync.pipeline.ownership import FieldScope, SyncField, policy_for
from identity_app.sync.sources.records import DirectoryRecord

CHANGE_SOURCE = "directory_sync"


@dataclass(frozen=True)
class MergePlan:
    """Outcome of comparing one directory record against one identity."""

    write_set: Mapping[SyncField, Any]
    changes: Mapping[SyncField, tuple[Any, Any]] = field(default_factory=dict)
    skipped_protected: tuple[SyncField, ...] = ()

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    def changed_attributes(self) -> dict[str, Any]:
        return {policy_for(name).attribute: after for name, (_, after) in self.changes.items()}


def merge(
    record: DirectoryRecord,
    identity: Identity | None,
    protected_fields: Collection[SyncField],
) -> MergePlan:
    """
    Compute the write set for ``record``.

    Attributes the record does not carry are left out entirely. ``changes``
    holds the subset of the write set that differs from ``identity``; the
    external id is never part of it because it is the correlation key.
    """

    write_set: dict[SyncField, Any] = {}
    skipped: list[SyncField] = []
    for name, value in record.field_values().items():
        policy = policy_for(name)
        if policy.scope is not FieldScope.IDENTITY:
            continue
        if policy.is_directory_owned or name not in protected_fields:
            write_set[name] = value
        else:
            skipped.append(name)

    changes: dict[SyncField, tuple[Any, Any]] = {}
    for name, value in write_set.items():
        if name is SyncField.EXTERNAL_ID:
            continue
        current = getattr(identity, policy_for(name).attribute) if identity is not None else None
        if current != value:
            changes[name] = (current, value)

    return MergePlan(write_set=write_set, changes=changes, skipped_protected=tuple(skipped))


def apply_merge(
    session: Session,
    identity: Identity,
    plan: MergePlan,
    *,
    synced_at: datetime,
    sync_run_id: int | None = None,
    lifecycle_values: Mapping[str, Any] | None = None,
) -> dict[str, tuple[Any, Any]]:
    """
    Write ``plan`` (plus any lifecycle flags) to ``identity`` in a single UPDATE.

    Returns the attribute-level changes that were written. The caller commits
    or rolls back; nothing here is visible until it does.
    """

    values: dict[str, Any] = plan.changed_attributes()
    lifecycle_changes: dict[str, tuple[Any, Any]] = {}
    for attribute, after in (lifecycle_values or {}).items():
        before = getattr(identity, attribute)
        values[attribute] = after
        if before != after:
            lifecycle_changes[attribute] = (before, after)
    values["last_synced_at"] = synced_at

    session.execute(
        update(Identity).where(Identity.id == identity.id).values(**values),
        execution_options={"synchronize_session": "fetch"},
    )

    changes = {name.value: pair for name, pair in plan.changes.items()}
    changes.update(lifecycle_changes)
    record_changes(
        session,
        entity_type="identity",
        entity_id=identity.id,
        changes=changes,
        change_source=CHANGE_SOURCE,
        sync_run_id=sync_run_id,
        metadata={
            "external_id": identity.external_id,
            "skipped_protected": [name.value for name in plan.skipped_protected],
        },
    )
    return changes


__all__ = ["MergePlan", "apply_merge", "merge"]

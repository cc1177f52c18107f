"""
Identity lifecycle decisions for one directory record.

absent -> active       create with role ``unassigned``
active -> active       merge and stamp ``last_synced_at``
deactivated -> active  reactivate, keep role/profile/local fields, then merge

Deactivation is not decided here; it happens after a full pass through
``CascadeManager.deactivate_missing``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config.ownership import PlaceholderEmailPolicy
from identity_app.models import Identity, IdentityRole, PIProfile
from identity_app.sync.pipeline.changelog import record_changes
from identity_app.sync.pipeline.merge import CHANGE_SOURCE, apply_merge, merge
from identity_app.sync.pipeline.ownership import policy_for
from identity_app.sync.pipeline.protection import compute_protected_fields
from identity_app.sync.sources.records import DirectoryRecord


class LifecycleAction(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    REACTIVATE = "reactivate"


@dataclass(frozen=True)
class LifecycleTarget:
    action: LifecycleAction
    identity: Identity | None = None


@dataclass(frozen=True)
class LifecycleOutcome:
    action: LifecycleAction
    identity_id: int
    external_id: str
    changed_fields: tuple[str, ...] = ()
    skipped_protected: tuple[str, ...] = ()

    @property
    def count_key(self) -> str:
        """Name of the run counter this outcome increments."""
        if self.action is LifecycleAction.CREATE:
            return "created"
        if self.action is LifecycleAction.REACTIVATE:
            return "reactivated"
        return "updated" if self.changed_fields else "unchanged"


def resolve_lifecycle_target(session: Session, external_id: str) -> LifecycleTarget:
    identity = session.execute(select(Identity).where(Identity.external_id == external_id)).scalar_one_or_none()
    if identity is None:
        return LifecycleTarget(action=LifecycleAction.CREATE)
    if not identity.is_active:
        return LifecycleTarget(action=LifecycleAction.REACTIVATE, identity=identity)
    return LifecycleTarget(action=LifecycleAction.UPDATE, identity=identity)


def create_identity(
    session: Session,
    record: DirectoryRecord,
    placeholder_policy: PlaceholderEmailPolicy,
    *,
    synced_at: datetime,
    sync_run_id: int | None = None,
) -> Identity:
    plan = merge(record, None, frozenset())
    identity = Identity(
        external_id=record.external_id,
        role=IdentityRole.UNASSIGNED,
        is_active=True,
        present_in_last_snapshot=True,
        last_synced_at=synced_at,
    )
    for name, value in plan.write_set.items():
        setattr(identity, policy_for(name).attribute, value)
    if identity.email is None:
        identity.email = placeholder_policy.synthesize(record.external_id)

    session.add(identity)
    session.flush()

    record_changes(
        session,
        entity_type="identity",
        entity_id=identity.id,
        changes={"created": (None, record.external_id)},
        change_source=CHANGE_SOURCE,
        sync_run_id=sync_run_id,
        metadata={"external_id": record.external_id},
    )
    return identity


def reconcile_record(
    session: Session,
    record: DirectoryRecord,
    placeholder_policy: PlaceholderEmailPolicy,
    *,
    synced_at: datetime,
    sync_run_id: int | None = None,
) -> LifecycleOutcome:
    """Apply one snapshot record. The caller commits (or rolls back) the entity."""

    target = resolve_lifecycle_target(session, record.external_id)
    identity = target.identity
    if identity is None:
        identity = create_identity(
            session,
            record,
            placeholder_policy,
            synced_at=synced_at,
            sync_run_id=sync_run_id,
        )
        return LifecycleOutcome(
            action=LifecycleAction.CREATE,
            identity_id=identity.id,
            external_id=identity.external_id,
            changed_fields=tuple(sorted(name.value for name in record.field_values())),
        )

    # Recomputed for every record: local edits may have happened since the last pass.
    protected = compute_protected_fields(identity, placeholder_policy)
    plan = merge(record, identity, protected)

    lifecycle_values: dict[str, object] = {"present_in_last_snapshot": True}
    if target.action is LifecycleAction.REACTIVATE:
        lifecycle_values.update(is_active=True, deactivated_at=None)
        session.execute(
            update(PIProfile).where(PIProfile.identity_id == identity.id).values(is_active=True),
            execution_options={"synchronize_session": "fetch"},
        )

    changes = apply_merge(
        session,
        identity,
        plan,
        synced_at=synced_at,
        sync_run_id=sync_run_id,
        lifecycle_values=lifecycle_values,
    )
    return LifecycleOutcome(
        action=target.action,
        identity_id=identity.id,
        external_id=identity.external_id,
        changed_fields=tuple(sorted(changes)),
        skipped_protected=tuple(sorted(name.value for name in plan.skipped_protected)),
    )


__all__ = [
    "LifecycleAction",
    "LifecycleOutcome",
    "LifecycleTarget",
    "create_identity",
    "reconcile_record",
    "resolve_lifecycle_target",
]

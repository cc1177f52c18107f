"""Field-level audit helpers shared by merges, role changes and request approvals."""

from __future__ import annotations

import enum
from datetime import date, datetime
from typing import Any, Mapping

from sqlalchemy.orm import Session

from identity_app.models import ChangeLogEntry


def serialize_change_value(value: object | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, enum.Enum):
        return str(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def record_changes(
    session: Session,
    *,
    entity_type: str,
    entity_id: int,
    changes: Mapping[str, tuple[object | None, object | None]],
    change_source: str,
    sync_run_id: int | None = None,
    changed_by: str | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> int:
    """Stage one ``ChangeLogEntry`` per changed field; the caller owns the transaction."""
    for field_name, (before, after) in changes.items():
        session.add(
            ChangeLogEntry(
                sync_run_id=sync_run_id,
                entity_type=entity_type,
                entity_id=entity_id,
                field_name=field_name,
                old_value=serialize_change_value(before),
                new_value=serialize_change_value(after),
                change_source=change_source,
                changed_by=changed_by,
                metadata_json=dict(metadata) if metadata else None,
            )
        )
    return len(changes)

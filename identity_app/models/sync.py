"""
Persistence for directory sync runs.

``SyncRun`` is the append-only audit record of one reconciliation pass.
``SyncLock`` holds at most one row per lock name; inserting it is the atomic
"run in progress" marker, deleting it releases the lock.
``ChangeLogEntry`` keeps field-level history for merges, role changes and
request approvals.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, as_utc, db, utcnow


class SyncType(str, enum.Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    SELECTIVE = "selective"


class SyncRunStatus(str, enum.Enum):
    """Lifecycle states for a sync run."""

    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (SyncRunStatus.STARTING, SyncRunStatus.RUNNING)


COUNT_KEYS = ("seen", "created", "updated", "unchanged", "reactivated", "deactivated", "errors")


def empty_counts() -> dict[str, int]:
    return {key: 0 for key in COUNT_KEYS}


class SyncRun(BaseModel):
    """Metadata describing a single reconciliation pass."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    sync_type: Mapped[SyncType] = mapped_column(
        Enum(SyncType, name="sync_type_enum"),
        nullable=False,
        index=True,
    )
    status: Mapped[SyncRunStatus] = mapped_column(
        Enum(SyncRunStatus, name="sync_run_status_enum"),
        nullable=False,
        default=SyncRunStatus.STARTING,
        index=True,
    )
    source: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    triggered_by: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    task_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    changed_since: Mapped[datetime | None] = mapped_column(
        db.DateTime(timezone=True),
        nullable=True,
        comment="Watermark passed to the directory for incremental runs.",
    )
    selection_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="External ids and/or gid requested by a selective run.",
    )
    started_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    counts_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    errors_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    change_events = relationship("ChangeLogEntry", back_populates="sync_run", passive_deletes=True)

    @property
    def counts(self) -> dict[str, int]:
        merged = empty_counts()
        merged.update({key: int(value or 0) for key, value in (self.counts_json or {}).items()})
        return merged

    @property
    def errors(self) -> list[dict]:
        return list(self.errors_json or [])

    @property
    def selection(self) -> dict:
        data = dict(self.selection_json or {})
        return {"external_ids": list(data.get("external_ids") or []), "gid_number": data.get("gid_number")}

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (as_utc(self.finished_at) - as_utc(self.started_at)).total_seconds()

    def __repr__(self) -> str:
        return f"<SyncRun {self.id} {self.sync_type.value} {self.status.value}>"


class SyncLock(db.Model):
    """Single-owner marker row guarding the sync coordinator."""

    __tablename__ = "sync_locks"

    name: Mapped[str] = mapped_column(db.String(64), primary_key=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("sync_runs.id"), nullable=False)
    holder: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    acquired_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    run = relationship("SyncRun")


class ChangeLogEntry(BaseModel):
    """Field-level change history for sync-driven and administrative updates."""

    __tablename__ = "change_log"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    sync_run_id: Mapped[int | None] = mapped_column(
        ForeignKey("sync_runs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    entity_id: Mapped[int] = mapped_column(db.Integer, nullable=False, index=True)
    field_name: Mapped[str] = mapped_column(db.String(100), nullable=False)
    old_value: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    new_value: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    change_source: Mapped[str] = mapped_column(db.String(50), nullable=False, default="directory_sync")
    changed_by: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    changed_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    metadata_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    sync_run = relationship("SyncRun", back_populates="change_events")

    __table_args__ = (
        Index("idx_change_log_entity", "entity_type", "entity_id"),
        CheckConstraint("field_name <> ''", name="ck_change_log_field_non_empty"),
    )


"""
Query helpers for sync run history and the field change log.

The CLI ``sync runs``/``sync status``/``sync history`` commands and the
scheduled tasks read run history through this service so filtering and
serialization live in one place. Retention of old runs is handled here too.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Any, Iterable, Mapping

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from identity_app.models import (
    ChangeLogEntry,
    Identity,
    IdentityRole,
    StudentProfile,
    SyncLock,
    SyncRun,
    SyncRunStatus,
    SyncType,
    as_utc,
    db,
)
from identity_app.sync.pipeline.cascade import SYNC_SESSION_OPTIONS, unit_of_work

logger = logging.getLogger(__name__)

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 200
DEFAULT_SORT = "-started_at"
DEFAULT_RETENTION_DAYS = 30

VALID_SORT_FIELDS = {
    "id": SyncRun.id,
    "run_id": SyncRun.id,
    "sync_type": SyncRun.sync_type,
    "status": SyncRun.status,
    "started_at": SyncRun.started_at,
    "finished_at": SyncRun.finished_at,
}


@dataclass(frozen=True)
class RunFilters:
    """Validated filter options for sync run listings."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = DEFAULT_SORT
    statuses: tuple[SyncRunStatus, ...] = field(default_factory=tuple)
    sync_types: tuple[SyncType, ...] = field(default_factory=tuple)
    started_from: datetime | None = None
    started_to: datetime | None = None

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        sort: str | None = None,
        statuses: Iterable[str] | None = None,
        sync_types: Iterable[str] | None = None,
        started_from: str | datetime | None = None,
        started_to: str | datetime | None = None,
    ) -> "RunFilters":
        resolved_sort = sort or DEFAULT_SORT
        if resolved_sort.lstrip("-") not in VALID_SORT_FIELDS:
            raise ValueError(f"Unsupported sort field '{resolved_sort.lstrip('-')}'.")

        resolved_from = _coerce_datetime(started_from)
        resolved_to = _coerce_datetime(started_to, end_of_day=True)
        if resolved_from and resolved_to and resolved_from > resolved_to:
            raise ValueError("started_from must be before started_to.")

        return cls(
            page=_coerce_positive_int(page, fallback=DEFAULT_PAGE),
            page_size=min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE),
            sort=resolved_sort,
            statuses=tuple(_coerce_enum(SyncRunStatus, value, "status") for value in statuses or () if value),
            sync_types=tuple(_coerce_enum(SyncType, value, "sync type") for value in sync_types or () if value),
            started_from=resolved_from,
            started_to=resolved_to,
        )


@dataclass(slots=True)
class SyncRunSummary:
    id: int
    sync_type: str
    status: str
    source: str | None
    triggered_by: str | None
    started_at: datetime | None
    finished_at: datetime | None
    duration_seconds: float | None
    counts: Mapping[str, int]
    error_count: int
    error_summary: str | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sync_type": self.sync_type,
            "status": self.status,
            "source": self.source,
            "triggered_by": self.triggered_by,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "counts": dict(self.counts),
            "error_count": self.error_count,
            "error_summary": self.error_summary,
        }


@dataclass(slots=True)
class RunListResult:
    items: list[SyncRunSummary]
    total: int
    page: int
    page_size: int
    total_pages: int


@dataclass(slots=True)
class RunStats:
    total: int
    statuses: Mapping[str, int]
    sync_types: Mapping[str, int]


@dataclass(frozen=True)
class ChangeFilters:
    """Validated filter options for change log listings."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    external_id: str | None = None
    entity_type: str | None = None
    entity_id: int | None = None
    sync_run_id: int | None = None
    change_source: str | None = None
    request_id: int | None = None
    changed_from: datetime | None = None
    changed_to: datetime | None = None

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        external_id: str | None = None,
        entity_type: str | None = None,
        entity_id: int | str | None = None,
        sync_run_id: int | str | None = None,
        change_source: str | None = None,
        request_id: int | str | None = None,
        changed_from: str | datetime | None = None,
        changed_to: str | datetime | None = None,
    ) -> "ChangeFilters":
        if entity_id not in (None, "") and not entity_type:
            raise ValueError("entity_id requires entity_type.")
        resolved_from = _coerce_datetime(changed_from)
        resolved_to = _coerce_datetime(changed_to, end_of_day=True)
        if resolved_from and resolved_to and resolved_from > resolved_to:
            raise ValueError("changed_from must be before changed_to.")
        return cls(
            page=_coerce_positive_int(page, fallback=DEFAULT_PAGE),
            page_size=min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE),
            external_id=(external_id or "").strip() or None,
            entity_type=(entity_type or "").strip().lower() or None,
            entity_id=_coerce_optional_id(entity_id),
            sync_run_id=_coerce_optional_id(sync_run_id),
            change_source=(change_source or "").strip().lower() or None,
            request_id=_coerce_optional_id(request_id),
            changed_from=resolved_from,
            changed_to=resolved_to,
        )


@dataclass(slots=True)
class ChangeSummary:
    id: int
    entity_type: str
    entity_id: int
    field_name: str
    old_value: str | None
    new_value: str | None
    change_source: str
    changed_by: str | None
    changed_at: datetime | None
    sync_run_id: int | None
    metadata: Mapping[str, Any] | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "field_name": self.field_name,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "change_source": self.change_source,
            "changed_by": self.changed_by,
            "changed_at": _isoformat(self.changed_at),
            "sync_run_id": self.sync_run_id,
            "metadata": dict(self.metadata) if self.metadata else None,
        }


@dataclass(slots=True)
class ChangeHistoryResult:
    items: list[ChangeSummary]
    total: int
    page: int
    page_size: int
    total_pages: int


@dataclass(slots=True)
class RunPurgeSummary:
    cutoff: datetime
    deleted_count: int = 0
    deleted_ids: list[int] = field(default_factory=list)
    detached_changes: int = 0
    skipped_active: int = 0


class SyncRunService:
    """Facade over ``SyncRun`` history and the change log."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def list_runs(self, filters: RunFilters | None = None) -> RunListResult:
        filters = filters or RunFilters()
        query = self._apply_filters(self.session.query(SyncRun), filters)
        total = query.count()
        if total == 0:
            return RunListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)

        runs = (
            query.order_by(_resolve_sort_expression(filters.sort), SyncRun.id.desc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
            .all()
        )
        return RunListResult(
            items=[self.summarize(run) for run in runs],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            total_pages=(total + filters.page_size - 1) // filters.page_size,
        )

    def get_run(self, run_id: int) -> SyncRun:
        run = self.session.get(SyncRun, run_id)
        if run is None:
            raise NoResultFound(f"Sync run {run_id} not found.")
        return run

    def get_run_summary(self, run_id: int) -> SyncRunSummary:
        return self.summarize(self.get_run(run_id))

    def last_run(
        self,
        *,
        sync_type: SyncType | None = None,
        status: SyncRunStatus | None = None,
    ) -> SyncRun | None:
        query = self.session.query(SyncRun)
        if sync_type is not None:
            query = query.filter(SyncRun.sync_type == sync_type)
        if status is not None:
            query = query.filter(SyncRun.status == status)
        return query.order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).first()

    def get_stats(self, filters: RunFilters | None = None) -> RunStats:
        query = self._apply_filters(self.session.query(SyncRun), filters or RunFilters())
        statuses = {
            _enum_label(status): count
            for status, count in query.with_entities(SyncRun.status, func.count()).group_by(SyncRun.status).all()
        }
        sync_types = {
            _enum_label(sync_type): count
            for sync_type, count in query.with_entities(SyncRun.sync_type, func.count())
            .group_by(SyncRun.sync_type)
            .all()
        }
        return RunStats(total=sum(statuses.values()), statuses=statuses, sync_types=sync_types)

    def get_sync_status(self) -> dict[str, Any]:
        """Overview used by ``flask sync status`` without a run id."""

        lock = self.session.query(SyncLock).first()
        last_full = self.last_run(sync_type=SyncType.FULL, status=SyncRunStatus.COMPLETED)
        last_incremental = self.last_run(sync_type=SyncType.INCREMENTAL, status=SyncRunStatus.COMPLETED)
        last_failed = self.last_run(status=SyncRunStatus.FAILED)
        identity_counts = {"active": 0, "inactive": 0, "unassigned": 0, "assigned": 0}
        for is_active, role, count in (
            self.session.query(Identity.is_active, Identity.role, func.count())
            .group_by(Identity.is_active, Identity.role)
            .all()
        ):
            identity_counts["active" if is_active else "inactive"] += count
            if is_active:
                identity_counts["unassigned" if role is IdentityRole.UNASSIGNED else "assigned"] += count
        return {
            "running": (
                {"run_id": lock.run_id, "holder": lock.holder, "acquired_at": _isoformat(lock.acquired_at)}
                if lock is not None
                else None
            ),
            "last_full_sync": self.summarize(last_full).as_dict() if last_full else None,
            "last_incremental_sync": self.summarize(last_incremental).as_dict() if last_incremental else None,
            "last_failure": self.summarize(last_failed).as_dict() if last_failed else None,
            "identities": {"total": identity_counts["active"] + identity_counts["inactive"], **identity_counts},
        }

    def summarize(self, run: SyncRun) -> SyncRunSummary:
        duration = run.duration_seconds
        if duration is None and run.started_at is not None and run.status.is_active:
            duration = (datetime.now(timezone.utc) - as_utc(run.started_at)).total_seconds()
        return SyncRunSummary(
            id=run.id,
            sync_type=_enum_label(run.sync_type),
            status=_enum_label(run.status),
            source=run.source,
            triggered_by=run.triggered_by,
            started_at=run.started_at,
            finished_at=run.finished_at,
            duration_seconds=duration,
            counts=run.counts,
            error_count=len(run.errors),
            error_summary=run.error_summary,
        )

    # ------------------------------------------------------------------
    # Change log
    # ------------------------------------------------------------------

    def get_change_history(self, filters: ChangeFilters | None = None) -> ChangeHistoryResult:
        """
        Page through recorded field changes, newest first.

        ``external_id`` resolves to the identity and covers both its own
        entries and those of its student profile. Raises ``NoResultFound``
        when no identity carries that external id.
        """

        filters = filters or ChangeFilters()
        stmt = select(ChangeLogEntry)
        predicates = []
        if filters.external_id:
            predicates.append(self._external_id_predicate(filters.external_id))
        if filters.entity_type:
            predicates.append(ChangeLogEntry.entity_type == filters.entity_type)
        if filters.entity_id is not None:
            predicates.append(ChangeLogEntry.entity_id == filters.entity_id)
        if filters.sync_run_id is not None:
            predicates.append(ChangeLogEntry.sync_run_id == filters.sync_run_id)
        if filters.change_source:
            predicates.append(ChangeLogEntry.change_source == filters.change_source)
        if filters.request_id is not None:
            predicates.append(ChangeLogEntry.metadata_json["request_id"].as_integer() == filters.request_id)
        if filters.changed_from:
            predicates.append(ChangeLogEntry.changed_at >= filters.changed_from)
        if filters.changed_to:
            predicates.append(ChangeLogEntry.changed_at <= filters.changed_to)
        if predicates:
            stmt = stmt.where(and_(*predicates))

        total = self.session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        if total == 0:
            return ChangeHistoryResult(
                items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0
            )
        entries = self.session.execute(
            stmt.order_by(ChangeLogEntry.changed_at.desc(), ChangeLogEntry.id.desc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
        ).scalars()
        return ChangeHistoryResult(
            items=[summarize_change(entry) for entry in entries],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            total_pages=(total + filters.page_size - 1) // filters.page_size,
        )

    def _external_id_predicate(self, external_id: str):
        identity_id = self.session.execute(
            select(Identity.id).where(Identity.external_id == external_id)
        ).scalar_one_or_none()
        if identity_id is None:
            raise NoResultFound(f"Identity '{external_id}' not found.")
        profile_ids = list(
            self.session.execute(
                select(StudentProfile.id).where(StudentProfile.identity_id == identity_id)
            ).scalars()
        )
        predicate = and_(ChangeLogEntry.entity_type == "identity", ChangeLogEntry.entity_id == identity_id)
        if profile_ids:
            predicate = or_(
                predicate,
                and_(ChangeLogEntry.entity_type == "student_profile", ChangeLogEntry.entity_id.in_(profile_ids)),
            )
        return predicate

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def purge_runs(
        self,
        *,
        older_than_days: int = DEFAULT_RETENTION_DAYS,
        now: datetime | None = None,
        dry_run: bool = False,
    ) -> RunPurgeSummary:
        """
        Delete runs that started more than ``older_than_days`` ago.

        Active runs and the run holding the sync lock are kept. Change log
        entries survive with their run reference cleared.
        """

        if older_than_days < 1:
            raise ValueError("older_than_days must be at least 1.")
        cutoff = as_utc(now or datetime.now(timezone.utc)) - timedelta(days=older_than_days)
        summary = RunPurgeSummary(cutoff=cutoff)

        locked_ids = set(self.session.execute(select(SyncLock.run_id)).scalars())
        candidates = self.session.execute(
            select(SyncRun.id, SyncRun.status).where(SyncRun.started_at < cutoff).order_by(SyncRun.id)
        ).all()
        for run_id, status in candidates:
            if status.is_active or run_id in locked_ids:
                summary.skipped_active += 1
            else:
                summary.deleted_ids.append(run_id)
        summary.deleted_count = len(summary.deleted_ids)
        if dry_run or not summary.deleted_ids:
            return summary

        with unit_of_work(self.session, operation="purge sync runs"):
            detached = self.session.execute(
                update(ChangeLogEntry)
                .where(ChangeLogEntry.sync_run_id.in_(summary.deleted_ids))
                .values(sync_run_id=None),
                execution_options=SYNC_SESSION_OPTIONS,
            )
            summary.detached_changes = detached.rowcount or 0
            self.session.execute(
                delete(SyncRun).where(SyncRun.id.in_(summary.deleted_ids)),
                execution_options=SYNC_SESSION_OPTIONS,
            )
        logger.info(
            "Purged %s sync runs older than %s days",
            summary.deleted_count,
            older_than_days,
            extra={"deleted_runs": summary.deleted_count, "skipped_active": summary.skipped_active},
        )
        return summary

    def _apply_filters(self, query, filters: RunFilters):
        predicates = []
        if filters.statuses:
            predicates.append(SyncRun.status.in_(filters.statuses))
        if filters.sync_types:
            predicates.append(SyncRun.sync_type.in_(filters.sync_types))
        if filters.started_from:
            predicates.append(SyncRun.started_at >= filters.started_from)
        if filters.started_to:
            predicates.append(SyncRun.started_at <= filters.started_to)
        if predicates:
            query = query.filter(and_(*predicates))
        return query


def summarize_change(entry: ChangeLogEntry) -> ChangeSummary:
    return ChangeSummary(
        id=entry.id,
        entity_type=entry.entity_type,
        entity_id=entry.entity_id,
        field_name=entry.field_name,
        old_value=entry.old_value,
        new_value=entry.new_value,
        change_source=entry.change_source,
        changed_by=entry.changed_by,
        changed_at=entry.changed_at,
        sync_run_id=entry.sync_run_id,
        metadata=entry.metadata_json,
    )


def _enum_label(value: Any) -> str:
    return value.value if hasattr(value, "value") else str(value)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _resolve_sort_expression(sort: str):
    column = VALID_SORT_FIELDS[sort.lstrip("-")]
    return column.desc() if sort.startswith("-") else column.asc()


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.isdigit():
        return max(1, int(candidate))
    raise ValueError(f"Expected a positive integer, received '{candidate}'.")


def _coerce_optional_id(candidate: int | str | None) -> int | None:
    if candidate in (None, ""):
        return None
    return _coerce_positive_int(candidate, fallback=0)


def _coerce_enum(enum_cls, value: Any, label: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported {label} filter '{value}'.") from None


def _coerce_datetime(candidate: str | datetime | None, *, end_of_day: bool = False) -> datetime | None:
    if candidate in (None, ""):
        return None
    if isinstance(candidate, datetime):
        return as_utc(candidate)
    text = str(candidate).strip()
    for fmt in ("%Y-%m-%d", "%Y-%m-%dT%H:%M", "%Y-%m-%dT%H:%M:%S"):
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        if fmt == "%Y-%m-%d":
            parsed = datetime.combine(parsed.date(), time.max if end_of_day else time.min)
        return parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unable to parse datetime value '{candidate}'. Expected ISO-like formats.")


__all__ = [
    "ChangeFilters",
    "ChangeHistoryResult",
    "ChangeSummary",
    "DEFAULT_RETENTION_DAYS",
    "RunFilters",
    "RunListResult",
    "RunPurgeSummary",
    "RunStats",
    "SyncRunService",
    "SyncRunSummary",
    "summarize_change",
]

"""
Sync coordinator.

Owns the run lifecycle: reserve the single sync slot, fetch a snapshot from
the directory source, reconcile each record, sweep missing identities on full
runs, and leave an audit trail in ``SyncRun``.

The slot is a ``SyncLock`` row inserted in the same transaction as the new
``SyncRun``. The primary key makes the insert fail for a second caller, so
two runs can never be in progress together. Runs stuck in ``starting`` or
``running`` past ``SYNC_RUN_TIMEOUT_SECONDS`` are reclaimed before a new
reservation is attempted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Sequence

from flask import current_app
from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError, NoResultFound
from sqlalchemy.orm import Session

from config.ownership import PlaceholderEmailPolicy, load_policy
from identity_app.models import (
    Identity,
    SyncLock,
    SyncRun,
    SyncRunStatus,
    SyncType,
    as_utc,
    db,
    empty_counts,
)
from identity_app.sync.celery_app import get_celery_app
from identity_app.sync.errors import (
    DirectorySourceError,
    MalformedDirectoryRecord,
    SyncAlreadyRunning,
    SyncDispatchError,
)
from identity_app.sync.metrics import (
    record_lock_rejection,
    record_protected_skip,
    record_sync_outcomes,
    record_sync_run,
)
from identity_app.sync.pipeline.cascade import CascadeManager
from identity_app.sync.pipeline.lifecycle import reconcile_record
from identity_app.sync.pipeline.ownership import FieldScope, policy_for
from identity_app.sync.pipeline.protection import compute_protected_fields
from identity_app.sync.registry import create_directory_source, resolve_source
from identity_app.sync.sources.base import DirectorySnapshotSource
from identity_app.sync.sources.records import parse_directory_record

logger = logging.getLogger(__name__)

SYNC_LOCK_NAME = "directory_sync"
RUN_TASK_NAME = "sync.run_directory_sync"
DEFAULT_RUN_TIMEOUT_SECONDS = 30 * 60
MAX_RECORDED_ERRORS = 500


@dataclass
class RunTally:
    """Counters and per-record errors accumulated while a run executes."""

    counts: dict[str, int] = field(default_factory=empty_counts)
    errors: list[dict[str, Any]] = field(default_factory=list)

    def bump(self, key: str, amount: int = 1) -> None:
        self.counts[key] = self.counts.get(key, 0) + amount

    def add_error(self, stage: str, message: str, *, external_id: str | None = None, dn: str | None = None) -> None:
        self.bump("errors")
        if len(self.errors) >= MAX_RECORDED_ERRORS:
            return
        entry: dict[str, Any] = {"stage": stage, "message": message}
        if external_id is not None:
            entry["external_id"] = external_id
        if dn is not None:
            entry["dn"] = dn
        self.errors.append(entry)


class SyncCoordinator:
    """Start, execute and report on directory sync runs."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        config: Mapping[str, Any] | None = None,
        source: DirectorySnapshotSource | None = None,
    ) -> None:
        self.session: Session = session or db.session
        self.config: Mapping[str, Any] = config if config is not None else current_app.config
        self._source = source
        self._placeholder_policy: PlaceholderEmailPolicy | None = None

    # ------------------------------------------------------------------
    # Starting runs
    # ------------------------------------------------------------------

    def start_full_sync(self, *, triggered_by: str | None = None, inline: bool | None = None) -> SyncRun:
        run = self.reserve_run(SyncType.FULL, triggered_by=triggered_by)
        return self._dispatch(run, inline=inline)

    def start_incremental_sync(
        self,
        since: datetime | None = None,
        *,
        triggered_by: str | None = None,
        inline: bool | None = None,
    ) -> SyncRun:
        """
        Start a run limited to entries modified at or after ``since``.

        Without ``since`` the start time of the last completed run is used as
        the watermark. Incremental runs never deactivate anything.
        """

        watermark = since or self.last_completed_watermark()
        if watermark is None:
            raise ValueError("No completed sync run to use as a watermark; pass 'since' or run a full sync first.")
        run = self.reserve_run(SyncType.INCREMENTAL, changed_since=as_utc(watermark), triggered_by=triggered_by)
        return self._dispatch(run, inline=inline)

    def start_selective_sync(
        self,
        external_ids: Sequence[str] | None = None,
        *,
        gid_number: int | None = None,
        triggered_by: str | None = None,
        inline: bool | None = None,
    ) -> SyncRun:
        """
        Start a run limited to the given external ids and/or one research group.

        Entries matching either criterion are reconciled exactly as in a full
        run. Nothing is deactivated, and requested ids the directory does not
        return are recorded as ``select`` errors.
        """

        selection = normalize_selection(external_ids, gid_number)
        run = self.reserve_run(SyncType.SELECTIVE, selection=selection, triggered_by=triggered_by)
        return self._dispatch(run, inline=inline)

    def reserve_run(
        self,
        sync_type: SyncType,
        *,
        changed_since: datetime | None = None,
        selection: Mapping[str, Any] | None = None,
        triggered_by: str | None = None,
    ) -> SyncRun:
        """Create a ``starting`` run and take the lock, or raise ``SyncAlreadyRunning``."""

        self.reclaim_stale_runs()
        now = datetime.now(timezone.utc)
        run = SyncRun(
            sync_type=sync_type,
            status=SyncRunStatus.STARTING,
            source=self.source_name,
            triggered_by=triggered_by,
            changed_since=changed_since,
            selection_json=dict(selection) if selection else None,
            started_at=now,
            counts_json=empty_counts(),
            errors_json=[],
        )
        try:
            self.session.add(run)
            self.session.flush()
            self.session.execute(
                insert(SyncLock).values(name=SYNC_LOCK_NAME, run_id=run.id, holder=triggered_by, acquired_at=now)
            )
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            active_run_id = self.session.execute(
                select(SyncLock.run_id).where(SyncLock.name == SYNC_LOCK_NAME)
            ).scalar_one_or_none()
            record_lock_rejection()
            logger.info(
                "Sync start rejected; another run holds the lock",
                extra={"sync_active_run_id": active_run_id, "sync_type": sync_type.value},
            )
            raise SyncAlreadyRunning(active_run_id) from None

        logger.info(
            "Sync run reserved",
            extra={"sync_run_id": run.id, "sync_type": sync_type.value, "sync_triggered_by": triggered_by},
        )
        return run

    def reclaim_stale_runs(self, *, now: datetime | None = None) -> list[int]:
        """Fail runs active for longer than the configured timeout and free the lock they hold."""

        now = now or datetime.now(timezone.utc)
        timeout = int(self.config.get("SYNC_RUN_TIMEOUT_SECONDS") or DEFAULT_RUN_TIMEOUT_SECONDS)
        cutoff = now - timedelta(seconds=timeout)

        reclaimed: list[int] = []
        active_runs = self.session.execute(
            select(SyncRun).where(SyncRun.status.in_((SyncRunStatus.STARTING, SyncRunStatus.RUNNING)))
        ).scalars().all()
        for run in active_runs:
            if as_utc(run.started_at) >= cutoff:
                continue
            run.status = SyncRunStatus.FAILED
            run.finished_at = now
            run.error_summary = f"Run reclaimed after exceeding {timeout}s without finishing."
            reclaimed.append(run.id)

        lock = self.session.get(SyncLock, SYNC_LOCK_NAME)
        if lock is not None:
            holder = self.session.get(SyncRun, lock.run_id)
            if lock.run_id in reclaimed or holder is None or not holder.status.is_active:
                self.session.execute(delete(SyncLock).where(SyncLock.name == SYNC_LOCK_NAME))

        self.session.commit()
        for run_id in reclaimed:
            logger.warning("Reclaimed stale sync run", extra={"sync_run_id": run_id, "sync_timeout_seconds": timeout})
        return reclaimed

    def _dispatch(self, run: SyncRun, *, inline: bool | None) -> SyncRun:
        if inline is None:
            inline = not bool(self.config.get("SYNC_WORKER_ENABLED", False))
        if inline:
            return self.execute_run(run.id)

        run_id = run.id
        try:
            celery_app = get_celery_app(current_app)
            if celery_app is None:
                raise RuntimeError("Celery is unavailable; sync extension is not initialised.")
            async_result = celery_app.send_task(RUN_TASK_NAME, kwargs={"run_id": run_id})
        except Exception as exc:
            self.session.rollback()
            self._fail_run(run_id, f"Failed to enqueue sync run: {exc}")
            raise SyncDispatchError(f"Failed to enqueue sync run {run_id}: {exc}") from exc

        run = self.session.get(SyncRun, run_id)
        run.task_id = async_result.id
        self.session.commit()
        logger.info("Sync run queued", extra={"sync_run_id": run_id, "sync_task_id": async_result.id})
        return run

    # ------------------------------------------------------------------
    # Executing runs
    # ------------------------------------------------------------------

    def execute_run(self, run_id: int) -> SyncRun:
        """
        Run a reserved sync to completion.

        Per-record failures are counted and recorded on the run. A source
        failure or any unexpected error fails the whole run, releases the
        lock and is re-raised.
        """

        run = self.session.get(SyncRun, run_id)
        if run is None:
            raise NoResultFound(f"Sync run {run_id} not found.")
        if run.status is not SyncRunStatus.STARTING:
            raise ValueError(f"Sync run {run_id} is '{run.status.value}'; only 'starting' runs can be executed.")

        run.status = SyncRunStatus.RUNNING
        self.session.commit()
        sync_type = run.sync_type
        changed_since = run.changed_since
        selection = run.selection

        tally = RunTally()
        try:
            source = self.source
            if sync_type is SyncType.INCREMENTAL:
                entries = source.list_changed_since(as_utc(changed_since))
            elif sync_type is SyncType.SELECTIVE:
                entries = source.list_matching(
                    external_ids=selection["external_ids"],
                    gid_number=selection["gid_number"],
                )
            else:
                entries = source.list_all()
            seen = self._reconcile_entries(run_id, entries, tally)
            if sync_type is SyncType.FULL:
                self._sweep_missing(run_id, seen, tally)
            elif sync_type is SyncType.SELECTIVE:
                for external_id in selection["external_ids"]:
                    if external_id not in seen:
                        tally.add_error("select", "Not found in the directory.", external_id=external_id)
        except Exception as exc:
            self.session.rollback()
            message = str(exc) if isinstance(exc, DirectorySourceError) else f"{type(exc).__name__}: {exc}"
            self._fail_run(run_id, message, tally=tally)
            logger.exception("Sync run failed", extra={"sync_run_id": run_id, "sync_type": sync_type.value})
            raise

        return self._complete_run(run_id, tally)

    def _reconcile_entries(self, run_id: int, entries, tally: RunTally) -> set[str]:
        """
        Apply every entry and return the external ids present in the snapshot.

        Ids of entries that failed to parse or to apply are included: the
        directory still lists them, so the sweep must not deactivate them.
        """
        seen: set[str] = set()
        unparsed: set[str] = set()
        default_shell = self.config.get("SYNC_DEFAULT_LOGIN_SHELL")
        for raw in entries:
            try:
                record = parse_directory_record(raw, default_login_shell=default_shell)
            except MalformedDirectoryRecord as exc:
                tally.add_error("parse", str(exc), external_id=exc.external_id, dn=exc.dn)
                if exc.external_id is not None:
                    unparsed.add(exc.external_id)
                continue

            if record.external_id in seen:
                tally.add_error(
                    "parse",
                    f"Duplicate external id '{record.external_id}' in snapshot; later entry ignored.",
                    external_id=record.external_id,
                    dn=record.distinguished_name,
                )
                continue
            seen.add(record.external_id)
            tally.bump("seen")

            try:
                outcome = reconcile_record(
                    self.session,
                    record,
                    self.placeholder_policy,
                    synced_at=datetime.now(timezone.utc),
                    sync_run_id=run_id,
                )
                self.session.commit()
            except DirectorySourceError:
                raise
            except Exception as exc:
                self.session.rollback()
                tally.add_error("upsert", str(exc), external_id=record.external_id, dn=record.distinguished_name)
                logger.warning(
                    "Sync record failed",
                    extra={"sync_run_id": run_id, "sync_external_id": record.external_id, "sync_error": str(exc)},
                )
                continue

            tally.bump(outcome.count_key)
            for name in outcome.skipped_protected:
                record_protected_skip(name)
        return seen | unparsed

    def _sweep_missing(self, run_id: int, seen: set[str], tally: RunTally) -> None:
        if not tally.counts.get("seen") and not self.config.get("SYNC_ALLOW_EMPTY_SWEEP", False):
            tally.add_error(
                "deactivate",
                "Snapshot contained no valid records; deactivation sweep skipped.",
            )
            logger.warning("Empty snapshot; skipping deactivation sweep", extra={"sync_run_id": run_id})
            return

        manager = CascadeManager(self.session, orphan_policy=self.orphan_policy)
        summary = manager.deactivate_missing(seen, sync_run_id=run_id)
        tally.bump("deactivated", summary.deactivated_count)
        for error in summary.errors:
            tally.add_error("deactivate", str(error.get("message")), external_id=error.get("external_id"))

    def _complete_run(self, run_id: int, tally: RunTally) -> SyncRun:
        run = self.session.get(SyncRun, run_id)
        run.status = SyncRunStatus.COMPLETED
        run.finished_at = datetime.now(timezone.utc)
        run.counts_json = dict(tally.counts)
        run.errors_json = list(tally.errors)
        self.session.execute(delete(SyncLock).where(SyncLock.name == SYNC_LOCK_NAME, SyncLock.run_id == run_id))
        self.session.commit()

        record_sync_run(sync_type=run.sync_type.value, status="completed", duration_seconds=run.duration_seconds)
        record_sync_outcomes(tally.counts)
        logger.info(
            "Sync run completed",
            extra={
                "sync_run_id": run_id,
                "sync_type": run.sync_type.value,
                "sync_counts": dict(tally.counts),
                "sync_duration_seconds": run.duration_seconds,
            },
        )
        return run

    def _fail_run(self, run_id: int, message: str, *, tally: RunTally | None = None) -> None:
        run = self.session.get(SyncRun, run_id)
        if run is None:
            return
        run.status = SyncRunStatus.FAILED
        run.finished_at = datetime.now(timezone.utc)
        run.error_summary = message
        if tally is not None:
            run.counts_json = dict(tally.counts)
            run.errors_json = list(tally.errors)
        self.session.execute(delete(SyncLock).where(SyncLock.name == SYNC_LOCK_NAME, SyncLock.run_id == run_id))
        self.session.commit()
        record_sync_run(sync_type=run.sync_type.value, status="failed", duration_seconds=run.duration_seconds)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def last_completed_watermark(self) -> datetime | None:
        started_at = self.session.execute(
            select(SyncRun.started_at)
            .where(
                SyncRun.status == SyncRunStatus.COMPLETED,
                SyncRun.sync_type.in_((SyncType.FULL, SyncType.INCREMENTAL)),
            )
            .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
            .limit(1)
        ).scalar_one_or_none()
        return as_utc(started_at) if started_at is not None else None

    def get_run_status(self, run_id: int | None = None) -> dict[str, Any]:
        """Status payload for ``run_id``, or for the most recent run when omitted."""

        if run_id is None:
            run = self.session.execute(select(SyncRun).order_by(SyncRun.id.desc()).limit(1)).scalar_one_or_none()
            if run is None:
                raise NoResultFound("No sync runs recorded yet.")
        else:
            run = self.session.get(SyncRun, run_id)
            if run is None:
                raise NoResultFound(f"Sync run {run_id} not found.")

        return {
            "run_id": run.id,
            "sync_type": run.sync_type.value,
            "status": run.status.value,
            "source": run.source,
            "triggered_by": run.triggered_by,
            "task_id": run.task_id,
            "changed_since": run.changed_since.isoformat() if run.changed_since else None,
            "selection": run.selection if run.sync_type is SyncType.SELECTIVE else None,
            "started_at": run.started_at.isoformat() if run.started_at else None,
            "finished_at": run.finished_at.isoformat() if run.finished_at else None,
            "duration_seconds": run.duration_seconds,
            "counts": run.counts,
            "errors": run.errors,
            "error_summary": run.error_summary,
        }

    def get_protected_fields(self, external_id: str) -> dict[str, Any]:
        identity = self.session.execute(
            select(Identity).where(Identity.external_id == external_id)
        ).scalar_one_or_none()
        if identity is None:
            raise NoResultFound(f"Identity '{external_id}' not found.")
        protected = compute_protected_fields(identity, self.placeholder_policy)
        return {
            "external_id": identity.external_id,
            "role": identity.role.value,
            "is_active": identity.is_active,
            "protected_fields": sorted(name.value for name in protected),
            "values": {
                name.value: _describe_value(getattr(identity, policy_for(name).attribute, None))
                for name in sorted(protected, key=lambda item: item.value)
                if policy_for(name).scope is FieldScope.IDENTITY
            },
        }

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def source(self) -> DirectorySnapshotSource:
        if self._source is None:
            self._source = create_directory_source(self.config)
        return self._source

    @property
    def source_name(self) -> str:
        if self._source is not None:
            return self._source.name
        return resolve_source(str(self.config.get("SYNC_SOURCE") or "ldap")).name

    @property
    def placeholder_policy(self) -> PlaceholderEmailPolicy:
        if self._placeholder_policy is None:
            self._placeholder_policy = load_policy(self.config)
        return self._placeholder_policy

    @property
    def orphan_policy(self) -> str:
        return str(self.config.get("SYNC_ORPHANED_STUDENT_POLICY") or "detach")


def normalize_selection(external_ids: Sequence[str] | None, gid_number: int | None) -> dict[str, Any]:
    """Strip and de-duplicate ids (keeping order); at least one criterion is required."""
    ids: list[str] = []
    for candidate in external_ids or ():
        text = str(candidate).strip()
        if text and text not in ids:
            ids.append(text)
    if gid_number is not None:
        gid_number = int(gid_number)
        if gid_number < 0:
            raise ValueError(f"gid number must be non-negative, got {gid_number}.")
    if not ids and gid_number is None:
        raise ValueError("A selective sync needs at least one external id or a gid number.")
    return {"external_ids": ids, "gid_number": gid_number}


def _describe_value(value: Any) -> Any:
    if hasattr(value, "value"):
        return value.value
    return value


__all__ = [
    "RUN_TASK_NAME",
    "RunTally",
    "SYNC_LOCK_NAME",
    "SyncCoordinator",
    "normalize_selection",
]

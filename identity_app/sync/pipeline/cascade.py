"""
Cascade integrity manager.

Every operation that touches an identity together with its role profile (and
the requests pointing at them) runs inside ``unit_of_work``: one transaction
that either commits as a whole or is rolled back and reported as
``CascadeError``.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Iterator, Mapping

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from identity_app.models import (
    Identity,
    IdentityRole,
    PIProfile,
    RequestStatus,
    StudentProfile,
    StudentRequest,
    db,
)
from identity_app.sync.errors import CascadeError, IdentityNotFound
from identity_app.sync.pipeline.changelog import record_changes

logger = logging.getLogger(__name__)

ORPHAN_POLICIES = ("detach", "unassign")
SYNC_SESSION_OPTIONS = {"synchronize_session": "fetch"}


@contextmanager
def unit_of_work(session: Session | None = None, *, operation: str) -> Iterator[Session]:
    """
    Run the enclosed statements as one transaction.

    Commits on success. Any exception rolls back everything staged inside the
    block; database errors are re-raised as ``CascadeError``.
    """

    session = session or db.session
    try:
        yield session
        session.commit()
    except CascadeError:
        session.rollback()
        raise
    except Exception as exc:
        session.rollback()
        logger.warning("Unit of work '%s' rolled back: %s", operation, exc, extra={"sync_operation": operation})
        raise CascadeError(f"{operation} failed and was rolled back: {exc}") from exc


@dataclass
class DeactivationSummary:
    deactivated_count: int = 0
    deactivated_ids: list[int] = field(default_factory=list)
    errors: list[dict[str, object]] = field(default_factory=list)


@dataclass
class DeletionSummary:
    identity_id: int
    external_id: str
    student_profiles_deleted: int = 0
    pi_profiles_deleted: int = 0
    students_detached: int = 0
    students_unassigned: int = 0
    requests_closed: int = 0


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _close_requests(session: Session, criteria, *, comment: str, now: datetime) -> int:
    """Withdraw pending requests matching ``criteria`` (identity/PI being removed)."""
    result = session.execute(
        update(StudentRequest)
        .where(criteria, StudentRequest.status == RequestStatus.PENDING)
        .values(status=RequestStatus.WITHDRAWN, review_comment=comment, reviewed_at=now),
        execution_options=SYNC_SESSION_OPTIONS,
    )
    return result.rowcount or 0


def release_pi_profile(session: Session, pi_profile: PIProfile, *, orphan_policy: str, now: datetime) -> dict[str, int]:
    """
    Remove a PI profile and deal with the students that point at it.

    ``detach`` clears the students' PI reference; ``unassign`` deletes their
    student profiles and returns those identities to ``unassigned``.
    """

    if orphan_policy not in ORPHAN_POLICIES:
        raise CascadeError(f"Unknown orphaned-student policy '{orphan_policy}'.")

    counts = {"students_detached": 0, "students_unassigned": 0, "requests_closed": 0}
    dependents = session.execute(
        select(StudentProfile.id, StudentProfile.identity_id).where(StudentProfile.pi_profile_id == pi_profile.id)
    ).all()

    if dependents and orphan_policy == "detach":
        session.execute(
            update(StudentProfile)
            .where(StudentProfile.pi_profile_id == pi_profile.id)
            .values(pi_profile_id=None),
            execution_options=SYNC_SESSION_OPTIONS,
        )
        counts["students_detached"] = len(dependents)
    elif dependents:
        student_identity_ids = [row.identity_id for row in dependents]
        session.execute(
            delete(StudentProfile).where(StudentProfile.pi_profile_id == pi_profile.id),
            execution_options=SYNC_SESSION_OPTIONS,
        )
        session.execute(
            update(Identity).where(Identity.id.in_(student_identity_ids)).values(role=IdentityRole.UNASSIGNED),
            execution_options=SYNC_SESSION_OPTIONS,
        )
        for identity_id in student_identity_ids:
            record_changes(
                session,
                entity_type="identity",
                entity_id=identity_id,
                changes={"role": (IdentityRole.STUDENT, IdentityRole.UNASSIGNED)},
                change_source="cascade",
                metadata={"reason": "pi_profile_removed", "pi_profile_id": pi_profile.id},
            )
        counts["students_unassigned"] = len(dependents)

    counts["requests_closed"] = _close_requests(
        session,
        StudentRequest.pi_profile_id == pi_profile.id,
        comment="PI profile removed",
        now=now,
    )
    session.execute(
        update(StudentRequest).where(StudentRequest.pi_profile_id == pi_profile.id).values(pi_profile_id=None),
        execution_options=SYNC_SESSION_OPTIONS,
    )
    session.execute(delete(PIProfile).where(PIProfile.id == pi_profile.id), execution_options=SYNC_SESSION_OPTIONS)
    return counts


def remove_student_profile(session: Session, identity_id: int) -> int:
    result = session.execute(
        delete(StudentProfile).where(StudentProfile.identity_id == identity_id),
        execution_options=SYNC_SESSION_OPTIONS,
    )
    return result.rowcount or 0


class CascadeManager:
    """Transactional operations spanning an identity and its dependent rows."""

    def __init__(self, session: Session | None = None, *, orphan_policy: str = "detach") -> None:
        if orphan_policy not in ORPHAN_POLICIES:
            raise ValueError(f"orphan_policy must be one of {ORPHAN_POLICIES}, got '{orphan_policy}'.")
        self.session: Session = session or db.session
        self.orphan_policy = orphan_policy

    def deactivate_missing(
        self,
        current_external_ids: Iterable[str],
        *,
        now: datetime | None = None,
        sync_run_id: int | None = None,
    ) -> DeactivationSummary:
        """
        Deactivate every active identity whose external id is not in the snapshot.

        Each identity is its own transaction; a failure is recorded and the
        sweep moves on. Role profiles are kept (a PI profile is marked
        inactive) so a later reappearance restores the identity intact.
        """

        seen = set(current_external_ids)
        now = now or _now()
        summary = DeactivationSummary()
        active_rows = self.session.execute(
            select(Identity.id, Identity.external_id).where(Identity.is_active.is_(True))
        ).all()
        missing = [(row.id, row.external_id) for row in active_rows if row.external_id not in seen]

        for identity_id, external_id in missing:
            try:
                with unit_of_work(self.session, operation=f"deactivate identity {external_id}"):
                    self.session.execute(
                        update(Identity)
                        .where(Identity.id == identity_id, Identity.is_active.is_(True))
                        .values(is_active=False, present_in_last_snapshot=False, deactivated_at=now),
                        execution_options=SYNC_SESSION_OPTIONS,
                    )
                    self.session.execute(
                        update(PIProfile).where(PIProfile.identity_id == identity_id).values(is_active=False),
                        execution_options=SYNC_SESSION_OPTIONS,
                    )
                    record_changes(
                        self.session,
                        entity_type="identity",
                        entity_id=identity_id,
                        changes={"is_active": (True, False)},
                        change_source="directory_sync",
                        sync_run_id=sync_run_id,
                        metadata={"external_id": external_id, "reason": "absent_from_snapshot"},
                    )
            except CascadeError as exc:
                summary.errors.append({"stage": "deactivate", "external_id": external_id, "message": str(exc)})
                continue
            summary.deactivated_count += 1
            summary.deactivated_ids.append(identity_id)

        if summary.deactivated_count:
            logger.info(
                "Deactivated identities missing from snapshot",
                extra={"sync_run_id": sync_run_id, "sync_deactivated": summary.deactivated_count},
            )
        return summary

    def delete_identity(self, identity_id: int, *, actor: str | None = None) -> DeletionSummary:
        """Hard-delete an identity with its profiles in one transaction."""

        with unit_of_work(self.session, operation=f"delete identity {identity_id}"):
            summary = self.stage_delete(identity_id, actor=actor)

        logger.info(
            "Identity deleted",
            extra={"sync_identity_id": identity_id, "sync_external_id": summary.external_id, "sync_actor": actor},
        )
        return summary

    def stage_delete(
        self, identity_id: int, *, actor: str | None = None, context: Mapping[str, object] | None = None
    ) -> DeletionSummary:
        """
        Stage the deletion of an identity inside the caller's transaction.

        Order: close requests about the identity, delete its student profile,
        release its PI profile (dependents per ``orphan_policy``), delete the
        identity row.
        """

        now = _now()
        identity = self.session.get(Identity, identity_id)
        if identity is None:
            raise IdentityNotFound(identity_id)
        summary = DeletionSummary(identity_id=identity.id, external_id=identity.external_id)

        summary.requests_closed += _close_requests(
            self.session,
            StudentRequest.target_identity_id == identity_id,
            comment="Target identity deleted",
            now=now,
        )
        self.session.execute(
            update(StudentRequest)
            .where(StudentRequest.target_identity_id == identity_id)
            .values(target_identity_id=None),
            execution_options=SYNC_SESSION_OPTIONS,
        )

        summary.student_profiles_deleted = remove_student_profile(self.session, identity_id)

        pi_profile = self.session.execute(
            select(PIProfile).where(PIProfile.identity_id == identity_id)
        ).scalar_one_or_none()
        if pi_profile is not None:
            counts = release_pi_profile(self.session, pi_profile, orphan_policy=self.orphan_policy, now=now)
            summary.students_detached = counts["students_detached"]
            summary.students_unassigned = counts["students_unassigned"]
            summary.requests_closed += counts["requests_closed"]
            summary.pi_profiles_deleted = 1

        self.session.execute(
            delete(Identity).where(Identity.id == identity_id),
            execution_options=SYNC_SESSION_OPTIONS,
        )
        record_changes(
            self.session,
            entity_type="identity",
            entity_id=identity_id,
            changes={"deleted": (summary.external_id, None)},
            change_source="cascade",
            changed_by=actor,
            metadata={
                "student_profiles_deleted": summary.student_profiles_deleted,
                "pi_profiles_deleted": summary.pi_profiles_deleted,
                "orphan_policy": self.orphan_policy,
                **(context or {}),
            },
        )
        return summary

    def purge_deactivated(self, *, older_than: datetime, actor: str | None = None) -> list[DeletionSummary]:
        """Delete identities deactivated before ``older_than``; each is its own transaction."""

        candidates = self.session.execute(
            select(Identity.id).where(
                Identity.is_active.is_(False),
                Identity.deactivated_at.is_not(None),
                Identity.deactivated_at < older_than,
            )
        ).scalars().all()
        return [self.delete_identity(identity_id, actor=actor) for identity_id in candidates]


__all__ = [
    "CascadeManager",
    "DeactivationSummary",
    "DeletionSummary",
    "ORPHAN_POLICIES",
    "release_pi_profile",
    "remove_student_profile",
    "unit_of_work",
]

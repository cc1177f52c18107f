# identity_app/services/student_requests.py
"""
Student request workflow - PIs propose adding or removing students, administrators decide
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config.ownership import PlaceholderEmailPolicy
from identity_app.models import (
    Identity,
    IdentityRole,
    PIProfile,
    RequestStatus,
    RequestType,
    StudentProfile,
    StudentRequest,
    db,
)
from identity_app.sync.errors import CascadeError
from identity_app.sync.pipeline.cascade import CascadeManager, unit_of_work
from identity_app.sync.pipeline.changelog import record_changes
from identity_app.sync.pipeline.ownership import FieldKind
from identity_app.sync.pipeline.protection import is_locally_set
from identity_app.sync.pipeline.roles import STUDENT_PROFILE_KEYS, RoleService
from identity_app.sync.pipeline.run_service import MAX_PAGE_SIZE, ChangeFilters, SyncRunService

logger = logging.getLogger(__name__)

CHANGE_SOURCE = "student_request"
CONTACT_FIELDS = {"full_name": FieldKind.TEXT, "email": FieldKind.EMAIL, "phone": FieldKind.TEXT}
CREATE_DATA_KEYS = frozenset({"external_id", *CONTACT_FIELDS}) | (
    STUDENT_PROFILE_KEYS - {"pi_profile_id", "pi_external_id"}
)


class RequestWorkflowError(CascadeError):
    """Invalid request submission or state transition."""


class StudentRequestService:
    """Submit, review and list student requests."""

    def __init__(
        self,
        session: Optional[Session] = None,
        *,
        orphan_policy: str = "detach",
        placeholder_policy: Optional[PlaceholderEmailPolicy] = None,
    ) -> None:
        self.session: Session = session or db.session
        self.roles = RoleService(self.session, orphan_policy=orphan_policy)
        self.cascade = CascadeManager(self.session, orphan_policy=orphan_policy)
        self.placeholder_policy = placeholder_policy or PlaceholderEmailPolicy()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit_request(
        self,
        pi_profile_id: int,
        request_type: RequestType | str,
        *,
        student_data: Optional[Mapping[str, Any]] = None,
        reason: Optional[str] = None,
        target_identity_id: Optional[int] = None,
    ) -> StudentRequest:
        request_type = _coerce_request_type(request_type)
        pi_profile = self.session.get(PIProfile, pi_profile_id)
        if pi_profile is None or not pi_profile.is_active:
            raise RequestWorkflowError(f"PI profile {pi_profile_id} does not exist or is inactive.")

        data = dict(student_data or {})
        if request_type is RequestType.CREATE:
            target = self._validate_create(pi_profile, data, target_identity_id)
        else:
            target = self._validate_delete(pi_profile, target_identity_id)

        with unit_of_work(self.session, operation=f"submit {request_type.value} request"):
            request = StudentRequest(
                request_type=request_type,
                status=RequestStatus.PENDING,
                pi_profile_id=pi_profile.id,
                target_identity_id=target.id if target is not None else None,
                student_data=data or None,
                reason=reason,
                requested_at=datetime.now(timezone.utc),
            )
            self.session.add(request)

        logger.info(
            "Student request submitted",
            extra={"request_id": request.id, "request_type": request_type.value, "pi_profile_id": pi_profile.id},
        )
        return request

    def _validate_create(
        self, pi_profile: PIProfile, data: Dict[str, Any], target_identity_id: Optional[int]
    ) -> Optional[Identity]:
        unknown = sorted(set(data) - CREATE_DATA_KEYS)
        if unknown:
            raise RequestWorkflowError(f"Unsupported student data fields: {', '.join(unknown)}.")

        target = self.session.get(Identity, target_identity_id) if target_identity_id else None
        if target_identity_id and target is None:
            raise RequestWorkflowError(f"Identity {target_identity_id} not found.")
        if target is None and not data.get("external_id"):
            raise RequestWorkflowError("A create request needs a target identity or 'external_id' in student data.")
        if target is None:
            target = self._identity_by_external_id(data["external_id"])
        if target is not None and not _is_claimable(target):
            raise RequestWorkflowError(f"Identity {target.external_id} already holds role '{target.role.value}'.")

        pending = self.session.execute(
            select(StudentRequest).where(
                StudentRequest.pi_profile_id == pi_profile.id,
                StudentRequest.status == RequestStatus.PENDING,
                StudentRequest.request_type == RequestType.CREATE,
            )
        ).scalars()
        for existing in pending:
            existing_external_id = (existing.student_data or {}).get("external_id")
            if (target is not None and existing.target_identity_id == target.id) or (
                data.get("external_id") and existing_external_id == data["external_id"]
            ):
                raise RequestWorkflowError(f"Request {existing.id} for this student is already pending.")
        return target

    def _validate_delete(self, pi_profile: PIProfile, target_identity_id: Optional[int]) -> Identity:
        if not target_identity_id:
            raise RequestWorkflowError("A delete request needs a target identity.")
        target = self.session.get(Identity, target_identity_id)
        if target is None:
            raise RequestWorkflowError(f"Identity {target_identity_id} not found.")
        profile = target.student_profile
        if profile is None or profile.pi_profile_id != pi_profile.id:
            raise RequestWorkflowError(f"Identity {target.external_id} is not a student of PI profile {pi_profile.id}.")
        pending = self.session.execute(
            select(StudentRequest.id).where(
                StudentRequest.target_identity_id == target.id,
                StudentRequest.status == RequestStatus.PENDING,
                StudentRequest.request_type == RequestType.DELETE,
            )
        ).first()
        if pending is not None:
            raise RequestWorkflowError(f"Request {pending.id} to remove this student is already pending.")
        return target

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    def approve(
        self,
        request_id: int,
        *,
        reviewer: str,
        comment: Optional[str] = None,
        purge: bool = False,
    ) -> StudentRequest:
        """
        Approve a pending request and apply its effect in the same transaction.

        Create: the target identity (which must already be synced) becomes a
        student of the requesting PI; contact details from the request seed
        any still-empty local fields. Delete: the student role is removed, or
        with ``purge`` the identity is deleted outright.
        """

        with unit_of_work(self.session, operation=f"approve request {request_id}"):
            request = self._load_pending(request_id)
            if request.pi_profile_id is None:
                raise RequestWorkflowError(f"Request {request_id} no longer has a PI.")
            self._mark(request, RequestStatus.APPROVED, reviewer=reviewer, comment=comment)

            if request.request_type is RequestType.CREATE:
                self._apply_create(request, reviewer)
            else:
                self._apply_delete(request, reviewer, purge=purge)

        logger.info(
            "Student request approved",
            extra={"request_id": request_id, "request_type": request.request_type.value, "reviewer": reviewer},
        )
        return request

    def reject(self, request_id: int, *, reviewer: str, comment: Optional[str] = None) -> StudentRequest:
        with unit_of_work(self.session, operation=f"reject request {request_id}"):
            request = self._load_pending(request_id)
            self._mark(request, RequestStatus.REJECTED, reviewer=reviewer, comment=comment)
        logger.info("Student request rejected", extra={"request_id": request_id, "reviewer": reviewer})
        return request

    def withdraw(self, request_id: int, *, pi_profile_id: int) -> StudentRequest:
        with unit_of_work(self.session, operation=f"withdraw request {request_id}"):
            request = self._load_pending(request_id)
            if request.pi_profile_id != pi_profile_id:
                raise RequestWorkflowError(f"Request {request_id} belongs to another PI.")
            self._mark(request, RequestStatus.WITHDRAWN, reviewer=None, comment="Withdrawn by PI")
        return request

    def list_requests(
        self,
        *,
        status: RequestStatus | str | None = None,
        pi_profile_id: Optional[int] = None,
    ) -> List[StudentRequest]:
        stmt = select(StudentRequest).order_by(StudentRequest.requested_at.desc(), StudentRequest.id.desc())
        if status is not None:
            stmt = stmt.where(StudentRequest.status == _coerce_status(status))
        if pi_profile_id is not None:
            stmt = stmt.where(StudentRequest.pi_profile_id == pi_profile_id)
        return list(self.session.execute(stmt).scalars())

    def get_audit_trail(self, request_id: int) -> Dict[str, Any]:
        """
        Timeline of a request: submission, review and every field change the
        approval applied, oldest first.
        """

        request = self.session.get(StudentRequest, request_id)
        if request is None:
            raise RequestWorkflowError(f"Request {request_id} not found.")

        events: List[Dict[str, Any]] = [
            {
                "event": "submitted",
                "at": _isoformat(request.requested_at),
                "actor": f"pi_profile:{request.pi_profile_id}" if request.pi_profile_id else None,
                "comment": request.reason,
            }
        ]
        if request.status is not RequestStatus.PENDING:
            events.append(
                {
                    "event": request.status.value,
                    "at": _isoformat(request.reviewed_at),
                    "actor": request.reviewed_by,
                    "comment": request.review_comment,
                }
            )

        history = SyncRunService(self.session).get_change_history(
            ChangeFilters(request_id=request.id, page_size=MAX_PAGE_SIZE)
        )
        return {
            "request_id": request.id,
            "request_type": request.request_type.value,
            "status": request.status.value,
            "pi_profile_id": request.pi_profile_id,
            "target_identity_id": request.target_identity_id,
            "events": events,
            "changes": [change.as_dict() for change in reversed(history.items)],
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_pending(self, request_id: int) -> StudentRequest:
        request = self.session.get(StudentRequest, request_id)
        if request is None:
            raise RequestWorkflowError(f"Request {request_id} not found.")
        if request.status is not RequestStatus.PENDING:
            raise RequestWorkflowError(f"Request {request_id} is already {request.status.value}.")
        return request

    @staticmethod
    def _mark(
        request: StudentRequest,
        status: RequestStatus,
        *,
        reviewer: Optional[str],
        comment: Optional[str],
    ) -> None:
        request.status = status
        request.reviewed_by = reviewer
        request.review_comment = comment
        request.reviewed_at = datetime.now(timezone.utc)

    def _identity_by_external_id(self, external_id: str) -> Optional[Identity]:
        return self.session.execute(select(Identity).where(Identity.external_id == external_id)).scalar_one_or_none()

    def _apply_create(self, request: StudentRequest, reviewer: str) -> None:
        data = dict(request.student_data or {})
        identity = request.target_identity
        if identity is None and data.get("external_id"):
            identity = self._identity_by_external_id(data["external_id"])
        if identity is None:
            raise RequestWorkflowError(
                f"Identity '{data.get('external_id')}' has not been synced from the directory yet."
            )

        current_profile = identity.student_profile
        if current_profile is not None and current_profile.pi_profile_id not in (None, request.pi_profile_id):
            raise RequestWorkflowError(f"Identity {identity.external_id} is already a student of another PI.")

        if current_profile is not None and current_profile.pi_profile_id is None:
            self._attach_to_pi(current_profile, request, reviewer)
        else:
            profile_data = {key: value for key, value in data.items() if key in STUDENT_PROFILE_KEYS}
            profile_data["pi_profile_id"] = request.pi_profile_id
            self.roles.stage_assign(
                identity.id, IdentityRole.STUDENT, profile_data, actor=reviewer, context={"request_id": request.id}
            )
        request.target_identity_id = identity.id

        seeded: Dict[str, tuple] = {}
        for attribute, kind in CONTACT_FIELDS.items():
            value = data.get(attribute)
            if not value:
                continue
            current = getattr(identity, attribute)
            if is_locally_set(kind, current, self.placeholder_policy):
                continue
            setattr(identity, attribute, value)
            seeded[attribute] = (current, value)
        if seeded:
            record_changes(
                self.session,
                entity_type="identity",
                entity_id=identity.id,
                changes=seeded,
                change_source=CHANGE_SOURCE,
                changed_by=reviewer,
                metadata={"request_id": request.id},
            )

    def _attach_to_pi(self, profile: StudentProfile, request: StudentRequest, reviewer: str) -> None:
        """Give a detached student the requesting PI."""
        pi_profile = self.session.get(PIProfile, request.pi_profile_id)
        if pi_profile is None or not pi_profile.is_active:
            raise RequestWorkflowError(f"PI profile {request.pi_profile_id} is no longer active.")
        current = self.session.execute(
            select(func.count()).select_from(StudentProfile).where(StudentProfile.pi_profile_id == pi_profile.id)
        ).scalar_one()
        if current >= pi_profile.max_students:
            raise RequestWorkflowError(
                f"PI profile {pi_profile.id} already supervises {current} of {pi_profile.max_students} students."
            )
        profile.pi_profile_id = pi_profile.id
        record_changes(
            self.session,
            entity_type="student_profile",
            entity_id=profile.id,
            changes={"pi_profile_id": (None, pi_profile.id)},
            change_source=CHANGE_SOURCE,
            changed_by=reviewer,
            metadata={"request_id": request.id},
        )

    def _apply_delete(self, request: StudentRequest, reviewer: str, *, purge: bool) -> None:
        identity = request.target_identity
        if identity is None:
            raise RequestWorkflowError(f"Request {request.id} target identity no longer exists.")
        profile = identity.student_profile
        if profile is None or profile.pi_profile_id != request.pi_profile_id:
            raise RequestWorkflowError(f"Identity {identity.external_id} is no longer a student of this PI.")

        if purge:
            self.session.flush()
            self.session.expire(request, ["target_identity"])
            self.cascade.stage_delete(identity.id, actor=reviewer, context={"request_id": request.id})
        else:
            self.roles.stage_unassign(identity.id, actor=reviewer, context={"request_id": request.id})


def _is_claimable(identity: Identity) -> bool:
    """Unassigned identities and students without a PI can be requested."""
    if identity.role is IdentityRole.UNASSIGNED:
        return True
    profile = identity.student_profile
    return identity.role is IdentityRole.STUDENT and profile is not None and profile.pi_profile_id is None


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _coerce_request_type(value: RequestType | str) -> RequestType:
    if isinstance(value, RequestType):
        return value
    try:
        return RequestType(str(value).strip().lower())
    except ValueError:
        raise RequestWorkflowError(f"Unknown request type '{value}'.") from None


def _coerce_status(value: RequestStatus | str) -> RequestStatus:
    if isinstance(value, RequestStatus):
        return value
    try:
        return RequestStatus(str(value).strip().lower())
    except ValueError:
        raise RequestWorkflowError(f"Unknown request status '{value}'.") from None

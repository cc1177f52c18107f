"""
Role assignment for synced identities.

An identity moves between ``unassigned``, ``pi`` and ``student``. Every
public operation here is one unit of work covering the identity row, its
role profile and (for a PI) the students attached to it.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Iterable, Mapping

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from identity_app.models import (
    DEFAULT_MAX_STUDENTS,
    DegreeLevel,
    Identity,
    IdentityRole,
    PIProfile,
    StudentProfile,
    StudentStatus,
    db,
)
from identity_app.sync.errors import CascadeError, IdentityNotFound, RoleAssignmentError
from identity_app.sync.pipeline.cascade import ORPHAN_POLICIES, release_pi_profile, remove_student_profile, unit_of_work
from identity_app.sync.pipeline.changelog import record_changes

logger = logging.getLogger(__name__)

CHANGE_SOURCE = "role_assignment"
ASSIGNABLE_ROLES = (IdentityRole.PI, IdentityRole.STUDENT)

PI_PROFILE_KEYS = frozenset({"department", "office_location", "research_area", "max_students"})
STUDENT_PROFILE_KEYS = frozenset(
    {
        "student_number",
        "major",
        "enrollment_year",
        "degree_level",
        "status",
        "join_date",
        "expected_graduation",
        "pi_profile_id",
        "pi_external_id",
    }
)

LARGE_PI_GROUP = 2
LARGE_STUDENT_GROUP = 20
_STUDENT_NUMBER_PATTERN = re.compile(r"\d{6,}")
_PI_NAME_HINTS = ("prof", "teacher", "faculty")
_PI_EMAIL_HINTS = ("faculty", "prof")
_PI_TOKEN_PATTERN = re.compile(r"(?:^|[._-])pi(?:[._\d-]|$)")
_STUDENT_NAME_HINTS = ("student", "phd", "master", "undergrad")
_ENROLLMENT_NUMBER_PATTERN = re.compile(r"\d{4,}")


@dataclass(slots=True)
class RoleChangeResult:
    identity_id: int
    external_id: str
    previous_role: IdentityRole
    role: IdentityRole
    profile_id: int | None = None
    changed: bool = True

    def as_dict(self) -> dict[str, Any]:
        return {
            "identity_id": self.identity_id,
            "external_id": self.external_id,
            "previous_role": self.previous_role.value,
            "role": self.role.value,
            "profile_id": self.profile_id,
            "changed": self.changed,
        }


@dataclass(slots=True)
class BatchAssignResult:
    succeeded: list[RoleChangeResult] = field(default_factory=list)
    failed: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class RoleValidation:
    is_valid: bool
    warnings: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RoleSuggestion:
    identity_id: int
    external_id: str
    role: IdentityRole
    reason: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "identity_id": self.identity_id,
            "external_id": self.external_id,
            "role": self.role.value,
            "reason": self.reason,
        }


@dataclass(slots=True)
class GroupRoleSuggestions:
    gid_number: int
    pis: list[RoleSuggestion] = field(default_factory=list)
    students: list[RoleSuggestion] = field(default_factory=list)

    @property
    def reasoning(self) -> str:
        considered = len(self.pis) + len(self.students)
        if not considered:
            return f"Group {self.gid_number} has no active unassigned identities."
        return (
            f"Looked at {considered} unassigned identities in group {self.gid_number}: "
            f"{len(self.pis)} look like PIs, {len(self.students)} look like students."
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "gid_number": self.gid_number,
            "pis": [item.as_dict() for item in self.pis],
            "students": [item.as_dict() for item in self.students],
            "reasoning": self.reasoning,
        }


def suggest_role(external_id: str, email: str | None = None) -> tuple[IdentityRole, str]:
    """Guess a role from the username and email; students are the fallback."""

    username = external_id.lower()
    mail = (email or "").lower()
    for hint in _PI_NAME_HINTS:
        if hint in username:
            return IdentityRole.PI, f"username contains '{hint}'"
    if _PI_TOKEN_PATTERN.search(username):
        return IdentityRole.PI, "username contains 'pi'"
    for hint in _PI_EMAIL_HINTS:
        if hint in mail:
            return IdentityRole.PI, f"email contains '{hint}'"
    if _ENROLLMENT_NUMBER_PATTERN.search(username):
        return IdentityRole.STUDENT, "username contains an enrollment number"
    for hint in _STUDENT_NAME_HINTS:
        if hint in username or hint in mail:
            return IdentityRole.STUDENT, f"username or email contains '{hint}'"
    return IdentityRole.STUDENT, "no faculty markers"


def coerce_role(value: IdentityRole | str) -> IdentityRole:
    if isinstance(value, IdentityRole):
        return value
    try:
        return IdentityRole(str(value).strip().lower())
    except ValueError:
        raise RoleAssignmentError(f"Unknown role '{value}'.") from None


def _coerce_date(value: Any, key: str) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        raise RoleAssignmentError(f"'{key}' must be an ISO date, got '{value}'.") from None


def _coerce_optional_int(value: Any, key: str, *, minimum: int | None = None) -> int | None:
    if value in (None, ""):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise RoleAssignmentError(f"'{key}' must be an integer, got '{value}'.") from None
    if minimum is not None and number < minimum:
        raise RoleAssignmentError(f"'{key}' must be at least {minimum}.")
    return number


def _coerce_choice(enum_cls, value: Any, key: str):
    if value in (None, ""):
        return None
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        choices = ", ".join(member.value for member in enum_cls)
        raise RoleAssignmentError(f"'{key}' must be one of: {choices}.") from None


def _check_keys(profile_data: Mapping[str, Any], allowed: frozenset[str], role: IdentityRole) -> None:
    unknown = sorted(set(profile_data) - allowed)
    if unknown:
        raise RoleAssignmentError(f"Unsupported {role.value} profile fields: {', '.join(unknown)}.")


class RoleService:
    """Assign, remove and report on identity roles."""

    def __init__(self, session: Session | None = None, *, orphan_policy: str = "detach") -> None:
        if orphan_policy not in ORPHAN_POLICIES:
            raise ValueError(f"orphan_policy must be one of {ORPHAN_POLICIES}, got '{orphan_policy}'.")
        self.session: Session = session or db.session
        self.orphan_policy = orphan_policy

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def assign_role(
        self,
        identity_id: int,
        role: IdentityRole | str,
        profile_data: Mapping[str, Any] | None = None,
        *,
        actor: str | None = None,
    ) -> RoleChangeResult:
        resolved = coerce_role(role)
        with unit_of_work(self.session, operation=f"assign {resolved.value} to identity {identity_id}"):
            result = self.stage_assign(identity_id, resolved, profile_data or {}, actor=actor)
        self._log_result("Role assigned", result, actor)
        return result

    def unassign_role(self, identity_id: int, *, actor: str | None = None) -> RoleChangeResult:
        with unit_of_work(self.session, operation=f"unassign role of identity {identity_id}"):
            result = self.stage_unassign(identity_id, actor=actor)
        self._log_result("Role unassigned", result, actor)
        return result

    def change_role(
        self,
        identity_id: int,
        role: IdentityRole | str,
        profile_data: Mapping[str, Any] | None = None,
        *,
        actor: str | None = None,
    ) -> RoleChangeResult:
        """Replace the current role (and profile) with ``role`` in one transaction."""

        resolved = coerce_role(role)
        with unit_of_work(self.session, operation=f"change role of identity {identity_id} to {resolved.value}"):
            identity = self._load_identity(identity_id)
            previous = identity.role
            if previous is resolved:
                result = self.stage_assign(identity_id, resolved, profile_data or {}, actor=actor)
            else:
                if previous is not IdentityRole.UNASSIGNED:
                    self.stage_unassign(identity_id, actor=actor)
                result = self.stage_assign(identity_id, resolved, profile_data or {}, actor=actor)
                result.previous_role = previous
        self._log_result("Role changed", result, actor)
        return result

    def batch_assign_role(
        self,
        identity_ids: Iterable[int],
        role: IdentityRole | str,
        profile_data: Mapping[str, Any] | None = None,
        *,
        actor: str | None = None,
    ) -> BatchAssignResult:
        """Assign ``role`` to each identity independently; failures do not stop the batch."""

        outcome = BatchAssignResult()
        for identity_id in identity_ids:
            try:
                outcome.succeeded.append(self.assign_role(identity_id, role, profile_data, actor=actor))
            except CascadeError as exc:
                outcome.failed.append({"identity_id": identity_id, "error": str(exc)})
        return outcome

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def list_unassigned(self, *, limit: int | None = None) -> list[Identity]:
        stmt = (
            select(Identity)
            .where(Identity.role == IdentityRole.UNASSIGNED, Identity.is_active.is_(True))
            .order_by(Identity.external_id.asc())
        )
        if limit:
            stmt = stmt.limit(limit)
        return list(self.session.execute(stmt).scalars())

    def role_statistics(self) -> dict[str, Any]:
        """Counts per role, plus per-group breakdowns for active identities."""

        roles = {role.value: 0 for role in IdentityRole}
        for role, count in self.session.execute(
            select(Identity.role, func.count()).where(Identity.is_active.is_(True)).group_by(Identity.role)
        ):
            roles[role.value if isinstance(role, IdentityRole) else str(role)] = count

        groups: dict[str, dict[str, int]] = defaultdict(lambda: {"user_count": 0, "pi_count": 0, "student_count": 0})
        for gid, role, count in self.session.execute(
            select(Identity.gid_number, Identity.role, func.count())
            .where(Identity.is_active.is_(True))
            .group_by(Identity.gid_number, Identity.role)
        ):
            bucket = groups["none" if gid is None else str(gid)]
            bucket["user_count"] += count
            if role is IdentityRole.PI:
                bucket["pi_count"] += count
            elif role is IdentityRole.STUDENT:
                bucket["student_count"] += count

        inactive = self.session.execute(
            select(func.count()).select_from(Identity).where(Identity.is_active.is_(False))
        ).scalar_one()
        return {
            "total_active": sum(roles.values()),
            "inactive": inactive,
            "roles": roles,
            "groups": dict(sorted(groups.items())),
        }

    def validate_role_assignment(self, identity_id: int, role: IdentityRole | str) -> RoleValidation:
        """
        Advisory checks before an assignment; nothing is written.

        ``is_valid`` is False only for assignments ``assign_role`` would reject
        outright. Warnings flag unusual but allowed situations.
        """

        resolved = coerce_role(role)
        identity = self.session.get(Identity, identity_id)
        if identity is None:
            return RoleValidation(is_valid=False, warnings=[f"Identity {identity_id} not found."])

        report = RoleValidation(is_valid=True)
        if resolved not in ASSIGNABLE_ROLES:
            report.is_valid = False
            report.warnings.append("Only 'pi' and 'student' can be assigned; use unassign to clear a role.")
            return report
        if not identity.is_active:
            report.is_valid = False
            report.warnings.append("Identity is deactivated.")
        if identity.role not in (IdentityRole.UNASSIGNED, resolved):
            report.is_valid = False
            report.warnings.append(f"Identity already holds role '{identity.role.value}'.")
            report.suggestions.append("Use change_role to switch roles.")
        elif identity.role is resolved:
            report.warnings.append(f"Identity already holds role '{resolved.value}'.")

        if identity.gid_number is not None:
            peers = self.session.execute(
                select(func.count())
                .select_from(Identity)
                .where(
                    Identity.gid_number == identity.gid_number,
                    Identity.role == resolved,
                    Identity.is_active.is_(True),
                    Identity.id != identity.id,
                )
            ).scalar_one()
            if resolved is IdentityRole.PI and peers >= LARGE_PI_GROUP:
                report.warnings.append(f"Group {identity.gid_number} already has {peers} PIs.")
            if resolved is IdentityRole.STUDENT and peers >= LARGE_STUDENT_GROUP:
                report.warnings.append(f"Group {identity.gid_number} already has {peers} students.")

        username = identity.external_id.lower()
        if resolved is IdentityRole.PI and _STUDENT_NUMBER_PATTERN.search(username):
            report.warnings.append("Username looks like a student number.")
            report.suggestions.append("Consider assigning the 'student' role instead.")
        if resolved is IdentityRole.STUDENT and "prof" in username:
            report.warnings.append("Username suggests a faculty account.")
            report.suggestions.append("Consider assigning the 'pi' role instead.")
        return report

    def suggest_roles_for_group(self, gid_number: int) -> GroupRoleSuggestions:
        """Suggest PI or student for each active unassigned identity in a group; nothing is written."""

        suggestions = GroupRoleSuggestions(gid_number=gid_number)
        candidates = self.session.execute(
            select(Identity)
            .where(
                Identity.gid_number == gid_number,
                Identity.role == IdentityRole.UNASSIGNED,
                Identity.is_active.is_(True),
            )
            .order_by(Identity.external_id.asc())
        ).scalars()
        for identity in candidates:
            role, reason = suggest_role(identity.external_id, identity.email)
            item = RoleSuggestion(identity_id=identity.id, external_id=identity.external_id, role=role, reason=reason)
            if role is IdentityRole.PI:
                suggestions.pis.append(item)
            else:
                suggestions.students.append(item)
        return suggestions

    # ------------------------------------------------------------------
    # Staging helpers: the caller owns the transaction
    # ------------------------------------------------------------------

    def _load_identity(self, identity_id: int) -> Identity:
        identity = self.session.get(Identity, identity_id)
        if identity is None:
            raise IdentityNotFound(identity_id)
        return identity

    def stage_assign(
        self,
        identity_id: int,
        role: IdentityRole,
        profile_data: Mapping[str, Any],
        *,
        actor: str | None,
        context: Mapping[str, Any] | None = None,
    ) -> RoleChangeResult:
        if role not in ASSIGNABLE_ROLES:
            raise RoleAssignmentError("Only 'pi' and 'student' can be assigned; use unassign to clear a role.")
        identity = self._load_identity(identity_id)
        if not identity.is_active:
            raise RoleAssignmentError(f"Identity {identity.external_id} is deactivated.")
        previous = identity.role
        if previous not in (IdentityRole.UNASSIGNED, role):
            raise RoleAssignmentError(
                f"Identity {identity.external_id} already holds role '{previous.value}'; use change_role."
            )

        existing = identity.pi_profile if role is IdentityRole.PI else identity.student_profile
        if previous is role and existing is not None:
            return RoleChangeResult(
                identity_id=identity.id,
                external_id=identity.external_id,
                previous_role=previous,
                role=role,
                profile_id=existing.id,
                changed=False,
            )

        if role is IdentityRole.PI:
            profile = self._build_pi_profile(identity, profile_data)
        else:
            profile = self._build_student_profile(identity, profile_data)
        self.session.add(profile)
        identity.role = role
        self.session.flush()

        record_changes(
            self.session,
            entity_type="identity",
            entity_id=identity.id,
            changes={"role": (previous, role)},
            change_source=CHANGE_SOURCE,
            changed_by=actor,
            metadata={"external_id": identity.external_id, "profile_id": profile.id, **(context or {})},
        )
        return RoleChangeResult(
            identity_id=identity.id,
            external_id=identity.external_id,
            previous_role=previous,
            role=role,
            profile_id=profile.id,
        )

    def stage_unassign(
        self, identity_id: int, *, actor: str | None, context: Mapping[str, Any] | None = None
    ) -> RoleChangeResult:
        identity = self._load_identity(identity_id)
        previous = identity.role
        if previous is IdentityRole.UNASSIGNED:
            return RoleChangeResult(
                identity_id=identity.id,
                external_id=identity.external_id,
                previous_role=previous,
                role=previous,
                changed=False,
            )

        metadata: dict[str, Any] = {"external_id": identity.external_id, **(context or {})}
        pi_profile = identity.pi_profile
        if pi_profile is not None:
            counts = release_pi_profile(
                self.session,
                pi_profile,
                orphan_policy=self.orphan_policy,
                now=datetime.now(timezone.utc),
            )
            metadata.update(counts, orphan_policy=self.orphan_policy)
        remove_student_profile(self.session, identity.id)
        self.session.expire(identity, ["pi_profile", "student_profile"])

        identity.role = IdentityRole.UNASSIGNED
        self.session.flush()
        record_changes(
            self.session,
            entity_type="identity",
            entity_id=identity.id,
            changes={"role": (previous, IdentityRole.UNASSIGNED)},
            change_source=CHANGE_SOURCE,
            changed_by=actor,
            metadata=metadata,
        )
        return RoleChangeResult(
            identity_id=identity.id,
            external_id=identity.external_id,
            previous_role=previous,
            role=IdentityRole.UNASSIGNED,
        )

    def _build_pi_profile(self, identity: Identity, data: Mapping[str, Any]) -> PIProfile:
        _check_keys(data, PI_PROFILE_KEYS, IdentityRole.PI)
        max_students = _coerce_optional_int(data.get("max_students"), "max_students", minimum=0)
        return PIProfile(
            identity_id=identity.id,
            department=data.get("department"),
            office_location=data.get("office_location"),
            research_area=data.get("research_area"),
            max_students=DEFAULT_MAX_STUDENTS if max_students is None else max_students,
            is_active=True,
        )

    def _build_student_profile(self, identity: Identity, data: Mapping[str, Any]) -> StudentProfile:
        _check_keys(data, STUDENT_PROFILE_KEYS, IdentityRole.STUDENT)
        pi_profile = self._resolve_pi(data)
        if pi_profile is not None:
            self._check_capacity(pi_profile)
        return StudentProfile(
            identity_id=identity.id,
            pi_profile_id=pi_profile.id if pi_profile is not None else None,
            student_number=data.get("student_number"),
            major=data.get("major"),
            enrollment_year=_coerce_optional_int(data.get("enrollment_year"), "enrollment_year"),
            degree_level=_coerce_choice(DegreeLevel, data.get("degree_level"), "degree_level"),
            status=_coerce_choice(StudentStatus, data.get("status"), "status") or StudentStatus.ACTIVE,
            join_date=_coerce_date(data.get("join_date"), "join_date"),
            expected_graduation=_coerce_date(data.get("expected_graduation"), "expected_graduation"),
        )

    def _resolve_pi(self, data: Mapping[str, Any]) -> PIProfile | None:
        pi_profile_id = data.get("pi_profile_id")
        pi_external_id = data.get("pi_external_id")
        if pi_profile_id in (None, "") and not pi_external_id:
            return None
        if pi_profile_id not in (None, ""):
            pi_profile = self.session.get(PIProfile, _coerce_optional_int(pi_profile_id, "pi_profile_id"))
            ref = pi_profile_id
        else:
            pi_profile = self.session.execute(
                select(PIProfile).join(Identity, PIProfile.identity_id == Identity.id).where(
                    Identity.external_id == pi_external_id
                )
            ).scalar_one_or_none()
            ref = pi_external_id
        if pi_profile is None:
            raise RoleAssignmentError(f"PI '{ref}' not found.")
        if not pi_profile.is_active:
            raise RoleAssignmentError(f"PI '{ref}' is inactive.")
        return pi_profile

    def _check_capacity(self, pi_profile: PIProfile) -> None:
        current = self.session.execute(
            select(func.count()).select_from(StudentProfile).where(StudentProfile.pi_profile_id == pi_profile.id)
        ).scalar_one()
        if current >= pi_profile.max_students:
            raise RoleAssignmentError(
                f"PI profile {pi_profile.id} already supervises {current} of {pi_profile.max_students} students."
            )

    @staticmethod
    def _log_result(message: str, result: RoleChangeResult, actor: str | None) -> None:
        logger.info(
            message,
            extra={
                "sync_identity_id": result.identity_id,
                "sync_role": result.role.value,
                "sync_previous_role": result.previous_role.value,
                "sync_changed": result.changed,
                "sync_actor": actor,
            },
        )


__all__ = [
    "ASSIGNABLE_ROLES",
    "BatchAssignResult",
    "GroupRoleSuggestions",
    "RoleChangeResult",
    "RoleService",
    "RoleSuggestion",
    "RoleValidation",
    "coerce_role",
    "suggest_role",
]

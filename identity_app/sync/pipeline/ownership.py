"""
Field ownership table for directory reconciliation.

Every attribute the sync pipeline knows about is listed in ``SyncField`` and
classified exactly once in ``OWNERSHIP_TABLE``. The protection detector and
the merge engine both consult this table; neither branches on attribute names
on its own. The table is read-only at runtime.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping

from config.ownership import PlaceholderEmailPolicy


class Ownership(str, enum.Enum):
    DIRECTORY = "directory"
    LOCAL = "local"


class FieldKind(str, enum.Enum):
    """How a value is judged "locally set"."""

    TEXT = "text"
    EMAIL = "email"
    ROLE = "role"
    VALUE = "value"


class FieldScope(str, enum.Enum):
    IDENTITY = "identity"
    PI_PROFILE = "pi_profile"
    STUDENT_PROFILE = "student_profile"


class SyncField(str, enum.Enum):
    EXTERNAL_ID = "external_id"
    DISTINGUISHED_NAME = "ldap_dn"
    UID_NUMBER = "uid_number"
    GID_NUMBER = "gid_number"
    HOME_DIRECTORY = "home_directory"
    LOGIN_SHELL = "login_shell"
    FULL_NAME = "full_name"
    EMAIL = "email"
    PHONE = "phone"
    ROLE = "role"
    PI_DEPARTMENT = "pi_profile.department"
    PI_OFFICE_LOCATION = "pi_profile.office_location"
    PI_RESEARCH_AREA = "pi_profile.research_area"
    PI_MAX_STUDENTS = "pi_profile.max_students"
    STUDENT_NUMBER = "student_profile.student_number"
    STUDENT_MAJOR = "student_profile.major"
    STUDENT_ENROLLMENT_YEAR = "student_profile.enrollment_year"
    STUDENT_DEGREE_LEVEL = "student_profile.degree_level"
    STUDENT_STATUS = "student_profile.status"
    STUDENT_JOIN_DATE = "student_profile.join_date"
    STUDENT_EXPECTED_GRADUATION = "student_profile.expected_graduation"


@dataclass(frozen=True)
class FieldPolicy:
    ownership: Ownership
    kind: FieldKind
    scope: FieldScope
    attribute: str

    @property
    def is_directory_owned(self) -> bool:
        return self.ownership is Ownership.DIRECTORY


def _directory(attribute: str, kind: FieldKind = FieldKind.TEXT) -> FieldPolicy:
    return FieldPolicy(Ownership.DIRECTORY, kind, FieldScope.IDENTITY, attribute)


def _local(attribute: str, kind: FieldKind = FieldKind.TEXT, scope: FieldScope = FieldScope.IDENTITY) -> FieldPolicy:
    return FieldPolicy(Ownership.LOCAL, kind, scope, attribute)


_PI = FieldScope.PI_PROFILE
_STUDENT = FieldScope.STUDENT_PROFILE

OWNERSHIP_TABLE: Mapping[SyncField, FieldPolicy] = MappingProxyType(
    {
        SyncField.EXTERNAL_ID: _directory("external_id"),
        SyncField.DISTINGUISHED_NAME: _directory("ldap_dn"),
        SyncField.UID_NUMBER: _directory("uid_number", FieldKind.VALUE),
        SyncField.GID_NUMBER: _directory("gid_number", FieldKind.VALUE),
        SyncField.HOME_DIRECTORY: _directory("home_directory"),
        SyncField.LOGIN_SHELL: _directory("login_shell"),
        SyncField.FULL_NAME: _local("full_name"),
        SyncField.EMAIL: _local("email", FieldKind.EMAIL),
        SyncField.PHONE: _local("phone"),
        SyncField.ROLE: _local("role", FieldKind.ROLE),
        SyncField.PI_DEPARTMENT: _local("department", scope=_PI),
        SyncField.PI_OFFICE_LOCATION: _local("office_location", scope=_PI),
        SyncField.PI_RESEARCH_AREA: _local("research_area", scope=_PI),
        SyncField.PI_MAX_STUDENTS: _local("max_students", FieldKind.VALUE, _PI),
        SyncField.STUDENT_NUMBER: _local("student_number", scope=_STUDENT),
        SyncField.STUDENT_MAJOR: _local("major", scope=_STUDENT),
        SyncField.STUDENT_ENROLLMENT_YEAR: _local("enrollment_year", FieldKind.VALUE, _STUDENT),
        SyncField.STUDENT_DEGREE_LEVEL: _local("degree_level", FieldKind.VALUE, _STUDENT),
        SyncField.STUDENT_STATUS: _local("status", FieldKind.VALUE, _STUDENT),
        SyncField.STUDENT_JOIN_DATE: _local("join_date", FieldKind.VALUE, _STUDENT),
        SyncField.STUDENT_EXPECTED_GRADUATION: _local("expected_graduation", FieldKind.VALUE, _STUDENT),
    }
)

_unclassified = set(SyncField) - set(OWNERSHIP_TABLE)
if _unclassified:  # pragma: no cover - guards edits to the table above
    raise RuntimeError(f"Unclassified sync fields: {sorted(field.value for field in _unclassified)}")


def policy_for(field: SyncField) -> FieldPolicy:
    return OWNERSHIP_TABLE[field]


def is_directory_owned(field: SyncField) -> bool:
    return OWNERSHIP_TABLE[field].is_directory_owned


def fields_with(*, ownership: Ownership | None = None, scope: FieldScope | None = None) -> tuple[SyncField, ...]:
    return tuple(
        field
        for field, policy in OWNERSHIP_TABLE.items()
        if (ownership is None or policy.ownership is ownership) and (scope is None or policy.scope is scope)
    )


DIRECTORY_OWNED_FIELDS = fields_with(ownership=Ownership.DIRECTORY)
LOCALLY_OWNED_FIELDS = fields_with(ownership=Ownership.LOCAL)


def is_placeholder_email(value: str | None, policy: PlaceholderEmailPolicy) -> bool:
    """True when ``value`` is an address the system wrote as a stand-in."""
    return policy.matches(value)


def field_names(fields: Iterable[SyncField]) -> list[str]:
    return sorted(field.value for field in fields)


__all__ = [
    "DIRECTORY_OWNED_FIELDS",
    "FieldKind",
    "FieldPolicy",
    "FieldScope",
    "LOCALLY_OWNED_FIELDS",
    "OWNERSHIP_TABLE",
    "Ownership",
    "SyncField",
    "field_names",
    "fields_with",
    "is_directory_owned",
    "is_placeholder_email",
    "policy_for",
]

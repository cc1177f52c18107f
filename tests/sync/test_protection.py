from __future__ import annotations

from config.ownership import DEFAULT_POLICY, build_policy
from identity_app.models import Identity, IdentityRole, PIProfile, StudentProfile
from identity_app.sync.pipeline.ownership import FieldKind, SyncField
from identity_app.sync.pipeline.protection import compute_protected_fields, is_locally_set

PLACEHOLDERS = build_policy(domain="placeholder.local")


def _identity(**values) -> Identity:
    values.setdefault("external_id", "alice")
    values.setdefault("role", IdentityRole.UNASSIGNED)
    return Identity(**values)


def test_untouched_identity_has_nothing_protected():
    identity = _identity()

    assert compute_protected_fields(identity, PLACEHOLDERS, pi_profile=None, student_profile=None) == frozenset()


def test_non_empty_contact_fields_are_protected():
    identity = _identity(full_name="Alice Example", phone="555-0100", email="alice@example.org")

    protected = compute_protected_fields(identity, PLACEHOLDERS, pi_profile=None, student_profile=None)

    assert protected == {SyncField.FULL_NAME, SyncField.PHONE, SyncField.EMAIL}


def test_whitespace_only_text_is_not_locally_set():
    identity = _identity(full_name="   ", phone="")

    assert compute_protected_fields(identity, PLACEHOLDERS, pi_profile=None, student_profile=None) == frozenset()


def test_placeholder_email_is_not_protected():
    identity = _identity(email="alice@placeholder.local")

    assert SyncField.EMAIL not in compute_protected_fields(
        identity, PLACEHOLDERS, pi_profile=None, student_profile=None
    )
    assert SyncField.EMAIL in compute_protected_fields(identity, DEFAULT_POLICY, pi_profile=None, student_profile=None)


def test_assigned_role_is_protected():
    assert is_locally_set(FieldKind.ROLE, IdentityRole.PI, PLACEHOLDERS)
    assert is_locally_set(FieldKind.ROLE, "student", PLACEHOLDERS)
    assert not is_locally_set(FieldKind.ROLE, IdentityRole.UNASSIGNED, PLACEHOLDERS)
    assert not is_locally_set(FieldKind.ROLE, None, PLACEHOLDERS)


def test_profile_fields_are_protected_when_profile_holds_values():
    identity = _identity(role=IdentityRole.PI)
    pi_profile = PIProfile(department="Physics", office_location=None, max_students=4)

    protected = compute_protected_fields(identity, PLACEHOLDERS, pi_profile=pi_profile, student_profile=None)

    assert protected == {SyncField.ROLE, SyncField.PI_DEPARTMENT, SyncField.PI_MAX_STUDENTS}


def test_student_profile_fields_follow_their_kind():
    identity = _identity(role=IdentityRole.STUDENT)
    student_profile = StudentProfile(major="Chemistry", enrollment_year=2023, student_number=" ")

    protected = compute_protected_fields(identity, PLACEHOLDERS, pi_profile=None, student_profile=student_profile)

    assert SyncField.STUDENT_MAJOR in protected
    assert SyncField.STUDENT_ENROLLMENT_YEAR in protected
    assert SyncField.STUDENT_NUMBER not in protected
    assert SyncField.PI_DEPARTMENT not in protected


def test_value_kind_treats_zero_as_set():
    assert is_locally_set(FieldKind.VALUE, 0, PLACEHOLDERS)
    assert not is_locally_set(FieldKind.VALUE, None, PLACEHOLDERS)

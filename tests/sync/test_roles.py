from __future__ import annotations

from datetime import date

import pytest
from sqlalchemy import select

from identity_app.models import (
    ChangeLogEntry,
    DegreeLevel,
    Identity,
    IdentityRole,
    PIProfile,
    StudentProfile,
    db,
)
from identity_app.sync.errors import IdentityNotFound, RoleAssignmentError
from identity_app.sync.pipeline.roles import RoleService, suggest_role


def test_assign_pi_creates_profile_and_logs(identity_factory):
    identity_id = identity_factory("prof").id

    result = RoleService().assign_role(
        identity_id, "pi", {"department": "Biology", "max_students": "3"}, actor="admin"
    )

    assert result.changed is True
    assert result.previous_role is IdentityRole.UNASSIGNED
    assert result.role is IdentityRole.PI
    profile = db.session.execute(select(PIProfile).where(PIProfile.identity_id == identity_id)).scalar_one()
    assert profile.id == result.profile_id
    assert profile.department == "Biology"
    assert profile.max_students == 3
    assert db.session.get(Identity, identity_id).role is IdentityRole.PI

    entry = db.session.execute(
        select(ChangeLogEntry).where(ChangeLogEntry.entity_id == identity_id, ChangeLogEntry.field_name == "role")
    ).scalar_one()
    assert (entry.old_value, entry.new_value, entry.changed_by) == ("unassigned", "pi", "admin")


def test_assign_student_links_pi_by_external_id(identity_factory, pi_factory):
    _, pi_profile = pi_factory("prof")
    pi_profile_id = pi_profile.id
    identity_id = identity_factory("stud").id

    RoleService().assign_role(
        identity_id,
        "student",
        {
            "pi_external_id": "prof",
            "degree_level": "PhD",
            "enrollment_year": "2022",
            "join_date": "2022-09-01",
        },
    )

    profile = db.session.execute(
        select(StudentProfile).where(StudentProfile.identity_id == identity_id)
    ).scalar_one()
    assert profile.pi_profile_id == pi_profile_id
    assert profile.degree_level is DegreeLevel.PHD
    assert profile.enrollment_year == 2022
    assert profile.join_date == date(2022, 9, 1)


def test_assigning_same_role_again_is_a_no_op(pi_factory):
    identity, profile = pi_factory("prof")
    identity_id, profile_id = identity.id, profile.id

    result = RoleService().assign_role(identity_id, "pi")

    assert result.changed is False
    assert result.profile_id == profile_id


def test_assign_rejects_switching_roles_directly(pi_factory):
    identity_id = pi_factory("prof")[0].id

    with pytest.raises(RoleAssignmentError, match="use change_role"):
        RoleService().assign_role(identity_id, "student")


def test_assign_rejects_unknown_profile_fields(identity_factory):
    identity_id = identity_factory("prof").id

    with pytest.raises(RoleAssignmentError, match="Unsupported pi profile fields: favourite_color"):
        RoleService().assign_role(identity_id, "pi", {"favourite_color": "blue"})

    assert db.session.get(Identity, identity_id).role is IdentityRole.UNASSIGNED


def test_assign_rejects_inactive_identity(identity_factory):
    identity_id = identity_factory("gone", is_active=False).id

    with pytest.raises(RoleAssignmentError, match="deactivated"):
        RoleService().assign_role(identity_id, "pi")


def test_assign_respects_pi_capacity(identity_factory, pi_factory, student_factory):
    _, pi_profile = pi_factory("prof", max_students=1)
    student_factory("first", pi_profile=pi_profile)
    pi_profile_id = pi_profile.id
    newcomer_id = identity_factory("second").id

    with pytest.raises(RoleAssignmentError, match="already supervises 1 of 1"):
        RoleService().assign_role(newcomer_id, "student", {"pi_profile_id": pi_profile_id})

    assert db.session.get(Identity, newcomer_id).role is IdentityRole.UNASSIGNED
    assert db.session.execute(
        select(StudentProfile).where(StudentProfile.identity_id == newcomer_id)
    ).scalar_one_or_none() is None


def test_unknown_identity_raises_not_found():
    with pytest.raises(IdentityNotFound):
        RoleService().assign_role(4242, "pi")


def test_unassign_pi_detaches_students(pi_factory, student_factory):
    pi, pi_profile = pi_factory("prof")
    student, student_profile = student_factory("stud", pi_profile=pi_profile)
    pi_id, pi_profile_id, student_profile_id = pi.id, pi_profile.id, student_profile.id

    result = RoleService().unassign_role(pi_id, actor="admin")

    assert result.previous_role is IdentityRole.PI
    assert result.role is IdentityRole.UNASSIGNED
    assert db.session.get(Identity, pi_id).role is IdentityRole.UNASSIGNED
    assert db.session.get(PIProfile, pi_profile_id) is None
    assert db.session.get(StudentProfile, student_profile_id).pi_profile_id is None


def test_unassign_already_unassigned_reports_no_change(identity_factory):
    identity_id = identity_factory("idle").id

    result = RoleService().unassign_role(identity_id)

    assert result.changed is False


def test_change_role_swaps_profiles_atomically(student_factory):
    identity, student_profile = student_factory("stud")
    identity_id, student_profile_id = identity.id, student_profile.id

    result = RoleService().change_role(identity_id, "pi", {"department": "Math"})

    assert result.previous_role is IdentityRole.STUDENT
    assert result.role is IdentityRole.PI
    assert db.session.get(StudentProfile, student_profile_id) is None
    assert db.session.get(PIProfile, result.profile_id).department == "Math"


def test_change_role_failure_keeps_original_role(student_factory):
    identity, student_profile = student_factory("stud")
    identity_id, student_profile_id = identity.id, student_profile.id

    with pytest.raises(RoleAssignmentError):
        RoleService().change_role(identity_id, "pi", {"max_students": "-1"})

    assert db.session.get(Identity, identity_id).role is IdentityRole.STUDENT
    assert db.session.get(StudentProfile, student_profile_id) is not None


def test_batch_assign_collects_failures(identity_factory):
    first_id = identity_factory("one").id
    second_id = identity_factory("two", is_active=False).id

    outcome = RoleService().batch_assign_role([first_id, second_id, 999], "pi")

    assert [result.identity_id for result in outcome.succeeded] == [first_id]
    assert [failure["identity_id"] for failure in outcome.failed] == [second_id, 999]


def test_role_statistics_groups_by_gid(identity_factory, pi_factory, student_factory):
    identity_factory("idle", gid_number=100)
    pi_factory("prof", gid_number=100)
    student_factory("stud", gid_number=200)
    identity_factory("gone", gid_number=200, is_active=False)

    stats = RoleService().role_statistics()

    assert stats["total_active"] == 3
    assert stats["inactive"] == 1
    assert stats["roles"] == {"unassigned": 1, "pi": 1, "student": 1}
    assert stats["groups"]["100"] == {"user_count": 2, "pi_count": 1, "student_count": 0}
    assert stats["groups"]["200"] == {"user_count": 1, "pi_count": 0, "student_count": 1}


def test_list_unassigned_excludes_inactive_and_assigned(identity_factory, pi_factory):
    identity_factory("zed")
    identity_factory("amy")
    identity_factory("old", is_active=False)
    pi_factory("prof")

    names = [identity.external_id for identity in RoleService().list_unassigned()]

    assert names == ["amy", "zed"]


def test_validate_role_assignment_flags_suspicious_usernames(identity_factory, pi_factory):
    numeric_id = identity_factory("s20231234").id
    prof_id = identity_factory("prof_smith").id
    holder_id = pi_factory("holder")[0].id
    service = RoleService()

    numeric_report = service.validate_role_assignment(numeric_id, "pi")
    assert numeric_report.is_valid is True
    assert "Username looks like a student number." in numeric_report.warnings

    prof_report = service.validate_role_assignment(prof_id, "student")
    assert "Consider assigning the 'pi' role instead." in prof_report.suggestions

    holder_report = service.validate_role_assignment(holder_id, "student")
    assert holder_report.is_valid is False
    assert "Use change_role to switch roles." in holder_report.suggestions

    missing_report = service.validate_role_assignment(999, "pi")
    assert missing_report.is_valid is False


@pytest.mark.parametrize(
    "external_id, email, role",
    [
        ("prof.chen", None, IdentityRole.PI),
        ("lab_pi", None, IdentityRole.PI),
        ("jdoe", "jdoe@faculty.example.edu", IdentityRole.PI),
        ("pippa", None, IdentityRole.STUDENT),
        ("s20231234", None, IdentityRole.STUDENT),
        ("phd_wang", None, IdentityRole.STUDENT),
        ("jdoe", "jdoe@example.edu", IdentityRole.STUDENT),
    ],
)
def test_suggest_role_heuristics(external_id, email, role):
    assert suggest_role(external_id, email)[0] is role


def test_suggest_roles_for_group_only_considers_unassigned_members(identity_factory, pi_factory):
    identity_factory("prof_li", gid_number=700)
    identity_factory("s2023001", gid_number=700, email="s2023001@student.example.edu")
    identity_factory("gone_prof", gid_number=700, is_active=False)
    identity_factory("prof_elsewhere", gid_number=800)
    pi_factory("prof_assigned", gid_number=700)

    suggestions = RoleService().suggest_roles_for_group(700)

    assert [item.external_id for item in suggestions.pis] == ["prof_li"]
    assert [item.external_id for item in suggestions.students] == ["s2023001"]
    assert suggestions.pis[0].reason == "username contains 'prof'"
    payload = suggestions.as_dict()
    assert payload["students"][0]["role"] == "student"
    assert "1 look like PIs, 1 look like students" in payload["reasoning"]


def test_suggest_roles_for_empty_group(identity_factory):
    identity_factory("alice", gid_number=500)

    suggestions = RoleService().suggest_roles_for_group(999)

    assert suggestions.pis == [] and suggestions.students == []
    assert suggestions.reasoning == "Group 999 has no active unassigned identities."

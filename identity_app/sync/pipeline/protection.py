"""
Local-modification detector.

Computes, for one identity and its role profile, the set of locally-owned
fields currently holding a value a person or an approved workflow put there.
The result is recomputed for every entity on every pass and never cached.
"""

from __future__ import annotations

from typing import Any

from config.ownership import PlaceholderEmailPolicy
from identity_app.models import Identity, IdentityRole, PIProfile, StudentProfile
from identity_app.sync.pipeline.ownership import (
    LOCALLY_OWNED_FIELDS,
    FieldKind,
    FieldScope,
    SyncField,
    is_placeholder_email,
    policy_for,
)

_MISSING = object()


def _normalize_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def is_locally_set(kind: FieldKind, value: Any, placeholder_policy: PlaceholderEmailPolicy) -> bool:
    """Apply the per-kind protection rule to a single value."""
    if kind is FieldKind.ROLE:
        if value is None:
            return False
        role = value if isinstance(value, IdentityRole) else IdentityRole(str(value))
        return role is not IdentityRole.UNASSIGNED
    if kind is FieldKind.VALUE:
        return value is not None
    text = _normalize_text(value)
    if text is None:
        return False
    if kind is FieldKind.EMAIL and is_placeholder_email(text, placeholder_policy):
        return False
    return True


def _owner_for(
    scope: FieldScope,
    identity: Identity,
    pi_profile: PIProfile | None,
    student_profile: StudentProfile | None,
) -> Any:
    if scope is FieldScope.IDENTITY:
        return identity
    if scope is FieldScope.PI_PROFILE:
        return pi_profile
    return student_profile


def compute_protected_fields(
    identity: Identity,
    placeholder_policy: PlaceholderEmailPolicy,
    *,
    pi_profile: Any = _MISSING,
    student_profile: Any = _MISSING,
) -> frozenset[SyncField]:
    """
    Return the protected set for ``identity``.

    Profiles default to the identity's relationships; pass them explicitly to
    evaluate a profile that is not attached yet (or ``None`` to ignore one).
    """

    if pi_profile is _MISSING:
        pi_profile = identity.pi_profile
    if student_profile is _MISSING:
        student_profile = identity.student_profile

    protected: set[SyncField] = set()
    for field in LOCALLY_OWNED_FIELDS:
        policy = policy_for(field)
        owner = _owner_for(policy.scope, identity, pi_profile, student_profile)
        if owner is None:
            continue
        if is_locally_set(policy.kind, getattr(owner, policy.attribute, None), placeholder_policy):
            protected.add(field)
    return frozenset(protected)


__all__ = ["compute_protected_fields", "is_locally_set"]

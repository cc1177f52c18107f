"""
Identity records mirrored from the external directory.

An identity carries two kinds of attributes: directory-owned attributes that
every sync pass overwrites, and locally-owned attributes (contact details and
role) that a sync pass only seeds while they are still empty.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db


class IdentityRole(str, enum.Enum):
    """Role classification held by an identity."""

    UNASSIGNED = "unassigned"
    PI = "pi"
    STUDENT = "student"


class Identity(BaseModel):
    """One record per external principal, keyed by the directory uid."""

    __tablename__ = "identities"

    id: Mapped[int] = mapped_column(primary_key=True)
    external_id: Mapped[str] = mapped_column(db.String(255), unique=True, nullable=False, index=True)

    # Directory-owned attributes
    ldap_dn: Mapped[str | None] = mapped_column(db.String(512), nullable=True)
    uid_number: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    gid_number: Mapped[int | None] = mapped_column(db.Integer, nullable=True, index=True)
    home_directory: Mapped[str | None] = mapped_column(db.String(512), nullable=True)
    login_shell: Mapped[str | None] = mapped_column(db.String(255), nullable=True)

    # Locally-owned attributes
    role: Mapped[IdentityRole] = mapped_column(
        Enum(IdentityRole, name="identity_role_enum"),
        nullable=False,
        default=IdentityRole.UNASSIGNED,
        index=True,
    )
    full_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(db.String(50), nullable=True)

    # Lifecycle
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True, index=True)
    present_in_last_snapshot: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    deactivated_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    pi_profile = relationship("PIProfile", back_populates="identity", uselist=False)
    student_profile = relationship("StudentProfile", back_populates="identity", uselist=False)

    __table_args__ = (Index("idx_identity_role_active", "role", "is_active"),)

    @property
    def display_label(self) -> str:
        return self.full_name or self.external_id

    def __repr__(self) -> str:
        return f"<Identity {self.external_id} role={self.role.value if self.role else None}>"

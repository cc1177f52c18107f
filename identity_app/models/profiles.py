"""Role profiles owned 1:1 by an identity."""

from __future__ import annotations

import enum
from datetime import date

from sqlalchemy import CheckConstraint, Enum, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db

DEFAULT_MAX_STUDENTS = 10


class DegreeLevel(str, enum.Enum):
    UNDERGRADUATE = "undergraduate"
    MASTER = "master"
    PHD = "phd"


class StudentStatus(str, enum.Enum):
    ACTIVE = "active"
    GRADUATED = "graduated"
    SUSPENDED = "suspended"
    PENDING = "pending"


class PIProfile(BaseModel):
    """Principal-investigator details for an identity holding the ``pi`` role."""

    __tablename__ = "pi_profiles"

    id: Mapped[int] = mapped_column(primary_key=True)
    identity_id: Mapped[int] = mapped_column(ForeignKey("identities.id"), unique=True, nullable=False)
    department: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    office_location: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    research_area: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    max_students: Mapped[int] = mapped_column(db.Integer, nullable=False, default=DEFAULT_MAX_STUDENTS)
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)

    identity = relationship("Identity", back_populates="pi_profile")
    students = relationship("StudentProfile", back_populates="pi")

    __table_args__ = (CheckConstraint("max_students >= 0", name="ck_pi_profiles_max_students"),)

    def __repr__(self) -> str:
        return f"<PIProfile identity={self.identity_id}>"


class StudentProfile(BaseModel):
    """Student details; ``pi_profile_id`` stays empty until a PI is assigned."""

    __tablename__ = "student_profiles"

    id: Mapped[int] = mapped_column(primary_key=True)
    identity_id: Mapped[int] = mapped_column(ForeignKey("identities.id"), unique=True, nullable=False)
    pi_profile_id: Mapped[int | None] = mapped_column(ForeignKey("pi_profiles.id"), nullable=True, index=True)
    student_number: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    major: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    enrollment_year: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    degree_level: Mapped[DegreeLevel | None] = mapped_column(
        Enum(DegreeLevel, name="degree_level_enum"),
        nullable=True,
    )
    status: Mapped[StudentStatus] = mapped_column(
        Enum(StudentStatus, name="student_status_enum"),
        nullable=False,
        default=StudentStatus.ACTIVE,
    )
    join_date: Mapped[date | None] = mapped_column(db.Date, nullable=True)
    expected_graduation: Mapped[date | None] = mapped_column(db.Date, nullable=True)

    identity = relationship("Identity", back_populates="student_profile")
    pi = relationship("PIProfile", back_populates="students")

    def __repr__(self) -> str:
        return f"<StudentProfile identity={self.identity_id} pi={self.pi_profile_id}>"

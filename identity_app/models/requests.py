"""Student creation/deletion requests raised by PIs and resolved by administrators."""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db, utcnow


class RequestType(str, enum.Enum):
    CREATE = "create"
    DELETE = "delete"


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.PENDING


class StudentRequest(BaseModel):
    """A PI's proposal to add or remove a student."""

    __tablename__ = "student_requests"

    id: Mapped[int] = mapped_column(primary_key=True)
    request_type: Mapped[RequestType] = mapped_column(
        Enum(RequestType, name="student_request_type_enum"),
        nullable=False,
    )
    status: Mapped[RequestStatus] = mapped_column(
        Enum(RequestStatus, name="student_request_status_enum"),
        nullable=False,
        default=RequestStatus.PENDING,
        index=True,
    )
    pi_profile_id: Mapped[int | None] = mapped_column(ForeignKey("pi_profiles.id"), nullable=True, index=True)
    target_identity_id: Mapped[int | None] = mapped_column(ForeignKey("identities.id"), nullable=True, index=True)
    student_data: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    reason: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    review_comment: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    requested_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    reviewed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    pi = relationship("PIProfile")
    target_identity = relationship("Identity")

    __table_args__ = (Index("idx_student_requests_pi_status", "pi_profile_id", "status"),)

    def __repr__(self) -> str:
        return f"<StudentRequest {self.id} {self.request_type.value} {self.status.value}>"

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from app.models.project import Project
    from app.models.screening_decision import ScreeningDecisionRecord
    from app.models.work import Work


class ProjectWork(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A study under review inside one project."""

    __tablename__ = "project_works"
    __table_args__ = (
        UniqueConstraint("project_id", "work_id", name="uq_project_works_project_id_work_id"),
        Index("ix_project_works_project_phase_status", "project_id", "phase", "status"),
    )

    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    work_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("works.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # TITLE_ABSTRACT | FULL_TEXT | FINAL
    phase: Mapped[str] = mapped_column(String(20), nullable=False, default="TITLE_ABSTRACT")
    # PENDING | SCREENING | CONFLICT | INCLUDED | EXCLUDED | MAYBE
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    # INCLUDE | EXCLUDE | MAYBE
    final_decision: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Full-text document
    pdf_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pdf_uploaded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # PENDING | PROCESSING | COMPLETED | FAILED
    ingestion_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    project: Mapped[Project] = relationship("Project", back_populates="project_works")
    work: Mapped[Work] = relationship("Work")
    decisions: Mapped[List[ScreeningDecisionRecord]] = relationship(
        "ScreeningDecisionRecord",
        back_populates="project_work",
        cascade="all, delete-orphan",
        order_by="ScreeningDecisionRecord.created_at",
    )

    def __repr__(self) -> str:
        return f"<ProjectWork id={self.id} phase={self.phase!r} status={self.status!r}>"

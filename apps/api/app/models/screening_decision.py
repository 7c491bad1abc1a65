from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Optional

from sqlalchemy import BigInteger, Boolean, ForeignKey, Identity, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from app.models.project_work import ProjectWork

DECISION_UNIQUE_CONSTRAINT = "uq_screening_decisions_work_reviewer_phase"


class ScreeningDecisionRecord(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One reviewer's vote on one study in one phase. Never edited."""

    __tablename__ = "screening_decisions"
    __table_args__ = (
        # The real guard against duplicate votes under concurrent submission
        UniqueConstraint("project_work_id", "reviewer_id", "phase", name=DECISION_UNIQUE_CONSTRAINT),
    )

    project_work_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("project_works.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    reviewer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    phase: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    # INCLUDE | EXCLUDE | MAYBE
    decision: Mapped[str] = mapped_column(String(20), nullable=False)

    reasoning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    exclusion_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    confidence: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    time_spent_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    followed_ai: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    # Tie-breaker for decisions sharing a created_at (same transaction)
    seq: Mapped[int] = mapped_column(BigInteger, Identity(always=True), nullable=False)

    project_work: Mapped[ProjectWork] = relationship("ProjectWork", back_populates="decisions")

    def __repr__(self) -> str:
        return f"<ScreeningDecisionRecord reviewer={self.reviewer_id!r} phase={self.phase!r} decision={self.decision!r}>"

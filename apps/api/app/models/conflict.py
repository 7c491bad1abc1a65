from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from app.models.conflict_resolution import ConflictResolution

CONFLICT_UNIQUE_CONSTRAINT = "uq_conflicts_project_work_id_phase"


class Conflict(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "conflicts"
    __table_args__ = (
        UniqueConstraint("project_work_id", "phase", name=CONFLICT_UNIQUE_CONSTRAINT),
    )

    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    project_work_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("project_works.id", ondelete="CASCADE"),
        nullable=False,
    )
    phase: Mapped[str] = mapped_column(String(20), nullable=False)
    # PENDING | RESOLVED
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING", index=True)
    # Snapshot of [{reviewer_id, decision, reasoning}] at the time of conflict
    decisions: Mapped[List[Dict[str, Any]]] = mapped_column(JSONB, nullable=False, default=list)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    resolution: Mapped[Optional[ConflictResolution]] = relationship(
        "ConflictResolution", back_populates="conflict", uselist=False, cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Conflict id={self.id} phase={self.phase!r} status={self.status!r}>"

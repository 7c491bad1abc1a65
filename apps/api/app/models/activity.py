from __future__ import annotations

import uuid
from typing import Any, Dict, Optional

from sqlalchemy import ForeignKey, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, CreatedAtMixin, UUIDPrimaryKeyMixin


class Activity(UUIDPrimaryKeyMixin, CreatedAtMixin, Base):
    """Append-only audit trail of screening events."""

    __tablename__ = "activities"

    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # SCREENING_DECISION | CONFLICT_CREATED | CONFLICT_RESOLVED | PHASE_ADVANCED | SCREENING_REPAIRED
    type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JSONB, nullable=True)

    def __repr__(self) -> str:
        return f"<Activity type={self.type!r} project={self.project_id}>"

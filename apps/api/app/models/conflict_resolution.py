from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Optional

from sqlalchemy import ForeignKey, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, CreatedAtMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from app.models.conflict import Conflict


class ConflictResolution(UUIDPrimaryKeyMixin, CreatedAtMixin, Base):
    __tablename__ = "conflict_resolutions"

    # unique: a conflict is resolved exactly once
    conflict_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conflicts.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    resolver_id: Mapped[str] = mapped_column(String(255), nullable=False)
    final_decision: Mapped[str] = mapped_column(String(20), nullable=False)
    reasoning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    conflict: Mapped[Conflict] = relationship("Conflict", back_populates="resolution")

    def __repr__(self) -> str:
        return f"<ConflictResolution conflict={self.conflict_id} decision={self.final_decision!r}>"

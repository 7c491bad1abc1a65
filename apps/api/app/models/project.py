from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from app.models.project_work import ProjectWork


class Project(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "projects"

    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Screening configuration
    require_dual_screening: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    blind_screening: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # "unanimous" | "majority"; NULL falls back to settings.default_consensus_policy
    consensus_policy: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    project_works: Mapped[List[ProjectWork]] = relationship(
        "ProjectWork", back_populates="project", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Project id={self.id} title={self.title!r} dual={self.require_dual_screening}>"

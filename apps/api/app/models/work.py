from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from app.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Work(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A bibliographic record, shared by every project that screens it."""

    __tablename__ = "works"

    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    abstract: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    authors: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    doi: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    # Landing page / open-access link the ingestion worker can fetch from
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<Work id={self.id} doi={self.doi!r}>"

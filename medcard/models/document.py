"""Document and Measurement models — the durable medical record."""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Any

from sqlalchemy import Date, Float, ForeignKey, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from medcard.models.base import Base, TimestampMixin
from medcard.models.enums import DocumentCategory, DocumentSubtype


class Document(TimestampMixin, Base):
    """A single logical medical document, possibly built from several pages."""

    __tablename__ = "documents"

    # When the examination / visit happened (not when it was uploaded)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)

    # Taxonomy: always a valid (category, subtype) pair
    category: Mapped[str] = mapped_column(
        String(30), nullable=False, default=DocumentCategory.OTHER.value, index=True
    )
    subtype: Mapped[str] = mapped_column(String(30), nullable=False, default=DocumentSubtype.OTHER.value)

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    doctor: Mapped[str | None] = mapped_column(String(200))
    specialty: Mapped[str | None] = mapped_column(String(100))
    clinic: Mapped[str | None] = mapped_column(String(300))

    # AI output
    summary: Mapped[str | None] = mapped_column(Text, comment="AI-written summary")
    conclusion: Mapped[str | None] = mapped_column(Text, comment="Physician conclusion, verbatim")
    recommendations: Mapped[list[str]] = mapped_column(JSONB, default=list, nullable=False)
    key_values: Mapped[dict[str, str] | None] = mapped_column(JSONB, comment="Raw name → value pairs")
    tags: Mapped[list[str]] = mapped_column(JSONB, default=list, nullable=False)

    # Free text (caption or manual notes)
    content: Mapped[str | None] = mapped_column(Text)

    # Attached file
    file_url: Mapped[str | None] = mapped_column(Text)
    file_name: Mapped[str | None] = mapped_column(String(255))
    file_type: Mapped[str | None] = mapped_column(String(100))

    # Relationships
    measurements: Mapped[list[Measurement]] = relationship(
        "Measurement",
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
        order_by="Measurement.name",
    )

    def as_dict(self) -> dict[str, Any]:
        """Plain representation used by the JSON API."""
        return {
            "id": str(self.id),
            "date": self.date.isoformat(),
            "category": self.category,
            "subtype": self.subtype,
            "title": self.title,
            "doctor": self.doctor,
            "specialty": self.specialty,
            "clinic": self.clinic,
            "summary": self.summary,
            "conclusion": self.conclusion,
            "recommendations": list(self.recommendations or []),
            "content": self.content,
            "file_url": self.file_url,
            "file_name": self.file_name,
            "file_type": self.file_type,
            "tags": list(self.tags or []),
            "key_values": self.key_values,
            "measurements": [m.as_dict() for m in self.measurements],
        }

    def __repr__(self) -> str:
        return f"<Document id={self.id} date={self.date} {self.category}/{self.subtype}>"


class Measurement(TimestampMixin, Base):
    """One numeric lab value extracted from a document."""

    __tablename__ = "measurements"

    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True
    )

    # Canonical metrics-catalog name, never an alias
    name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    unit: Mapped[str] = mapped_column(String(30), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)

    document: Mapped[Document] = relationship("Document", back_populates="measurements")

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "unit": self.unit,
            "date": self.date.isoformat(),
        }

    def __repr__(self) -> str:
        return f"<Measurement {self.name}={self.value} {self.unit} ({self.date})>"

"""Patient diary models — vital signs, symptoms, medications and procedures.

Entries are written by the patient (bot diary menu or web API), not extracted
from documents. A procedure may point at the document that describes it.
"""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Any

from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from medcard.models.base import Base, TimestampMixin
from medcard.models.document import Document


class VitalSign(TimestampMixin, Base):
    __tablename__ = "vital_signs"

    recorded_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    # Diastolic pressure; empty for single-value signs
    value2: Mapped[float | None] = mapped_column(Float)
    unit: Mapped[str] = mapped_column(String(20), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "recorded_at": self.recorded_at.isoformat(),
            "type": self.type,
            "value": self.value,
            "value2": self.value2,
            "unit": self.unit,
            "notes": self.notes,
        }


class Symptom(TimestampMixin, Base):
    __tablename__ = "symptoms"

    recorded_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    intensity: Mapped[int | None] = mapped_column(Integer, comment="1-5")
    duration: Mapped[str | None] = mapped_column(String(100))
    notes: Mapped[str | None] = mapped_column(Text)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "recorded_at": self.recorded_at.isoformat(),
            "name": self.name,
            "intensity": self.intensity,
            "duration": self.duration,
            "notes": self.notes,
        }


class Medication(TimestampMixin, Base):
    """A course of a drug; inactive once the patient stops taking it."""

    __tablename__ = "medications"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    dosage: Mapped[str | None] = mapped_column(String(100))
    frequency: Mapped[str | None] = mapped_column(String(100))
    start_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    end_date: Mapped[dt.date | None] = mapped_column(Date)
    notes: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "name": self.name,
            "dosage": self.dosage,
            "frequency": self.frequency,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "notes": self.notes,
            "is_active": self.is_active,
        }


class Procedure(TimestampMixin, Base):
    """A treatment event such as a transfusion or surgery, with optional before/after values."""

    __tablename__ = "procedures"

    date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    details: Mapped[str | None] = mapped_column(Text)
    before_value: Mapped[float | None] = mapped_column(Float)
    after_value: Mapped[float | None] = mapped_column(Float)
    unit: Mapped[str | None] = mapped_column(String(30))
    notes: Mapped[str | None] = mapped_column(Text)
    document_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("documents.id", ondelete="SET NULL"), index=True
    )

    document: Mapped[Document | None] = relationship("Document", lazy="selectin")

    def as_dict(self) -> dict[str, Any]:
        document = None
        if self.document is not None:
            document = {
                "id": str(self.document.id),
                "title": self.document.title,
                "date": self.document.date.isoformat(),
            }
        return {
            "id": str(self.id),
            "date": self.date.isoformat(),
            "type": self.type,
            "name": self.name,
            "details": self.details,
            "before_value": self.before_value,
            "after_value": self.after_value,
            "unit": self.unit,
            "notes": self.notes,
            "document": document,
        }

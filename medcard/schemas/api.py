"""Request bodies of the web API: documents, duplicate decisions, export and diary."""

from __future__ import annotations

import datetime as dt
import uuid

from pydantic import BaseModel, Field, field_validator

from medcard.models.enums import DecisionAction, VitalType


class DocumentCreate(BaseModel):
    """Manually entered document. Category and subtype are normalized on save."""

    date: dt.date
    title: str = Field(min_length=1, max_length=500)
    category: str | None = None
    subtype: str | None = None
    doctor: str | None = None
    specialty: str | None = None
    clinic: str | None = None
    summary: str | None = None
    conclusion: str | None = None
    recommendations: list[str] = Field(default_factory=list)
    content: str | None = None
    file_url: str | None = None
    file_name: str | None = None
    file_type: str | None = None
    tags: list[str] = Field(default_factory=list)
    key_values: dict[str, str] | None = None


class DocumentUpdate(BaseModel):
    """Partial edit; only fields present in the request are written."""

    date: dt.date | None = None
    title: str | None = Field(default=None, min_length=1, max_length=500)
    category: str | None = None
    subtype: str | None = None
    doctor: str | None = None
    specialty: str | None = None
    clinic: str | None = None
    summary: str | None = None
    conclusion: str | None = None
    recommendations: list[str] | None = None
    content: str | None = None
    tags: list[str] | None = None
    key_values: dict[str, str] | None = None

    @field_validator("date", "title", "recommendations", "tags")
    @classmethod
    def not_null(cls, v: object) -> object:
        # Omit the field to keep it; these columns cannot be cleared
        if v is None:
            msg = "may be omitted but not null"
            raise ValueError(msg)
        return v


class ResolveRequest(BaseModel):
    action: DecisionAction


class DownloadRequest(BaseModel):
    ids: list[uuid.UUID] = Field(min_length=1)


# ── Diary ────────────────────────────────────────────────────────────


class VitalCreate(BaseModel):
    type: VitalType
    value: float
    value2: float | None = None
    recorded_at: dt.datetime | None = None
    notes: str | None = None


class SymptomCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    intensity: int | None = Field(default=None, ge=1, le=5)
    duration: str | None = None
    recorded_at: dt.datetime | None = None
    notes: str | None = None


class MedicationCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    dosage: str | None = None
    frequency: str | None = None
    start_date: dt.date | None = None
    end_date: dt.date | None = None
    notes: str | None = None
    is_active: bool = True


class MedicationUpdate(BaseModel):
    """Partial edit, typically to stop a course."""

    name: str | None = Field(default=None, min_length=1, max_length=200)
    dosage: str | None = None
    frequency: str | None = None
    end_date: dt.date | None = None
    notes: str | None = None
    is_active: bool | None = None

    @field_validator("name", "is_active")
    @classmethod
    def not_null(cls, v: object) -> object:
        if v is None:
            msg = "may be omitted but not null"
            raise ValueError(msg)
        return v


class ProcedureCreate(BaseModel):
    date: dt.date
    type: str = Field(min_length=1, max_length=50, description="e.g. hemotransfusion, surgery")
    name: str = Field(min_length=1, max_length=200)
    details: str | None = None
    before_value: float | None = None
    after_value: float | None = None
    unit: str | None = None
    notes: str | None = None
    document_id: uuid.UUID | None = None

"""Schemas exchanged between channels, the intake orchestrator and the record store."""

from __future__ import annotations

import datetime as dt
import uuid
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from medcard.models.enums import DocumentCategory, DocumentSubtype


@dataclass(frozen=True)
class InboundFile:
    """One file handed to the orchestrator by a channel.

    Either `data` (bytes downloaded from the channel, not yet stored) or
    `url` (already uploaded, e.g. a batch page) must be set.
    """

    mime_type: str
    data: bytes | None = None
    url: str | None = None
    file_name: str | None = None

    def __post_init__(self) -> None:
        if self.data is None and self.url is None:
            msg = "InboundFile needs either data or url"
            raise ValueError(msg)


@dataclass(frozen=True)
class StoredFile:
    """A file after upload to blob storage."""

    url: str
    mime_type: str
    file_name: str | None = None


class DocumentPayload(BaseModel):
    """All fields of a Document before it is saved.

    Serialized into PendingDecision.payload while the user decides what to
    do with a suspected duplicate.
    """

    model_config = ConfigDict(use_enum_values=True)

    date: dt.date
    category: DocumentCategory = DocumentCategory.OTHER
    subtype: DocumentSubtype = DocumentSubtype.OTHER
    title: str
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


@dataclass(frozen=True)
class ExtractedMeasurement:
    """A parsed lab value, ready to become a Measurement row."""

    name: str
    value: float
    unit: str


# ── Outcomes ─────────────────────────────────────────────────────────


@dataclass
class DocumentCreated:
    """Intake saved a new document.

    possible_duplicate_of is set when a likely duplicate was found but the
    user could not be asked about it.
    """

    document_id: uuid.UUID
    payload: DocumentPayload
    measurements: list[ExtractedMeasurement] = field(default_factory=list)
    page_count: int = 1
    possible_duplicate_of: uuid.UUID | None = None


@dataclass
class PendingDecisionCreated:
    """Intake found a likely duplicate and is waiting for the user."""

    pending_id: uuid.UUID
    duplicate_id: uuid.UUID
    reason: str
    confidence: float
    payload: DocumentPayload


@dataclass
class IntakeFailed:
    """Intake stopped on a storage or network error; nothing was saved."""

    error: str


IntakeOutcome = DocumentCreated | PendingDecisionCreated | IntakeFailed


class ResolutionStatus(str, Enum):
    """Result of resolving a pending duplicate decision."""

    ADDED = "added"
    REPLACED = "replaced"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    TARGET_MISSING = "target_missing"
    FAILED = "failed"


@dataclass
class ResolutionOutcome:
    status: ResolutionStatus
    document_id: uuid.UUID | None = None
    payload: DocumentPayload | None = None
    error: str | None = None


@dataclass
class BatchReply:
    """What the batch collector tells the user after a command."""

    message: str
    page_count: int = 0
    active: bool = False
    outcome: IntakeOutcome | None = None

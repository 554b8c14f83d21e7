"""SystemEvent schema — the event type that flows through the intake pipeline.

Intake milestones emit a SystemEvent. Subscribers (audit logger, background
jobs such as summary regeneration) consume these events asynchronously.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """All event types emitted by the system."""

    # Intake
    DOCUMENT_RECEIVED = "document.received"
    DOCUMENT_ANALYZED = "document.analyzed"
    ANALYSIS_FAILED = "document.analysis_failed"
    DOCUMENT_SAVED = "document.saved"
    DOCUMENT_REPLACED = "document.replaced"
    DOCUMENT_DELETED = "document.deleted"
    INTAKE_FAILED = "document.intake_failed"

    # Duplicates
    DUPLICATE_DETECTED = "duplicate.detected"
    DUPLICATE_RESOLVED = "duplicate.resolved"
    DUPLICATE_EXPIRED = "duplicate.expired"

    # Batch collection
    BATCH_STARTED = "batch.started"
    BATCH_PAGE_ADDED = "batch.page_added"
    BATCH_CANCELLED = "batch.cancelled"
    BATCH_FINISHED = "batch.finished"

    # Diary
    DIARY_ENTRY_ADDED = "diary.entry_added"
    MEDICATION_UPDATED = "diary.medication_updated"

    # Export
    DOCUMENTS_EXPORTED = "document.exported"

    # LLM
    LLM_REQUEST = "llm.request"
    LLM_RESPONSE = "llm.response"
    LLM_ERROR = "llm.error"

    # System
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_SHUTDOWN = "system.shutdown"
    SYSTEM_MAINTENANCE = "system.maintenance"


class SystemEvent(BaseModel):
    """Core event emitted by the intake pipeline.

    Immutable once created. Consumed by:
    - audit_on_event → writes to audit_log table
    - out-of-process jobs (e.g. summary regeneration after DOCUMENT_SAVED)
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    # Context (optional, not every event has a document)
    document_id: uuid.UUID | None = None
    conversation_key: str | None = None

    # Flexible payload
    data: dict[str, Any] = Field(default_factory=dict)

    # Metadata
    source_module: str | None = Field(default=None, description="Module that emitted this event")

    model_config = {"frozen": True}

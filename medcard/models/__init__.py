"""SQLAlchemy ORM models for medcard.

Import all models here so Alembic and Base.metadata.create_all() discover them.
"""

from __future__ import annotations

from medcard.models.audit import AuditLog
from medcard.models.base import Base
from medcard.models.batch import BatchPage, BatchSession
from medcard.models.diary import Medication, Procedure, Symptom, VitalSign
from medcard.models.document import Document, Measurement
from medcard.models.enums import (
    BatchState,
    DecisionAction,
    DocumentCategory,
    DocumentSubtype,
    ValueStatus,
    VitalType,
)
from medcard.models.pending import PendingDecision

__all__ = [
    # Base
    "Base",
    # Models
    "Document",
    "Measurement",
    "PendingDecision",
    "BatchSession",
    "BatchPage",
    "AuditLog",
    "VitalSign",
    "Symptom",
    "Medication",
    "Procedure",
    # Enums
    "DocumentCategory",
    "DocumentSubtype",
    "BatchState",
    "DecisionAction",
    "ValueStatus",
    "VitalType",
]

"""AuditLog model — append-only trail of intake events.

Every intake milestone emits a SystemEvent which is persisted here.
"""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from medcard.models.base import Base, TimestampMixin


class AuditLog(TimestampMixin, Base):
    """Audit trail entry."""

    __tablename__ = "audit_log"

    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    # Context (nullable, not every event relates to a document or conversation)
    document_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), index=True)
    conversation_key: Mapped[str | None] = mapped_column(String(100), comment="tg:<chat_id> or web:<user>")

    data: Mapped[dict[str, Any] | None] = mapped_column(JSONB)

    def __repr__(self) -> str:
        return f"<AuditLog event={self.event_type} document={self.document_id}>"

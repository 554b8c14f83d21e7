"""PendingDecision model — a candidate document waiting for the user to arbitrate a duplicate."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Float, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from medcard.models.base import Base, TimestampMixin


class PendingDecision(TimestampMixin, Base):
    """New document data that collided with an existing Document.

    The row exists only between duplicate detection and the user's choice;
    resolving it (add / replace / cancel) deletes it in the same transaction
    as the corresponding Document mutation.
    """

    __tablename__ = "pending_decisions"

    conversation_key: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    # Serialized DocumentPayload (all fields of the not-yet-saved document)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)

    # No FK, the target may be deleted while the user decides
    duplicate_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    duplicate_reason: Mapped[str | None] = mapped_column(String(200))
    confidence: Mapped[float | None] = mapped_column(Float)

    # Outbound prompt to edit after resolution
    message_ref: Mapped[str | None] = mapped_column(String(100))

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def __repr__(self) -> str:
        return f"<PendingDecision id={self.id} duplicate={self.duplicate_id} expires={self.expires_at}>"

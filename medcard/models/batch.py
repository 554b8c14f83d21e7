"""BatchSession and BatchPage models — multi-page collection in progress."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from medcard.models.base import Base, TimestampMixin
from medcard.models.enums import BatchState


class BatchSession(TimestampMixin, Base):
    """An explicitly started collection of pages for one conversation.

    At most one row per conversation key. The row itself is the "active"
    marker, independent of whether any page has arrived yet.
    """

    __tablename__ = "batch_sessions"

    conversation_key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default=BatchState.ACTIVE.value)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    pages: Mapped[list[BatchPage]] = relationship(
        "BatchPage",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
        order_by="BatchPage.sequence",
    )

    def __repr__(self) -> str:
        return f"<BatchSession key={self.conversation_key} state={self.state}>"


class BatchPage(TimestampMixin, Base):
    """One page (already uploaded to blob storage) of a batch session."""

    __tablename__ = "batch_pages"
    __table_args__ = (UniqueConstraint("session_id", "sequence", name="uq_batch_pages_session_sequence"),)

    session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("batch_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    page_key: Mapped[str] = mapped_column(String(100), nullable=False, comment="<session id>-<sequence>")

    file_url: Mapped[str] = mapped_column(Text, nullable=False)
    file_name: Mapped[str | None] = mapped_column(String(255))
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    session: Mapped[BatchSession] = relationship("BatchSession", back_populates="pages")

    def __repr__(self) -> str:
        return f"<BatchPage key={self.page_key} mime={self.mime_type}>"

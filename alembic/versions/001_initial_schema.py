"""Initial schema — documents, measurements, intake coordination and audit.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""
from __future__ import annotations

from typing import Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, tuple[str, ...], None] = None
depends_on: Union[str, tuple[str, ...], None] = None


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    # ── Medical record ─────────────────────────────────────────────────

    op.create_table(
        "documents",
        sa.Column("date", sa.Date(), nullable=False, index=True),
        sa.Column("category", sa.String(30), nullable=False, index=True),
        sa.Column("subtype", sa.String(30), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("doctor", sa.String(200)),
        sa.Column("specialty", sa.String(100)),
        sa.Column("clinic", sa.String(300)),
        sa.Column("summary", sa.Text(), comment="AI-written summary"),
        sa.Column("conclusion", sa.Text(), comment="Physician conclusion, verbatim"),
        sa.Column("recommendations", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("key_values", postgresql.JSONB(astext_type=sa.Text()), comment="Raw name → value pairs"),
        sa.Column("tags", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("content", sa.Text()),
        sa.Column("file_url", sa.Text()),
        sa.Column("file_name", sa.String(255)),
        sa.Column("file_type", sa.String(100)),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "measurements",
        sa.Column(
            "document_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("documents.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("name", sa.String(100), nullable=False, index=True),
        sa.Column("value", sa.Float(), nullable=False),
        sa.Column("unit", sa.String(30), nullable=False),
        sa.Column("date", sa.Date(), nullable=False, index=True),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
    )

    # ── Intake coordination ────────────────────────────────────────────

    op.create_table(
        "pending_decisions",
        sa.Column("conversation_key", sa.String(100), nullable=False, index=True),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("duplicate_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("duplicate_reason", sa.String(200)),
        sa.Column("confidence", sa.Float()),
        sa.Column("message_ref", sa.String(100)),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False, index=True),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "batch_sessions",
        sa.Column("conversation_key", sa.String(100), nullable=False),
        sa.Column("state", sa.String(20), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("conversation_key"),
    )

    op.create_table(
        "batch_pages",
        sa.Column(
            "session_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("batch_sessions.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("page_key", sa.String(100), nullable=False, comment="<session id>-<sequence>"),
        sa.Column("file_url", sa.Text(), nullable=False),
        sa.Column("file_name", sa.String(255)),
        sa.Column("mime_type", sa.String(100), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("session_id", "sequence", name="uq_batch_pages_session_sequence"),
    )

    # ── Audit ──────────────────────────────────────────────────────────

    op.create_table(
        "audit_log",
        sa.Column("event_type", sa.String(100), nullable=False, index=True),
        sa.Column("document_id", postgresql.UUID(as_uuid=True), index=True),
        sa.Column("conversation_key", sa.String(100), comment="tg:<chat_id> or web:<user>"),
        sa.Column("data", postgresql.JSONB(astext_type=sa.Text())),
        *_base_columns(),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    # Drop in reverse dependency order
    op.drop_table("audit_log")
    op.drop_table("batch_pages")
    op.drop_table("batch_sessions")
    op.drop_table("pending_decisions")
    op.drop_table("measurements")
    op.drop_table("documents")

"""Record store: documents, measurements, diary entries and the intake coordination rows.

All reads and writes go through a unit of work. One unit of work is one
database transaction: it commits when the block exits cleanly and rolls back
on any exception, so a pending decision is only ever deleted together with
the document mutation that resolved it.

Usage:
    store = RecordStore()
    async with store.unit_of_work() as records:
        pending = await records.lock_pending(pending_id)
        ...
"""

from __future__ import annotations

import contextlib
import datetime as dt
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from medcard.db.engine import async_session_factory
from medcard.models.batch import BatchPage, BatchSession
from medcard.models.diary import Medication, Procedure, Symptom, VitalSign
from medcard.models.document import Document, Measurement
from medcard.models.enums import BatchState
from medcard.models.pending import PendingDecision
from medcard.schemas.intake import DocumentPayload, ExtractedMeasurement

logger = logging.getLogger(__name__)

# Document columns a payload or an edit may overwrite
DOCUMENT_FIELDS = (
    "date",
    "category",
    "subtype",
    "title",
    "doctor",
    "specialty",
    "clinic",
    "summary",
    "conclusion",
    "recommendations",
    "content",
    "file_url",
    "file_name",
    "file_type",
    "tags",
    "key_values",
)

# Medication columns an edit may overwrite
MEDICATION_FIELDS = ("name", "dosage", "frequency", "end_date", "notes", "is_active")


class RecordStore:
    """Factory of units of work over the PostgreSQL session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or async_session_factory

    @contextlib.asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[Records]:
        async with self._session_factory() as db:
            try:
                yield Records(db)
                await db.commit()
            except Exception:
                await db.rollback()
                raise


class Records:
    """Repository bound to one open transaction."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    # ── Documents ────────────────────────────────────────────────────

    async def find_by_date_range(self, start: dt.date, end: dt.date, limit: int) -> list[Document]:
        """Documents dated within [start, end], most recent first."""
        result = await self._db.execute(
            select(Document)
            .where(Document.date >= start, Document.date <= end)
            .order_by(Document.date.desc(), Document.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_document(self, document_id: uuid.UUID) -> Document | None:
        return await self._db.get(Document, document_id)

    async def list_documents(
        self,
        category: str | None = None,
        subtype: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Document]:
        stmt = select(Document)
        if category:
            stmt = stmt.where(Document.category == category)
        if subtype:
            stmt = stmt.where(Document.subtype == subtype)
        stmt = stmt.order_by(Document.date.desc(), Document.created_at.desc()).limit(limit).offset(offset)
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def latest_documents(self, limit: int = 5) -> list[Document]:
        result = await self._db.execute(
            select(Document).order_by(Document.created_at.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def all_documents(self, limit: int = 2000) -> list[Document]:
        """Every document, newest first. The card holds one patient's records."""
        result = await self._db.execute(select(Document).order_by(Document.date.desc()).limit(limit))
        return list(result.scalars().all())

    async def count_documents(self) -> int:
        result = await self._db.execute(select(func.count(Document.id)))
        return result.scalar() or 0

    async def create_document(
        self, payload: DocumentPayload, measurements: list[ExtractedMeasurement]
    ) -> Document:
        """Insert a document together with its measurements."""
        document = Document(id=uuid.uuid4(), **payload.model_dump(include=set(DOCUMENT_FIELDS)))
        document.measurements = [
            Measurement(id=uuid.uuid4(), name=m.name, value=m.value, unit=m.unit, date=payload.date)
            for m in measurements
        ]
        self._db.add(document)
        await self._db.flush()
        logger.info("Created document %s with %d measurements", document.id, len(measurements))
        return document

    async def update_document(self, document_id: uuid.UUID, fields: dict[str, Any]) -> Document | None:
        """Overwrite document columns; measurements are left untouched."""
        document = await self._db.get(Document, document_id, with_for_update=True)
        if document is None:
            return None
        for name, value in fields.items():
            if name in DOCUMENT_FIELDS:
                setattr(document, name, value)
        await self._db.flush()
        return document

    async def delete_document(self, document_id: uuid.UUID) -> bool:
        document = await self._db.get(Document, document_id)
        if document is None:
            return False
        await self._db.delete(document)
        await self._db.flush()
        return True

    async def list_measurements(
        self,
        date_from: dt.date | None = None,
        date_to: dt.date | None = None,
    ) -> list[Measurement]:
        """Measurements in the period, oldest first, with their documents loaded."""
        stmt = select(Measurement).options(selectinload(Measurement.document))
        if date_from:
            stmt = stmt.where(Measurement.date >= date_from)
        if date_to:
            stmt = stmt.where(Measurement.date <= date_to)
        result = await self._db.execute(stmt.order_by(Measurement.date.asc(), Measurement.created_at.asc()))
        return list(result.scalars().all())

    async def replace_measurements(
        self, document: Document, measurements: list[ExtractedMeasurement]
    ) -> None:
        """Swap a document's measurements for a freshly extracted set."""
        document.measurements = [
            Measurement(id=uuid.uuid4(), name=m.name, value=m.value, unit=m.unit, date=document.date)
            for m in measurements
        ]
        await self._db.flush()

    # ── Pending decisions ────────────────────────────────────────────

    async def add_pending(
        self,
        conversation_key: str,
        payload: DocumentPayload,
        duplicate_id: uuid.UUID,
        reason: str,
        confidence: float,
        expires_at: dt.datetime,
    ) -> PendingDecision:
        pending = PendingDecision(
            id=uuid.uuid4(),
            conversation_key=conversation_key,
            payload=payload.model_dump(mode="json"),
            duplicate_id=duplicate_id,
            duplicate_reason=reason,
            confidence=confidence,
            expires_at=expires_at,
        )
        self._db.add(pending)
        await self._db.flush()
        return pending

    async def set_pending_message(self, pending_id: uuid.UUID, message_ref: str) -> None:
        pending = await self._db.get(PendingDecision, pending_id)
        if pending is not None:
            pending.message_ref = message_ref

    async def lock_pending(self, pending_id: uuid.UUID) -> PendingDecision | None:
        """Fetch a pending decision with a row lock held until commit.

        A concurrent resolver blocks here and then finds the row gone.
        """
        result = await self._db.execute(
            select(PendingDecision).where(PendingDecision.id == pending_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def delete_pending(self, pending: PendingDecision) -> None:
        await self._db.delete(pending)
        await self._db.flush()

    async def count_pending(self, conversation_key: str) -> int:
        result = await self._db.execute(
            select(func.count(PendingDecision.id)).where(PendingDecision.conversation_key == conversation_key)
        )
        return result.scalar() or 0

    async def purge_expired_pending(self, now: dt.datetime) -> int:
        result = await self._db.execute(delete(PendingDecision).where(PendingDecision.expires_at <= now))
        return result.rowcount or 0

    # ── Batch sessions ───────────────────────────────────────────────

    async def get_batch(self, conversation_key: str) -> BatchSession | None:
        result = await self._db.execute(
            select(BatchSession).where(BatchSession.conversation_key == conversation_key)
        )
        return result.scalar_one_or_none()

    async def lock_batch(self, conversation_key: str) -> BatchSession | None:
        """Fetch the batch session with a row lock held until commit."""
        result = await self._db.execute(
            select(BatchSession).where(BatchSession.conversation_key == conversation_key).with_for_update()
        )
        return result.scalar_one_or_none()

    async def ensure_batch(self, conversation_key: str, now: dt.datetime) -> tuple[BatchSession, bool]:
        """Lock the conversation's batch session, creating it if absent.

        Returns the session and whether this call created it. Concurrent
        callers for the same key end up sharing one row.
        """
        result = await self._db.execute(
            pg_insert(BatchSession)
            .values(
                id=uuid.uuid4(),
                conversation_key=conversation_key,
                state=BatchState.ACTIVE.value,
                started_at=now,
            )
            .on_conflict_do_nothing(index_elements=[BatchSession.conversation_key])
            .returning(BatchSession.id)
        )
        created = result.scalar_one_or_none() is not None
        batch = await self.lock_batch(conversation_key)
        if batch is None:
            msg = f"Batch session for {conversation_key} vanished after insert"
            raise RuntimeError(msg)
        return batch, created

    async def add_batch_page(
        self,
        batch: BatchSession,
        file_url: str,
        mime_type: str,
        file_name: str | None,
        now: dt.datetime,
    ) -> BatchPage:
        sequence = len(batch.pages) + 1
        page = BatchPage(
            id=uuid.uuid4(),
            sequence=sequence,
            page_key=f"{batch.id}-{sequence}",
            file_url=file_url,
            file_name=file_name,
            mime_type=mime_type,
            received_at=now,
        )
        batch.pages.append(page)
        await self._db.flush()
        return page

    async def delete_batch(self, batch: BatchSession) -> None:
        await self._db.delete(batch)
        await self._db.flush()

    async def purge_stale_batches(self, started_before: dt.datetime) -> int:
        result = await self._db.execute(delete(BatchSession).where(BatchSession.started_at < started_before))
        return result.rowcount or 0

    # ── Diary ────────────────────────────────────────────────────────

    async def add_vital(self, vital: VitalSign) -> VitalSign:
        self._db.add(vital)
        await self._db.flush()
        return vital

    async def list_vitals(self, since: dt.datetime, vital_type: str | None = None) -> list[VitalSign]:
        """Readings since the given moment, newest first."""
        stmt = select(VitalSign).where(VitalSign.recorded_at >= since)
        if vital_type:
            stmt = stmt.where(VitalSign.type == vital_type)
        result = await self._db.execute(stmt.order_by(VitalSign.recorded_at.desc()))
        return list(result.scalars().all())

    async def add_symptom(self, symptom: Symptom) -> Symptom:
        self._db.add(symptom)
        await self._db.flush()
        return symptom

    async def list_symptoms(self, since: dt.datetime) -> list[Symptom]:
        result = await self._db.execute(
            select(Symptom).where(Symptom.recorded_at >= since).order_by(Symptom.recorded_at.desc())
        )
        return list(result.scalars().all())

    async def add_medication(self, medication: Medication) -> Medication:
        self._db.add(medication)
        await self._db.flush()
        return medication

    async def list_medications(self, active_only: bool = True) -> list[Medication]:
        stmt = select(Medication)
        if active_only:
            stmt = stmt.where(Medication.is_active.is_(True))
        result = await self._db.execute(stmt.order_by(Medication.start_date.desc()))
        return list(result.scalars().all())

    async def update_medication(self, medication_id: uuid.UUID, fields: dict[str, Any]) -> Medication | None:
        medication = await self._db.get(Medication, medication_id, with_for_update=True)
        if medication is None:
            return None
        for name, value in fields.items():
            if name in MEDICATION_FIELDS:
                setattr(medication, name, value)
        await self._db.flush()
        return medication

    async def add_procedure(self, procedure: Procedure) -> Procedure:
        self._db.add(procedure)
        await self._db.flush()
        await self._db.refresh(procedure, attribute_names=["document"])
        return procedure

    async def list_procedures(
        self,
        procedure_type: str | None = None,
        date_from: dt.date | None = None,
        date_to: dt.date | None = None,
    ) -> list[Procedure]:
        stmt = select(Procedure)
        if procedure_type:
            stmt = stmt.where(Procedure.type == procedure_type)
        if date_from:
            stmt = stmt.where(Procedure.date >= date_from)
        if date_to:
            stmt = stmt.where(Procedure.date <= date_to)
        result = await self._db.execute(stmt.order_by(Procedure.date.desc()))
        return list(result.scalars().all())

    # ── Export ───────────────────────────────────────────────────────

    async def documents_by_ids(self, document_ids: list[uuid.UUID]) -> list[Document]:
        result = await self._db.execute(
            select(Document).where(Document.id.in_(document_ids)).order_by(Document.date.asc())
        )
        return list(result.scalars().all())

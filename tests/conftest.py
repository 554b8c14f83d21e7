"""Shared test doubles: in-memory record store, blob store, analyzer and notifier.

The in-memory store keeps the semantics the intake code relies on: a unit of
work is all-or-nothing (rolled back on exception) and units of work run one
at a time, which stands in for the row locks of PostgreSQL.
"""

from __future__ import annotations

import asyncio
import contextlib
import datetime as dt
import io
import uuid
from collections.abc import AsyncIterator
from typing import Any

import pytest
from PIL import Image
from sqlalchemy.exc import SQLAlchemyError

from medcard import events
from medcard.models.batch import BatchPage, BatchSession
from medcard.models.diary import Medication, Procedure, Symptom, VitalSign
from medcard.models.document import Document, Measurement
from medcard.models.enums import BatchState
from medcard.models.pending import PendingDecision
from medcard.notify import PromptOption
from medcard.schemas.analysis import AnalysisResult
from medcard.schemas.intake import DocumentPayload, ExtractedMeasurement, StoredFile
from medcard.storage.blob import BlobStoreError
from medcard.store.records import DOCUMENT_FIELDS, MEDICATION_FIELDS

NOW = dt.datetime(2025, 3, 25, 10, 0, tzinfo=dt.UTC)


class FakeClock:
    def __init__(self, now: dt.datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += dt.timedelta(**kwargs)


# ── Record store ─────────────────────────────────────────────────────


class InMemoryRecordStore:
    def __init__(self) -> None:
        self.documents: dict[uuid.UUID, Document] = {}
        self.pending: dict[uuid.UUID, PendingDecision] = {}
        self.batches: dict[str, BatchSession] = {}
        self.vitals: list[VitalSign] = []
        self.symptoms: list[Symptom] = []
        self.medications: dict[uuid.UUID, Medication] = {}
        self.procedures: list[Procedure] = []
        self.created_order: list[uuid.UUID] = []
        self.fail_on: set[str] = set()
        self._lock = asyncio.Lock()

    @contextlib.asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[InMemoryRecords]:
        async with self._lock:
            snapshot = self._snapshot()
            try:
                yield InMemoryRecords(self)
            except BaseException:
                self._restore(snapshot)
                raise

    def _snapshot(self) -> tuple[Any, ...]:
        documents = {
            doc_id: (doc, {f: getattr(doc, f) for f in DOCUMENT_FIELDS}, list(doc.measurements))
            for doc_id, doc in self.documents.items()
        }
        batches = {key: (batch, list(batch.pages)) for key, batch in self.batches.items()}
        medications = {
            mid: (med, {f: getattr(med, f) for f in MEDICATION_FIELDS}) for mid, med in self.medications.items()
        }
        diary = (list(self.vitals), list(self.symptoms), medications, list(self.procedures))
        return documents, dict(self.pending), batches, list(self.created_order), diary

    def _restore(self, snapshot: tuple[Any, ...]) -> None:
        documents, pending, batches, order, diary = snapshot
        self.documents = {}
        for doc_id, (doc, fields, measurements) in documents.items():
            for name, value in fields.items():
                setattr(doc, name, value)
            doc.measurements = measurements
            self.documents[doc_id] = doc
        self.pending = pending
        self.batches = {}
        for key, (batch, pages) in batches.items():
            batch.pages = pages
            self.batches[key] = batch
        self.created_order = order
        self.vitals, self.symptoms, medications, self.procedures = diary
        self.medications = {}
        for mid, (med, fields) in medications.items():
            for name, value in fields.items():
                setattr(med, name, value)
            self.medications[mid] = med


class InMemoryRecords:
    def __init__(self, store: InMemoryRecordStore) -> None:
        self._s = store

    def _maybe_fail(self, operation: str) -> None:
        if operation in self._s.fail_on:
            msg = f"injected failure in {operation}"
            raise SQLAlchemyError(msg)

    # Documents

    async def find_by_date_range(self, start: dt.date, end: dt.date, limit: int) -> list[Document]:
        docs = [d for d in self._ordered() if start <= d.date <= end]
        docs.sort(key=lambda d: d.date, reverse=True)
        return docs[:limit]

    async def get_document(self, document_id: uuid.UUID) -> Document | None:
        return self._s.documents.get(document_id)

    async def list_documents(
        self, category: str | None = None, subtype: str | None = None, limit: int = 50, offset: int = 0
    ) -> list[Document]:
        docs = [
            d for d in self._ordered()
            if (not category or d.category == category) and (not subtype or d.subtype == subtype)
        ]
        docs.sort(key=lambda d: d.date, reverse=True)
        return docs[offset:offset + limit]

    async def latest_documents(self, limit: int = 5) -> list[Document]:
        return list(reversed(self._ordered()))[:limit]

    async def all_documents(self, limit: int = 2000) -> list[Document]:
        return sorted(self._ordered(), key=lambda d: d.date, reverse=True)[:limit]

    async def count_documents(self) -> int:
        return len(self._s.documents)

    async def create_document(
        self, payload: DocumentPayload, measurements: list[ExtractedMeasurement]
    ) -> Document:
        self._maybe_fail("create_document")
        document = Document(id=uuid.uuid4(), **payload.model_dump(include=set(DOCUMENT_FIELDS)))
        document.created_at = dt.datetime.now(dt.UTC)
        document.measurements = [
            Measurement(
                id=uuid.uuid4(), document_id=document.id, name=m.name, value=m.value, unit=m.unit, date=payload.date
            )
            for m in measurements
        ]
        self._s.documents[document.id] = document
        self._s.created_order.append(document.id)
        return document

    async def update_document(self, document_id: uuid.UUID, fields: dict[str, Any]) -> Document | None:
        self._maybe_fail("update_document")
        document = self._s.documents.get(document_id)
        if document is None:
            return None
        for name, value in fields.items():
            if name in DOCUMENT_FIELDS:
                setattr(document, name, value)
        return document

    async def delete_document(self, document_id: uuid.UUID) -> bool:
        if document_id not in self._s.documents:
            return False
        del self._s.documents[document_id]
        self._s.created_order.remove(document_id)
        return True

    async def list_measurements(
        self, date_from: dt.date | None = None, date_to: dt.date | None = None
    ) -> list[Measurement]:
        result = [
            m for d in self._ordered() for m in d.measurements
            if (date_from is None or m.date >= date_from) and (date_to is None or m.date <= date_to)
        ]
        return sorted(result, key=lambda m: m.date)

    async def replace_measurements(self, document: Document, measurements: list[ExtractedMeasurement]) -> None:
        document.measurements = [
            Measurement(
                id=uuid.uuid4(), document_id=document.id, name=m.name, value=m.value, unit=m.unit, date=document.date
            )
            for m in measurements
        ]

    def _ordered(self) -> list[Document]:
        return [self._s.documents[i] for i in self._s.created_order if i in self._s.documents]

    # Pending decisions

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
        self._s.pending[pending.id] = pending
        return pending

    async def set_pending_message(self, pending_id: uuid.UUID, message_ref: str) -> None:
        pending = self._s.pending.get(pending_id)
        if pending is not None:
            pending.message_ref = message_ref

    async def lock_pending(self, pending_id: uuid.UUID) -> PendingDecision | None:
        return self._s.pending.get(pending_id)

    async def delete_pending(self, pending: PendingDecision) -> None:
        self._s.pending.pop(pending.id, None)

    async def count_pending(self, conversation_key: str) -> int:
        return sum(1 for p in self._s.pending.values() if p.conversation_key == conversation_key)

    async def purge_expired_pending(self, now: dt.datetime) -> int:
        expired = [pid for pid, p in self._s.pending.items() if p.expires_at <= now]
        for pid in expired:
            del self._s.pending[pid]
        return len(expired)

    # Batch sessions

    async def get_batch(self, conversation_key: str) -> BatchSession | None:
        return self._s.batches.get(conversation_key)

    async def lock_batch(self, conversation_key: str) -> BatchSession | None:
        return self._s.batches.get(conversation_key)

    async def ensure_batch(self, conversation_key: str, now: dt.datetime) -> tuple[BatchSession, bool]:
        existing = self._s.batches.get(conversation_key)
        if existing is not None:
            return existing, False
        batch = BatchSession(
            id=uuid.uuid4(), conversation_key=conversation_key, state=BatchState.ACTIVE.value, started_at=now
        )
        batch.pages = []
        self._s.batches[conversation_key] = batch
        return batch, True

    async def add_batch_page(
        self, batch: BatchSession, file_url: str, mime_type: str, file_name: str | None, now: dt.datetime
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
        return page

    async def delete_batch(self, batch: BatchSession) -> None:
        self._s.batches.pop(batch.conversation_key, None)

    async def purge_stale_batches(self, started_before: dt.datetime) -> int:
        stale = [k for k, b in self._s.batches.items() if b.started_at < started_before]
        for key in stale:
            del self._s.batches[key]
        return len(stale)

    # Diary

    async def add_vital(self, vital: VitalSign) -> VitalSign:
        self._maybe_fail("add_vital")
        vital.id = vital.id or uuid.uuid4()
        self._s.vitals.append(vital)
        return vital

    async def list_vitals(self, since: dt.datetime, vital_type: str | None = None) -> list[VitalSign]:
        found = [v for v in self._s.vitals if v.recorded_at >= since and (not vital_type or v.type == vital_type)]
        return sorted(found, key=lambda v: v.recorded_at, reverse=True)

    async def add_symptom(self, symptom: Symptom) -> Symptom:
        symptom.id = symptom.id or uuid.uuid4()
        self._s.symptoms.append(symptom)
        return symptom

    async def list_symptoms(self, since: dt.datetime) -> list[Symptom]:
        found = [s for s in self._s.symptoms if s.recorded_at >= since]
        return sorted(found, key=lambda s: s.recorded_at, reverse=True)

    async def add_medication(self, medication: Medication) -> Medication:
        medication.id = medication.id or uuid.uuid4()
        if medication.is_active is None:
            medication.is_active = True
        self._s.medications[medication.id] = medication
        return medication

    async def list_medications(self, active_only: bool = True) -> list[Medication]:
        found = [m for m in self._s.medications.values() if m.is_active or not active_only]
        return sorted(found, key=lambda m: m.start_date, reverse=True)

    async def update_medication(self, medication_id: uuid.UUID, fields: dict[str, Any]) -> Medication | None:
        medication = self._s.medications.get(medication_id)
        if medication is None:
            return None
        for name, value in fields.items():
            if name in MEDICATION_FIELDS:
                setattr(medication, name, value)
        return medication

    async def add_procedure(self, procedure: Procedure) -> Procedure:
        procedure.id = procedure.id or uuid.uuid4()
        procedure.document = self._s.documents.get(procedure.document_id) if procedure.document_id else None
        self._s.procedures.append(procedure)
        return procedure

    async def list_procedures(
        self, procedure_type: str | None = None, date_from: dt.date | None = None, date_to: dt.date | None = None
    ) -> list[Procedure]:
        found = [
            p for p in self._s.procedures
            if (not procedure_type or p.type == procedure_type)
            and (date_from is None or p.date >= date_from)
            and (date_to is None or p.date <= date_to)
        ]
        return sorted(found, key=lambda p: p.date, reverse=True)

    # Export

    async def documents_by_ids(self, document_ids: list[uuid.UUID]) -> list[Document]:
        found = [self._s.documents[i] for i in document_ids if i in self._s.documents]
        return sorted(found, key=lambda d: d.date)


# ── Blob store, analyzer, notifier ───────────────────────────────────


class FakeBlobStore:
    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.names: dict[str, str] = {}
        self.fail_put = False

    async def put(self, data: bytes, name: str, mime_type: str) -> str:
        if self.fail_put:
            raise BlobStoreError("disk full")
        url = f"http://testserver/files/{len(self.blobs) + 1}-{name}"
        self.blobs[url] = data
        self.names[url] = name
        return url

    async def get(self, url: str) -> bytes:
        if url not in self.blobs:
            raise BlobStoreError(f"missing {url}")
        return self.blobs[url]

    async def delete(self, url: str) -> None:
        self.blobs.pop(url, None)


class FakeAnalyzer:
    def __init__(self, result: AnalysisResult | None = None) -> None:
        self.result = result or AnalysisResult(category="анализы", subtype="кровь", title="Анализ крови")
        self.error: Exception | None = None
        self.calls: list[list[StoredFile]] = []

    async def analyze(self, url: str, mime_type: str) -> AnalysisResult:
        return await self.analyze_multiple([StoredFile(url, mime_type)])

    async def analyze_multiple(self, pages: list[StoredFile]) -> AnalysisResult:
        self.calls.append(list(pages))
        if self.error is not None:
            raise self.error
        return self.result


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, list[PromptOption] | None]] = []
        self.edits: list[tuple[str, str, str]] = []

    async def notify(
        self, conversation_key: str, text: str, options: list[PromptOption] | None = None
    ) -> str | None:
        self.sent.append((conversation_key, text, options))
        return f"msg-{len(self.sent)}"

    async def edit(self, conversation_key: str, message_ref: str, text: str) -> None:
        self.edits.append((conversation_key, message_ref, text))


def make_jpeg(color: str = "white", size: tuple[int, int] = (64, 48)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="JPEG")
    return buffer.getvalue()


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _reset_event_bus():
    """Each test gets a fresh event queue bound to its own loop."""
    events.bus = events.EventBus()
    yield
    events.bus = events.EventBus()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture()
def blobs() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture()
def analyzer() -> FakeAnalyzer:
    return FakeAnalyzer()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def orchestrator(store, blobs, analyzer, notifier, clock):
    from medcard.intake.orchestrator import IntakeOrchestrator

    return IntakeOrchestrator(store, blobs, analyzer, notifier, clock=clock)


@pytest.fixture()
def collector(store, blobs, orchestrator, clock):
    from medcard.intake.batch import BatchCollector

    return BatchCollector(store, blobs, orchestrator, clock=clock)


@pytest.fixture()
def jpeg() -> bytes:
    return make_jpeg()

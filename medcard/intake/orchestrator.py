"""Intake orchestrator — from inbound files to a saved document or a pending decision.

Steps run strictly in order for one submission:

    1. store every file in blob storage (one combined PDF for multi-page photos)
    2. one analyzer call (multi-page when more than one file)
    3. taxonomy normalization
    4. document date: analyzer date if parseable, else today
    5. candidate pool: documents within ±7 days, most recent first, at most 20
    6. first-match duplicate check
    7. no match → document + measurements in one transaction
    8. match → PendingDecision (1 hour) and a three-option prompt; when the
       prompt cannot be delivered the document is saved and flagged instead

resolve() is the second entry point, invoked by a later request (a button
press or an API call) to add, replace or cancel a pending decision.
"""

from __future__ import annotations

import datetime as dt
import logging
import uuid
from collections.abc import Callable
from dataclasses import replace

import httpx
from sqlalchemy.exc import SQLAlchemyError

from medcard import formatters
from medcard.config import settings
from medcard.events import emit
from medcard.intake.duplicates import DocumentSignal, find_duplicate
from medcard.intake.images import ImageProcessingError, is_image, merge_pages_to_pdf, normalize_image
from medcard.intake.metrics import extract_measurements
from medcard.intake.taxonomy import normalize_document_type, subtype_label
from medcard.llm.client import AnalyzerError, DocumentAnalyzer
from medcard.llm.parsing import AnalysisParseError
from medcard.models.enums import DecisionAction
from medcard.models.pending import PendingDecision
from medcard.notify import Notifier, PromptOption
from medcard.schemas.analysis import AnalysisResult
from medcard.schemas.events import EventType, SystemEvent
from medcard.schemas.intake import (
    DocumentCreated,
    DocumentPayload,
    InboundFile,
    IntakeFailed,
    IntakeOutcome,
    PendingDecisionCreated,
    ResolutionOutcome,
    ResolutionStatus,
    StoredFile,
)
from medcard.storage.blob import BlobStoreError, LocalBlobStore
from medcard.store.records import DOCUMENT_FIELDS, Records, RecordStore

logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"
JPEG_MIME = "image/jpeg"

ANALYSIS_ERRORS = (AnalyzerError, AnalysisParseError, httpx.HTTPError, BlobStoreError)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class IntakeError(Exception):
    """Raised when a submission cannot be stored; nothing has been saved."""

    def __init__(self, message: str, user_message: str = formatters.INTAKE_FAILED_MESSAGE) -> None:
        super().__init__(message)
        self.user_message = user_message


class IntakeOrchestrator:
    """Drives a submission through analysis, duplicate check and persistence."""

    def __init__(
        self,
        store: RecordStore,
        blobs: LocalBlobStore,
        analyzer: DocumentAnalyzer,
        notifier: Notifier,
        clock: Callable[[], dt.datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._blobs = blobs
        self._analyzer = analyzer
        self._notifier = notifier
        self._clock = clock

    # ── Ingest ───────────────────────────────────────────────────────

    async def ingest(
        self,
        conversation_key: str,
        files: list[InboundFile],
        caption: str | None = None,
    ) -> IntakeOutcome:
        """Run one submission (one file, several pages, or a finished batch).

        Never raises for storage failures: they come back as IntakeFailed and
        nothing is committed.
        """
        if not files:
            return IntakeFailed(error="Нет файлов для обработки")

        await emit(SystemEvent(
            event_type=EventType.DOCUMENT_RECEIVED,
            conversation_key=conversation_key,
            data={"files": len(files), "mime_types": [f.mime_type for f in files]},
            source_module="intake.orchestrator",
        ))

        try:
            pages, attachment = await self._store_files(files)
            analysis = await self._analyze(conversation_key, pages)
            payload = self._build_payload(analysis, attachment, caption, len(pages))
            # Untitled documents are compared without the subtype label default
            candidate = replace(DocumentSignal.from_document(payload), title=analysis.title.strip())
            return await self._save_or_park(conversation_key, payload, candidate, len(pages))
        except (IntakeError, BlobStoreError, ImageProcessingError, SQLAlchemyError) as exc:
            logger.exception("Intake failed for %s", conversation_key)
            await emit(SystemEvent(
                event_type=EventType.INTAKE_FAILED,
                conversation_key=conversation_key,
                data={"error": str(exc)},
                source_module="intake.orchestrator",
            ))
            user_message = getattr(exc, "user_message", formatters.INTAKE_FAILED_MESSAGE)
            return IntakeFailed(error=user_message)

    async def _store_files(self, files: list[InboundFile]) -> tuple[list[StoredFile], StoredFile]:
        """Upload every file; return the analyzer pages and the document attachment."""
        if len(files) > 1 and not all(is_image(f.mime_type) for f in files):
            raise IntakeError(
                f"Multi-file submission with non-image files: {[f.mime_type for f in files]}",
                user_message=formatters.MIXED_PAGES_MESSAGE,
            )

        now = self._clock()
        pages: list[StoredFile] = []
        page_bytes: list[bytes] = []

        for inbound in files:
            if inbound.url is not None:
                pages.append(StoredFile(inbound.url, inbound.mime_type, inbound.file_name))
                if len(files) > 1:
                    page_bytes.append(await self._blobs.get(inbound.url))
                continue

            data = inbound.data or b""
            mime_type = inbound.mime_type
            if not is_image(mime_type) and mime_type != PDF_MIME:
                raise IntakeError(
                    f"Unsupported file type: {mime_type}",
                    user_message="❌ Поддерживаются только фото и PDF.",
                )
            name = inbound.file_name
            if is_image(mime_type):
                data = normalize_image(data)
                mime_type = JPEG_MIME
                name = name or formatters.upload_file_name(now)
                page_bytes.append(data)
            name = name or f"telegram-{int(now.timestamp() * 1000)}.pdf"
            url = await self._blobs.put(data, name, mime_type)
            pages.append(StoredFile(url, mime_type, name))

        if len(pages) == 1:
            return pages, pages[0]

        # Several photos are kept as one PDF attachment
        combined_name = f"telegram-{int(now.timestamp() * 1000)}-combined.pdf"
        combined = merge_pages_to_pdf(page_bytes)
        url = await self._blobs.put(combined, combined_name, PDF_MIME)
        return pages, StoredFile(url, PDF_MIME, combined_name)

    async def _analyze(self, conversation_key: str, pages: list[StoredFile]) -> AnalysisResult:
        """One analyzer call; any failure degrades to the manual-review fallback."""
        try:
            if len(pages) == 1:
                result = await self._analyzer.analyze(pages[0].url, pages[0].mime_type)
            else:
                result = await self._analyzer.analyze_multiple(pages)
        except ANALYSIS_ERRORS as exc:
            logger.warning("Analysis failed for %s: %s", conversation_key, exc)
            await emit(SystemEvent(
                event_type=EventType.ANALYSIS_FAILED,
                conversation_key=conversation_key,
                data={"error": str(exc), "pages": len(pages)},
                source_module="intake.orchestrator",
            ))
            return AnalysisResult.fallback(getattr(exc, "raw_output", ""))

        await emit(SystemEvent(
            event_type=EventType.DOCUMENT_ANALYZED,
            conversation_key=conversation_key,
            data={"category": result.category, "subtype": result.subtype, "confidence": result.confidence},
            source_module="intake.orchestrator",
        ))
        return result

    def _build_payload(
        self,
        analysis: AnalysisResult,
        attachment: StoredFile,
        caption: str | None,
        page_count: int,
    ) -> DocumentPayload:
        category, subtype = normalize_document_type(analysis.category, analysis.subtype)
        content = caption or (f"Документ из {page_count} страниц" if page_count > 1 else None)
        return DocumentPayload(
            date=analysis.parsed_date() or self._clock().date(),
            category=category,
            subtype=subtype,
            title=analysis.title.strip() or subtype_label(subtype.value),
            doctor=analysis.doctor,
            specialty=analysis.specialty,
            clinic=analysis.clinic,
            summary=analysis.summary,
            conclusion=analysis.conclusion,
            recommendations=analysis.recommendations,
            content=content,
            file_url=attachment.url,
            file_name=attachment.file_name,
            file_type=attachment.mime_type,
            tags=analysis.tags,
            key_values=analysis.key_values or None,
        )

    async def _save_or_park(
        self, conversation_key: str, payload: DocumentPayload, candidate: DocumentSignal, page_count: int
    ) -> IntakeOutcome:
        window = dt.timedelta(days=settings.intake.duplicate_window_days)

        async with self._store.unit_of_work() as records:
            pool = await records.find_by_date_range(
                payload.date - window,
                payload.date + window,
                settings.intake.duplicate_pool_limit,
            )
            match = find_duplicate([DocumentSignal.from_document(doc) for doc in pool], candidate)

            if match is None:
                measurements = extract_measurements(payload.key_values)
                document = await records.create_document(payload, measurements)
                document_id = document.id
            else:
                existing = next(doc for doc in pool if doc.id == match.document.id)
                pending = await records.add_pending(
                    conversation_key=conversation_key,
                    payload=payload,
                    duplicate_id=existing.id,
                    reason=match.reason,
                    confidence=match.confidence,
                    expires_at=self._clock() + dt.timedelta(minutes=settings.intake.pending_ttl_minutes),
                )
                pending_id = pending.id
                existing_title, existing_date = existing.title, existing.date

        if match is None:
            await emit(SystemEvent(
                event_type=EventType.DOCUMENT_SAVED,
                document_id=document_id,
                conversation_key=conversation_key,
                data={"category": payload.category, "subtype": payload.subtype, "measurements": len(measurements)},
                source_module="intake.orchestrator",
            ))
            logger.info("Saved document %s for %s", document_id, conversation_key)
            return DocumentCreated(document_id, payload, measurements, page_count)

        await emit(SystemEvent(
            event_type=EventType.DUPLICATE_DETECTED,
            document_id=match.document.id,
            conversation_key=conversation_key,
            data={"pending_id": str(pending_id), "reason": match.reason, "confidence": match.confidence},
            source_module="intake.orchestrator",
        ))
        prompted = await self._prompt(conversation_key, pending_id, payload, match.document.id, existing_title,
                                      existing_date, match.reason)
        if prompted:
            return PendingDecisionCreated(pending_id, match.document.id, match.reason, match.confidence, payload)

        # Nobody can answer an undelivered prompt; keep the document instead
        resolution = await self.resolve(conversation_key, pending_id, DecisionAction.ADD)
        if resolution.status != ResolutionStatus.ADDED or resolution.document_id is None:
            return IntakeFailed(error=formatters.INTAKE_FAILED_MESSAGE)
        return DocumentCreated(
            resolution.document_id,
            payload,
            extract_measurements(payload.key_values),
            page_count,
            possible_duplicate_of=match.document.id,
        )

    async def _prompt(
        self,
        conversation_key: str,
        pending_id: uuid.UUID,
        payload: DocumentPayload,
        existing_id: uuid.UUID,
        existing_title: str,
        existing_date: dt.date,
        reason: str,
    ) -> bool:
        """Send the three-option prompt. False when it could not be delivered."""
        text = formatters.duplicate_prompt_message(payload, existing_id, existing_title, existing_date, reason)
        options = [
            PromptOption("➕ Добавить как новый", f"{DecisionAction.ADD.value}:{pending_id}"),
            PromptOption("🔄 Заменить существующий", f"{DecisionAction.REPLACE.value}:{pending_id}"),
            PromptOption("❌ Отмена", f"{DecisionAction.CANCEL.value}:{pending_id}"),
        ]
        try:
            message_ref = await self._notifier.notify(conversation_key, text, options)
        except Exception:
            logger.exception("Failed to send duplicate prompt for %s", pending_id)
            return False
        if message_ref is not None:
            try:
                async with self._store.unit_of_work() as records:
                    await records.set_pending_message(pending_id, message_ref)
            except SQLAlchemyError:
                # The prompt is out; its buttons still carry the pending id
                logger.exception("Failed to remember prompt %s for %s", message_ref, pending_id)
        return True

    # ── Resolve ──────────────────────────────────────────────────────

    async def resolve(
        self,
        conversation_key: str,
        pending_id: uuid.UUID,
        action: DecisionAction,
        message_ref: str | None = None,
    ) -> ResolutionOutcome:
        """Apply the user's choice to a pending decision, exactly once.

        The decision row is locked, the document mutation applied and the row
        deleted in a single transaction. A second resolver finds nothing and
        gets EXPIRED. On failure everything rolls back and the row survives.
        """
        now = self._clock()
        try:
            async with self._store.unit_of_work() as records:
                pending = await records.lock_pending(pending_id)
                if pending is None or pending.conversation_key != conversation_key:
                    outcome = ResolutionOutcome(ResolutionStatus.EXPIRED)
                elif pending.is_expired(now):
                    await records.delete_pending(pending)
                    outcome = ResolutionOutcome(ResolutionStatus.EXPIRED)
                else:
                    message_ref = message_ref or pending.message_ref
                    outcome = await self._apply(records, pending, action)
        except Exception as exc:
            logger.exception("Resolution of %s (%s) failed", pending_id, action.value)
            outcome = ResolutionOutcome(ResolutionStatus.FAILED, error=str(exc))
            await self._safe_notify(conversation_key, formatters.RESOLUTION_FAILED_MESSAGE)
            return outcome

        await self._after_resolution(conversation_key, pending_id, action, outcome, message_ref)
        return outcome

    async def _apply(
        self, records: Records, pending: PendingDecision, action: DecisionAction
    ) -> ResolutionOutcome:
        payload = DocumentPayload.model_validate(pending.payload)

        if action == DecisionAction.ADD:
            measurements = extract_measurements(payload.key_values)
            document = await records.create_document(payload, measurements)
            await records.delete_pending(pending)
            return ResolutionOutcome(ResolutionStatus.ADDED, document_id=document.id, payload=payload)

        if action == DecisionAction.REPLACE:
            # Measurements of the replaced document are kept as they were
            fields = payload.model_dump(include=set(DOCUMENT_FIELDS))
            document = await records.update_document(pending.duplicate_id, fields)
            await records.delete_pending(pending)
            if document is None:
                return ResolutionOutcome(ResolutionStatus.TARGET_MISSING, document_id=pending.duplicate_id)
            return ResolutionOutcome(ResolutionStatus.REPLACED, document_id=document.id, payload=payload)

        await records.delete_pending(pending)
        return ResolutionOutcome(ResolutionStatus.CANCELLED)

    async def _after_resolution(
        self,
        conversation_key: str,
        pending_id: uuid.UUID,
        action: DecisionAction,
        outcome: ResolutionOutcome,
        message_ref: str | None,
    ) -> None:
        if outcome.status == ResolutionStatus.EXPIRED:
            event_type = EventType.DUPLICATE_EXPIRED
        else:
            event_type = EventType.DUPLICATE_RESOLVED
        await emit(SystemEvent(
            event_type=event_type,
            document_id=outcome.document_id,
            conversation_key=conversation_key,
            data={"pending_id": str(pending_id), "action": action.value, "status": outcome.status.value},
            source_module="intake.orchestrator",
        ))
        if outcome.status == ResolutionStatus.ADDED:
            await emit(SystemEvent(
                event_type=EventType.DOCUMENT_SAVED,
                document_id=outcome.document_id,
                conversation_key=conversation_key,
                data={"via": "pending_decision"},
                source_module="intake.orchestrator",
            ))
        elif outcome.status == ResolutionStatus.REPLACED:
            await emit(SystemEvent(
                event_type=EventType.DOCUMENT_REPLACED,
                document_id=outcome.document_id,
                conversation_key=conversation_key,
                source_module="intake.orchestrator",
            ))

        text = _resolution_text(outcome)
        if message_ref:
            try:
                await self._notifier.edit(conversation_key, message_ref, text)
            except Exception:
                logger.exception("Failed to edit prompt %s", message_ref)

    async def _safe_notify(self, conversation_key: str, text: str) -> None:
        try:
            await self._notifier.notify(conversation_key, text)
        except Exception:
            logger.exception("Failed to notify %s", conversation_key)


def _resolution_text(outcome: ResolutionOutcome) -> str:
    match outcome.status:
        case ResolutionStatus.ADDED:
            return formatters.document_added_message(outcome.document_id, outcome.payload)
        case ResolutionStatus.REPLACED:
            return formatters.document_replaced_message(outcome.document_id, outcome.payload)
        case ResolutionStatus.CANCELLED:
            return formatters.CANCELLED_MESSAGE
        case ResolutionStatus.TARGET_MISSING:
            return formatters.TARGET_MISSING_MESSAGE
        case ResolutionStatus.EXPIRED:
            return formatters.EXPIRED_MESSAGE
        case _:
            return formatters.RESOLUTION_FAILED_MESSAGE

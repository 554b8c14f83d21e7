"""Web API: upload, duplicate resolution, document CRUD, export, search and metrics.

All routes require HTTP Basic Auth via the verify_user dependency. The
orchestrator and record store are taken from app.state, set up in the
lifespan of medcard.main.
"""
# ruff: noqa: B008

from __future__ import annotations

import datetime as dt
import io
import logging
import re
import uuid
import zipfile
from collections import defaultdict
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, Response, UploadFile, status

from medcard.api.auth import verify_user, web_key
from medcard.config import settings
from medcard.events import emit
from medcard.intake import metrics, taxonomy
from medcard.intake.orchestrator import IntakeOrchestrator
from medcard.models.document import Document, Measurement
from medcard.schemas.api import DocumentCreate, DocumentUpdate, DownloadRequest, ResolveRequest
from medcard.schemas.events import EventType, SystemEvent
from medcard.schemas.intake import (
    DocumentCreated,
    DocumentPayload,
    InboundFile,
    IntakeFailed,
    IntakeOutcome,
    PendingDecisionCreated,
    ResolutionOutcome,
)
from medcard.search import group_search_results, search_documents
from medcard.storage.blob import BlobStoreError, LocalBlobStore
from medcard.store.records import RecordStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["documents"])


def get_store(request: Request) -> RecordStore:
    return request.app.state.store


def get_orchestrator(request: Request) -> IntakeOrchestrator:
    return request.app.state.orchestrator


def get_blobs(request: Request) -> LocalBlobStore:
    return request.app.state.blobs


# ── Serialization ────────────────────────────────────────────────────


def outcome_to_dict(outcome: IntakeOutcome) -> dict[str, Any]:
    if isinstance(outcome, DocumentCreated):
        return {
            "status": "created",
            "document_id": str(outcome.document_id),
            "title": outcome.payload.title,
            "page_count": outcome.page_count,
            "possible_duplicate_of": (
                str(outcome.possible_duplicate_of) if outcome.possible_duplicate_of else None
            ),
            "measurements": [
                {"name": m.name, "value": m.value, "unit": m.unit} for m in outcome.measurements
            ],
        }
    if isinstance(outcome, PendingDecisionCreated):
        return {
            "status": "pending_decision",
            "pending_id": str(outcome.pending_id),
            "duplicate_id": str(outcome.duplicate_id),
            "reason": outcome.reason,
            "confidence": outcome.confidence,
            "title": outcome.payload.title,
        }
    return {"status": "failed", "error": outcome.error}


def resolution_to_dict(outcome: ResolutionOutcome) -> dict[str, Any]:
    return {
        "status": outcome.status.value,
        "document_id": str(outcome.document_id) if outcome.document_id else None,
        "error": outcome.error,
    }


# ── Intake ───────────────────────────────────────────────────────────


@router.post("/documents/upload")
async def upload_documents(
    files: list[UploadFile] = File(...),
    caption: str | None = Form(default=None),
    user: str = Depends(verify_user),
    orchestrator: IntakeOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """One or many files as a single submission (several files = several pages)."""
    inbound = [
        InboundFile(
            mime_type=upload.content_type or "application/octet-stream",
            data=await upload.read(),
            file_name=upload.filename,
        )
        for upload in files
    ]
    if not inbound or not any(f.data for f in inbound):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty upload")

    outcome = await orchestrator.ingest(web_key(user), inbound, caption)
    result = outcome_to_dict(outcome)
    if isinstance(outcome, IntakeFailed):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=result)
    return result


@router.post("/pending/{pending_id}/resolve")
async def resolve_pending(
    pending_id: uuid.UUID,
    body: ResolveRequest,
    user: str = Depends(verify_user),
    orchestrator: IntakeOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    outcome = await orchestrator.resolve(web_key(user), pending_id, body.action)
    return resolution_to_dict(outcome)


# ── Documents ────────────────────────────────────────────────────────


@router.get("/documents")
async def list_documents(
    category: str | None = Query(default=None),
    subtype: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _user: str = Depends(verify_user),
    store: RecordStore = Depends(get_store),
) -> dict[str, Any]:
    async with store.unit_of_work() as records:
        documents = await records.list_documents(category, subtype, limit, offset)
        total = await records.count_documents()
        return {"total": total, "documents": [d.as_dict() for d in documents]}


@router.post("/documents", status_code=status.HTTP_201_CREATED)
async def create_document(
    body: DocumentCreate,
    _user: str = Depends(verify_user),
    store: RecordStore = Depends(get_store),
) -> dict[str, Any]:
    category, subtype = taxonomy.normalize_document_type(body.category, body.subtype)
    payload = DocumentPayload(
        **body.model_dump(exclude={"category", "subtype"}),
        category=category,
        subtype=subtype,
    )
    async with store.unit_of_work() as records:
        document = await records.create_document(payload, metrics.extract_measurements(payload.key_values))
        return document.as_dict()


@router.get("/documents/{document_id}")
async def get_document(
    document_id: uuid.UUID,
    _user: str = Depends(verify_user),
    store: RecordStore = Depends(get_store),
) -> dict[str, Any]:
    async with store.unit_of_work() as records:
        document = await records.get_document(document_id)
        if document is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
        return document.as_dict()


@router.put("/documents/{document_id}")
async def update_document(
    document_id: uuid.UUID,
    body: DocumentUpdate,
    _user: str = Depends(verify_user),
    store: RecordStore = Depends(get_store),
) -> dict[str, Any]:
    fields = body.model_dump(exclude_unset=True)
    async with store.unit_of_work() as records:
        current = await records.get_document(document_id)
        if current is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")

        if "category" in fields or "subtype" in fields:
            category, subtype = taxonomy.normalize_document_type(
                fields.get("category", current.category),
                fields.get("subtype", current.subtype),
            )
            fields["category"], fields["subtype"] = category.value, subtype.value

        document = await records.update_document(document_id, fields)
        if document is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
        if "key_values" in fields or "date" in fields:
            await records.replace_measurements(document, metrics.extract_measurements(document.key_values))
        return document.as_dict()


@router.delete("/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_document(
    document_id: uuid.UUID,
    user: str = Depends(verify_user),
    store: RecordStore = Depends(get_store),
) -> None:
    async with store.unit_of_work() as records:
        deleted = await records.delete_document(document_id)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
    logger.info("Deleted document %s", document_id)
    await emit(SystemEvent(
        event_type=EventType.DOCUMENT_DELETED,
        document_id=document_id,
        conversation_key=web_key(user),
        source_module="api.documents",
    ))


# ── Export ───────────────────────────────────────────────────────────

_UNSAFE_TITLE = re.compile(r'[/\\?%*:|"<>]')


def export_file_name(document: Document) -> str:
    """'25-03-2025_Анализ крови.pdf': date, cleaned title, the file's extension."""
    suffix = PurePosixPath(document.file_name or "").suffix.lstrip(".") or "pdf"
    title = _UNSAFE_TITLE.sub("-", document.title)[:50]
    return f"{document.date:%d-%m-%Y}_{title}.{suffix}"


def _archive_name(patient_name: str) -> str:
    return f"{patient_name} - документы.zip" if patient_name else "documents.zip"


@router.post("/documents/download")
async def download_documents(
    body: DownloadRequest,
    user: str = Depends(verify_user),
    store: RecordStore = Depends(get_store),
    blobs: LocalBlobStore = Depends(get_blobs),
) -> Response:
    """ZIP archive of the selected documents' files, oldest first."""
    async with store.unit_of_work() as records:
        documents = await records.documents_by_ids(body.ids)
        entries = [(export_file_name(d), d.file_url) for d in documents if d.file_url]
    if not entries:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No files found")

    buffer = io.BytesIO()
    written = 0
    used: set[str] = set()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, url in entries:
            try:
                data = await blobs.get(url)
            except BlobStoreError as exc:
                logger.warning("Skipping %s in export: %s", url, exc)
                continue
            stem, dot, suffix = name.rpartition(".")
            unique, n = name, 1
            while unique in used:
                n += 1
                unique = f"{stem} ({n}){dot}{suffix}"
            used.add(unique)
            archive.writestr(unique, data)
            written += 1
    if not written:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No files found")

    await emit(SystemEvent(
        event_type=EventType.DOCUMENTS_EXPORTED,
        conversation_key=web_key(user),
        data={"requested": len(body.ids), "files": written},
        source_module="api.documents",
    ))
    filename = _archive_name(settings.patient.patient_full_name)
    return Response(
        content=buffer.getvalue(),
        media_type="application/zip",
        headers={"Content-Disposition": f"attachment; filename=\"documents.zip\"; filename*=UTF-8''{quote(filename)}"},
    )


# ── Search ───────────────────────────────────────────────────────────


@router.get("/search")
async def search(
    q: str = Query(default=""),
    _user: str = Depends(verify_user),
    store: RecordStore = Depends(get_store),
) -> dict[str, Any]:
    query = q.strip()
    if len(query) < 2:
        return {"query": query, "total": 0, "exact": [], "partial": [], "context": []}

    async with store.unit_of_work() as records:
        documents = await records.all_documents()
        grouped = group_search_results(search_documents(documents, query))
        return {
            "query": query,
            "total": grouped.total,
            "exact": [r.as_dict() for r in grouped.exact],
            "partial": [r.as_dict() for r in grouped.partial],
            "context": [r.as_dict() for r in grouped.context],
        }


# ── Metrics ──────────────────────────────────────────────────────────


def metric_series(measurements: list[Measurement]) -> list[dict[str, Any]]:
    """Group measurements by canonical name into chart-ready series."""
    by_name: dict[str, list[Measurement]] = defaultdict(list)
    for measurement in measurements:
        by_name[measurement.name].append(measurement)

    series: list[dict[str, Any]] = []
    for name, points in by_name.items():
        config = metrics.get_metric_config(name)
        if config is None:
            continue
        points.sort(key=lambda m: m.date)
        values = [p.value for p in points]
        first, last = values[0], values[-1]
        change = metrics.calculate_change(first, last) if len(values) > 1 else None
        series.append({
            "name": config.name,
            "unit": config.unit,
            "color": config.color,
            "description": config.description,
            "normal_min": config.normal_min,
            "normal_max": config.normal_max,
            "critical": config.critical,
            "data_points": [
                {
                    "date": p.date.isoformat(),
                    "value": p.value,
                    "document_id": str(p.document_id),
                    "document_title": p.document.title if p.document else None,
                }
                for p in points
            ],
            "first_value": first,
            "last_value": last,
            "min_value": min(values),
            "max_value": max(values),
            "change_percent": change.percent if change else None,
            "change_direction": change.direction if change else None,
            "last_status": metrics.value_status(config.name, last).value,
        })
    series.sort(key=lambda s: metrics.TRACKED_METRICS.index(s["name"]))
    return series


@router.get("/metrics")
async def get_metrics(
    date_from: dt.date | None = Query(default=None, alias="fromDate"),
    date_to: dt.date | None = Query(default=None, alias="toDate"),
    _user: str = Depends(verify_user),
    store: RecordStore = Depends(get_store),
) -> dict[str, Any]:
    async with store.unit_of_work() as records:
        measurements = await records.list_measurements(date_from, date_to)
        return {"metrics": metric_series(measurements)}


@router.post("/metrics/sync")
async def sync_metrics(
    force: bool = Query(default=False),
    _user: str = Depends(verify_user),
    store: RecordStore = Depends(get_store),
) -> dict[str, int]:
    """Re-extract measurements from stored key values.

    Without `force` only documents that have no measurements yet are touched.
    """
    processed = created = 0
    async with store.unit_of_work() as records:
        for document in await records.all_documents():
            if not document.key_values or (document.measurements and not force):
                continue
            extracted = metrics.extract_measurements(document.key_values)
            await records.replace_measurements(document, extracted)
            processed += 1
            created += len(extracted)
    logger.info("Metrics sync: %d documents, %d measurements", processed, created)
    return {"documents": processed, "measurements": created}

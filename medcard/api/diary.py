"""Web API for the patient diary: vital signs, symptoms, medications, procedures.

Same HTTP Basic protection and record store as the document routes.
"""
# ruff: noqa: B008

from __future__ import annotations

import datetime as dt
import logging
import uuid
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from medcard import diary
from medcard.api.auth import verify_user, web_key
from medcard.api.documents import get_store
from medcard.events import emit
from medcard.models.diary import Medication, Procedure, Symptom, VitalSign
from medcard.schemas.api import MedicationCreate, MedicationUpdate, ProcedureCreate, SymptomCreate, VitalCreate
from medcard.schemas.events import EventType, SystemEvent
from medcard.store.records import RecordStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["diary"])


def _now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def vital_to_dict(vital: VitalSign) -> dict[str, Any]:
    return {
        **vital.as_dict(),
        "formatted": diary.format_vital(vital.type, vital.value, vital.value2),
        "status": diary.vital_status(vital.type, vital.value, vital.value2).value,
    }


async def _entry_added(user: str, kind: str, entry_id: uuid.UUID) -> None:
    await emit(SystemEvent(
        event_type=EventType.DIARY_ENTRY_ADDED,
        conversation_key=web_key(user),
        data={"kind": kind, "id": str(entry_id)},
        source_module="api.diary",
    ))


# ── Vital signs ──────────────────────────────────────────────────────


@router.get("/vitals")
async def list_vitals(
    days: int = Query(default=30, ge=1, le=3650),
    vital_type: str | None = Query(default=None, alias="type"),
    _user: str = Depends(verify_user),
    store: RecordStore = Depends(get_store),
) -> dict[str, Any]:
    async with store.unit_of_work() as records:
        vitals = await records.list_vitals(_now() - dt.timedelta(days=days), vital_type)
        return {"vitals": [vital_to_dict(v) for v in vitals]}


@router.post("/vitals", status_code=status.HTTP_201_CREATED)
async def create_vital(
    body: VitalCreate,
    user: str = Depends(verify_user),
    store: RecordStore = Depends(get_store),
) -> dict[str, Any]:
    config = diary.VITAL_SIGNS[body.type]
    if config.has_second_value and body.value2 is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"{config.name}: value2 required")

    async with store.unit_of_work() as records:
        vital = await records.add_vital(VitalSign(
            id=uuid.uuid4(),
            recorded_at=body.recorded_at or _now(),
            type=body.type.value,
            value=body.value,
            value2=body.value2 if config.has_second_value else None,
            unit=config.unit,
            notes=body.notes,
        ))
        result = vital_to_dict(vital)
    await _entry_added(user, "vital", vital.id)
    return {"vital": result}


# ── Symptoms ─────────────────────────────────────────────────────────


@router.get("/symptoms")
async def list_symptoms(
    days: int = Query(default=30, ge=1, le=3650),
    _user: str = Depends(verify_user),
    store: RecordStore = Depends(get_store),
) -> dict[str, Any]:
    async with store.unit_of_work() as records:
        symptoms = await records.list_symptoms(_now() - dt.timedelta(days=days))
        return {"symptoms": [s.as_dict() for s in symptoms]}


@router.post("/symptoms", status_code=status.HTTP_201_CREATED)
async def create_symptom(
    body: SymptomCreate,
    user: str = Depends(verify_user),
    store: RecordStore = Depends(get_store),
) -> dict[str, Any]:
    async with store.unit_of_work() as records:
        symptom = await records.add_symptom(Symptom(
            id=uuid.uuid4(),
            recorded_at=body.recorded_at or _now(),
            name=body.name.strip(),
            intensity=body.intensity,
            duration=body.duration,
            notes=body.notes,
        ))
        result = symptom.as_dict()
    await _entry_added(user, "symptom", symptom.id)
    return {"symptom": result}


# ── Medications ──────────────────────────────────────────────────────


@router.get("/medications")
async def list_medications(
    active: bool = Query(default=True),
    _user: str = Depends(verify_user),
    store: RecordStore = Depends(get_store),
) -> dict[str, Any]:
    async with store.unit_of_work() as records:
        medications = await records.list_medications(active_only=active)
        return {"medications": [m.as_dict() for m in medications]}


@router.post("/medications", status_code=status.HTTP_201_CREATED)
async def create_medication(
    body: MedicationCreate,
    user: str = Depends(verify_user),
    store: RecordStore = Depends(get_store),
) -> dict[str, Any]:
    async with store.unit_of_work() as records:
        medication = await records.add_medication(Medication(
            id=uuid.uuid4(),
            name=body.name.strip(),
            dosage=body.dosage,
            frequency=body.frequency,
            start_date=body.start_date or _now().date(),
            end_date=body.end_date,
            notes=body.notes,
            is_active=body.is_active,
        ))
        result = medication.as_dict()
    await _entry_added(user, "medication", medication.id)
    return {"medication": result}


@router.put("/medications/{medication_id}")
async def update_medication(
    medication_id: uuid.UUID,
    body: MedicationUpdate,
    user: str = Depends(verify_user),
    store: RecordStore = Depends(get_store),
) -> dict[str, Any]:
    fields = body.model_dump(exclude_unset=True)
    async with store.unit_of_work() as records:
        medication = await records.update_medication(medication_id, fields)
        if medication is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Medication not found")
        result = medication.as_dict()
    await emit(SystemEvent(
        event_type=EventType.MEDICATION_UPDATED,
        conversation_key=web_key(user),
        data={"id": str(medication_id), "fields": sorted(fields)},
        source_module="api.diary",
    ))
    return {"medication": result}


# ── Procedures ───────────────────────────────────────────────────────


@router.get("/procedures")
async def list_procedures(
    procedure_type: str | None = Query(default=None, alias="type"),
    date_from: dt.date | None = Query(default=None, alias="from"),
    date_to: dt.date | None = Query(default=None, alias="to"),
    _user: str = Depends(verify_user),
    store: RecordStore = Depends(get_store),
) -> dict[str, Any]:
    async with store.unit_of_work() as records:
        procedures = await records.list_procedures(procedure_type, date_from, date_to)
        return {"procedures": [p.as_dict() for p in procedures]}


@router.post("/procedures", status_code=status.HTTP_201_CREATED)
async def create_procedure(
    body: ProcedureCreate,
    user: str = Depends(verify_user),
    store: RecordStore = Depends(get_store),
) -> dict[str, Any]:
    async with store.unit_of_work() as records:
        if body.document_id is not None and await records.get_document(body.document_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
        procedure = await records.add_procedure(Procedure(id=uuid.uuid4(), **body.model_dump()))
        result = procedure.as_dict()
    logger.info("Recorded procedure %s (%s)", procedure.id, procedure.type)
    await _entry_added(user, "procedure", procedure.id)
    return {"procedure": result}

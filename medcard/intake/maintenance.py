"""Periodic purge of expired pending decisions and abandoned batch sessions.

Resolution already treats an expired decision as missing; this only keeps
the tables small. Runs as a background task started in the FastAPI lifespan.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from medcard.config import settings
from medcard.events import emit
from medcard.schemas.events import EventType, SystemEvent
from medcard.store.records import RecordStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurgeResult:
    pending_decisions: int
    batch_sessions: int


async def purge_expired(store: RecordStore, now: dt.datetime | None = None) -> PurgeResult:
    """Delete expired pending decisions and batch sessions older than batch_max_age_hours."""
    now = now or dt.datetime.now(dt.UTC)
    stale_before = now - dt.timedelta(hours=settings.intake.batch_max_age_hours)

    async with store.unit_of_work() as records:
        pending = await records.purge_expired_pending(now)
        batches = await records.purge_stale_batches(stale_before)

    result = PurgeResult(pending_decisions=pending, batch_sessions=batches)
    if pending or batches:
        logger.info("Purged %d expired decisions and %d stale batches", pending, batches)
        await emit(SystemEvent(
            event_type=EventType.SYSTEM_MAINTENANCE,
            data={"pending_decisions": pending, "batch_sessions": batches},
            source_module="intake.maintenance",
        ))
    return result


async def run_purge_loop(store: RecordStore, interval_minutes: int | None = None) -> None:
    """Purge forever; cancel the task to stop."""
    interval = 60 * (interval_minutes or settings.intake.purge_interval_minutes)
    while True:
        try:
            await purge_expired(store)
        except SQLAlchemyError:
            logger.exception("Purge run failed, retrying in %ds", interval)
        await asyncio.sleep(interval)

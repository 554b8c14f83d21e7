"""Batch collector — multi-page documents sent one photo at a time.

States per conversation key:

    Idle ──start──▶ Active ──add_page──▶ Active
      ▲               │
      └─cancel/finish─┘

The BatchSession row is the Active marker, so "active with zero pages" is a
real state. finish() claims the row under a lock and deletes it in the same
transaction, so two concurrent finishes cannot both forward pages.

Telegram albums use the same machinery with an implicit session per album
(key "<conversation>:album:<group>") that is finished once no new item has
arrived for settings.intake.album_quiet_seconds.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from collections.abc import Callable

from medcard import formatters
from medcard.config import settings
from medcard.events import emit
from medcard.intake.images import is_image, normalize_image
from medcard.intake.orchestrator import IntakeOrchestrator
from medcard.models.batch import BatchSession
from medcard.schemas.events import EventType, SystemEvent
from medcard.schemas.intake import BatchReply, InboundFile
from medcard.storage.blob import LocalBlobStore
from medcard.store.records import RecordStore

logger = logging.getLogger(__name__)

JPEG_MIME = "image/jpeg"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def album_key(conversation_key: str, group_id: str) -> str:
    return f"{conversation_key}:album:{group_id}"


class BatchCollector:
    """Start / add_page / cancel / finish over durable BatchSession rows."""

    def __init__(
        self,
        store: RecordStore,
        blobs: LocalBlobStore,
        orchestrator: IntakeOrchestrator,
        clock: Callable[[], dt.datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._blobs = blobs
        self._orchestrator = orchestrator
        self._clock = clock

    # ── Explicit batches ─────────────────────────────────────────────

    async def start(self, conversation_key: str) -> BatchReply:
        """Enter Active. Idempotent: an existing session keeps its pages."""
        async with self._store.unit_of_work() as records:
            batch, created = await records.ensure_batch(conversation_key, self._clock())
            count = len(batch.pages)

        if not created:
            return BatchReply(
                f"⚠️ Уже идёт сбор страниц ({count} шт.)\n\n"
                "Отправляйте фото или нажмите /done для завершения.",
                page_count=count,
                active=True,
            )

        await emit(SystemEvent(
            event_type=EventType.BATCH_STARTED,
            conversation_key=conversation_key,
            source_module="intake.batch",
        ))
        return BatchReply(
            "📎 Режим сбора страниц включён!\n\n"
            "Отправляйте фото страниц документа по одному.\n"
            "Когда закончите — /done\n"
            "Отменить — /cancel",
            active=True,
        )

    async def is_active(self, conversation_key: str) -> bool:
        async with self._store.unit_of_work() as records:
            return await records.get_batch(conversation_key) is not None

    async def add_page(self, conversation_key: str, file: InboundFile) -> BatchReply:
        """Store the page now and append it. Inactive conversations get active=False."""
        async with self._store.unit_of_work() as records:
            batch = await records.lock_batch(conversation_key)
            if batch is None:
                return BatchReply("ℹ️ Нет активного сбора страниц. Сначала /batch", active=False)
            if not is_image(file.mime_type):
                return BatchReply(formatters.MIXED_PAGES_MESSAGE, page_count=len(batch.pages), active=True)

            sequence = len(batch.pages) + 1
            url, mime_type, name = await self._upload(file, f"page-{sequence}")
            await records.add_batch_page(batch, url, mime_type, name, self._clock())
            count = len(batch.pages)

        await emit(SystemEvent(
            event_type=EventType.BATCH_PAGE_ADDED,
            conversation_key=conversation_key,
            data={"page": count},
            source_module="intake.batch",
        ))
        return BatchReply(
            f"📄 Страница {count} добавлена. Всего: {count}\n/done — завершить, /cancel — отменить",
            page_count=count,
            active=True,
        )

    async def cancel(self, conversation_key: str) -> BatchReply:
        """Discard the session and its pages, from any state."""
        async with self._store.unit_of_work() as records:
            batch = await records.lock_batch(conversation_key)
            if batch is None:
                return BatchReply("ℹ️ Нет активного сбора страниц.")
            urls = [page.file_url for page in batch.pages]
            await records.delete_batch(batch)

        for url in urls:
            await self._blobs.delete(url)

        await emit(SystemEvent(
            event_type=EventType.BATCH_CANCELLED,
            conversation_key=conversation_key,
            data={"pages": len(urls)},
            source_module="intake.batch",
        ))
        suffix = f" Удалено {formatters.pages_phrase(len(urls))}." if urls else ""
        return BatchReply(f"❌ Сбор отменён.{suffix}", page_count=len(urls))

    async def finish(self, conversation_key: str, caption: str | None = None) -> BatchReply:
        """Claim the session and hand its pages, oldest first, to the orchestrator."""
        pages = await self._claim(conversation_key)
        if pages is None:
            return BatchReply("ℹ️ Нет страниц для обработки. Сначала /batch")
        if not pages:
            await self._emit_finished(conversation_key, 0)
            return BatchReply("ℹ️ Вы не добавили ни одной страницы. Режим сбора отключён.")

        await self._emit_finished(conversation_key, len(pages))
        outcome = await self._orchestrator.ingest(conversation_key, pages, caption)
        return BatchReply(
            f"📄 Обработано: {formatters.pages_phrase(len(pages))}",
            page_count=len(pages),
            outcome=outcome,
        )

    # ── Albums ───────────────────────────────────────────────────────

    async def add_album_page(self, conversation_key: str, group_id: str, file: InboundFile) -> int:
        """Append one album item to the album's implicit session. Returns the page count."""
        key = album_key(conversation_key, group_id)
        async with self._store.unit_of_work() as records:
            batch, _ = await records.ensure_batch(key, self._clock())
            sequence = len(batch.pages) + 1
            url, mime_type, name = await self._upload(file, f"album-{group_id}-{sequence}")
            await records.add_batch_page(batch, url, mime_type, name, self._clock())
            return len(batch.pages)

    async def finish_if_quiet(
        self,
        conversation_key: str,
        group_id: str,
        caption: str | None = None,
        quiet_seconds: float | None = None,
    ) -> BatchReply | None:
        """Wait, then process the album if no item arrived in the meantime.

        Every album item schedules one of these; only the call that wakes up
        after the last item finds the album quiet and claims it. The others
        return None.
        """
        quiet = settings.intake.album_quiet_seconds if quiet_seconds is None else quiet_seconds
        await asyncio.sleep(quiet)

        key = album_key(conversation_key, group_id)
        threshold = self._clock() - dt.timedelta(seconds=quiet)
        async with self._store.unit_of_work() as records:
            batch = await records.lock_batch(key)
            if batch is None or not batch.pages:
                return None
            if max(page.received_at for page in batch.pages) > threshold:
                return None
            pages = _inbound_pages(batch)
            await records.delete_batch(batch)

        await self._emit_finished(conversation_key, len(pages), album=group_id)
        outcome = await self._orchestrator.ingest(conversation_key, pages, caption)
        return BatchReply(
            f"📄 Обработано: {formatters.pages_phrase(len(pages))}",
            page_count=len(pages),
            outcome=outcome,
        )

    # ── Internals ────────────────────────────────────────────────────

    async def _claim(self, key: str) -> list[InboundFile] | None:
        """Lock-read-delete the session. None when there was no session."""
        async with self._store.unit_of_work() as records:
            batch = await records.lock_batch(key)
            if batch is None:
                return None
            pages = _inbound_pages(batch)
            await records.delete_batch(batch)
        return pages

    async def _upload(self, file: InboundFile, default_name: str) -> tuple[str, str, str | None]:
        if file.url is not None:
            return file.url, file.mime_type, file.file_name
        data = file.data or b""
        if is_image(file.mime_type):
            name = file.file_name or f"{default_name}.jpg"
            return await self._blobs.put(normalize_image(data), name, JPEG_MIME), JPEG_MIME, name
        name = file.file_name or default_name
        return await self._blobs.put(data, name, file.mime_type), file.mime_type, name

    async def _emit_finished(self, conversation_key: str, pages: int, album: str | None = None) -> None:
        await emit(SystemEvent(
            event_type=EventType.BATCH_FINISHED,
            conversation_key=conversation_key,
            data={"pages": pages, "album": album},
            source_module="intake.batch",
        ))


def _inbound_pages(batch: BatchSession) -> list[InboundFile]:
    ordered = sorted(batch.pages, key=lambda page: page.sequence)
    return [InboundFile(mime_type=p.mime_type, url=p.file_url, file_name=p.file_name) for p in ordered]

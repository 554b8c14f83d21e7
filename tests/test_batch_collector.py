"""Tests for the batch collector: explicit /batch sessions and Telegram albums."""

from __future__ import annotations

import asyncio

import pytest

from medcard import formatters
from medcard.intake.batch import album_key
from medcard.schemas.intake import DocumentCreated, InboundFile

KEY = "tg:42"


def _photo(data: bytes) -> InboundFile:
    return InboundFile(mime_type="image/jpeg", data=data)


@pytest.mark.asyncio()
async def test_start_is_idempotent_and_keeps_pages(collector, store, jpeg):
    first = await collector.start(KEY)
    assert first.active
    await collector.add_page(KEY, _photo(jpeg))

    again = await collector.start(KEY)

    assert again.active
    assert again.page_count == 1
    assert "Уже идёт сбор" in again.message
    assert len(store.batches[KEY].pages) == 1


@pytest.mark.asyncio()
async def test_add_page_without_session(collector, store, blobs, jpeg):
    reply = await collector.add_page(KEY, _photo(jpeg))

    assert reply.active is False
    assert store.batches == {}
    assert blobs.blobs == {}


@pytest.mark.asyncio()
async def test_add_page_stores_immediately(collector, blobs, jpeg):
    await collector.start(KEY)
    reply = await collector.add_page(KEY, _photo(jpeg))
    reply = await collector.add_page(KEY, _photo(jpeg))

    assert reply.page_count == 2
    assert "Страница 2" in reply.message
    assert len(blobs.blobs) == 2


@pytest.mark.asyncio()
async def test_pdf_page_is_refused(collector, store, blobs, jpeg):
    await collector.start(KEY)
    await collector.add_page(KEY, _photo(jpeg))

    reply = await collector.add_page(KEY, InboundFile(mime_type="application/pdf", data=b"%PDF-1.4"))

    assert reply.message == formatters.MIXED_PAGES_MESSAGE
    assert reply.active
    assert reply.page_count == 1
    assert len(store.batches[KEY].pages) == 1
    assert len(blobs.blobs) == 1


@pytest.mark.asyncio()
async def test_finish_with_zero_pages(collector, store, analyzer):
    await collector.start(KEY)

    reply = await collector.finish(KEY)

    assert "не добавили ни одной страницы" in reply.message
    assert reply.outcome is None
    assert KEY not in store.batches
    assert analyzer.calls == []


@pytest.mark.asyncio()
async def test_finish_without_session(collector):
    reply = await collector.finish(KEY)
    assert "Нет страниц для обработки" in reply.message
    assert reply.outcome is None


@pytest.mark.asyncio()
async def test_finish_forwards_pages_in_order_as_one_submission(collector, store, analyzer, jpeg):
    await collector.start(KEY)
    for _ in range(3):
        await collector.add_page(KEY, _photo(jpeg))
    page_urls = [page.file_url for page in store.batches[KEY].pages]

    reply = await collector.finish(KEY, caption="Выписка")

    assert reply.page_count == 3
    assert "3 страницы" in reply.message
    assert len(analyzer.calls) == 1
    assert [page.url for page in analyzer.calls[0]] == page_urls
    assert isinstance(reply.outcome, DocumentCreated)
    assert reply.outcome.payload.file_type == "application/pdf"
    assert reply.outcome.payload.content == "Выписка"
    assert KEY not in store.batches
    assert len(store.documents) == 1


@pytest.mark.asyncio()
async def test_concurrent_finish_processes_pages_once(collector, store, analyzer, jpeg):
    await collector.start(KEY)
    await collector.add_page(KEY, _photo(jpeg))
    await collector.add_page(KEY, _photo(jpeg))

    first, second = await asyncio.gather(collector.finish(KEY), collector.finish(KEY))

    outcomes = [r.outcome for r in (first, second) if r.outcome is not None]
    assert len(outcomes) == 1
    assert sum("Нет страниц" in r.message for r in (first, second)) == 1
    assert len(analyzer.calls) == 1
    assert len(store.documents) == 1


@pytest.mark.asyncio()
async def test_cancel_discards_pages(collector, store, blobs, jpeg):
    await collector.start(KEY)
    await collector.add_page(KEY, _photo(jpeg))

    reply = await collector.cancel(KEY)

    assert reply.message.startswith("❌ Сбор отменён.")
    assert reply.page_count == 1
    assert KEY not in store.batches
    assert blobs.blobs == {}
    assert not await collector.is_active(KEY)


@pytest.mark.asyncio()
async def test_cancel_without_session(collector):
    reply = await collector.cancel(KEY)
    assert "Нет активного сбора" in reply.message


class TestAlbums:
    @pytest.mark.asyncio()
    async def test_quiet_album_is_processed_once(self, collector, store, analyzer, jpeg):
        for _ in range(2):
            await collector.add_album_page(KEY, "g1", _photo(jpeg))

        reply = await collector.finish_if_quiet(KEY, "g1", caption="МРТ", quiet_seconds=0)
        late = await collector.finish_if_quiet(KEY, "g1", quiet_seconds=0)

        assert reply is not None
        assert reply.page_count == 2
        assert isinstance(reply.outcome, DocumentCreated)
        assert late is None
        assert album_key(KEY, "g1") not in store.batches
        assert len(analyzer.calls) == 1

    @pytest.mark.asyncio()
    async def test_album_still_receiving_is_left_alone(self, collector, store, clock, jpeg):
        await collector.add_album_page(KEY, "g2", _photo(jpeg))

        # The last item arrived less than quiet_seconds ago
        assert await collector.finish_if_quiet(KEY, "g2", quiet_seconds=0.01) is None
        assert len(store.batches[album_key(KEY, "g2")].pages) == 1

        clock.advance(seconds=1)
        reply = await collector.finish_if_quiet(KEY, "g2", quiet_seconds=0.01)

        assert reply is not None
        assert reply.page_count == 1

    @pytest.mark.asyncio()
    async def test_album_does_not_touch_explicit_batch(self, collector, store, jpeg):
        await collector.start(KEY)
        await collector.add_album_page(KEY, "g3", _photo(jpeg))

        assert store.batches[KEY].pages == []
        assert len(store.batches[album_key(KEY, "g3")].pages) == 1

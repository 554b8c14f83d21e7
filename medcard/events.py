"""In-process event bus for intake milestones.

Intake code publishes a SystemEvent after the fact (document saved, duplicate
parked, batch finished) and moves on; a background worker fans events out to
subscribers such as the audit log. A failing subscriber never affects the
request that emitted the event.

    from medcard.events import emit

    await emit(SystemEvent(event_type=EventType.DOCUMENT_SAVED, document_id=doc_id))
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from medcard.schemas.events import EventType, SystemEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[SystemEvent], Coroutine[Any, Any, None]]


class EventBus:
    """Queue plus one worker task, bound lazily to the running loop."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []
        self._typed: dict[EventType, list[EventHandler]] = {}
        self._queue: asyncio.Queue[SystemEvent] | None = None
        self._worker: asyncio.Task[None] | None = None

    def subscribe(self, handler: EventHandler, event_types: list[EventType] | None = None) -> None:
        """Receive every event, or only the listed types."""
        if event_types is None:
            self._handlers.append(handler)
        else:
            for event_type in event_types:
                self._typed.setdefault(event_type, []).append(handler)
        logger.info(
            "Subscribed %s to %s",
            handler.__name__,
            "all events" if event_types is None else [t.value for t in event_types],
        )

    async def emit(self, event: SystemEvent) -> None:
        if self._queue is None:
            self.start()
        assert self._queue is not None  # noqa: S101
        await self._queue.put(event)
        logger.debug("Event %s (document=%s)", event.event_type.value, event.document_id)

    def start(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Deliver what is queued, then stop the worker."""
        if self._queue is not None and self._worker is not None and not self._worker.done():
            await self._queue.join()
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
        self._worker = None
        self._queue = None

    def subscriber_count(self) -> int:
        return len(self._handlers) + sum(len(handlers) for handlers in self._typed.values())

    async def _run(self) -> None:
        assert self._queue is not None  # noqa: S101
        while True:
            event = await self._queue.get()
            try:
                await self._dispatch(event)
            except Exception:
                logger.exception("Error dispatching %s", event.event_type.value)
            finally:
                self._queue.task_done()

    async def _dispatch(self, event: SystemEvent) -> None:
        handlers = [*self._handlers, *self._typed.get(event.event_type, [])]
        if not handlers:
            return
        results = await asyncio.gather(*(handler(event) for handler in handlers), return_exceptions=True)
        for handler, result in zip(handlers, results, strict=True):
            if isinstance(result, Exception):
                logger.error("Subscriber %s failed on %s: %s", handler.__name__, event.event_type.value, result)


bus = EventBus()


# ── Module-level API ─────────────────────────────────────────────────


def subscribe(handler: EventHandler, event_types: list[EventType] | None = None) -> None:
    bus.subscribe(handler, event_types)


async def emit(event: SystemEvent) -> None:
    """Publish without waiting for subscribers."""
    await bus.emit(event)


async def start_event_system() -> None:
    """Start the worker; called from the FastAPI lifespan."""
    bus.start()
    logger.info("Event system started with %d subscribers", bus.subscriber_count())


async def stop_event_system() -> None:
    await bus.stop()
    logger.info("Event system stopped")

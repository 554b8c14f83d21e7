"""FastAPI application entry point — wires everything together.

Usage:
    python -m medcard.main

Serves the web API and uploaded files, and runs the Telegram bot
(long-polling in development, webhook otherwise) plus the periodic purge.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles
from telegram import Bot
from telegram.ext import Application

from medcard.api.diary import router as diary_router
from medcard.api.documents import router as documents_router
from medcard.audit import audit_on_event
from medcard.channels.telegram import create_telegram_app, telegram_router
from medcard.config import settings
from medcard.db.engine import db_lifespan
from medcard.events import start_event_system, stop_event_system, subscribe
from medcard.intake.batch import BatchCollector
from medcard.intake.maintenance import run_purge_loop
from medcard.intake.orchestrator import IntakeOrchestrator
from medcard.llm.client import DocumentAnalyzer
from medcard.notify import Notifier, NullNotifier, TelegramNotifier
from medcard.storage.blob import LocalBlobStore
from medcard.store.records import RecordStore

# ── Logging setup ────────────────────────────────────────────────────

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    stream=sys.stdout,
)
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = logging.getLogger(__name__)

# ── FastAPI lifespan ─────────────────────────────────────────────────


async def _start_telegram(app: FastAPI, collector: BatchCollector, orchestrator: IntakeOrchestrator,
                          store: RecordStore) -> Application:
    telegram_app = create_telegram_app(collector, orchestrator, store)
    await telegram_app.initialize()
    await telegram_app.start()
    if settings.telegram.telegram_use_polling:
        await telegram_app.updater.start_polling(drop_pending_updates=True)  # type: ignore[union-attr]
        logger.info("Telegram bot polling started")
    else:
        logger.info("Telegram bot waiting for webhook updates")
    app.state.telegram_app = telegram_app
    return telegram_app


async def _stop_telegram(telegram_app: Application) -> None:
    if telegram_app.updater and telegram_app.updater.running:
        await telegram_app.updater.stop()
    await telegram_app.stop()
    await telegram_app.shutdown()
    logger.info("Telegram bot stopped")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup and shutdown lifecycle."""
    logger.info("Starting medcard (env=%s)", settings.environment)

    # 1. Database
    async with db_lifespan():
        logger.info("Database initialized")

        # 2. Event system + audit logging (global subscriber)
        await start_event_system()
        subscribe(audit_on_event)
        logger.info("Event system started, audit subscriber registered")

        # 3. Intake collaborators
        store = RecordStore()
        blobs = LocalBlobStore()
        blobs.root.mkdir(parents=True, exist_ok=True)
        analyzer = DocumentAnalyzer(blobs)

        telegram_bot = None
        notifier: Notifier = NullNotifier()
        if settings.telegram.telegram_bot_token:
            telegram_bot = Bot(settings.telegram.telegram_bot_token)
            notifier = TelegramNotifier(telegram_bot)
        else:
            logger.warning("TELEGRAM_BOT_TOKEN not set — Telegram channel disabled")

        orchestrator = IntakeOrchestrator(store, blobs, analyzer, notifier)
        collector = BatchCollector(store, blobs, orchestrator)
        app.state.store = store
        app.state.blobs = blobs
        app.state.orchestrator = orchestrator
        app.state.collector = collector

        # 4. Telegram channel
        telegram_app = None
        if telegram_bot is not None:
            await telegram_bot.initialize()
            telegram_app = await _start_telegram(app, collector, orchestrator, store)

        # 5. Maintenance
        purge_task = asyncio.create_task(run_purge_loop(store))
        logger.info("Purge task started")

        try:
            yield
        finally:
            # Shutdown in reverse order
            logger.info("Shutting down medcard...")

            purge_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await purge_task

            if telegram_app is not None:
                await _stop_telegram(telegram_app)
            if telegram_bot is not None:
                await telegram_bot.shutdown()

            await analyzer.close()
            logger.info("Analyzer client closed")

            await stop_event_system()
            logger.info("Event system stopped")

    logger.info("medcard shutdown complete")


# ── FastAPI app ──────────────────────────────────────────────────────

app = FastAPI(
    title="medcard API",
    description="Personal medical card: document intake, duplicates, search, metrics and patient diary",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(documents_router)
app.include_router(diary_router)
app.include_router(telegram_router)
app.mount("/files", StaticFiles(directory=Path(settings.storage.blob_dir), check_dir=False), name="files")


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {
        "status": "ok",
        "environment": settings.environment,
    }


# ── Entry point ──────────────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run(
        "medcard.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )

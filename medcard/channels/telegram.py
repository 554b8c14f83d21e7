"""Telegram bot adapter — documents in, saved-document and duplicate prompts out.

Also carries the patient diary menu: symptoms, vital signs and medications.

Uses python-telegram-bot v21+ async, via long-polling or webhook. Handlers
reach the intake collaborators through application.bot_data, filled by
create_telegram_app(). Every handler catches its own errors and answers in
Russian; nothing propagates to the framework.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import uuid
from collections.abc import Callable, Coroutine
from functools import wraps
from typing import Any

from fastapi import APIRouter, Request, Response
from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup, KeyboardButton, ReplyKeyboardMarkup, Update
from telegram.constants import ChatAction
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from medcard import diary, formatters
from medcard.config import settings
from medcard.events import emit
from medcard.intake.batch import BatchCollector
from medcard.intake.images import is_image
from medcard.intake.orchestrator import IntakeOrchestrator
from medcard.models.diary import Medication, Symptom, VitalSign
from medcard.models.enums import DecisionAction, ValueStatus, VitalType
from medcard.notify import telegram_key
from medcard.schemas.events import EventType, SystemEvent
from medcard.schemas.intake import (
    BatchReply,
    DocumentCreated,
    InboundFile,
    IntakeFailed,
    IntakeOutcome,
)
from medcard.store.records import RecordStore

logger = logging.getLogger(__name__)

SUPPORTED_MIME_TYPES = ("application/pdf", "image/jpeg", "image/png", "image/webp")

# Reply-keyboard labels, matched as aliases of the commands
BATCH_LABEL = "📎 Много фото"
STATUS_LABEL = "📊 Статистика"
LAST_LABEL = "📋 Последние"
DONE_LABEL = "✅ Готово"
CANCEL_LABEL = "❌ Отмена"
DIARY_LABEL = "📋 Дневник"
SYMPTOM_LABEL = "🩺 Симптом"
VITALS_LABEL = "🌡 Показатели"
MEDICATIONS_LABEL = "💊 Лекарства"
BACK_LABEL = "◀️ Назад"

# Vital-sign keyboard labels and the prompt asking for each value
VITAL_LABELS: dict[str, tuple[VitalType, str]] = {
    "🌡 Температура": (VitalType.TEMPERATURE, "🌡 Введите температуру (например: 37.2):"),
    "💓 Давление": (VitalType.PRESSURE, "💓 Введите давление (например: 120/80):"),
    "❤️ Пульс": (VitalType.PULSE, "❤️ Введите пульс (например: 72):"),
    "🫁 Сатурация": (VitalType.SPO2, "🫁 Введите сатурацию (например: 98):"),
    "⚖️ Вес": (VitalType.WEIGHT, "⚖️ Введите вес (например: 74.5):"),
}

MAIN_KEYBOARD = ReplyKeyboardMarkup(
    [
        [KeyboardButton(BATCH_LABEL), KeyboardButton(DIARY_LABEL)],
        [KeyboardButton(STATUS_LABEL), KeyboardButton(LAST_LABEL)],
    ],
    resize_keyboard=True,
)
BATCH_KEYBOARD = ReplyKeyboardMarkup(
    [[KeyboardButton(DONE_LABEL), KeyboardButton(CANCEL_LABEL)]],
    resize_keyboard=True,
)
DIARY_KEYBOARD = ReplyKeyboardMarkup(
    [
        [KeyboardButton(SYMPTOM_LABEL), KeyboardButton(VITALS_LABEL)],
        [KeyboardButton(MEDICATIONS_LABEL), KeyboardButton(BACK_LABEL)],
    ],
    resize_keyboard=True,
)
VITALS_KEYBOARD = ReplyKeyboardMarkup(
    [
        [KeyboardButton(label) for label in list(VITAL_LABELS)[:2]],
        [KeyboardButton(label) for label in list(VITAL_LABELS)[2:]],
        [KeyboardButton(BACK_LABEL)],
    ],
    resize_keyboard=True,
)

# context.user_data key holding what the next free-text message answers
AWAITING_KEY = "diary_awaiting"
SYMPTOM_CALLBACK_PREFIX = "symptom:"
CUSTOM_SYMPTOM = "custom"
QUICK_SYMPTOMS = 8

ERROR_MESSAGE = "❌ Произошла ошибка. Попробуйте ещё раз."

# ── Webhook router ───────────────────────────────────────────────────

telegram_router = APIRouter(prefix="/webhook", tags=["telegram"])


@telegram_router.post("/telegram")
async def telegram_webhook(request: Request) -> Response:
    """Receive Telegram updates via webhook (production mode)."""
    secret = settings.telegram.telegram_webhook_secret
    if secret:
        header_secret = request.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
        if header_secret != secret:
            return Response(status_code=403)

    telegram_app: Application = request.app.state.telegram_app
    bot: Bot = telegram_app.bot

    data = await request.json()
    update = Update.de_json(data, bot)

    # Return 200 immediately so Telegram doesn't retry
    _spawn(telegram_app.bot_data, telegram_app.process_update(update))

    return Response(status_code=200)


def _spawn(bot_data: dict[str, Any], coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
    """Run in the background, keeping a reference until the task is done."""
    tasks: set[asyncio.Task[Any]] = bot_data.setdefault("background_tasks", set())
    task = asyncio.create_task(coro)
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    return task


# ── Authorization ────────────────────────────────────────────────────


def is_user_allowed(user_id: int) -> bool:
    """An empty allow-list lets everyone in."""
    allowed = settings.telegram.allowed_ids
    return not allowed or user_id in allowed


def allowed_only(
    func_: Callable[[Update, ContextTypes.DEFAULT_TYPE], Coroutine[Any, Any, None]],
) -> Callable[[Update, ContextTypes.DEFAULT_TYPE], Coroutine[Any, Any, None]]:
    """Decorator — rejects users outside the allow-list and contains handler errors."""

    @wraps(func_)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if user is None:
            return
        if not is_user_allowed(user.id):
            logger.warning("Rejected Telegram user %s", user.id)
            if update.callback_query:
                await update.callback_query.answer("⛔ Нет доступа")
            elif update.effective_message:
                await update.effective_message.reply_text(
                    f"⛔ Извините, у вас нет доступа к этому боту.\n\nВаш ID: {user.id}"
                )
            return
        try:
            await func_(update, context)
        except Exception:
            logger.exception("Handler %s failed for user %s", func_.__name__, user.id)
            if update.effective_message:
                await update.effective_message.reply_text(ERROR_MESSAGE)

    return wrapper


# ── Collaborators ────────────────────────────────────────────────────


def _collector(context: ContextTypes.DEFAULT_TYPE) -> BatchCollector:
    return context.bot_data["collector"]


def _orchestrator(context: ContextTypes.DEFAULT_TYPE) -> IntakeOrchestrator:
    return context.bot_data["orchestrator"]


def _store(context: ContextTypes.DEFAULT_TYPE) -> RecordStore:
    return context.bot_data["store"]


def _key(update: Update) -> str:
    assert update.effective_chat is not None  # noqa: S101
    return telegram_key(update.effective_chat.id)


# Interval between "typing..." indicator refreshes (Telegram typing expires after ~5s)
_TYPING_INTERVAL = 4.0


async def _send_typing_until_done(chat_id: int, bot: Bot, done_event: asyncio.Event) -> None:
    """Send typing action every few seconds until the done event is set."""
    while not done_event.is_set():
        try:
            await bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING)
        except Exception:
            break
        try:
            await asyncio.wait_for(done_event.wait(), timeout=_TYPING_INTERVAL)
        except TimeoutError:
            continue


# ── Replies ──────────────────────────────────────────────────────────


def outcome_message(outcome: IntakeOutcome) -> str | None:
    """Text for an intake outcome. None when the duplicate prompt was already sent."""
    if isinstance(outcome, DocumentCreated):
        text = formatters.document_saved_message(
            outcome.document_id, outcome.payload, outcome.measurements, outcome.page_count
        )
        if outcome.possible_duplicate_of is not None:
            text += "\n\n" + formatters.unconfirmed_duplicate_note(outcome.possible_duplicate_of)
        return text
    if isinstance(outcome, IntakeFailed):
        return outcome.error
    return None


async def _send_batch_reply(bot: Bot, chat_id: int, reply: BatchReply) -> None:
    await bot.send_message(chat_id=chat_id, text=reply.message, reply_markup=MAIN_KEYBOARD)
    if reply.outcome is not None:
        text = outcome_message(reply.outcome)
        if text:
            await bot.send_message(chat_id=chat_id, text=text)


# ── Commands ─────────────────────────────────────────────────────────


@allowed_only
async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """/start — greeting and the main keyboard."""
    if update.message is None:
        return
    name = update.effective_user.first_name if update.effective_user else ""
    patient = settings.patient.patient_full_name
    card = f"медицинскую карту пациента {patient}" if patient else "медицинскую карту"
    await update.message.reply_text(
        f"👋 Привет, {name}!\n\n"
        f"Я помогаю вести {card}.\n\n"
        "📄 Отправьте фото или PDF — документ добавится в карту.\n\n"
        f"🔗 Карта: {settings.patient.app_url}",
        reply_markup=MAIN_KEYBOARD,
    )


@allowed_only
async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.message is None:
        return
    await update.message.reply_text(
        "📖 Справка\n\n"
        "📄 Отправьте фото или PDF — добавится в карту.\n\n"
        "📎 Много фото (многостраничный документ):\n"
        f'1. Нажмите "{BATCH_LABEL}"\n'
        "2. Отправляйте фото по одному\n"
        f'3. Нажмите "{DONE_LABEL}"\n\n'
        "Альбом из нескольких фото тоже сохраняется как один документ.\n\n"
        '💡 Совет: чтобы сохранить имя файла, отправляйте его как "Файл" (📎 → Файл), а не как "Фото".\n\n'
        f'📋 Дневник: нажмите "{DIARY_LABEL}", чтобы записать симптом, давление или температуру.\n'
        f"{formatters.MEDICATION_HELP}\n\n"
        "Команды: /status, /last, /batch, /done, /cancel, /diary, /meds, /med"
    )


@allowed_only
async def status_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """/status — document count and the latest upload."""
    if update.message is None:
        return
    async with _store(context).unit_of_work() as records:
        count = await records.count_documents()
        latest = await records.latest_documents(limit=1)
        last_line = ""
        if latest:
            last_line = f'📅 Последний: {formatters.format_date(latest[0].created_at.date())}\n   "{latest[0].title}"'

    text = f"📊 Статистика:\n\n📄 Документов: {count}\n{last_line}\n\n🔗 {settings.patient.app_url}"
    await update.message.reply_text(text)


@allowed_only
async def last_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """/last — five most recent documents by date."""
    if update.message is None:
        return
    async with _store(context).unit_of_work() as records:
        documents = await records.list_documents(limit=5)
        lines = [f"• {formatters.format_date(doc.date)} — {doc.title}" for doc in documents]

    body = "\n".join(lines) if lines else "Пока нет документов."
    await update.message.reply_text(f"📋 Последние документы:\n\n{body}\n\n🔗 {settings.patient.app_url}")


@allowed_only
async def batch_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """/batch — start collecting pages of one document."""
    if update.message is None:
        return
    reply = await _collector(context).start(_key(update))
    await update.message.reply_text(reply.message, reply_markup=BATCH_KEYBOARD)


@allowed_only
async def done_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """/done — process the collected pages as one document."""
    if update.message is None:
        return
    chat_id = update.message.chat_id
    done = asyncio.Event()
    typing_task = asyncio.create_task(_send_typing_until_done(chat_id, context.bot, done))
    try:
        reply = await _collector(context).finish(_key(update))
    finally:
        done.set()
        await typing_task
    await _send_batch_reply(context.bot, chat_id, reply)


@allowed_only
async def cancel_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """/cancel — drop the collected pages."""
    if update.message is None:
        return
    reply = await _collector(context).cancel(_key(update))
    await update.message.reply_text(reply.message, reply_markup=MAIN_KEYBOARD)


# ── Diary ────────────────────────────────────────────────────────────

_STATUS_NOTES = {
    ValueStatus.HIGH: " ⬆️ выше нормы",
    ValueStatus.LOW: " ⬇️ ниже нормы",
}


async def _diary_entry_added(update: Update, kind: str, entry_id: uuid.UUID) -> None:
    await emit(SystemEvent(
        event_type=EventType.DIARY_ENTRY_ADDED,
        conversation_key=_key(update),
        data={"kind": kind, "id": str(entry_id)},
        source_module="channels.telegram",
    ))


@allowed_only
async def diary_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """/diary — symptoms, vital signs and medications."""
    if update.message is None:
        return
    context.user_data.pop(AWAITING_KEY, None)
    await update.message.reply_text(formatters.DIARY_MENU_MESSAGE, reply_markup=DIARY_KEYBOARD)


@allowed_only
async def vitals_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.message is None:
        return
    context.user_data.pop(AWAITING_KEY, None)
    await update.message.reply_text("Выберите показатель:", reply_markup=VITALS_KEYBOARD)


@allowed_only
async def _ask_vital(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """A vital-sign label was pressed; the next text message is its value."""
    if update.message is None or update.message.text is None:
        return
    vital_type, prompt = VITAL_LABELS[update.message.text.strip()]
    context.user_data[AWAITING_KEY] = ("vital", vital_type.value)
    await update.message.reply_text(prompt, reply_markup=VITALS_KEYBOARD)


def symptom_keyboard() -> InlineKeyboardMarkup:
    """Quick-pick symptoms two per row, then a free-text option."""
    buttons = [
        InlineKeyboardButton(name, callback_data=f"{SYMPTOM_CALLBACK_PREFIX}{index}")
        for index, name in enumerate(diary.COMMON_SYMPTOMS[:QUICK_SYMPTOMS])
    ]
    rows = [buttons[i : i + 2] for i in range(0, len(buttons), 2)]
    rows.append([InlineKeyboardButton("✏️ Написать свой", callback_data=f"{SYMPTOM_CALLBACK_PREFIX}{CUSTOM_SYMPTOM}")])
    return InlineKeyboardMarkup(rows)


@allowed_only
async def symptom_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.message is None:
        return
    context.user_data.pop(AWAITING_KEY, None)
    await update.message.reply_text("🩺 Что беспокоит?", reply_markup=symptom_keyboard())


async def _record_symptom(context: ContextTypes.DEFAULT_TYPE, name: str) -> Symptom:
    async with _store(context).unit_of_work() as records:
        return await records.add_symptom(Symptom(
            id=uuid.uuid4(),
            recorded_at=dt.datetime.now(dt.UTC),
            name=name,
        ))


async def _handle_symptom_callback(update: Update, context: ContextTypes.DEFAULT_TYPE, choice: str) -> None:
    query = update.callback_query
    assert query is not None  # noqa: S101
    await query.answer()
    if choice == CUSTOM_SYMPTOM:
        context.user_data[AWAITING_KEY] = ("symptom", None)
        await query.edit_message_text("✏️ Напишите, что вас беспокоит:")
        return
    try:
        name = diary.COMMON_SYMPTOMS[int(choice)]
    except (ValueError, IndexError):
        logger.warning("Unknown symptom button %r", choice)
        return
    symptom = await _record_symptom(context, name)
    await _diary_entry_added(update, "symptom", symptom.id)
    await query.edit_message_text(formatters.symptom_recorded_message(name))


@allowed_only
async def medications_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Active medications, newest course first."""
    if update.message is None:
        return
    async with _store(context).unit_of_work() as records:
        medications = await records.list_medications(active_only=True)
        rows = [(m.name, m.dosage, m.frequency, m.start_date) for m in medications]
    await update.message.reply_text(formatters.medication_list_message(rows), reply_markup=DIARY_KEYBOARD)


@allowed_only
async def med_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """/med Название, дозировка, частота — start a medication course today."""
    if update.message is None:
        return
    entry = diary.parse_medication_command(" ".join(context.args or []))
    if entry is None:
        await update.message.reply_text(f"❌ Укажите название препарата.\n\n{formatters.MEDICATION_HELP}")
        return
    async with _store(context).unit_of_work() as records:
        medication = await records.add_medication(Medication(
            id=uuid.uuid4(),
            name=entry.name,
            dosage=entry.dosage,
            frequency=entry.frequency,
            start_date=dt.datetime.now(dt.UTC).date(),
            is_active=True,
        ))
    await _diary_entry_added(update, "medication", medication.id)
    await update.message.reply_text(formatters.medication_added_message(entry.name, entry.dosage, entry.frequency))


@allowed_only
async def back_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.message is None:
        return
    context.user_data.pop(AWAITING_KEY, None)
    await update.message.reply_text("👌 Главное меню", reply_markup=MAIN_KEYBOARD)


@allowed_only
async def _answer_awaiting(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Free text after a vital-sign prompt or the custom-symptom button."""
    if update.message is None or update.message.text is None:
        return
    kind, vital_type = context.user_data[AWAITING_KEY]
    text = update.message.text.strip()

    if kind == "symptom":
        context.user_data.pop(AWAITING_KEY, None)
        symptom = await _record_symptom(context, text[:200])
        await _diary_entry_added(update, "symptom", symptom.id)
        await update.message.reply_text(formatters.symptom_recorded_message(symptom.name), reply_markup=DIARY_KEYBOARD)
        return

    reading = diary.parse_vital_input(text, vital_type)
    config = diary.VITAL_SIGNS[VitalType(vital_type)]
    if reading is None or (config.has_second_value and reading.value2 is None):
        # Still waiting; the user can retry or leave with the back button
        await update.message.reply_text("❌ Не удалось распознать значение. Попробуйте ещё раз.")
        return

    context.user_data.pop(AWAITING_KEY, None)
    async with _store(context).unit_of_work() as records:
        vital = await records.add_vital(VitalSign(
            id=uuid.uuid4(),
            recorded_at=dt.datetime.now(dt.UTC),
            type=vital_type,
            value=reading.value,
            value2=reading.value2,
            unit=config.unit,
        ))
    await _diary_entry_added(update, "vital", vital.id)
    note = _STATUS_NOTES.get(diary.vital_status(vital_type, reading.value, reading.value2), "")
    formatted = diary.format_vital(vital_type, reading.value, reading.value2)
    await update.message.reply_text(
        formatters.vital_recorded_message(config.icon, config.name, formatted, note), reply_markup=VITALS_KEYBOARD
    )


_LABEL_COMMANDS = {
    BATCH_LABEL: batch_command,
    STATUS_LABEL: status_command,
    LAST_LABEL: last_command,
    DONE_LABEL: done_command,
    CANCEL_LABEL: cancel_command,
    DIARY_LABEL: diary_command,
    SYMPTOM_LABEL: symptom_command,
    VITALS_LABEL: vitals_command,
    MEDICATIONS_LABEL: medications_command,
    BACK_LABEL: back_command,
}


async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Reply-keyboard labels route to their command, then a pending diary prompt takes the text.

    Anything else gets a hint.
    """
    if update.message is None or update.message.text is None:
        return
    label = update.message.text.strip()
    command = _LABEL_COMMANDS.get(label)
    if command is not None:
        await command(update, context)
        return
    if label in VITAL_LABELS:
        await _ask_vital(update, context)
        return
    if context.user_data and AWAITING_KEY in context.user_data:
        await _answer_awaiting(update, context)
        return
    await _text_hint(update, context)


@allowed_only
async def _text_hint(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if update.message is None:
        return
    await update.message.reply_text(
        "🤔 Отправьте фото или PDF документа.\n\nДля многостраничного документа используйте /batch"
    )


# ── Files ────────────────────────────────────────────────────────────


async def _download(update: Update) -> InboundFile | None:
    """Fetch the photo (largest size) or document attached to the message."""
    message = update.message
    if message is None:
        return None
    if message.photo:
        file = await message.photo[-1].get_file()
        return InboundFile(mime_type="image/jpeg", data=bytes(await file.download_as_bytearray()))
    if message.document:
        file = await message.document.get_file()
        return InboundFile(
            mime_type=message.document.mime_type or "application/octet-stream",
            data=bytes(await file.download_as_bytearray()),
            file_name=message.document.file_name,
        )
    return None


@allowed_only
async def handle_file(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Photos and image/PDF documents: batch page, album item, or a document on its own."""
    message = update.message
    if message is None:
        return

    if message.document and (message.document.mime_type or "") not in SUPPORTED_MIME_TYPES:
        await message.reply_text(f"❌ Неподдерживаемый тип: {message.document.mime_type}")
        return

    key = _key(update)
    collector = _collector(context)

    try:
        inbound = await _download(update)
    except Exception:
        logger.exception("Failed to download file in %s", key)
        await message.reply_text("❌ Не удалось скачать файл. Попробуйте ещё раз.")
        return
    if inbound is None:
        return

    if await collector.is_active(key):
        reply = await collector.add_page(key, inbound)
        await message.reply_text(reply.message, reply_markup=BATCH_KEYBOARD)
        return

    if message.media_group_id and is_image(inbound.mime_type):
        await _collect_album_item(update, context, key, message.media_group_id, inbound)
        return

    name = inbound.file_name or "фото"
    await message.reply_text(f'📥 Получил "{name}", обрабатываю...\n🤖 AI анализирует...')
    done = asyncio.Event()
    typing_task = asyncio.create_task(_send_typing_until_done(message.chat_id, context.bot, done))
    try:
        outcome = await _orchestrator(context).ingest(key, [inbound], message.caption)
    finally:
        done.set()
        await typing_task

    text = outcome_message(outcome)
    if text:
        await message.reply_text(text)


async def _collect_album_item(
    update: Update,
    context: ContextTypes.DEFAULT_TYPE,
    key: str,
    group_id: str,
    inbound: InboundFile,
) -> None:
    """Queue an album item; the last one to go quiet processes the whole album."""
    assert update.message is not None  # noqa: S101
    collector = _collector(context)
    captions: dict[str, str] = context.bot_data.setdefault("album_captions", {})
    if update.message.caption:
        captions[group_id] = update.message.caption

    count = await collector.add_album_page(key, group_id, inbound)
    if count == 1:
        await update.message.reply_text("📥 Получил альбом, собираю страницы...")

    _spawn(context.bot_data, _finish_album(context.bot, collector, key, update.message.chat_id, group_id, captions))


async def _finish_album(
    bot: Bot,
    collector: BatchCollector,
    key: str,
    chat_id: int,
    group_id: str,
    captions: dict[str, str],
) -> None:
    try:
        reply = await collector.finish_if_quiet(key, group_id, captions.get(group_id))
        if reply is None:
            return
        captions.pop(group_id, None)
        await _send_batch_reply(bot, chat_id, reply)
    except Exception:
        logger.exception("Album %s in %s failed", group_id, key)
        await bot.send_message(chat_id=chat_id, text=formatters.INTAKE_FAILED_MESSAGE)


# ── Duplicate decisions ──────────────────────────────────────────────


def parse_callback_data(data: str | None) -> tuple[DecisionAction, uuid.UUID] | None:
    """'<action>:<pending id>' → (action, id); None for anything else."""
    if not data or ":" not in data:
        return None
    action, _, raw_id = data.partition(":")
    try:
        return DecisionAction(action), uuid.UUID(raw_id)
    except ValueError:
        return None


@allowed_only
async def handle_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Inline button: a quick-pick symptom, or add/replace/cancel under a duplicate prompt."""
    query = update.callback_query
    if query is None:
        return
    if query.data and query.data.startswith(SYMPTOM_CALLBACK_PREFIX):
        await _handle_symptom_callback(update, context, query.data.removeprefix(SYMPTOM_CALLBACK_PREFIX))
        return
    parsed = parse_callback_data(query.data)
    if parsed is None:
        await query.answer()
        return

    action, pending_id = parsed
    message_ref = str(query.message.message_id) if query.message else None
    outcome = await _orchestrator(context).resolve(_key(update), pending_id, action, message_ref)
    logger.info("Decision %s resolved with %s: %s", pending_id, action.value, outcome.status.value)
    await query.answer()


# ── Application ──────────────────────────────────────────────────────


def create_telegram_app(
    collector: BatchCollector,
    orchestrator: IntakeOrchestrator,
    store: RecordStore,
) -> Application:
    """Build and configure the Telegram bot application.

    Returns the Application instance (not yet started).
    """
    token = settings.telegram.telegram_bot_token
    if not token:
        msg = "TELEGRAM_BOT_TOKEN not set in environment"
        raise ValueError(msg)

    app = Application.builder().token(token).build()
    app.bot_data["collector"] = collector
    app.bot_data["orchestrator"] = orchestrator
    app.bot_data["store"] = store

    app.add_handler(CommandHandler("start", start_command))
    app.add_handler(CommandHandler("help", help_command))
    app.add_handler(CommandHandler("status", status_command))
    app.add_handler(CommandHandler("last", last_command))
    app.add_handler(CommandHandler("batch", batch_command))
    app.add_handler(CommandHandler("done", done_command))
    app.add_handler(CommandHandler("cancel", cancel_command))
    app.add_handler(CommandHandler("diary", diary_command))
    app.add_handler(CommandHandler("symptom", symptom_command))
    app.add_handler(CommandHandler("vitals", vitals_command))
    app.add_handler(CommandHandler("meds", medications_command))
    app.add_handler(CommandHandler("med", med_command))
    app.add_handler(CallbackQueryHandler(handle_callback))
    app.add_handler(MessageHandler(filters.PHOTO | filters.Document.ALL, handle_file))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_text))

    logger.info("Telegram bot application created")
    return app

"""Russian-locale formatting of dates, counts and bot messages.

Shared by the intake orchestrator (duplicate prompts, resolution edits) and
the Telegram channel (intake replies, /status, /last).
"""

from __future__ import annotations

import datetime as dt

from medcard.config import settings
from medcard.intake.metrics import format_metric_value
from medcard.intake.taxonomy import subtype_label
from medcard.schemas.intake import DocumentPayload, ExtractedMeasurement

# ── Primitives ───────────────────────────────────────────────────────


def format_date(value: dt.date | None) -> str:
    """Format as DD.MM.YYYY."""
    if value is None:
        return "-"
    return value.strftime("%d.%m.%Y")


def pluralize(count: int, one: str, few: str, many: str) -> str:
    """Russian plural form: 1 страница, 2 страницы, 5 страниц."""
    n = abs(count) % 100
    if 11 <= n <= 14:
        return many
    n %= 10
    if n == 1:
        return one
    if 2 <= n <= 4:
        return few
    return many


def pages_phrase(count: int) -> str:
    return f"{count} {pluralize(count, 'страница', 'страницы', 'страниц')}"


def document_link(document_id: object) -> str:
    return f"{settings.patient.app_url.rstrip('/')}/documents/{document_id}"


def upload_file_name(now: dt.datetime) -> str:
    """Readable name for a photo that arrived without one."""
    return f"Загрузка {now:%d.%m.%Y %H-%M}.jpg"


# ── Intake messages ──────────────────────────────────────────────────


def document_saved_message(
    document_id: object,
    payload: DocumentPayload,
    measurements: list[ExtractedMeasurement],
    page_count: int = 1,
) -> str:
    lines = ["✅ Документ сохранён!", ""]
    lines.append(f"📋 {payload.title}")
    lines.append(f"📅 {format_date(payload.date)}")
    lines.append(f"🏷 {subtype_label(payload.subtype)}")
    if payload.doctor:
        lines.append(f"👨‍⚕️ {payload.doctor}")
    if page_count > 1:
        lines.append(f"📄 {pages_phrase(page_count)}")
    if measurements:
        lines.append("")
        lines.append("📊 Показатели:")
        lines.extend(f"  • {m.name}: {format_metric_value(m.name, m.value)}" for m in measurements)
    lines.append("")
    lines.append(f"🔗 {document_link(document_id)}")
    return "\n".join(lines)


def duplicate_prompt_message(
    payload: DocumentPayload,
    existing_id: object,
    existing_title: str,
    existing_date: dt.date,
    reason: str,
) -> str:
    return (
        "⚠️ Найден похожий документ!\n\n"
        f"📋 Новый: {payload.title}\n"
        f"📅 {format_date(payload.date)}\n\n"
        f"📋 Существующий: {existing_title}\n"
        f"📅 {format_date(existing_date)}\n"
        f"🔗 {document_link(existing_id)}\n\n"
        f"🔍 Причина: {reason}\n\n"
        "Что делать?"
    )


def document_added_message(document_id: object, payload: DocumentPayload) -> str:
    return (
        "✅ Документ добавлен!\n\n"
        f"📋 {payload.title}\n"
        f"📅 {format_date(payload.date)}\n\n"
        f"🔗 {document_link(document_id)}"
    )


def document_replaced_message(document_id: object, payload: DocumentPayload) -> str:
    return (
        "🔄 Документ обновлён!\n\n"
        f"📋 {payload.title}\n"
        f"📅 {format_date(payload.date)}\n\n"
        f"🔗 {document_link(document_id)}"
    )


CANCELLED_MESSAGE = "❌ Добавление отменено."
EXPIRED_MESSAGE = "⏰ Время действия истекло."
TARGET_MISSING_MESSAGE = "❌ Документ для замены уже удалён."
RESOLUTION_FAILED_MESSAGE = "❌ Произошла ошибка при обработке. Попробуйте ещё раз."
INTAKE_FAILED_MESSAGE = "❌ Не удалось обработать документ. Попробуйте отправить его ещё раз."
MIXED_PAGES_MESSAGE = (
    "❌ Многостраничный документ собирается только из фото. PDF отправьте отдельным сообщением."
)


def unconfirmed_duplicate_note(existing_id: object) -> str:
    return f"⚠️ Похож на уже сохранённый документ, проверьте и удалите лишний:\n🔗 {document_link(existing_id)}"


# ── Diary messages ───────────────────────────────────────────────────

DIARY_MENU_MESSAGE = (
    "📋 Дневник пациента\n\n"
    "🩺 Симптом — записать, что беспокоит\n"
    "🌡 Показатели — температура, давление, пульс\n"
    "💊 Лекарства — список препаратов"
)
MEDICATION_HELP = "➕ Добавить: /med Название, дозировка, частота\nНапример: /med Преднизолон, 5 мг, 2 раза в день"


def vital_recorded_message(icon: str, name: str, formatted: str, status_note: str = "") -> str:
    return f"✅ {icon} {name}: {formatted}{status_note}\n\nЗаписано!"


def symptom_recorded_message(name: str) -> str:
    return f'✅ Симптом "{name}" записан!'


def medication_added_message(name: str, dosage: str | None, frequency: str | None) -> str:
    lines = ["✅ Препарат добавлен:", "", f"💊 {name}"]
    if dosage:
        lines.append(f"📋 Дозировка: {dosage}")
    if frequency:
        lines.append(f"🕐 Частота: {frequency}")
    return "\n".join(lines)


def medication_list_message(medications: list[tuple[str, str | None, str | None, dt.date]]) -> str:
    """(name, dosage, frequency, start date) rows of the active medications."""
    if not medications:
        return f"💊 Список препаратов пуст.\n\n{MEDICATION_HELP}"
    lines = ["💊 Текущие препараты:", ""]
    for name, dosage, frequency, started in medications:
        line = f"• {name}"
        if dosage:
            line += f" — {dosage}"
        if frequency:
            line += f", {frequency}"
        lines.append(line)
        lines.append(f"  (с {format_date(started)})")
    lines.append("")
    lines.append(MEDICATION_HELP)
    return "\n".join(lines)

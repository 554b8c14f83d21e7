"""Analysis prompt for medical documents.

The prompt is in Russian: documents are Russian and the verbatim-copy
instructions work better in the document's own language.
"""

from __future__ import annotations

import datetime as dt

from medcard.config import settings
from medcard.intake.taxonomy import CATEGORY_SUBTYPES, SPECIALTIES

OUTPUT_FORMAT = """Верни ТОЛЬКО валидный JSON без markdown-форматирования, без ```json, \
просто чистый JSON объект."""


def _taxonomy_block() -> str:
    lines = []
    for category, subtypes in CATEGORY_SUBTYPES.items():
        values = ", ".join(f'"{s.value}"' for s in subtypes)
        lines.append(f'   - "{category.value}": {values}')
    return "\n".join(lines)


def _patient_context(today: dt.date | None = None) -> str:
    today = today or dt.date.today()
    born = settings.patient.patient_birth_date
    age = today.year - born.year - ((today.month, today.day) < (born.month, born.day))
    context = f"мужчина {age} лет"
    if settings.patient.patient_notes:
        context += f", {settings.patient.patient_notes}"
    return context


def build_analysis_prompt() -> str:
    return f"""Ты — медицинский ассистент, анализирующий медицинские документы на русском языке.

Проанализируй предоставленный медицинский документ и извлеки следующую информацию:

1. **category** и **subtype** — категория и подтип документа. Допустимые пары:
{_taxonomy_block()}

2. **title** — название документа (например: "Общий анализ крови", "УЗИ органов брюшной полости", \
"Консультация уролога")

3. **date** — дата документа в формате YYYY-MM-DD. Ищи дату взятия анализа, дату исследования \
или дату приёма. Если не найдена — null.

4. **doctor** — ФИО врача, если указано. Иначе null.

5. **specialty** — специальность врача, по возможности одна из: {", ".join(SPECIALTIES)}. \
Если не указана явно, определи по контексту. Иначе null.

6. **clinic** — название медицинского учреждения, если указано. Иначе null.

7. **summary** — краткий пересказ документа на 2-3 предложения своими словами. Укажи основные \
находки и отклонения от нормы.

8. **conclusion** — официальное заключение врача, скопированное ДОСЛОВНО. Если заключения нет — null.

9. **recommendations** — массив рекомендаций врача, каждая отдельной строкой, дословно. \
Если рекомендаций нет — [].

10. **keyValues** — ключевые числовые показатели в формате {{"название": "значение с единицами"}}.
    Примеры: {{"ПСА общий": "4.5 нг/мл", "Гемоглобин": "130 г/л"}}. Для консультаций может быть {{}}.

11. **tags** — массив тегов для поиска: органы, заболевания, типы исследований, важные показатели.

12. **confidence** — уверенность в анализе от 0 до 1.

Контекст пациента: {_patient_context()}.

ВАЖНО: Заключение врача и рекомендации извлекай ДОСЛОВНО из документа, не перефразируй!

{OUTPUT_FORMAT}"""


def build_multi_page_prompt(page_count: int) -> str:
    return f"""Это многостраничный медицинский документ, состоящий из {page_count} страниц/фото.
Проанализируй ВСЕ страницы как ОДИН документ и извлеки информацию.

{build_analysis_prompt()}"""

"""Document taxonomy and normalization of AI-provided category/subtype strings.

The analyzer (or a manual form) may return labels in any case or wording
("КТ", "ПСА общий", "заключение"). normalize_document_type() maps them onto
the fixed two-level enumeration. It never raises: unknown input becomes
("другое", "другое").
"""

from __future__ import annotations

import re

from medcard.models.enums import DocumentCategory, DocumentSubtype

# ── Reference data ───────────────────────────────────────────────────

CATEGORY_SUBTYPES: dict[DocumentCategory, list[DocumentSubtype]] = {
    DocumentCategory.CONCLUSIONS: [
        DocumentSubtype.CONSULTATION,
        DocumentSubtype.DISCHARGE,
        DocumentSubtype.REFERRAL,
        DocumentSubtype.CONCLUSION,
    ],
    DocumentCategory.LAB_TESTS: [
        DocumentSubtype.BLOOD,
        DocumentSubtype.URINE,
        DocumentSubtype.BIOCHEMISTRY,
        DocumentSubtype.TUMOR_MARKERS,
        DocumentSubtype.HISTOLOGY,
        DocumentSubtype.OTHER_LAB,
    ],
    DocumentCategory.STUDIES: [
        DocumentSubtype.ULTRASOUND,
        DocumentSubtype.CT,
        DocumentSubtype.MRI,
        DocumentSubtype.XRAY,
        DocumentSubtype.ECG,
        DocumentSubtype.ENDOSCOPY,
        DocumentSubtype.PET,
        DocumentSubtype.OTHER_STUDY,
    ],
    DocumentCategory.OTHER: [DocumentSubtype.OTHER],
}

SUBTYPE_CATEGORY: dict[DocumentSubtype, DocumentCategory] = {
    subtype: category for category, subtypes in CATEGORY_SUBTYPES.items() for subtype in subtypes
}

# Subtype used when only the category could be recognized
DEFAULT_SUBTYPE: dict[DocumentCategory, DocumentSubtype] = {
    DocumentCategory.CONCLUSIONS: DocumentSubtype.CONCLUSION,
    DocumentCategory.LAB_TESTS: DocumentSubtype.OTHER_LAB,
    DocumentCategory.STUDIES: DocumentSubtype.OTHER_STUDY,
    DocumentCategory.OTHER: DocumentSubtype.OTHER,
}

CATEGORY_LABELS: dict[DocumentCategory, str] = {
    DocumentCategory.CONCLUSIONS: "Заключения врачей",
    DocumentCategory.LAB_TESTS: "Анализы",
    DocumentCategory.STUDIES: "Исследования",
    DocumentCategory.OTHER: "Другое",
}

SUBTYPE_LABELS: dict[DocumentSubtype, str] = {
    DocumentSubtype.CONSULTATION: "Консультация",
    DocumentSubtype.DISCHARGE: "Выписка",
    DocumentSubtype.REFERRAL: "Направление",
    DocumentSubtype.CONCLUSION: "Заключение",
    DocumentSubtype.BLOOD: "Анализ крови",
    DocumentSubtype.URINE: "Анализ мочи",
    DocumentSubtype.BIOCHEMISTRY: "Биохимия",
    DocumentSubtype.TUMOR_MARKERS: "Онкомаркеры",
    DocumentSubtype.HISTOLOGY: "Гистология",
    DocumentSubtype.OTHER_LAB: "Прочие анализы",
    DocumentSubtype.ULTRASOUND: "УЗИ",
    DocumentSubtype.CT: "КТ",
    DocumentSubtype.MRI: "МРТ",
    DocumentSubtype.XRAY: "Рентген",
    DocumentSubtype.ECG: "ЭКГ",
    DocumentSubtype.ENDOSCOPY: "Эндоскопия",
    DocumentSubtype.PET: "ПЭТ",
    DocumentSubtype.OTHER_STUDY: "Прочие исследования",
    DocumentSubtype.OTHER: "Другое",
}

SPECIALTIES = [
    "уролог",
    "онколог",
    "терапевт",
    "хирург",
    "кардиолог",
    "невролог",
    "гастроэнтеролог",
    "эндокринолог",
    "радиолог",
    "другое",
]

# ── Keyword rules ────────────────────────────────────────────────────
# Checked top to bottom, first match wins. Patterns match at a word start, so
# "кт" does not fire inside "эктомия" and "моч" still matches "мочи".

_SUBTYPE_RULES: list[tuple[re.Pattern[str], DocumentSubtype]] = [
    (re.compile(r"\b(?:пса|psa|онкомаркер|са[-\s]?19|рэа|cea)"), DocumentSubtype.TUMOR_MARKERS),
    (re.compile(r"\b(?:гистолог|биопси|цитолог|иммуногистохим)"), DocumentSubtype.HISTOLOGY),
    (re.compile(r"\b(?:биохим|креатинин|мочевин|глюкоз|билирубин)"), DocumentSubtype.BIOCHEMISTRY),
    (re.compile(r"\b(?:моч|urine)"), DocumentSubtype.URINE),
    (re.compile(r"\b(?:кров|гемоглоб|оак|cbc|blood)"), DocumentSubtype.BLOOD),
    (re.compile(r"\b(?:узи|ультразвук|ultrasound|допплер)"), DocumentSubtype.ULTRASOUND),
    (re.compile(r"\b(?:пэт|pet|сцинтиграф|остеосцинтиграф)"), DocumentSubtype.PET),
    (re.compile(r"\b(?:кт|мскт|ct\b|компьютерн\w*\s+томограф)"), DocumentSubtype.CT),
    (re.compile(r"\b(?:мрт|mri|магнитно)"), DocumentSubtype.MRI),
    (re.compile(r"\b(?:рентген|x-?ray|флюорограф)"), DocumentSubtype.XRAY),
    (re.compile(r"\b(?:экг|ecg|холтер)"), DocumentSubtype.ECG),
    (re.compile(r"\b(?:эндоскоп|колоноскоп|гастроскоп|фгдс|цистоскоп)"), DocumentSubtype.ENDOSCOPY),
    (re.compile(r"\b(?:выписк|эпикриз)"), DocumentSubtype.DISCHARGE),
    (re.compile(r"\b(?:направлени)"), DocumentSubtype.REFERRAL),
    (re.compile(r"\b(?:консультац|осмотр|при[её]м)"), DocumentSubtype.CONSULTATION),
]

_CATEGORY_RULES: list[tuple[re.Pattern[str], DocumentCategory]] = [
    (re.compile(r"\b(?:анализ|лаборатор)"), DocumentCategory.LAB_TESTS),
    (re.compile(r"\b(?:исследовани|диагностик|обследовани)"), DocumentCategory.STUDIES),
    (re.compile(r"\b(?:заключени|консультац|врач)"), DocumentCategory.CONCLUSIONS),
]

_SUBTYPE_BY_VALUE = {s.value: s for s in DocumentSubtype}
_CATEGORY_BY_VALUE = {c.value: c for c in DocumentCategory}


# ── Public API ───────────────────────────────────────────────────────


def normalize_document_type(
    raw_category: str | None, raw_subtype: str | None
) -> tuple[DocumentCategory, DocumentSubtype]:
    """Map free-text category/subtype onto a valid taxonomy pair.

    Resolution order:
        1. Exact subtype value; its canonical category overrides raw_category.
        2. Subtype keyword rules, in priority order.
        3. Category alone (exact value, then keyword rules) with the
           category's generic subtype.
        4. ("другое", "другое").

    Args:
        raw_category: Category as returned by the analyzer or a form.
        raw_subtype: Subtype as returned by the analyzer or a form.

    Returns:
        A (category, subtype) pair that is always consistent.
    """
    subtype_text = _clean(raw_subtype)
    category_text = _clean(raw_category)

    subtype = _match_subtype(subtype_text)
    if subtype is not None:
        return SUBTYPE_CATEGORY[subtype], subtype

    category = _match_category(category_text)
    if category is not None:
        return category, DEFAULT_SUBTYPE[category]

    return DocumentCategory.OTHER, DocumentSubtype.OTHER


def get_category_by_subtype(subtype: str) -> DocumentCategory:
    """Canonical category for a subtype value; "другое" for unknown values."""
    known = _SUBTYPE_BY_VALUE.get(_clean(subtype))
    return SUBTYPE_CATEGORY[known] if known is not None else DocumentCategory.OTHER


def is_valid_pair(category: str, subtype: str) -> bool:
    known = _SUBTYPE_BY_VALUE.get(subtype)
    return known is not None and SUBTYPE_CATEGORY[known].value == category


def category_label(category: str) -> str:
    known = _CATEGORY_BY_VALUE.get(category)
    return CATEGORY_LABELS[known] if known is not None else category


def subtype_label(subtype: str) -> str:
    known = _SUBTYPE_BY_VALUE.get(subtype)
    return SUBTYPE_LABELS[known] if known is not None else subtype


# ── Internals ────────────────────────────────────────────────────────


def _clean(value: str | None) -> str:
    if not value:
        return ""
    return value.strip().lower()


def _match_subtype(text: str) -> DocumentSubtype | None:
    if not text:
        return None
    exact = _SUBTYPE_BY_VALUE.get(text)
    if exact is not None:
        return exact
    for pattern, subtype in _SUBTYPE_RULES:
        if pattern.search(text):
            return subtype
    return None


def _match_category(text: str) -> DocumentCategory | None:
    if not text:
        return None
    exact = _CATEGORY_BY_VALUE.get(text)
    if exact is not None:
        return exact
    for pattern, category in _CATEGORY_RULES:
        if pattern.search(text):
            return category
    return None

"""Duplicate detection for incoming documents.

Four independent signals, checked in fixed priority order. The first one that
qualifies decides the verdict, reason and confidence:

    1. same doctor on the same calendar day          → 0.9
    2. conclusion word-set similarity ≥ 0.7          → the similarity
    3. agreement of shared key/value fields ≥ 0.8    → the agreement ratio
    4. title word-set similarity ≥ 0.5               → the similarity

find_duplicate() is first-match over the pool in the caller's order, not
best-match.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any

DOCTOR_DATE_CONFIDENCE = 0.9
CONCLUSION_THRESHOLD = 0.7
KEY_VALUES_THRESHOLD = 0.8
TITLE_THRESHOLD = 0.5

MIN_TEXT_LENGTH = 3
MIN_WORD_LENGTH = 3


@dataclass(frozen=True)
class DocumentSignal:
    """The fields of a document that duplicate detection looks at."""

    date: dt.date
    title: str = ""
    doctor: str | None = None
    conclusion: str | None = None
    key_values: dict[str, str] | None = None
    id: Any = None

    @classmethod
    def from_document(cls, document: Any) -> DocumentSignal:
        """Build from anything with Document-like attributes (ORM row or payload)."""
        return cls(
            id=getattr(document, "id", None),
            date=document.date,
            title=document.title or "",
            doctor=document.doctor,
            conclusion=document.conclusion,
            key_values=document.key_values,
        )


@dataclass(frozen=True)
class DuplicateCheck:
    is_duplicate: bool
    reason: str = ""
    confidence: float = 0.0


NOT_DUPLICATE = DuplicateCheck(is_duplicate=False)


@dataclass(frozen=True)
class DuplicateMatch:
    document: DocumentSignal
    reason: str
    confidence: float


# ── Similarity measures ──────────────────────────────────────────────


def text_similarity(first: str | None, second: str | None) -> float:
    """Jaccard similarity of the two texts' word sets, in [0, 1].

    Texts are lower-cased and whitespace-split; only words longer than two
    characters count. Identical texts score 1 regardless of length.
    """
    if not first or not second:
        return 0.0
    a = first.lower().strip()
    b = second.lower().strip()
    if a == b:
        return 1.0
    if len(a) < MIN_TEXT_LENGTH or len(b) < MIN_TEXT_LENGTH:
        return 0.0

    words_a = {w for w in a.split() if len(w) >= MIN_WORD_LENGTH}
    words_b = {w for w in b.split() if len(w) >= MIN_WORD_LENGTH}
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


def key_values_agreement(first: dict[str, str] | None, second: dict[str, str] | None) -> float:
    """Fraction of keys present in both maps whose normalized values are equal."""
    if not first or not second:
        return 0.0
    common = [key for key in first if key in second]
    if not common:
        return 0.0
    matching = sum(1 for key in common if _norm(first[key]) == _norm(second[key]))
    return matching / len(common)


def _norm(value: Any) -> str:
    return str(value).lower().strip() if value is not None else ""


# ── Verdicts ─────────────────────────────────────────────────────────


def check_duplicate(existing: DocumentSignal, candidate: DocumentSignal) -> DuplicateCheck:
    """Decide whether `candidate` duplicates `existing`."""
    if existing.doctor and candidate.doctor:
        same_doctor = _norm(existing.doctor) == _norm(candidate.doctor)
        if same_doctor and _calendar_day(existing.date) == _calendar_day(candidate.date):
            return DuplicateCheck(True, "Тот же врач в тот же день", DOCTOR_DATE_CONFIDENCE)

    if existing.conclusion and candidate.conclusion:
        similarity = text_similarity(existing.conclusion, candidate.conclusion)
        if similarity >= CONCLUSION_THRESHOLD:
            return DuplicateCheck(True, f"Схожее заключение ({_percent(similarity)}%)", similarity)

    agreement = key_values_agreement(existing.key_values, candidate.key_values)
    if agreement >= KEY_VALUES_THRESHOLD:
        return DuplicateCheck(True, f"Совпадающие показатели ({_percent(agreement)}%)", agreement)

    similarity = text_similarity(existing.title, candidate.title)
    if similarity >= TITLE_THRESHOLD:
        return DuplicateCheck(True, f"Схожее название ({_percent(similarity)}%)", similarity)

    return NOT_DUPLICATE


def find_duplicate(
    existing: list[DocumentSignal], candidate: DocumentSignal
) -> DuplicateMatch | None:
    """First document in `existing` that `candidate` duplicates, or None."""
    for document in existing:
        result = check_duplicate(document, candidate)
        if result.is_duplicate:
            return DuplicateMatch(document=document, reason=result.reason, confidence=result.confidence)
    return None


def _calendar_day(value: dt.date | dt.datetime) -> dt.date:
    return value.date() if isinstance(value, dt.datetime) else value


def _percent(ratio: float) -> int:
    return round(ratio * 100)

"""Full-text search over the medical card.

Ranking, strongest first:
    1. tag substring (exact)
    2. title, specialty, doctor, key-value names (exact)
    3. summary and conclusion substrings (partial, with a highlight)
    4. word similarity against summary + conclusion (context)

The card belongs to a single patient, so matching runs in Python over the
whole document list.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

MIN_QUERY_LENGTH = 2
MIN_WORD_LENGTH = 3
SIMILARITY_THRESHOLD = 0.3
HIGHLIGHT_CONTEXT = 50


class MatchType(str, Enum):
    EXACT = "exact"
    PARTIAL = "partial"
    CONTEXT = "context"


class Searchable(Protocol):
    title: str
    doctor: str | None
    specialty: str | None
    summary: str | None
    conclusion: str | None
    tags: list[str]
    key_values: dict[str, str] | None


@dataclass
class Highlight:
    field: str
    text: str

    def as_dict(self) -> dict[str, str]:
        return {"field": self.field, "text": self.text}


@dataclass
class SearchResult:
    document: Any
    match_type: MatchType
    relevance: float
    matched_fields: list[str] = field(default_factory=list)
    highlights: list[Highlight] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "document": self.document.as_dict(),
            "match_type": self.match_type.value,
            "relevance": round(self.relevance, 3),
            "matched_fields": self.matched_fields,
            "highlights": [h.as_dict() for h in self.highlights],
        }


@dataclass
class GroupedResults:
    exact: list[SearchResult] = field(default_factory=list)
    partial: list[SearchResult] = field(default_factory=list)
    context: list[SearchResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.exact) + len(self.partial) + len(self.context)


# ── Text helpers ─────────────────────────────────────────────────────


def _words(text: str) -> list[str]:
    return [w for w in re.split(r"\s+", text.lower()) if len(w) >= MIN_WORD_LENGTH]


def word_similarity(query: str, text: str) -> float:
    """Share of query words found (as substrings, either way) among the text's words."""
    query_words = _words(query)
    if not query_words:
        return 0.0
    text_words = _words(text)
    hits = sum(
        1 for qw in query_words if any(qw in tw or tw in qw for tw in text_words)
    )
    return hits / len(query_words)


def extract_highlight(text: str, query: str, context: int = HIGHLIGHT_CONTEXT) -> str:
    """Cut `context` characters around the first occurrence of the query."""
    index = text.lower().find(query.lower())
    if index == -1:
        return text[: context * 2] + ("..." if len(text) > context * 2 else "")
    start = max(0, index - context)
    end = min(len(text), index + len(query) + context)
    snippet = text[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(text):
        snippet += "..."
    return snippet


# ── Matching ─────────────────────────────────────────────────────────


def _match(document: Searchable, query: str) -> SearchResult | None:
    q = query.lower()
    relevance = 0.0
    match_type = MatchType.CONTEXT
    fields: list[str] = []
    highlights: list[Highlight] = []

    def hit(name: str, score: float, kind: MatchType, label: str, text: str) -> None:
        nonlocal relevance, match_type
        fields.append(name)
        highlights.append(Highlight(label, text))
        if score > relevance:
            relevance = score
            match_type = kind

    for tag in document.tags or []:
        if q in tag.lower():
            hit("tags", 1.0, MatchType.EXACT, "Теги", tag)

    if q in (document.title or "").lower():
        hit("title", 0.95, MatchType.EXACT, "Название", document.title)
    if document.specialty and q in document.specialty.lower():
        hit("specialty", 0.9, MatchType.EXACT, "Специальность", document.specialty)
    if document.doctor and q in document.doctor.lower():
        hit("doctor", 0.85, MatchType.EXACT, "Врач", document.doctor)

    if document.summary and q in document.summary.lower():
        hit("summary", 0.8, MatchType.PARTIAL, "Резюме", extract_highlight(document.summary, query))
    if document.conclusion and q in document.conclusion.lower():
        hit(
            "conclusion", 0.8, MatchType.PARTIAL, "Заключение",
            extract_highlight(document.conclusion, query),
        )

    for key, value in (document.key_values or {}).items():
        if q in key.lower():
            hit("key_values", 0.85, MatchType.EXACT, "Показатель", f"{key}: {value}")

    if relevance < 0.5:
        text = f"{document.summary or ''} {document.conclusion or ''}"
        similarity = word_similarity(query, text)
        if similarity >= SIMILARITY_THRESHOLD:
            relevance = similarity * 0.6
            match_type = MatchType.CONTEXT
            fields.append("context")
            highlights.append(Highlight("Возможно (резюме/заключение)", extract_highlight(text.strip(), query)))

    if relevance <= 0:
        return None
    return SearchResult(document, match_type, relevance, fields, highlights)


def search_documents(documents: Iterable[Searchable], query: str) -> list[SearchResult]:
    """Rank documents against the query. Queries shorter than 2 characters match nothing."""
    query = query.strip()
    if len(query) < MIN_QUERY_LENGTH:
        return []
    results = [r for r in (_match(doc, query) for doc in documents) if r is not None]
    results.sort(key=lambda r: r.relevance, reverse=True)
    return results


def group_search_results(results: Sequence[SearchResult]) -> GroupedResults:
    grouped = GroupedResults()
    for result in results:
        match result.match_type:
            case MatchType.EXACT:
                grouped.exact.append(result)
            case MatchType.PARTIAL:
                grouped.partial.append(result)
            case MatchType.CONTEXT:
                grouped.context.append(result)
    return grouped

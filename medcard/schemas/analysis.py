"""Typed AI analysis result.

The analyzer's raw JSON is validated once, here, at the boundary. Everything
downstream (taxonomy, duplicate check, payload building) consumes this model
and never re-checks shapes.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

FALLBACK_TITLE = "Документ (требует ручной обработки)"
FALLBACK_TAG = "требует проверки"
FALLBACK_CONFIDENCE = 0.3
FALLBACK_SUMMARY_CHARS = 500


class AnalysisResult(BaseModel):
    """Structured output of the document analyzer."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    category: str = ""
    subtype: str = ""
    title: str = ""
    date: str | None = None  # YYYY-MM-DD as written by the model
    doctor: str | None = None
    specialty: str | None = None
    clinic: str | None = None
    summary: str | None = None
    conclusion: str | None = None
    recommendations: list[str] = Field(default_factory=list)
    key_values: dict[str, str] = Field(default_factory=dict, alias="keyValues")
    tags: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    @field_validator("category", "subtype", "title", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("recommendations", "tags", mode="before")
    @classmethod
    def _coerce_list(cls, v: Any) -> list[str]:
        """Models sometimes answer null or a single string instead of a list."""
        if v is None:
            return []
        if isinstance(v, str):
            return [v] if v.strip() else []
        if isinstance(v, list):
            return [str(item) for item in v if item is not None and str(item).strip()]
        return []

    @field_validator("key_values", mode="before")
    @classmethod
    def _coerce_key_values(cls, v: Any) -> dict[str, str]:
        if not isinstance(v, dict):
            return {}
        return {str(k): str(val) for k, val in v.items() if val is not None}

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float:
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.0
        return min(max(value, 0.0), 1.0)

    def parsed_date(self) -> date | None:
        """The document date if the model returned a parseable one."""
        if not self.date:
            return None
        text = self.date.strip()
        for fmt in ("%Y-%m-%d", "%d.%m.%Y", "%d/%m/%Y"):
            try:
                return datetime.strptime(text[:10], fmt).date()
            except ValueError:
                continue
        try:
            return datetime.fromisoformat(text).date()
        except ValueError:
            return None

    @classmethod
    def fallback(cls, raw_text: str = "") -> AnalysisResult:
        """Degraded result used when the analyzer fails, so the upload is still kept."""
        summary = raw_text[:FALLBACK_SUMMARY_CHARS]
        if len(raw_text) > FALLBACK_SUMMARY_CHARS:
            summary += "..."
        return cls(
            category="другое",
            subtype="другое",
            title=FALLBACK_TITLE,
            date=datetime.now(UTC).date().isoformat(),
            summary=summary or None,
            tags=[FALLBACK_TAG],
            confidence=FALLBACK_CONFIDENCE,
        )

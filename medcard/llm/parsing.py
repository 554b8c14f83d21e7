"""Analyzer output parsing.

Handles the messy reality of model JSON output: markdown fences, prose
around the object, trailing commas. Validates once into AnalysisResult so
nothing downstream re-checks shapes.
"""

from __future__ import annotations

import json
import re
from typing import Any

from pydantic import ValidationError

from medcard.schemas.analysis import AnalysisResult


class AnalysisParseError(Exception):
    """Raised when analyzer output cannot be parsed into an AnalysisResult."""

    def __init__(self, message: str, raw_output: str) -> None:
        super().__init__(message)
        self.raw_output = raw_output


def parse_analysis_json(raw: str) -> AnalysisResult:
    """Parse the analyzer's text reply into an AnalysisResult.

    Tries the whole (fence-stripped) reply first, then the outermost
    {...} block found anywhere in the text.

    Raises:
        AnalysisParseError: If no JSON object can be decoded or validation fails.
    """
    if not raw or not raw.strip():
        raise AnalysisParseError("Empty analyzer response", raw_output=raw or "")

    data = _decode(_strip_markdown_fences(raw.strip()))
    if data is None:
        match = re.search(r"\{.*\}", raw, re.DOTALL)
        if match:
            data = _decode(match.group(0))
    if not isinstance(data, dict):
        raise AnalysisParseError("No JSON object in analyzer response", raw_output=raw)

    # Older prompts answered with a single "type" field
    if "subtype" not in data and "type" in data:
        data["subtype"] = data["type"]

    try:
        return AnalysisResult.model_validate(data)
    except ValidationError as exc:
        raise AnalysisParseError(f"Schema validation failed: {exc}", raw_output=raw) from exc


def _decode(text: str) -> Any:
    try:
        return json.loads(_fix_trailing_commas(text))
    except json.JSONDecodeError:
        return None


def _strip_markdown_fences(text: str) -> str:
    """Remove markdown code fences wrapping JSON."""
    match = re.search(r"```(?:json)?\s*\n?(.*?)\n?\s*```", text, re.DOTALL)
    if match:
        return match.group(1).strip()
    return text


def _fix_trailing_commas(text: str) -> str:
    return re.sub(r",\s*([}\]])", r"\1", text)

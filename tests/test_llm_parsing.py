"""Tests for analyzer output parsing, the fallback result and the analysis prompt."""

from __future__ import annotations

import datetime as dt

import pytest

from medcard.intake.taxonomy import SPECIALTIES
from medcard.llm.parsing import AnalysisParseError, parse_analysis_json
from medcard.llm.prompts import build_analysis_prompt
from medcard.schemas.analysis import FALLBACK_TAG, FALLBACK_TITLE, AnalysisResult


def test_plain_json():
    result = parse_analysis_json(
        '{"category": "анализы", "subtype": "кровь", "title": "ОАК", "date": "2025-03-25",'
        ' "keyValues": {"Гемоглобин": "140 г/л"}, "confidence": 0.9}'
    )
    assert result.subtype == "кровь"
    assert result.key_values == {"Гемоглобин": "140 г/л"}
    assert result.parsed_date() == dt.date(2025, 3, 25)


def test_markdown_fence_and_trailing_comma():
    raw = '```json\n{"category": "исследования", "subtype": "узи", "tags": ["почки",],}\n```'
    result = parse_analysis_json(raw)
    assert result.subtype == "узи"
    assert result.tags == ["почки"]


def test_object_surrounded_by_prose():
    raw = 'Вот результат анализа:\n{"title": "Консультация уролога", "subtype": "консультация"}\nГотово.'
    assert parse_analysis_json(raw).title == "Консультация уролога"


def test_legacy_type_field():
    assert parse_analysis_json('{"type": "мрт"}').subtype == "мрт"


def test_loose_field_shapes_are_coerced():
    result = parse_analysis_json(
        '{"title": null, "tags": "онкология", "recommendations": null,'
        ' "keyValues": {"ПСА": 4.5, "пусто": null}, "confidence": "1.7"}'
    )
    assert result.title == ""
    assert result.tags == ["онкология"]
    assert result.recommendations == []
    assert result.key_values == {"ПСА": "4.5"}
    assert result.confidence == 1.0


@pytest.mark.parametrize("raw", ["", "   ", "не json вовсе", "[1, 2, 3]", "{broken"])
def test_garbage_raises(raw):
    with pytest.raises(AnalysisParseError) as exc_info:
        parse_analysis_json(raw)
    assert exc_info.value.raw_output == raw


class TestDates:
    @pytest.mark.parametrize(
        "value", ["2025-03-25", "25.03.2025", "25/03/2025", "2025-03-25T08:30:00"]
    )
    def test_supported_formats(self, value):
        assert AnalysisResult(date=value).parsed_date() == dt.date(2025, 3, 25)

    @pytest.mark.parametrize("value", [None, "", "вчера", "2025-13-45"])
    def test_unparseable(self, value):
        assert AnalysisResult(date=value).parsed_date() is None


class TestFallback:
    def test_fallback_marks_manual_review(self):
        result = AnalysisResult.fallback("сырой ответ")
        assert result.title == FALLBACK_TITLE
        assert result.tags == [FALLBACK_TAG]
        assert result.summary == "сырой ответ"
        assert result.confidence == pytest.approx(0.3)
        assert result.parsed_date() is not None

    def test_fallback_truncates_summary(self):
        result = AnalysisResult.fallback("x" * 600)
        assert result.summary == "x" * 500 + "..."

    def test_fallback_without_text(self):
        assert AnalysisResult.fallback().summary is None


def test_prompt_lists_known_specialties():
    prompt = build_analysis_prompt()

    assert "уролог, онколог, терапевт" in prompt
    assert all(specialty in prompt for specialty in SPECIALTIES)

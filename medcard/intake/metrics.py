"""Metrics catalog and measurement extraction.

Turns the analyzer's free-text key/value map ({"ПСА": "4,5 нг/мл", ...}) into
typed measurements for the tracked metrics. Unknown keys and values without
a leading number are skipped, never raised.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass

from medcard.models.enums import ValueStatus
from medcard.schemas.intake import ExtractedMeasurement

HEMOGLOBIN = "Гемоглобин"

# Values below this are treated as a misplaced decimal point (9.2 → 92 г/л)
HEMOGLOBIN_OCR_THRESHOLD = 30.0
HEMOGLOBIN_OCR_FACTOR = 10

# Changes smaller than this many percent count as stable
STABLE_CHANGE_PERCENT = 1.0

_VALUE_RE = re.compile(r"^\s*(\d+(?:[.,]\d+)?)\s*(.*)$")


@dataclass(frozen=True)
class MetricConfig:
    name: str
    unit: str
    normal_min: float
    normal_max: float
    color: str
    description: str
    aliases: tuple[str, ...] = ()
    critical: float | None = None


@dataclass(frozen=True)
class MetricChange:
    percent: int
    direction: str  # "up" | "down" | "stable"


METRICS_CATALOG: dict[str, MetricConfig] = {
    "ПСА общий": MetricConfig(
        name="ПСА общий",
        aliases=("ПСА", "PSA", "PSA total", "ПСА общ", "Простатический специфический антиген"),
        unit="нг/мл",
        normal_min=0.0,
        normal_max=4.0,
        critical=10.0,
        color="#ef4444",
        description="Простатический специфический антиген (онкомаркер)",
    ),
    "ПСА свободный": MetricConfig(
        name="ПСА свободный",
        aliases=("ПСА своб", "PSA free", "fPSA", "Свободный ПСА"),
        unit="нг/мл",
        normal_min=0.0,
        normal_max=0.93,
        color="#f97316",
        description="Свободная фракция ПСА",
    ),
    HEMOGLOBIN: MetricConfig(
        name=HEMOGLOBIN,
        aliases=("Hb", "HGB", "Hemoglobin", "Гемоглоб"),
        unit="г/л",
        normal_min=130.0,
        normal_max=160.0,
        color="#3b82f6",
        description="Уровень гемоглобина в крови",
    ),
}

TRACKED_METRICS = list(METRICS_CATALOG)


def _build_alias_index() -> dict[str, str]:
    index: dict[str, str] = {}
    for canonical, config in METRICS_CATALOG.items():
        index[canonical.lower()] = canonical
        for alias in config.aliases:
            index.setdefault(alias.lower(), canonical)
    return index


_ALIASES = _build_alias_index()


# ── Catalog lookup ───────────────────────────────────────────────────


def get_metric_config(name: str | None) -> MetricConfig | None:
    """Catalog entry for a canonical name or any alias (case-insensitive)."""
    if not name:
        return None
    if name in METRICS_CATALOG:
        return METRICS_CATALOG[name]
    canonical = _ALIASES.get(name.strip().lower())
    return METRICS_CATALOG[canonical] if canonical else None


def get_canonical_metric_name(name: str | None) -> str | None:
    config = get_metric_config(name)
    return config.name if config else None


# ── Value parsing ────────────────────────────────────────────────────


def parse_value_with_unit(text: str | None) -> tuple[float, str] | None:
    """Split "4,5 нг/мл" into (4.5, "нг/мл"). None when there is no leading number."""
    if not text:
        return None
    match = _VALUE_RE.match(text)
    if not match:
        return None
    value = float(match.group(1).replace(",", "."))
    if not math.isfinite(value):
        return None
    return value, match.group(2).strip()


def correct_hemoglobin_ocr(value: float, unit: str) -> float:
    """Undo a dropped digit on hemoglobin readings in г/л.

    A reading like 9.2 г/л is physiologically impossible and almost always an
    OCR misread of 92. Only values below 30 are touched; 84 г/л stays 84.
    """
    expected = METRICS_CATALOG[HEMOGLOBIN].unit
    if value < HEMOGLOBIN_OCR_THRESHOLD and unit.strip().lower() == expected:
        return round(value * HEMOGLOBIN_OCR_FACTOR, 2)
    return value


def extract_measurements(key_values: dict[str, str] | None) -> list[ExtractedMeasurement]:
    """Typed measurements for every catalog-known, parseable key.

    Args:
        key_values: The analyzer's key→value map, or None.

    Returns:
        One ExtractedMeasurement per recognized key, in input order. The unit
        falls back to the catalog unit when the value carried none.
    """
    if not key_values:
        return []

    measurements: list[ExtractedMeasurement] = []
    for key, raw_value in key_values.items():
        config = get_metric_config(key)
        if config is None:
            continue
        parsed = parse_value_with_unit(raw_value)
        if parsed is None:
            continue

        value, unit = parsed
        unit = unit or config.unit
        if config.name == HEMOGLOBIN:
            value = correct_hemoglobin_ocr(value, unit)

        measurements.append(ExtractedMeasurement(name=config.name, value=value, unit=unit))
    return measurements


# ── Presentation helpers ─────────────────────────────────────────────


def value_status(metric_name: str, value: float) -> ValueStatus:
    config = get_metric_config(metric_name)
    if config is None:
        return ValueStatus.UNKNOWN
    if config.critical is not None and value >= config.critical:
        return ValueStatus.CRITICAL
    if value < config.normal_min:
        return ValueStatus.LOW
    if value > config.normal_max:
        return ValueStatus.HIGH
    return ValueStatus.NORMAL


def format_metric_value(metric_name: str, value: float) -> str:
    config = get_metric_config(metric_name)
    unit = config.unit if config else ""
    number = f"{value:g}"
    return f"{number} {unit}".strip()


def calculate_change(old_value: float, new_value: float) -> MetricChange:
    """Percent change between two readings, rounded to whole percent."""
    if old_value == 0:
        return MetricChange(percent=0, direction="stable")
    percent = (new_value - old_value) / old_value * 100
    if abs(percent) < STABLE_CHANGE_PERCENT:
        return MetricChange(percent=0, direction="stable")
    return MetricChange(percent=round(percent), direction="up" if percent > 0 else "down")

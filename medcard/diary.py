"""Patient diary — vital-sign catalog, input parsing and formatting.

The bot diary menu and the web API both record vital signs through
parse_vital_input(); values are checked against the catalog's normal ranges
with vital_status().
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from medcard.models.enums import ValueStatus, VitalType


@dataclass(frozen=True)
class VitalSignConfig:
    type: VitalType
    name: str
    unit: str
    icon: str
    normal_min: float | None = None
    normal_max: float | None = None
    # Second value (diastolic pressure)
    has_second_value: bool = False
    normal_min2: float | None = None
    normal_max2: float | None = None


VITAL_SIGNS: dict[VitalType, VitalSignConfig] = {
    VitalType.TEMPERATURE: VitalSignConfig(
        VitalType.TEMPERATURE, "Температура", "°C", "🌡", normal_min=36.0, normal_max=37.0
    ),
    VitalType.PRESSURE: VitalSignConfig(
        VitalType.PRESSURE,
        "Давление",
        "мм рт.ст.",
        "💓",
        normal_min=90,
        normal_max=140,
        has_second_value=True,
        normal_min2=60,
        normal_max2=90,
    ),
    VitalType.PULSE: VitalSignConfig(VitalType.PULSE, "Пульс", "уд/мин", "❤️", normal_min=60, normal_max=100),
    VitalType.SPO2: VitalSignConfig(VitalType.SPO2, "Сатурация", "%", "🫁", normal_min=95, normal_max=100),
    VitalType.WEIGHT: VitalSignConfig(VitalType.WEIGHT, "Вес", "кг", "⚖️"),
}

# Offered as quick-pick buttons in the bot
COMMON_SYMPTOMS = [
    "Головная боль",
    "Тошнота",
    "Слабость",
    "Головокружение",
    "Боль в животе",
    "Температура",
    "Озноб",
    "Потливость",
    "Бессонница",
    "Отёки",
    "Одышка",
    "Боль в спине",
    "Кашель",
    "Насморк",
    "Боль в горле",
]

_PAIR_RE = re.compile(r"^(\d+)[/\s]+(\d+)$")
_NUMBER_RE = re.compile(r"^\d+(?:\.\d+)?")


@dataclass(frozen=True)
class VitalReading:
    value: float
    value2: float | None = None


def get_vital_config(vital_type: str) -> VitalSignConfig | None:
    try:
        return VITAL_SIGNS[VitalType(vital_type)]
    except ValueError:
        return None


def parse_vital_input(text: str, vital_type: str) -> VitalReading | None:
    """Parse "37,2", "120/80" or "72". None when the type or the number is unknown."""
    config = get_vital_config(vital_type)
    if config is None:
        return None
    trimmed = text.strip()

    if config.has_second_value:
        pair = _PAIR_RE.match(trimmed)
        if pair:
            return VitalReading(float(pair.group(1)), float(pair.group(2)))

    number = _NUMBER_RE.match(trimmed.replace(",", "."))
    if number is None:
        return None
    return VitalReading(float(number.group(0)))


def format_vital(vital_type: str, value: float, value2: float | None = None) -> str:
    config = get_vital_config(vital_type)
    if config is None:
        return f"{value:g}"
    if config.has_second_value and value2 is not None:
        return f"{value:g}/{value2:g} {config.unit}"
    if config.type == VitalType.TEMPERATURE:
        return f"{value:.1f} {config.unit}"
    return f"{value:g} {config.unit}"


def vital_status(vital_type: str, value: float, value2: float | None = None) -> ValueStatus:
    """Normal/low/high against the catalog range; UNKNOWN for signs without one."""
    config = get_vital_config(vital_type)
    if config is None or config.normal_min is None or config.normal_max is None:
        return ValueStatus.UNKNOWN

    if config.has_second_value and value2 is not None:
        assert config.normal_min2 is not None and config.normal_max2 is not None  # noqa: S101
        if value > config.normal_max or value2 > config.normal_max2:
            return ValueStatus.HIGH
        if value < config.normal_min or value2 < config.normal_min2:
            return ValueStatus.LOW
        return ValueStatus.NORMAL

    if value < config.normal_min:
        return ValueStatus.LOW
    if value > config.normal_max:
        return ValueStatus.HIGH
    return ValueStatus.NORMAL


@dataclass(frozen=True)
class MedicationEntry:
    name: str
    dosage: str | None = None
    frequency: str | None = None


def parse_medication_command(args: str) -> MedicationEntry | None:
    """'Преднизолон, 5 мг, 2 раза в день' → name, dosage, frequency."""
    parts = [part.strip() for part in args.split(",")]
    if not parts or not parts[0]:
        return None
    dosage = parts[1] if len(parts) > 1 and parts[1] else None
    frequency = ", ".join(p for p in parts[2:] if p) or None
    return MedicationEntry(parts[0], dosage, frequency)

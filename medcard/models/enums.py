"""Domain enums used across SQLAlchemy models and Pydantic schemas.

All enums use str mixin for JSON serialization. Values are the Russian labels
stored in the database and shown in the UI.
"""

from __future__ import annotations

from enum import Enum


class DocumentCategory(str, Enum):
    """Top level of the document taxonomy."""

    CONCLUSIONS = "заключения"
    LAB_TESTS = "анализы"
    STUDIES = "исследования"
    OTHER = "другое"


class DocumentSubtype(str, Enum):
    """Second level of the document taxonomy — each belongs to exactly one category."""

    # заключения
    CONSULTATION = "консультация"
    DISCHARGE = "выписка"
    REFERRAL = "направление"
    CONCLUSION = "заключение"

    # анализы
    BLOOD = "кровь"
    URINE = "моча"
    BIOCHEMISTRY = "биохимия"
    TUMOR_MARKERS = "онкомаркеры"
    HISTOLOGY = "гистология"
    OTHER_LAB = "прочие анализы"

    # исследования
    ULTRASOUND = "узи"
    CT = "кт"
    MRI = "мрт"
    XRAY = "рентген"
    ECG = "экг"
    ENDOSCOPY = "эндоскопия"
    PET = "пэт"
    OTHER_STUDY = "прочие исследования"

    # другое
    OTHER = "другое"


class BatchState(str, Enum):
    """Multi-page collection state for a conversation.

    IDLE is never stored: it is the absence of a batch_sessions row.
    """

    IDLE = "idle"
    ACTIVE = "active"


class DecisionAction(str, Enum):
    """User choices offered when a new document collides with an existing one."""

    ADD = "add"
    REPLACE = "replace"
    CANCEL = "cancel"


class ValueStatus(str, Enum):
    """Position of a measurement relative to its normal range."""

    NORMAL = "normal"
    LOW = "low"
    HIGH = "high"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


class VitalType(str, Enum):
    """Vital signs the patient records in the diary."""

    TEMPERATURE = "temperature"
    PRESSURE = "pressure"
    PULSE = "pulse"
    SPO2 = "spo2"
    WEIGHT = "weight"

"""Tests for diary input parsing, formatting and normal ranges."""

from __future__ import annotations

import pytest

from medcard.diary import (
    MedicationEntry,
    VitalReading,
    format_vital,
    get_vital_config,
    parse_medication_command,
    parse_vital_input,
    vital_status,
)
from medcard.models.enums import ValueStatus


class TestParseVitalInput:
    @pytest.mark.parametrize(
        ("text", "vital_type", "expected"),
        [
            ("37.2", "temperature", VitalReading(37.2)),
            ("37,2", "temperature", VitalReading(37.2)),
            (" 72 уд ", "pulse", VitalReading(72)),
            ("120/80", "pressure", VitalReading(120, 80)),
            ("120 80", "pressure", VitalReading(120, 80)),
            ("130", "pressure", VitalReading(130)),
        ],
    )
    def test_readings(self, text, vital_type, expected):
        assert parse_vital_input(text, vital_type) == expected

    @pytest.mark.parametrize(("text", "vital_type"), [("высокая", "temperature"), ("", "pulse"), ("98", "glucose")])
    def test_unreadable(self, text, vital_type):
        assert parse_vital_input(text, vital_type) is None


def test_format_vital():
    assert format_vital("temperature", 37) == "37.0 °C"
    assert format_vital("pressure", 120, 80) == "120/80 мм рт.ст."
    assert format_vital("spo2", 98) == "98 %"
    assert format_vital("glucose", 5.5) == "5.5"


class TestVitalStatus:
    @pytest.mark.parametrize(
        ("vital_type", "value", "value2", "expected"),
        [
            ("temperature", 36.6, None, ValueStatus.NORMAL),
            ("temperature", 38.1, None, ValueStatus.HIGH),
            ("spo2", 91, None, ValueStatus.LOW),
            ("pressure", 120, 80, ValueStatus.NORMAL),
            ("pressure", 125, 95, ValueStatus.HIGH),
            ("pressure", 100, 55, ValueStatus.LOW),
            ("weight", 200, None, ValueStatus.UNKNOWN),
            ("glucose", 5, None, ValueStatus.UNKNOWN),
        ],
    )
    def test_ranges(self, vital_type, value, value2, expected):
        assert vital_status(vital_type, value, value2) == expected

    def test_high_wins_over_low(self):
        assert vital_status("pressure", 150, 55) == ValueStatus.HIGH


def test_get_vital_config():
    assert get_vital_config("pressure").has_second_value
    assert get_vital_config("mood") is None


class TestMedicationCommand:
    def test_full(self):
        assert parse_medication_command("Преднизолон, 5 мг, 2 раза в день") == MedicationEntry(
            "Преднизолон", "5 мг", "2 раза в день"
        )

    def test_frequency_keeps_extra_commas(self):
        entry = parse_medication_command("Омепразол, 20 мг, утром, натощак")
        assert entry.frequency == "утром, натощак"

    def test_name_only(self):
        assert parse_medication_command(" Аспирин ") == MedicationEntry("Аспирин")

    @pytest.mark.parametrize("args", ["", "  ", ", 5 мг"])
    def test_missing_name(self, args):
        assert parse_medication_command(args) is None

"""Tests for phone normalization."""
import pytest

from waitline.lib.phone import normalize_phone


@pytest.mark.unit
@pytest.mark.parametrize(
    "raw, expected",
    [
        ("(555) 123-4567", "+15551234567"),
        ("555.123.4567", "+15551234567"),
        ("+1 555 123 4567", "+15551234567"),
        ("+44 20 7946 0958", "+442079460958"),
        ("  5551234567  ", "+15551234567"),
    ],
)
def test_normalizes_to_e164(raw, expected):
    assert normalize_phone(raw) == expected


@pytest.mark.unit
@pytest.mark.parametrize("raw", [None, "", "   ", "12345", "555-1234", "+1 23", "call me"])
def test_rejects_unusable_numbers(raw):
    assert normalize_phone(raw) is None

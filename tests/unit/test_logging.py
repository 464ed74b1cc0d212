"""Tests for the JSON log formatter."""
import json
import logging

import pytest

from waitline.lib.logging import JSONFormatter, mask_phone, set_correlation_id


def _record(**extra):
    record = logging.LogRecord("waitline.test", logging.INFO, __file__, 1, "Outbox message sent", (), None)
    record.__dict__.update(extra)
    return record


@pytest.mark.unit
@pytest.mark.parametrize(
    "value, expected",
    [("+15551234567", "********4567"), ("1234", "1234"), (None, None), (42, 42)],
)
def test_mask_phone(value, expected):
    assert mask_phone(value) == expected


@pytest.mark.unit
def test_formatter_masks_phones_and_keeps_context():
    set_correlation_id("req-7")
    try:
        line = JSONFormatter().format(_record(to="+15551234567", message_id="abc", attempt_count=2))
    finally:
        set_correlation_id(None)

    data = json.loads(line)
    assert data["message"] == "Outbox message sent"
    assert data["correlation_id"] == "req-7"
    assert data["to"] == "********4567"
    assert data["message_id"] == "abc"
    assert data["attempt_count"] == 2
    assert "args" not in data

"""
Tests for SMS bodies, idempotency keys and message type gating.
"""
from uuid import uuid4

import pytest

from waitline.lib.settings import settings
from waitline.models.outbox import REQUIRES_CONFIRM_SENT, MessageType, gated_message_types
from waitline.models.queue_entries import CustomerType
from waitline.services import messages


@pytest.mark.unit
def test_every_message_type_declares_gating():
    assert set(REQUIRES_CONFIRM_SENT) == set(MessageType)


@pytest.mark.unit
def test_only_next_and_serving_wait_for_confirmation():
    assert set(gated_message_types()) == {MessageType.NEXT, MessageType.SERVING}


@pytest.mark.unit
@pytest.mark.parametrize(
    "position, expected",
    [
        (1, "There are 0 people ahead of you."),
        (2, "There is 1 person ahead of you."),
        (5, "There are 4 people ahead of you."),
        (None, "There are 0 people ahead of you."),
    ],
)
def test_paying_confirmation_people_ahead(position, expected):
    body = messages.build_paying_confirmation("Jamie", "Concourse A", position)

    assert body.startswith(f"Hi Jamie! You've joined the queue at {settings.brand_name} at Concourse A.")
    assert expected in body
    assert "Text CANCEL" in body


@pytest.mark.unit
def test_priority_pass_confirmation_mentions_membership():
    body = messages.build_confirmation(CustomerType.PRIORITY_PASS, "  ", "Concourse A", 3)

    assert body.startswith("Hi there!")
    assert "membership benefits" in body
    assert "ahead of you" not in body


@pytest.mark.unit
def test_notifications_name_brand():
    assert settings.brand_name in messages.build_next_notification("Concourse A")
    assert settings.brand_name in messages.build_serving_notification()
    assert messages.build_cancel_ack("Jamie").endswith(", Jamie. Thanks for letting us know.")
    assert ", " not in messages.build_cancel_ack(None).split("queue")[1]


@pytest.mark.unit
def test_idempotency_keys():
    entry_id = uuid4()

    assert messages.idempotency_key(MessageType.CONFIRM, entry_id) == f"confirm:{entry_id}"
    assert messages.idempotency_key(MessageType.NEXT, entry_id) == f"next:{entry_id}"
    with pytest.raises(ValueError):
        messages.idempotency_key(MessageType.STAFF, entry_id)


@pytest.mark.unit
def test_staff_message_keys_are_distinct_per_send():
    entry_id = uuid4()

    first = messages.staff_message_key(entry_id)
    second = messages.staff_message_key(entry_id)

    assert first.startswith(f"staff:{entry_id}:")
    assert first != second

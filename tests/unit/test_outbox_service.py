"""
Tests for the outbox delivery engine: enqueue, claim, send and retries.
"""
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from waitline.lib.datetime_utils import as_utc
from waitline.lib.errors import ConflictError, NotFoundError
from waitline.lib.settings import settings
from waitline.models.outbox import MessageType, OutboxMessage, OutboxStatus
from waitline.models.sms import SmsOptOut
from waitline.services.outbox_service import (
    DeliveryStatus,
    OutboxService,
    backoff_delay_seconds,
    clamp_sweep_limit,
)
from waitline.services.rate_limiter import RateLimiter, RateLimitResult

PHONE = "+15551230001"


@pytest.fixture
def entry_id():
    # Outbox rows only reference entries loosely; SQLite does not enforce the FK here
    return uuid4()


def _enqueue(outbox, db_session, message_type, entry_id, key=None, body="hello", phone=PHONE):
    message_id = outbox.enqueue(
        entry_id,
        message_type,
        phone,
        body,
        key or f"{message_type.value}:{entry_id}",
    )
    db_session.commit()
    return message_id


# Enqueue

@pytest.mark.unit
def test_enqueue_is_idempotent_per_key(outbox, db_session, entry_id):
    first = _enqueue(outbox, db_session, MessageType.CONFIRM, entry_id)
    second = _enqueue(outbox, db_session, MessageType.CONFIRM, entry_id, body="different")

    assert first == second
    assert db_session.execute(select(func.count(OutboxMessage.id))).scalar_one() == 1
    message = outbox.get(first)
    assert message.status == OutboxStatus.QUEUED
    assert message.body == "hello"
    assert message.attempt_count == 0


# Claim

@pytest.mark.unit
def test_claim_locks_with_fresh_token(outbox, db_session, entry_id):
    message_id = _enqueue(outbox, db_session, MessageType.CONFIRM, entry_id)

    claimed = outbox.claim(limit=10)

    assert [m.id for m in claimed] == [message_id]
    assert claimed[0].lock_token is not None
    assert claimed[0].locked_at is not None
    assert outbox.claim(limit=10) == []


@pytest.mark.unit
def test_expired_lock_can_be_reclaimed(outbox, db_session, entry_id, clock):
    _enqueue(outbox, db_session, MessageType.CONFIRM, entry_id)
    first_token = outbox.claim(limit=1)[0].lock_token

    clock.advance(minutes=6)
    reclaimed = outbox.claim(limit=1, lock_minutes=5)

    assert len(reclaimed) == 1
    assert reclaimed[0].lock_token != first_token


@pytest.mark.unit
def test_claim_respects_next_attempt_at(outbox, db_session, entry_id, clock):
    _enqueue(outbox, db_session, MessageType.CONFIRM, entry_id)
    clock.advance(seconds=-1)

    assert outbox.claim(limit=10) == []


@pytest.mark.unit
def test_claim_limit_and_specific_id(outbox, db_session):
    ids = [_enqueue(outbox, db_session, MessageType.CANCEL_ACK, uuid4()) for _ in range(3)]

    assert [m.id for m in outbox.claim(limit=5, message_id=ids[1])] == [ids[1]]
    assert {m.id for m in outbox.claim(limit=2)} == {ids[0], ids[2]}


@pytest.mark.unit
@pytest.mark.parametrize("gated_type", [MessageType.NEXT, MessageType.SERVING])
@pytest.mark.parametrize("confirm_status", [OutboxStatus.QUEUED, OutboxStatus.FAILED, OutboxStatus.DEAD])
def test_gated_types_wait_for_confirm_sent(outbox, db_session, entry_id, gated_type, confirm_status):
    confirm_id = _enqueue(outbox, db_session, MessageType.CONFIRM, entry_id)
    gated_id = _enqueue(outbox, db_session, gated_type, entry_id)
    outbox.get(confirm_id).status = confirm_status
    db_session.commit()

    claimed = [m.id for m in outbox.claim(limit=10)]

    assert gated_id not in claimed


@pytest.mark.unit
def test_gated_type_claimable_once_confirm_sent(outbox, db_session, entry_id):
    confirm_id = _enqueue(outbox, db_session, MessageType.CONFIRM, entry_id)
    next_id = _enqueue(outbox, db_session, MessageType.NEXT, entry_id)

    outbox.deliver([confirm_id])

    assert [m.id for m in outbox.claim(limit=10)] == [next_id]


@pytest.mark.unit
def test_ungated_types_ignore_confirm_state(outbox, db_session, entry_id):
    _enqueue(outbox, db_session, MessageType.CONFIRM, entry_id)
    ack_id = _enqueue(outbox, db_session, MessageType.CANCEL_ACK, entry_id)
    staff_id = _enqueue(outbox, db_session, MessageType.STAFF, entry_id, key=f"staff:{entry_id}:1")

    claimed = {m.id for m in outbox.claim(limit=10)}

    assert {ack_id, staff_id} <= claimed


# Send

@pytest.mark.unit
def test_send_success_marks_sent(outbox, db_session, entry_id, provider):
    message_id = _enqueue(outbox, db_session, MessageType.CONFIRM, entry_id)

    results = outbox.deliver([message_id])

    assert results[0].status == DeliveryStatus.SENT
    message = outbox.get(message_id)
    assert message.status == OutboxStatus.SENT
    assert message.provider_message_id.startswith("SM")
    assert message.sent_at is not None
    assert message.lock_token is None
    assert provider.sent == [(PHONE, "hello")]


@pytest.mark.unit
def test_backoff_delays_double_and_cap():
    delays = [backoff_delay_seconds(attempt) for attempt in range(1, 9)]

    assert delays[:3] == [60, 120, 240]
    assert delays == sorted(delays)
    assert max(delays) == 3600


@pytest.mark.unit
def test_failures_back_off_then_dead_letter_on_eighth(outbox, db_session, entry_id, provider, clock):
    provider.failures = 100
    message_id = _enqueue(outbox, db_session, MessageType.CONFIRM, entry_id)

    gaps = []
    for attempt in range(1, 9):
        result = outbox.deliver([message_id])[0]
        message = outbox.get(message_id)
        assert message.attempt_count == attempt
        if attempt < 8:
            assert result.status == DeliveryStatus.FAILED
            assert message.status == OutboxStatus.FAILED
            assert message.last_error == "provider unavailable"
            gap = as_utc(message.next_attempt_at) - clock()
            gaps.append(gap)
            clock.now = as_utc(message.next_attempt_at)
        else:
            assert result.status == DeliveryStatus.DEAD
            assert message.status == OutboxStatus.DEAD

    assert gaps == sorted(gaps)
    assert gaps[0] == timedelta(seconds=60)
    # Dead messages are never claimed again
    clock.advance(days=1)
    assert outbox.deliver([message_id])[0].status == DeliveryStatus.SKIPPED
    assert provider.sent == []


@pytest.mark.unit
def test_provider_exception_counts_as_failure(db_session, clock, entry_id):
    provider = MagicMock()
    provider.send.side_effect = RuntimeError("socket closed")
    outbox = OutboxService(db_session, provider=provider, clock=clock)
    message_id = _enqueue(outbox, db_session, MessageType.CONFIRM, entry_id)

    result = outbox.deliver([message_id])[0]

    assert result.status == DeliveryStatus.FAILED
    assert result.error == "socket closed"
    assert outbox.get(message_id).attempt_count == 1


@pytest.mark.unit
def test_opted_out_phone_is_dead_without_sending(outbox, db_session, entry_id, provider):
    db_session.add(SmsOptOut(phone_e164=PHONE, source="twilio_webhook"))
    db_session.commit()
    message_id = _enqueue(outbox, db_session, MessageType.CONFIRM, entry_id)

    result = outbox.deliver([message_id])[0]

    assert result.status == DeliveryStatus.DEAD
    assert outbox.get(message_id).last_error == "opted_out"
    assert provider.sent == []


@pytest.mark.unit
@pytest.mark.parametrize("body, phone", [(None, PHONE), ("", PHONE), ("hi", None)])
def test_missing_content_is_dead(outbox, db_session, entry_id, provider, body, phone):
    message_id = _enqueue(outbox, db_session, MessageType.STAFF, entry_id, key="staff:x", body=body, phone=phone)

    result = outbox.deliver([message_id])[0]

    assert result.status == DeliveryStatus.DEAD
    assert outbox.get(message_id).last_error == "Missing body or to_phone"
    assert provider.sent == []


@pytest.mark.unit
def test_rate_limited_delivery_requeues_without_consuming_attempt(db_session, clock, provider, entry_id):
    limiter = MagicMock(spec=RateLimiter)
    limiter.check.return_value = RateLimitResult(allowed=False, retry_after_seconds=300)
    outbox = OutboxService(db_session, provider=provider, limiter=limiter, clock=clock)
    message_id = _enqueue(outbox, db_session, MessageType.CONFIRM, entry_id)

    result = outbox.deliver([message_id])[0]

    assert result.status == DeliveryStatus.REQUEUED
    message = outbox.get(message_id)
    assert message.status == OutboxStatus.QUEUED
    assert message.attempt_count == 0
    assert message.lock_token is None
    assert as_utc(message.next_attempt_at) == clock() + timedelta(seconds=300)
    assert provider.sent == []
    assert limiter.check.call_args.kwargs["fail_open"] is False


@pytest.mark.unit
def test_daily_phone_cap_requeues(outbox, db_session):
    ids = [
        _enqueue(outbox, db_session, MessageType.CANCEL_ACK, uuid4())
        for _ in range(settings.rate_limit_sms_phone_per_day + 1)
    ]

    results = outbox.sweep(limit=100)

    statuses = [r.status for r in results]
    assert statuses.count(DeliveryStatus.SENT) == settings.rate_limit_sms_phone_per_day
    assert statuses.count(DeliveryStatus.REQUEUED) == 1
    assert len(ids) == len(results)


@pytest.mark.unit
def test_lost_lock_skips_bookkeeping(outbox, db_session, entry_id, provider, clock):
    message_id = _enqueue(outbox, db_session, MessageType.CONFIRM, entry_id)
    claimed = outbox.claim(limit=1)[0]
    stale = SimpleNamespace(id=claimed.id, lock_token=claimed.lock_token)
    # Another worker takes over after the lock expired and sends it
    clock.advance(minutes=10)
    outbox.deliver([message_id])

    assert outbox._finish(stale, status=OutboxStatus.FAILED) is False
    assert outbox.get(message_id).status == OutboxStatus.SENT


@pytest.mark.unit
def test_sweep_continues_past_a_failing_message(outbox, db_session, provider):
    ids = {_enqueue(outbox, db_session, MessageType.CANCEL_ACK, uuid4()) for _ in range(2)}

    with patch.object(outbox, "_is_opted_out", side_effect=[RuntimeError("connection reset"), False]):
        results = outbox.sweep()

    assert [r.status for r in results] == [DeliveryStatus.SENT]
    assert len(provider.sent) == 1
    stuck = outbox.get((ids - {results[0].message_id}).pop())
    assert stuck.status == OutboxStatus.QUEUED
    assert stuck.lock_token is not None


@pytest.mark.unit
def test_sweep_clamps_limit():
    assert clamp_sweep_limit(0) == 1
    assert clamp_sweep_limit(5000) == 100
    assert clamp_sweep_limit(None) >= 1


# Dead letters

@pytest.mark.unit
def test_retry_dead_resets_budget(outbox, db_session, entry_id):
    message_id = _enqueue(outbox, db_session, MessageType.CONFIRM, entry_id)
    outbox.get(message_id).status = OutboxStatus.DEAD
    db_session.commit()

    assert [m.id for m in outbox.list_dead()] == [message_id]
    message = outbox.retry_dead(message_id)

    assert message.status == OutboxStatus.QUEUED
    assert message.attempt_count == 0
    assert outbox.list_dead() == []


@pytest.mark.unit
def test_dead_confirm_takes_gated_messages_with_it(outbox, db_session, entry_id, provider):
    db_session.add(SmsOptOut(phone_e164=PHONE, source="twilio_webhook"))
    db_session.commit()
    confirm_id = _enqueue(outbox, db_session, MessageType.CONFIRM, entry_id)
    next_id = _enqueue(outbox, db_session, MessageType.NEXT, entry_id)

    outbox.sweep()
    # Enqueued after the confirmation already died
    serving_id = _enqueue(outbox, db_session, MessageType.SERVING, entry_id)

    for message_id in (confirm_id, next_id, serving_id):
        message = outbox.get(message_id)
        assert message.status == OutboxStatus.DEAD
        assert message.last_error == "opted_out"
    assert {m.id for m in outbox.list_dead()} == {confirm_id, next_id, serving_id}
    assert provider.sent == []


@pytest.mark.unit
def test_confirm_dead_after_retries_dead_letters_next(outbox, db_session, entry_id, provider, clock):
    provider.failures = 100
    confirm_id = _enqueue(outbox, db_session, MessageType.CONFIRM, entry_id)
    next_id = _enqueue(outbox, db_session, MessageType.NEXT, entry_id)

    for _ in range(settings.outbox_max_attempts):
        outbox.deliver([confirm_id])
        clock.now = as_utc(outbox.get(confirm_id).next_attempt_at)

    assert outbox.get(confirm_id).status == OutboxStatus.DEAD
    next_message = outbox.get(next_id)
    assert next_message.status == OutboxStatus.DEAD
    assert next_message.last_error == "provider unavailable"
    assert next_message.attempt_count == 0


@pytest.mark.unit
def test_retry_dead_confirm_requeues_its_gated_messages(outbox, db_session, entry_id, provider):
    opt_out = SmsOptOut(phone_e164=PHONE, source="twilio_webhook")
    db_session.add(opt_out)
    db_session.commit()
    confirm_id = _enqueue(outbox, db_session, MessageType.CONFIRM, entry_id)
    next_id = _enqueue(outbox, db_session, MessageType.NEXT, entry_id)
    outbox.sweep()

    with pytest.raises(ConflictError):
        outbox.retry_dead(next_id)

    db_session.delete(opt_out)
    db_session.commit()
    outbox.retry_dead(confirm_id)

    next_message = outbox.get(next_id)
    assert next_message.status == OutboxStatus.QUEUED
    assert next_message.last_error is None

    outbox.sweep()
    outbox.sweep()

    assert provider.sent == [(PHONE, "hello"), (PHONE, "hello")]
    assert outbox.get(next_id).status == OutboxStatus.SENT
    assert outbox.list_dead() == []


@pytest.mark.unit
def test_retry_dead_rejects_live_or_unknown(outbox, db_session, entry_id):
    message_id = _enqueue(outbox, db_session, MessageType.CONFIRM, entry_id)

    with pytest.raises(ConflictError):
        outbox.retry_dead(message_id)
    with pytest.raises(NotFoundError):
        outbox.retry_dead(uuid4())

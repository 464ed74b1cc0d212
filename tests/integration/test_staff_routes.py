"""
Integration tests for the staff API.
"""
from uuid import uuid4

import pytest

from waitline.lib.jwt import create_access_token
from waitline.models.outbox import MessageType, OutboxMessage, OutboxStatus


@pytest.fixture
def joined(client, location, queue, consent):
    """Two waiting customers, joined through the public API."""

    def _join(name, phone, customer_type="paying"):
        response = client.post(
            "/queue/join",
            json={
                "airport_code": location.airport_code,
                "location_code": location.code,
                "name": name,
                "phone": phone,
                "consent": True,
                "customer_type": customer_type,
                "consent_key": consent.key,
            },
        )
        assert response.status_code == 200
        return response.json()

    return [_join("Jamie", "+15551230001"), _join("Alex", "+15551230002")]


@pytest.mark.integration
def test_staff_routes_require_token(client, queue):
    response = client.post(f"/staff/queues/{queue.id}/advance")

    assert response.status_code == 401


@pytest.mark.integration
def test_staff_routes_reject_bad_token(client, queue):
    response = client.post(
        f"/staff/queues/{queue.id}/advance",
        headers={"Authorization": "Bearer not-a-token"},
    )

    assert response.status_code == 403


@pytest.mark.integration
def test_staff_routes_reject_unknown_user(client, queue):
    token = create_access_token(str(uuid4()), "employee")

    response = client.post(
        f"/staff/queues/{queue.id}/advance",
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 403


@pytest.mark.integration
def test_advance_serves_head_and_notifies(client, staff_headers, queue, joined, provider):
    response = client.post(f"/staff/queues/{queue.id}/advance", headers=staff_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["queue_entry_id"] == joined[0]["queue_entry_id"]
    assert data["status"] == "serving"
    assert data["served_at"] is not None
    assert {d["status"] for d in data["deliveries"]} == {"sent"}
    assert provider.bodies_to("+15551230001")[-1].startswith("It's your turn!")


@pytest.mark.integration
def test_advance_empty_queue_conflicts(client, staff_headers, queue):
    response = client.post(f"/staff/queues/{queue.id}/advance", headers=staff_headers)

    assert response.status_code == 409


@pytest.mark.integration
def test_advance_unknown_queue(client, staff_headers):
    response = client.post(f"/staff/queues/{uuid4()}/advance", headers=staff_headers)

    assert response.status_code == 404


@pytest.mark.integration
def test_entry_lifecycle_actions(client, staff_headers, joined):
    entry_id = joined[1]["queue_entry_id"]

    serving = client.post(
        f"/staff/entries/{entry_id}/actions", json={"action": "serving"}, headers=staff_headers
    )
    assert serving.json()["status"] == "serving"

    completed = client.post(
        f"/staff/entries/{entry_id}/actions", json={"action": "complete"}, headers=staff_headers
    )
    assert completed.status_code == 200
    assert completed.json()["status"] == "completed"

    again = client.post(
        f"/staff/entries/{entry_id}/actions", json={"action": "cancel"}, headers=staff_headers
    )
    assert again.status_code == 409


@pytest.mark.integration
def test_move_requires_target(client, staff_headers, joined):
    response = client.post(
        f"/staff/entries/{joined[0]['queue_entry_id']}/actions",
        json={"action": "move"},
        headers=staff_headers,
    )

    assert response.status_code == 400


@pytest.mark.integration
def test_move_to_other_location(client, staff_headers, joined, other_queue, other_location):
    response = client.post(
        f"/staff/entries/{joined[1]['queue_entry_id']}/actions",
        json={"action": "move", "target_location_id": str(other_location.id)},
        headers=staff_headers,
    )

    assert response.status_code == 200
    data = response.json()
    assert data["queue_id"] == str(other_queue.id)
    assert data["queue_position"] == 1


@pytest.mark.integration
def test_delete_entry(client, staff_headers, joined):
    entry_id = joined[0]["queue_entry_id"]

    response = client.post(
        f"/staff/entries/{entry_id}/actions", json={"action": "delete"}, headers=staff_headers
    )

    assert response.status_code == 200
    assert response.json()["deleted"] is True
    assert client.get(f"/queue/status/{joined[0]['public_token']}").status_code == 404


@pytest.mark.integration
def test_update_entry(client, staff_headers, joined):
    entry_id = joined[0]["queue_entry_id"]

    response = client.patch(
        f"/staff/entries/{entry_id}",
        json={
            "full_name": "Jamie Lee",
            "phone": "+15551230001",
            "service_label": "Neck adjustment",
            "customer_type": "priority_pass",
        },
        headers=staff_headers,
    )

    assert response.status_code == 200
    data = response.json()
    assert data["customer_type"] == "priority_pass"
    assert data["service_label"] == "Neck adjustment"


@pytest.mark.integration
def test_update_entry_phone_in_use(client, staff_headers, joined):
    response = client.patch(
        f"/staff/entries/{joined[0]['queue_entry_id']}",
        json={
            "phone": "+15551230002",
            "service_label": "Neck adjustment",
            "customer_type": "paying",
        },
        headers=staff_headers,
    )

    assert response.status_code == 409


@pytest.mark.integration
def test_staff_message(client, staff_headers, joined, provider):
    response = client.post(
        f"/staff/entries/{joined[1]['queue_entry_id']}/messages",
        json={"body": "We'll be with you in five minutes"},
        headers=staff_headers,
    )

    assert response.status_code == 200
    assert response.json()["delivery"]["status"] == "sent"
    assert provider.bodies_to("+15551230002")[-1] == "We'll be with you in five minutes"


@pytest.mark.integration
def test_dead_letter_list_and_retry(client, staff_headers, db_session, provider):
    dead = OutboxMessage(
        message_type=MessageType.STAFF,
        idempotency_key="staff:manual:1",
        to_phone="+15551230009",
        body="Your chair is ready",
        status=OutboxStatus.DEAD,
        attempt_count=8,
        last_error="provider unavailable",
    )
    db_session.add(dead)
    db_session.commit()

    listed = client.get("/staff/outbox/dead", headers=staff_headers)
    assert listed.status_code == 200
    assert [m["id"] for m in listed.json()] == [str(dead.id)]

    retried = client.post(f"/staff/outbox/{dead.id}/retry", headers=staff_headers)
    assert retried.status_code == 200
    assert retried.json()["status"] == "sent"
    assert provider.bodies_to("+15551230009") == ["Your chair is ready"]

    assert client.get("/staff/outbox/dead", headers=staff_headers).json() == []


@pytest.mark.integration
def test_retry_of_live_message_conflicts(client, staff_headers, joined, db_session):
    message = db_session.query(OutboxMessage).filter(
        OutboxMessage.message_type == MessageType.CONFIRM
    ).first()

    response = client.post(f"/staff/outbox/{message.id}/retry", headers=staff_headers)

    assert response.status_code == 409

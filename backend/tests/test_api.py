"""
HTTP tests for the lifecycle API: status codes, headers and error bodies.
"""

from datetime import timedelta

import pytest

from conftest import COURSE_ID, NOW, actor_headers, seed_booking


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["redis"] == "disabled"


@pytest.mark.asyncio
async def test_get_booking(client, booking):
    response = await client.get(f"/api/v1/bookings/{booking.id}", headers=actor_headers())
    assert response.status_code == 200
    data = response.json()
    assert data["id"] == booking.id
    assert data["number_of_players"] == 4


@pytest.mark.asyncio
async def test_unknown_booking_is_404(client, course):
    response = await client.get("/api/v1/bookings/bk_missing", headers=actor_headers())
    assert response.status_code == 404
    assert response.json()["error_code"] == "ERR_BOOKING_NOT_FOUND"


@pytest.mark.asyncio
async def test_other_customers_booking_is_forbidden(client, booking):
    response = await client.get(f"/api/v1/bookings/{booking.id}", headers=actor_headers("cust_mallory"))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_actor_header_required(client, booking):
    response = await client.get(f"/api/v1/bookings/{booking.id}")
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_preview_edit(client, booking):
    new_time = (booking.tee_datetime + timedelta(days=1)).isoformat()
    response = await client.post(
        f"/api/v1/bookings/{booking.id}/edits/preview",
        json={"tee_datetime": new_time, "number_of_players": 3},
        headers=actor_headers(),
    )
    assert response.status_code == 200
    data = response.json()
    assert data["validation"]["is_valid"] is True
    assert data["price_calculation"]["final_amount_cents"] == -5000
    assert "cancellation_policy" in data["policies"]


@pytest.mark.asyncio
async def test_invalid_preview_still_returns_200(client, course, container):
    booking = await seed_booking(container, reschedules_used=3)
    new_time = (booking.tee_datetime + timedelta(days=1)).isoformat()
    response = await client.post(
        f"/api/v1/bookings/{booking.id}/edits/preview",
        json={"tee_datetime": new_time},
        headers=actor_headers(),
    )
    assert response.status_code == 200
    assert response.json()["validation"]["reasons"] == ["Maximum number of reschedules (3) reached"]


@pytest.mark.asyncio
async def test_commit_edit_and_replay(client, booking, gateway):
    headers = actor_headers(**{"Idempotency-Key": "api-edit-1"})
    first = await client.post(
        f"/api/v1/bookings/{booking.id}/edits", json={"add_ons": {"cart": 2}}, headers=headers
    )
    assert first.status_code == 200
    data = first.json()
    assert data["price_calculation"]["final_amount_cents"] == 5000
    assert data["booking"]["total_amount_cents"] == 25000
    assert data["replayed"] is False

    second = await client.post(
        f"/api/v1/bookings/{booking.id}/edits", json={"add_ons": {"cart": 2}}, headers=headers
    )
    assert second.status_code == 200
    assert second.json()["replayed"] is True
    assert second.json()["audit_entry_id"] == data["audit_entry_id"]
    assert gateway.count("authorize") == 2


@pytest.mark.asyncio
async def test_commit_requires_idempotency_key(client, booking):
    response = await client.post(
        f"/api/v1/bookings/{booking.id}/edits", json={"number_of_players": 3}, headers=actor_headers()
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_policy_violation_lists_reasons(client, course, container):
    booking = await seed_booking(container, reschedules_used=3)
    response = await client.post(
        f"/api/v1/bookings/{booking.id}/edits",
        json={"tee_datetime": (booking.tee_datetime + timedelta(days=1)).isoformat(), "number_of_players": 9},
        headers=actor_headers(**{"Idempotency-Key": "api-edit-bad"}),
    )
    assert response.status_code == 409
    body = response.json()
    assert body["error_code"] == "ERR_POLICY"
    reasons = body["details"]["reasons"]
    assert "Maximum number of reschedules (3) reached" in reasons
    assert "Number of players must be between 1 and 4" in reasons
    assert len(reasons) == 3
    assert body["retryable"] is False


@pytest.mark.asyncio
async def test_rate_limited_edit_sets_retry_after(client, booking):
    for i in range(5):
        response = await client.post(
            f"/api/v1/bookings/{booking.id}/edits",
            json={"customer_info": {"notes": f"note {i}"}},
            headers=actor_headers(**{"Idempotency-Key": f"api-notes-{i}"}),
        )
        assert response.status_code == 200

    response = await client.post(
        f"/api/v1/bookings/{booking.id}/edits",
        json={"customer_info": {"notes": "again"}},
        headers=actor_headers(**{"Idempotency-Key": "api-notes-5"}),
    )
    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) > 0


@pytest.mark.asyncio
async def test_cancellation_quote(client, booking):
    response = await client.get(
        f"/api/v1/bookings/{booking.id}/cancellation/quote", headers=actor_headers()
    )
    assert response.status_code == 200
    assert response.json()["net_refund_cents"] == 20000


@pytest.mark.asyncio
async def test_cancellation_needing_review_is_accepted(client, course, container):
    booking = await seed_booking(container, total_cents=75000)
    response = await client.post(
        f"/api/v1/bookings/{booking.id}/cancellation",
        json={"reason": "customer_request"},
        headers=actor_headers(),
    )
    assert response.status_code == 202
    data = response.json()
    assert data["status"] == "manual_review_required"
    assert data["booking"]["status"] == "confirmed"


@pytest.mark.asyncio
async def test_cancellation(client, booking):
    response = await client.post(
        f"/api/v1/bookings/{booking.id}/cancellation",
        json={"reason": "customer_request", "reason_details": "Work trip"},
        headers=actor_headers(),
    )
    assert response.status_code == 200
    data = response.json()
    assert data["booking"]["status"] == "canceled_customer"
    assert data["refund_status"] == "succeeded"


@pytest.mark.asyncio
async def test_status_change_is_staff_only(client, booking):
    response = await client.post(
        f"/api/v1/bookings/{booking.id}/status", json={"status": "checked_in"}, headers=actor_headers()
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_invalid_status_transition_is_409(client, booking):
    staff = actor_headers("staff_bob", role="staff")
    response = await client.post(
        f"/api/v1/bookings/{booking.id}/status", json={"status": "completed"}, headers=staff
    )
    assert response.status_code == 409
    assert response.json()["error_code"] == "ERR_STATUS_TRANSITION"


@pytest.mark.asyncio
async def test_dispute_endpoints(client, booking):
    staff = actor_headers("staff_bob", role="staff")
    opened = await client.post(
        f"/api/v1/bookings/{booking.id}/disputes", json={"reason": "fraudulent"}, headers=staff
    )
    assert opened.status_code == 201
    dispute_id = opened.json()["dispute"]["id"]

    missing_reason = await client.post(
        f"/api/v1/bookings/{booking.id}/disputes/{dispute_id}/resolution",
        json={"outcome": "lost", "reason": ""},
        headers=staff,
    )
    assert missing_reason.status_code == 422

    resolved = await client.post(
        f"/api/v1/bookings/{booking.id}/disputes/{dispute_id}/resolution",
        json={"outcome": "lost", "reason": "Cardholder was not present"},
        headers=staff,
    )
    assert resolved.status_code == 200
    assert resolved.json()["booking"]["payment_status"] == "refunded"


@pytest.mark.asyncio
async def test_course_policies(client, course):
    response = await client.get(f"/api/v1/courses/{COURSE_ID}/policies", headers=actor_headers())
    assert response.status_code == 200
    assert response.json()["cancellation_policy"].startswith("48+ hours before tee time")


@pytest.mark.asyncio
async def test_audit_history_and_export(client, booking):
    await client.post(
        f"/api/v1/bookings/{booking.id}/edits",
        json={"number_of_players": 3},
        headers=actor_headers(**{"Idempotency-Key": "api-audit-edit"}),
    )

    history = await client.get(f"/api/v1/audit/bookings/{booking.id}", headers=actor_headers())
    assert history.status_code == 200
    assert [e["action"] for e in history.json()] == ["booking_updated"]

    forbidden = await client.get("/api/v1/audit/export", headers=actor_headers())
    assert forbidden.status_code == 403

    export = await client.get(
        "/api/v1/audit/export", params={"booking_id": booking.id}, headers=actor_headers("staff_bob", role="staff")
    )
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    assert export.headers["X-Record-Count"] == "1"
    assert export.text.splitlines()[0].startswith('"ID","Booking ID","Action"')

    exports = await client.get(
        "/api/v1/audit/entries",
        params={"action": "data_exported"},
        headers=actor_headers("staff_bob", role="staff"),
    )
    assert [e["id"] for e in exports.json()] == [export.headers["X-Audit-Entry-Id"]]


@pytest.mark.asyncio
async def test_request_id_is_echoed(client, booking):
    response = await client.get(
        f"/api/v1/bookings/{booking.id}", headers=actor_headers(**{"X-Request-ID": "req-123"})
    )
    assert response.headers["X-Request-ID"] == "req-123"

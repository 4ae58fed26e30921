"""
E2E tests for the booking lifecycle over HTTP.

Covers: creation with conflict detection, the full accept/start/complete
flow with its notification and payment jobs, cancellation and refunds,
permission and state errors, field updates and listing.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from datetime import timedelta
from decimal import Decimal

import pytest

from appointly.models import BookingStatus, NotificationStatus, PaymentStatus

from tests.e2e.conftest import (
    ADMIN,
    BEARD_SERVICE_ID,
    CUSTOMER,
    CUSTOMER_USER_ID,
    FAR_PROVIDER,
    FAR_PROVIDER_ID,
    HAIRCUT_SERVICE_ID,
    MONTREAL_LAT,
    MONTREAL_LON,
    OTHER_CUSTOMER,
    PROVIDER,
    PROVIDER_ID,
    RETIRED_SERVICE_ID,
    booking_payload,
    create_booking_via_api,
    drain_queue,
    jobs_for_booking,
    load_booking,
    next_monday,
    transition_booking,
)

pytestmark = pytest.mark.asyncio


# ---------------------------------------------------------------------------
# Creation and conflicts
# ---------------------------------------------------------------------------

class TestCreateBooking:

    async def test_create_returns_financial_snapshot(self, client):
        scheduled = next_monday(10)
        body = await create_booking_via_api(
            client,
            scheduled,
            service_ids=[HAIRCUT_SERVICE_ID, BEARD_SERVICE_ID],
            customerNotes="Short on the sides",
        )

        assert body["status"] == "requested"
        assert body["paymentStatus"] == "pending"
        assert body["providerId"] == str(PROVIDER_ID)
        assert body["customerId"] == str(CUSTOMER_USER_ID)
        assert Decimal(body["grossAmount"]) == Decimal("75.00")
        assert Decimal(body["commissionAmount"]) == Decimal("11.25")
        assert Decimal(body["payoutAmount"]) == Decimal("63.75")
        assert body["totalDurationMin"] == 45
        assert [item["name"] for item in body["lineItems"]] == ["Haircut", "Beard Trim"]
        assert body["customerNotes"] == "Short on the sides"
        assert set(body["availableActions"]) == {"accept", "cancel"}

    async def test_create_enqueues_one_push_per_party(self, client, session_factory):
        body = await create_booking_via_api(client, next_monday(10))

        jobs = await jobs_for_booking(session_factory, body["id"], queue="bookings")
        assert len(jobs) == 2
        assert {j.source_event for j in jobs} == {"booking.created"}
        assert all(j.status == NotificationStatus.PENDING for j in jobs)

    async def test_overlapping_slot_is_rejected(self, client):
        first = await create_booking_via_api(client, next_monday(10))

        resp = await client.post(
            "/api/v1/bookings",
            json=booking_payload(next_monday(10, 20)),
            headers=OTHER_CUSTOMER,
        )
        assert resp.status_code == 400
        data = resp.json()
        assert data["code"] == "conflict"
        assert data["details"]["conflicting_time"].startswith(first["scheduledAt"][:16])

    async def test_buffer_boundary_is_inclusive(self, client):
        await create_booking_via_api(client, next_monday(10))

        resp = await client.post(
            "/api/v1/bookings", json=booking_payload(next_monday(10, 30)), headers=CUSTOMER,
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "conflict"

    async def test_slot_outside_buffer_is_accepted(self, client):
        await create_booking_via_api(client, next_monday(10))
        await create_booking_via_api(client, next_monday(11))

    async def test_concurrent_requests_for_same_slot(self, client):
        attempts = 8
        responses = await asyncio.gather(*(
            client.post(
                "/api/v1/bookings",
                json=booking_payload(next_monday(10, 5 * (i % 4))),
                headers=CUSTOMER if i % 2 else OTHER_CUSTOMER,
            )
            for i in range(attempts)
        ))
        codes = sorted(r.status_code for r in responses)
        assert codes == [201] + [400] * (attempts - 1)
        assert all(r.json()["code"] == "conflict" for r in responses if r.status_code == 400)

        resp = await client.get("/api/v1/bookings", headers=ADMIN)
        assert resp.json()["meta"]["totalItems"] == 1

    async def test_cancelled_booking_frees_the_slot(self, client):
        body = await create_booking_via_api(client, next_monday(10))
        resp = await transition_booking(client, body["id"], "cancel", headers=CUSTOMER)
        assert resp.status_code == 200

        await create_booking_via_api(client, next_monday(10), headers=OTHER_CUSTOMER)

    async def test_outside_working_hours(self, client):
        sunday = next_monday(10) - timedelta(days=1)
        resp = await client.post("/api/v1/bookings", json=booking_payload(sunday), headers=CUSTOMER)
        assert resp.status_code == 400
        assert resp.json()["code"] == "conflict"

        late = next_monday(17, 45)
        resp = await client.post("/api/v1/bookings", json=booking_payload(late), headers=CUSTOMER)
        assert resp.status_code == 400
        assert "working hours" in resp.json()["detail"]

    async def test_location_outside_service_area(self, client):
        resp = await client.post(
            "/api/v1/bookings",
            json=booking_payload(next_monday(10), latitude=MONTREAL_LAT, longitude=MONTREAL_LON),
            headers=CUSTOMER,
        )
        assert resp.status_code == 400
        data = resp.json()
        assert data["code"] == "conflict"
        assert data["details"]["distance_km"] > 25

    async def test_location_inside_service_area(self, client):
        body = await create_booking_via_api(
            client, next_monday(10), latitude=43.66, longitude=-79.39, address="1 King St W",
        )
        assert Decimal(body["latitude"]) == Decimal("43.6600000")
        assert body["address"] == "1 King St W"

    async def test_past_time_is_rejected(self, client):
        past = next_monday(10) - timedelta(weeks=3)
        resp = await client.post("/api/v1/bookings", json=booking_payload(past), headers=CUSTOMER)
        assert resp.status_code == 400
        assert resp.json()["code"] == "validation_error"

    async def test_inactive_service_is_rejected(self, client):
        resp = await client.post(
            "/api/v1/bookings",
            json=booking_payload(next_monday(10), service_ids=[RETIRED_SERVICE_ID]),
            headers=CUSTOMER,
        )
        assert resp.status_code == 400
        data = resp.json()
        assert data["code"] == "validation_error"
        assert data["details"]["service_ids"] == [str(RETIRED_SERVICE_ID)]

    async def test_unknown_provider(self, client):
        resp = await client.post(
            "/api/v1/bookings",
            json=booking_payload(next_monday(10), provider_id=uuid.uuid4()),
            headers=CUSTOMER,
        )
        assert resp.status_code == 404
        assert resp.json()["code"] == "not_found"

    async def test_malformed_body(self, client):
        payload = booking_payload(next_monday(10))
        del payload["serviceIds"]
        resp = await client.post("/api/v1/bookings", json=payload, headers=CUSTOMER)
        assert resp.status_code == 422

    async def test_duplicate_service_ids(self, client):
        payload = booking_payload(
            next_monday(10), service_ids=[HAIRCUT_SERVICE_ID, HAIRCUT_SERVICE_ID],
        )
        resp = await client.post("/api/v1/bookings", json=payload, headers=CUSTOMER)
        assert resp.status_code == 422

    async def test_requires_authentication(self, client):
        resp = await client.post("/api/v1/bookings", json=booking_payload(next_monday(10)))
        assert resp.status_code == 401

    async def test_providers_cannot_book(self, client):
        resp = await client.post(
            "/api/v1/bookings", json=booking_payload(next_monday(10)), headers=PROVIDER,
        )
        assert resp.status_code == 403
        assert resp.json()["code"] == "forbidden"


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:

    async def test_full_happy_path(self, client, session_factory, services, gateway, transport):
        body = await create_booking_via_api(client, next_monday(10))
        booking_id = body["id"]

        resp = await transition_booking(client, booking_id, "accept")
        assert resp.status_code == 200
        assert resp.json()["status"] == "accepted"
        assert resp.json()["acceptedAt"] is not None

        resp = await transition_booking(client, booking_id, "start")
        assert resp.status_code == 200
        assert resp.json()["status"] == "in_progress"

        resp = await transition_booking(
            client, booking_id, "complete", json={"providerNotes": "All good"},
        )
        assert resp.status_code == 200
        completed = resp.json()
        assert completed["status"] == "completed"
        assert completed["paymentStatus"] == "completed"
        assert completed["providerNotes"] == "All good"
        assert completed["availableActions"] == []
        assert Decimal(completed["grossAmount"]) == Decimal("50.00")

        booking_jobs = await jobs_for_booking(session_factory, booking_id, queue="bookings")
        assert Counter(j.source_event for j in booking_jobs) == {
            "booking.created": 2,
            "booking.accepted": 2,
            "booking.completed": 2,
        }

        payment_jobs = await jobs_for_booking(session_factory, booking_id, queue="payments")
        by_name = {j.name: j for j in payment_jobs}
        assert set(by_name) == {"process-payment", "process-payout"}
        payout_delay = by_name["process-payout"].next_attempt_at - by_name["process-payment"].next_attempt_at
        assert timedelta(hours=23, minutes=59) < payout_delay <= timedelta(hours=24, minutes=1)

        # Charge runs now; the payout stays delayed
        assert await drain_queue(services.queues.payments) == 1
        assert [call[0] for call in gateway.calls] == ["charge"]
        assert gateway.calls[0][2] == f"process-payment:{by_name['process-payment'].id}"

        booking = await load_booking(session_factory, booking_id)
        assert booking.payment_reference == "charge_1"
        assert booking.payout_reference is None

        receipts = await jobs_for_booking(session_factory, booking_id, queue="notifications")
        assert {j.channel.value for j in receipts} == {"push", "email"}
        assert {j.user_id for j in receipts} == {CUSTOMER_USER_ID}

        await drain_queue(services.queues.bookings)
        await drain_queue(services.queues.notifications)
        assert len(transport.sent) == 8
        assert Counter(channel for channel, _ in transport.sent) == {"push": 7, "email": 1}

    async def test_wrong_provider_is_forbidden(self, client):
        body = await create_booking_via_api(client, next_monday(10))

        resp = await transition_booking(client, body["id"], "accept", headers=FAR_PROVIDER)
        assert resp.status_code == 403
        assert resp.json()["code"] == "forbidden"

    async def test_customer_cannot_accept(self, client):
        body = await create_booking_via_api(client, next_monday(10))

        resp = await transition_booking(client, body["id"], "accept", headers=CUSTOMER)
        assert resp.status_code == 403

    async def test_invalid_transition(self, client, session_factory):
        body = await create_booking_via_api(client, next_monday(10))

        resp = await transition_booking(client, body["id"], "start")
        assert resp.status_code == 400
        data = resp.json()
        assert data["code"] == "invalid_state_transition"
        assert data["details"] == {"current": "requested", "target": "in_progress"}

        # Nothing beyond the creation notifications was enqueued
        jobs = await jobs_for_booking(session_factory, body["id"])
        assert len(jobs) == 2

    async def test_unknown_booking(self, client):
        resp = await transition_booking(client, str(uuid.uuid4()), "accept")
        assert resp.status_code == 404

    async def test_no_show(self, client, session_factory):
        body = await create_booking_via_api(client, next_monday(10))
        await transition_booking(client, body["id"], "accept")

        resp = await transition_booking(client, body["id"], "no-show")
        assert resp.status_code == 200
        assert resp.json()["status"] == "no_show"

        jobs = await jobs_for_booking(session_factory, body["id"], queue="bookings")
        assert Counter(j.source_event for j in jobs)["booking.no_show"] == 2


# ---------------------------------------------------------------------------
# Cancellation and refunds
# ---------------------------------------------------------------------------

async def _completed_booking(client) -> str:
    body = await create_booking_via_api(client, next_monday(10))
    for action in ("accept", "start", "complete"):
        resp = await transition_booking(client, body["id"], action)
        assert resp.status_code == 200, resp.text
    return body["id"]


class TestCancellation:

    async def test_customer_cancels_request(self, client, session_factory):
        body = await create_booking_via_api(client, next_monday(10))

        resp = await transition_booking(client, body["id"], "cancel", headers=CUSTOMER)
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "cancelled"
        assert data["cancelledBy"] == "customer"
        assert data["cancellationReason"] == "Cancelled by customer"
        assert data["paymentStatus"] == "pending"

        payment_jobs = await jobs_for_booking(session_factory, body["id"], queue="payments")
        assert payment_jobs == []

    async def test_provider_cancels_with_reason(self, client):
        body = await create_booking_via_api(client, next_monday(10))

        resp = await transition_booking(
            client, body["id"], "cancel", json={"reason": "Shop closed"},
        )
        assert resp.status_code == 200
        assert resp.json()["cancelledBy"] == "provider"
        assert resp.json()["cancellationReason"] == "Shop closed"

    async def test_stranger_cannot_cancel(self, client):
        body = await create_booking_via_api(client, next_monday(10))

        resp = await transition_booking(client, body["id"], "cancel", headers=OTHER_CUSTOMER)
        assert resp.status_code == 403

    async def test_in_progress_cancel_has_nothing_to_refund(self, client, session_factory):
        body = await create_booking_via_api(client, next_monday(10))
        for action in ("accept", "start"):
            resp = await transition_booking(client, body["id"], action)
            assert resp.status_code == 200

        resp = await transition_booking(client, body["id"], "cancel", headers=CUSTOMER)
        assert resp.status_code == 200
        data = resp.json()
        assert data["paymentStatus"] == "pending"
        assert data["refundAmount"] is None
        assert await jobs_for_booking(session_factory, body["id"], queue="payments") == []

    async def test_completed_booking_cannot_be_cancelled(self, client):
        booking_id = await _completed_booking(client)

        resp = await transition_booking(client, booking_id, "cancel", headers=CUSTOMER)
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_state_transition"


class TestRefund:

    async def test_partial_refund(self, client, session_factory, services, gateway):
        booking_id = await _completed_booking(client)

        resp = await client.post(
            f"/api/v1/bookings/{booking_id}/refund",
            json={"amount": "20.00", "reason": "Late start"},
            headers=ADMIN,
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["paymentStatus"] == "refunded"
        assert Decimal(data["refundAmount"]) == Decimal("20.00")
        assert data["refundReason"] == "Late start"

        jobs = await jobs_for_booking(session_factory, booking_id, queue="payments")
        assert "process-refund" in {j.name for j in jobs}

        await drain_queue(services.queues.payments)
        assert "refund" in [call[0] for call in gateway.calls]

    async def test_full_refund_by_default(self, client):
        booking_id = await _completed_booking(client)

        resp = await client.post(f"/api/v1/bookings/{booking_id}/refund", headers=ADMIN)
        assert resp.status_code == 200
        assert Decimal(resp.json()["refundAmount"]) == Decimal("50.00")

    async def test_refund_above_paid_amount(self, client):
        booking_id = await _completed_booking(client)

        resp = await client.post(
            f"/api/v1/bookings/{booking_id}/refund", json={"amount": "80.00"}, headers=ADMIN,
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "validation_error"

    async def test_refund_requires_admin(self, client):
        booking_id = await _completed_booking(client)

        resp = await client.post(f"/api/v1/bookings/{booking_id}/refund", headers=CUSTOMER)
        assert resp.status_code == 403

    async def test_refund_of_unpaid_booking(self, client):
        body = await create_booking_via_api(client, next_monday(10))

        resp = await client.post(f"/api/v1/bookings/{body['id']}/refund", headers=ADMIN)
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_state_transition"

    async def test_refund_twice_is_rejected(self, client):
        booking_id = await _completed_booking(client)
        await client.post(f"/api/v1/bookings/{booking_id}/refund", headers=ADMIN)

        resp = await client.post(f"/api/v1/bookings/{booking_id}/refund", headers=ADMIN)
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Updates and reads
# ---------------------------------------------------------------------------

class TestUpdateAndRead:

    async def test_customer_updates_notes(self, client):
        body = await create_booking_via_api(client, next_monday(10))

        resp = await client.patch(
            f"/api/v1/bookings/{body['id']}",
            json={"customerNotes": "Ring the bell"},
            headers=CUSTOMER,
        )
        assert resp.status_code == 200
        assert resp.json()["customerNotes"] == "Ring the bell"

    async def test_customer_cannot_set_provider_notes(self, client):
        body = await create_booking_via_api(client, next_monday(10))

        resp = await client.patch(
            f"/api/v1/bookings/{body['id']}",
            json={"providerNotes": "nope"},
            headers=CUSTOMER,
        )
        assert resp.status_code == 403
        assert resp.json()["details"] == {"fields": ["provider_notes"]}

    async def test_provider_updates_own_notes(self, client):
        body = await create_booking_via_api(client, next_monday(10))

        resp = await client.patch(
            f"/api/v1/bookings/{body['id']}",
            json={"providerNotes": "Bring clippers"},
            headers=PROVIDER,
        )
        assert resp.status_code == 200
        assert resp.json()["providerNotes"] == "Bring clippers"

    async def test_terminal_booking_cannot_be_updated(self, client):
        body = await create_booking_via_api(client, next_monday(10))
        await transition_booking(client, body["id"], "cancel", headers=CUSTOMER)

        resp = await client.patch(
            f"/api/v1/bookings/{body['id']}", json={"customerNotes": "late"}, headers=CUSTOMER,
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_state_transition"

    async def test_get_booking_visibility(self, client):
        body = await create_booking_via_api(client, next_monday(10))
        url = f"/api/v1/bookings/{body['id']}"

        assert (await client.get(url, headers=CUSTOMER)).status_code == 200
        assert (await client.get(url, headers=PROVIDER)).status_code == 200
        assert (await client.get(url, headers=ADMIN)).status_code == 200
        assert (await client.get(url, headers=OTHER_CUSTOMER)).status_code == 403
        assert (await client.get(url, headers=FAR_PROVIDER)).status_code == 403

    async def test_list_is_scoped_to_caller(self, client):
        await create_booking_via_api(client, next_monday(10))
        await create_booking_via_api(client, next_monday(11))
        await create_booking_via_api(client, next_monday(12), headers=OTHER_CUSTOMER)

        resp = await client.get("/api/v1/bookings", headers=CUSTOMER)
        assert resp.status_code == 200
        data = resp.json()
        assert data["meta"]["totalItems"] == 2
        assert [b["scheduledAt"][11:16] for b in data["data"]] == ["10:00", "11:00"]

        resp = await client.get("/api/v1/bookings", headers=PROVIDER)
        assert resp.json()["meta"]["totalItems"] == 3

        resp = await client.get("/api/v1/bookings", headers=FAR_PROVIDER)
        assert resp.json()["meta"]["totalItems"] == 0

    async def test_list_filters_and_paging(self, client):
        first = await create_booking_via_api(client, next_monday(10))
        await create_booking_via_api(client, next_monday(11))
        await create_booking_via_api(client, next_monday(12))
        await transition_booking(client, first["id"], "accept")

        resp = await client.get(
            "/api/v1/bookings", params={"status": "accepted"}, headers=ADMIN,
        )
        data = resp.json()
        assert data["meta"]["totalItems"] == 1
        assert data["data"][0]["id"] == first["id"]

        resp = await client.get(
            "/api/v1/bookings",
            params={"page": 2, "limit": 2, "sortOrder": "desc"},
            headers=ADMIN,
        )
        data = resp.json()
        assert data["meta"] == {"page": 2, "pageSize": 2, "totalItems": 3, "totalPages": 2}
        assert data["data"][0]["id"] == first["id"]

    @pytest.mark.parametrize("param", ["providerId", "barberId"])
    async def test_list_filters_by_provider(self, client, param):
        await create_booking_via_api(client, next_monday(10))
        await create_booking_via_api(client, next_monday(12))

        resp = await client.get(
            "/api/v1/bookings", params={param: str(PROVIDER_ID)}, headers=ADMIN,
        )
        assert resp.json()["meta"]["totalItems"] == 2

        resp = await client.get(
            "/api/v1/bookings", params={param: str(FAR_PROVIDER_ID)}, headers=ADMIN,
        )
        assert resp.json()["meta"]["totalItems"] == 0

    async def test_list_rejects_mismatched_provider_names(self, client):
        resp = await client.get(
            "/api/v1/bookings",
            params={"providerId": str(PROVIDER_ID), "barberId": str(FAR_PROVIDER_ID)},
            headers=ADMIN,
        )
        assert resp.status_code == 400
        assert resp.json()["code"] == "validation_error"

    async def test_list_rejects_inverted_dates(self, client):
        resp = await client.get(
            "/api/v1/bookings",
            params={"startDate": "2030-06-10", "endDate": "2030-06-01"},
            headers=ADMIN,
        )
        assert resp.status_code == 400


class TestStoredState:

    async def test_booking_row_matches_response(self, client, session_factory):
        body = await create_booking_via_api(client, next_monday(10))
        booking = await load_booking(session_factory, body["id"])

        assert booking.status == BookingStatus.REQUESTED
        assert booking.payment_status == PaymentStatus.PENDING
        assert booking.payment_method_id == "pm_card_visa"
        assert booking.scheduled_at == next_monday(10)
        assert booking.line_items[0]["service_id"] == str(HAIRCUT_SERVICE_ID)

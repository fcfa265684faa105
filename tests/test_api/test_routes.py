"""HTTP-level tests: routing, payload validation and error mapping."""

from __future__ import annotations

from datetime import timedelta

import httpx
import pytest

from meetup_escrow.api.deps import get_transaction_service
from meetup_escrow.main import create_app
from tests.conftest import BUYER, SELLER


@pytest.fixture
async def client(service):
    app = create_app()
    app.dependency_overrides[get_transaction_service] = lambda: service
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def create(client) -> dict:
    response = await client.post(
        "/api/v1/transactions",
        json={"buyer_id": BUYER, "seller_id": SELLER, "listing_id": "listing-1", "amount": "25.00"},
    )
    assert response.status_code == 201
    return response.json()


async def act(client, txn_id: str, action: str, actor: str, payload: dict | None = None):
    return await client.post(
        f"/api/v1/transactions/{txn_id}/transitions",
        json={"action": action, "actor_id": actor, "payload": payload or {}},
    )


class TestTransactionRoutes:
    async def test_create_and_get(self, client) -> None:
        body = await create(client)
        assert body["status"] == "PENDING"
        assert body["seller_payout"] == "23.75"

        fetched = await client.get(f"/api/v1/transactions/{body['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["id"] == body["id"]

    async def test_request_id_echoed(self, client) -> None:
        response = await client.get("/api/v1/transactions/missing", headers={"X-Request-ID": "abc"})
        assert response.headers["X-Request-ID"] == "abc"

    async def test_full_flow_over_http(self, client, clock) -> None:
        txn_id = (await create(client))["id"]
        assert (await act(client, txn_id, "submit_deposit", BUYER)).status_code == 200
        assert (await act(client, txn_id, "accept_deposit", SELLER)).status_code == 200
        meetup = (clock.now + timedelta(hours=30)).isoformat()
        scheduled = await act(
            client, txn_id, "schedule_meetup", SELLER, {"scheduled_meetup_at": meetup}
        )
        assert scheduled.json()["status"] == "MEETUP_SCHEDULED"

        done = await act(client, txn_id, "complete", BUYER, {"rating": 8, "comment": "Smooth"})
        assert done.status_code == 200
        assert done.json()["status"] == "COMPLETED"

        stats = (await client.get(f"/api/v1/users/{SELLER}/statistics")).json()
        assert stats["completed_transactions"] == 1
        assert stats["average_rating"] == 8.0

        events = (await client.get(f"/api/v1/transactions/{txn_id}/events")).json()
        assert [e["event_type"] for e in events][-1] == "TRANSACTION_COMPLETED"

    async def test_status_endpoint(self, client) -> None:
        txn_id = (await create(client))["id"]
        body = (await client.get(f"/api/v1/transactions/{txn_id}/status")).json()
        assert body["version"] == 0
        assert set(body["allowed_actions"]) == {"submit_deposit", "cancel"}

    async def test_review_route(self, client) -> None:
        txn_id = (await create(client))["id"]
        response = await client.post(
            f"/api/v1/transactions/{txn_id}/reviews", json={"rater_id": BUYER, "rating": 7}
        )
        assert response.status_code == 409


class TestErrorMapping:
    async def test_not_found(self, client) -> None:
        response = await client.get("/api/v1/transactions/missing")
        assert response.status_code == 404
        assert response.json()["error"] == "TRANSACTION_NOT_FOUND"

    async def test_illegal_transition_is_409(self, client) -> None:
        txn_id = (await create(client))["id"]
        response = await act(client, txn_id, "complete", BUYER)
        assert response.status_code == 409
        assert response.json()["error"] == "INVALID_STATE_TRANSITION"

    async def test_wrong_actor_is_403(self, client) -> None:
        txn_id = (await create(client))["id"]
        response = await act(client, txn_id, "submit_deposit", SELLER)
        assert response.status_code == 403

    async def test_bad_payload_is_422_with_details(self, client) -> None:
        txn_id = (await create(client))["id"]
        response = await act(client, txn_id, "submit_deposit", BUYER, {"rating": 3})
        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "VALIDATION_ERROR"
        assert body["details"]

    async def test_self_dealing_rejected(self, client) -> None:
        response = await client.post(
            "/api/v1/transactions",
            json={"buyer_id": BUYER, "seller_id": BUYER, "listing_id": "l", "amount": "5"},
        )
        assert response.status_code == 422

    async def test_payment_failure_is_502(self, client, gateway) -> None:
        from meetup_escrow.services.payment_service import PaymentDeclinedError

        txn_id = (await create(client))["id"]
        gateway.fail("capture", PaymentDeclinedError("declined"))
        response = await act(client, txn_id, "submit_deposit", BUYER)
        assert response.status_code == 502


class TestClassifierRoute:
    async def test_classify(self, client) -> None:
        response = await client.get(
            "/api/v1/cancellation-timing",
            params={
                "scheduled_meetup_at": "2026-03-01T13:00:00+00:00",
                "cancel_time": "2026-03-01T12:00:00+00:00",
            },
        )
        body = response.json()
        assert body["timing"] == "last_minute"
        assert body["is_last_minute"] is True

    async def test_unscheduled(self, client) -> None:
        response = await client.get(
            "/api/v1/cancellation-timing", params={"cancel_time": "2026-03-01T12:00:00+00:00"}
        )
        assert response.json()["timing"] == "unscheduled"
        assert response.json()["label"] == "Cancelled"

    async def test_naive_time_rejected(self, client) -> None:
        response = await client.get(
            "/api/v1/cancellation-timing",
            params={"scheduled_meetup_at": "2026-03-01T13:00:00", "cancel_time": "2026-03-01T12:00:00"},
        )
        assert response.status_code == 422


class TestUserRoutes:
    async def test_reputation_for_new_user(self, client) -> None:
        body = (await client.get("/api/v1/users/newbie/reputation")).json()
        assert body["trust_level"] == "new"
        assert body["warnings"] == []

    async def test_reviews_and_history(self, client, clock) -> None:
        txn_id = (await create(client))["id"]
        await act(client, txn_id, "submit_deposit", BUYER)
        await act(client, txn_id, "accept_deposit", SELLER)
        meetup = (clock.now + timedelta(hours=30)).isoformat()
        await act(client, txn_id, "schedule_meetup", SELLER, {"scheduled_meetup_at": meetup})
        await act(client, txn_id, "complete", BUYER, {"rating": 9})

        reviews = (await client.get(f"/api/v1/users/{SELLER}/reviews")).json()
        assert [(r["rater_id"], r["rating"]) for r in reviews] == [(BUYER, 9)]

        as_seller = await client.get(f"/api/v1/users/{SELLER}/transactions", params={"role": "seller"})
        assert [t["id"] for t in as_seller.json()] == [txn_id]
        as_buyer = await client.get(f"/api/v1/users/{SELLER}/transactions", params={"role": "buyer"})
        assert as_buyer.json() == []

    async def test_history_rejects_unknown_role(self, client) -> None:
        response = await client.get(f"/api/v1/users/{BUYER}/transactions", params={"role": "admin"})
        assert response.status_code == 422

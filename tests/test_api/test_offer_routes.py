"""API tests for /api/v1/offers."""

from __future__ import annotations

import fakeredis.aioredis
import pytest
import pytest_asyncio

SELLER = {"X-User-Id": "seller-1"}
BUYER = {"X-User-Id": "buyer-1"}
STRANGER = {"X-User-Id": "stranger"}


async def _create_offer(client, listing_id, amount=90_000, headers=BUYER):
    return await client.post(
        "/api/v1/offers",
        json={"listing_id": str(listing_id), "amount": amount, "message": "Deal?"},
        headers=headers,
    )


class TestCreate:
    @pytest.mark.asyncio
    async def test_create(self, client, make_listing) -> None:
        listing = await make_listing()

        response = await _create_offer(client, listing.id)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "PENDING"
        assert body["buyer_id"] == "buyer-1"
        assert body["seller_id"] == "seller-1"

    @pytest.mark.asyncio
    async def test_missing_actor(self, client, make_listing) -> None:
        listing = await make_listing()
        response = await _create_offer(client, listing.id, headers={})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_reserved_actor(self, client, make_listing) -> None:
        listing = await make_listing()
        response = await _create_offer(client, listing.id, headers={"X-User-Id": "SYSTEM"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_self_offer(self, client, make_listing) -> None:
        listing = await make_listing()
        response = await _create_offer(client, listing.id, headers=SELLER)
        assert response.status_code == 400
        assert response.json()["error"] == "SELF_OFFER"

    @pytest.mark.asyncio
    async def test_duplicate(self, client, make_listing) -> None:
        listing = await make_listing()
        await _create_offer(client, listing.id)
        response = await _create_offer(client, listing.id, amount=95_000)
        assert response.status_code == 409
        assert response.json()["error"] == "DUPLICATE_PENDING_OFFER"

    @pytest.mark.asyncio
    async def test_non_positive_amount_rejected_by_schema(self, client, make_listing) -> None:
        listing = await make_listing()
        response = await _create_offer(client, listing.id, amount=0)
        assert response.status_code == 422


class TestNegotiation:
    @pytest.mark.asyncio
    async def test_accept(self, client, make_listing) -> None:
        listing = await make_listing()
        offer = (await _create_offer(client, listing.id)).json()

        response = await client.post(
            f"/api/v1/offers/{offer['id']}/respond", json={"action": "accept"}, headers=SELLER
        )

        assert response.status_code == 200
        body = response.json()
        assert body["offer"]["status"] == "ACCEPTED"
        assert body["transaction_code"].startswith("TXN-")

        txn = await client.get(f"/api/v1/transactions/{body['transaction_id']}", headers=BUYER)
        assert txn.json()["agreed_price"] == 90_000

    @pytest.mark.asyncio
    async def test_buyer_cannot_respond(self, client, make_listing) -> None:
        listing = await make_listing()
        offer = (await _create_offer(client, listing.id)).json()
        response = await client.post(
            f"/api/v1/offers/{offer['id']}/respond", json={"action": "accept"}, headers=BUYER
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_counter_requires_amount(self, client, make_listing) -> None:
        listing = await make_listing()
        offer = (await _create_offer(client, listing.id)).json()
        response = await client.post(
            f"/api/v1/offers/{offer['id']}/respond", json={"action": "counter"}, headers=SELLER
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_counter_then_accept(self, client, make_listing) -> None:
        listing = await make_listing()
        offer = (await _create_offer(client, listing.id, amount=80_000)).json()

        countered = await client.post(
            f"/api/v1/offers/{offer['id']}/respond",
            json={"action": "counter", "counter_amount": 95_000},
            headers=SELLER,
        )
        assert countered.json()["offer"]["status"] == "COUNTERED"

        accepted = await client.post(f"/api/v1/offers/{offer['id']}/accept-counter", headers=BUYER)
        assert accepted.status_code == 200
        txn_id = accepted.json()["transaction_id"]
        txn = await client.get(f"/api/v1/transactions/{txn_id}", headers=SELLER)
        assert txn.json()["agreed_price"] == 95_000

    @pytest.mark.asyncio
    async def test_decline_and_withdraw(self, client, make_listing) -> None:
        listing = await make_listing()
        first = (await _create_offer(client, listing.id, amount=80_000)).json()
        await client.post(
            f"/api/v1/offers/{first['id']}/respond",
            json={"action": "counter", "counter_amount": 95_000},
            headers=SELLER,
        )
        declined = await client.post(f"/api/v1/offers/{first['id']}/decline-counter", headers=BUYER)
        assert declined.json()["status"] == "REJECTED"

        second = (await _create_offer(client, listing.id, amount=85_000)).json()
        withdrawn = await client.post(f"/api/v1/offers/{second['id']}/withdraw", headers=BUYER)
        assert withdrawn.json()["status"] == "CANCELLED"

    @pytest.mark.asyncio
    async def test_second_acceptance_conflicts(self, client, make_listing) -> None:
        listing = await make_listing()
        first = (await _create_offer(client, listing.id)).json()
        second = (
            await _create_offer(client, listing.id, headers={"X-User-Id": "buyer-2"})
        ).json()

        await client.post(
            f"/api/v1/offers/{first['id']}/respond", json={"action": "accept"}, headers=SELLER
        )
        response = await client.post(
            f"/api/v1/offers/{second['id']}/respond", json={"action": "accept"}, headers=SELLER
        )

        assert response.status_code == 409
        assert response.json()["error"] == "LISTING_ALREADY_SOLD"


class TestReads:
    @pytest.mark.asyncio
    async def test_visibility(self, client, make_listing) -> None:
        listing = await make_listing()
        offer = (await _create_offer(client, listing.id)).json()

        seller_view = await client.get(f"/api/v1/offers/{offer['id']}", headers=SELLER)
        assert seller_view.status_code == 200
        assert (
            await client.get(f"/api/v1/offers/{offer['id']}", headers=STRANGER)
        ).status_code == 403

    @pytest.mark.asyncio
    async def test_list_by_role(self, client, make_listing) -> None:
        listing = await make_listing()
        await _create_offer(client, listing.id)

        as_buyer = await client.get("/api/v1/offers", headers=BUYER)
        as_seller = await client.get("/api/v1/offers", params={"role": "seller"}, headers=SELLER)
        as_stranger = await client.get("/api/v1/offers", headers=STRANGER)

        assert len(as_buyer.json()) == 1
        assert len(as_seller.json()) == 1
        assert as_stranger.json() == []

    @pytest.mark.asyncio
    async def test_events(self, client, make_listing) -> None:
        listing = await make_listing()
        offer = (await _create_offer(client, listing.id)).json()

        response = await client.get(f"/api/v1/offers/{offer['id']}/events", headers=BUYER)

        assert response.status_code == 200
        events = response.json()
        assert events[0]["event_type"] == "OFFER_CREATED"
        assert events[0]["metadata"]["amount"] == 90_000


class TestIdempotencyKey:
    @pytest_asyncio.fixture
    async def idempotency_redis(self):
        redis = fakeredis.aioredis.FakeRedis(decode_responses=True)
        yield redis
        await redis.aclose()

    @staticmethod
    async def _post(client, listing_id, key, headers=BUYER):
        return await client.post(
            "/api/v1/offers",
            json={"listing_id": str(listing_id), "amount": 90_000, "idempotency_key": key},
            headers=headers,
        )

    @pytest.mark.asyncio
    async def test_replay_is_rejected(self, client, make_listing) -> None:
        listing = await make_listing()

        first = await self._post(client, listing.id, "offer-key-1")
        replay = await self._post(client, listing.id, "offer-key-1")

        assert first.status_code == 201
        assert replay.status_code == 409
        assert replay.json()["error"] == "DUPLICATE_OPERATION"
        offers = (await client.get("/api/v1/offers", headers=BUYER)).json()
        assert len(offers) == 1

    @pytest.mark.asyncio
    async def test_failed_create_can_be_retried(self, client, make_listing) -> None:
        listing = await make_listing(negotiable=False)

        failed = await self._post(client, listing.id, "offer-key-1")
        assert failed.status_code == 400
        assert failed.json()["error"] == "LISTING_NOT_NEGOTIABLE"

        other = await make_listing()
        retried = await self._post(client, other.id, "offer-key-1")
        assert retried.status_code == 201

    @pytest.mark.asyncio
    async def test_key_is_scoped_to_actor(self, client, make_listing) -> None:
        listing = await make_listing()

        first = await self._post(client, listing.id, "shared-key")
        other_buyer = {"X-User-Id": "buyer-2"}
        second = await self._post(client, listing.id, "shared-key", headers=other_buyer)

        assert first.status_code == 201
        assert second.status_code == 201

"""API tests for /api/v1/admin."""

from __future__ import annotations

import pytest

SELLER = {"X-User-Id": "seller-1"}
BUYER = {"X-User-Id": "buyer-1"}
ADMIN = {"X-User-Id": "admin-1"}


async def _paid(client, make_listing) -> str:
    listing = await make_listing()
    txn = (
        await client.post(
            "/api/v1/transactions", json={"listing_id": str(listing.id)}, headers=BUYER
        )
    ).json()
    await client.post(
        f"/api/v1/transactions/{txn['id']}/checkout",
        json={"payment_method": "PIX"},
        headers=BUYER,
    )
    return txn["id"]


class TestSweeps:
    @pytest.mark.asyncio
    async def test_nothing_due(self, client) -> None:
        response = await client.post("/api/v1/admin/sweeps/run", headers=ADMIN)

        assert response.status_code == 200
        assert response.json() == {
            "offers_expired": 0,
            "payments_expired": 0,
            "escrows_released": 0,
        }

    @pytest.mark.asyncio
    async def test_requires_admin(self, client) -> None:
        response = await client.post("/api/v1/admin/sweeps/run", headers=SELLER)
        assert response.status_code == 403


class TestDispatch:
    @pytest.mark.asyncio
    async def test_delivers_pending_effects(self, client, make_listing, notifier) -> None:
        txn_id = await _paid(client, make_listing)
        await client.post(f"/api/v1/transactions/{txn_id}/confirm-transfer", headers=SELLER)
        await client.post(f"/api/v1/transactions/{txn_id}/confirm-receipt", headers=BUYER)

        response = await client.post("/api/v1/admin/effects/dispatch", headers=ADMIN)

        assert response.status_code == 200
        body = response.json()
        assert body["delivered"] > 0
        assert body["failed"] == 0
        assert notifier.sent

        again = await client.post("/api/v1/admin/effects/dispatch", headers=ADMIN)
        assert again.json()["delivered"] == 0

    @pytest.mark.asyncio
    async def test_limit_is_validated(self, client) -> None:
        response = await client.post(
            "/api/v1/admin/effects/dispatch", params={"limit": 0}, headers=ADMIN
        )
        assert response.status_code == 422


class TestForceRefund:
    @pytest.mark.asyncio
    async def test_refund_held_funds(self, client, make_listing) -> None:
        txn_id = await _paid(client, make_listing)

        response = await client.post(
            f"/api/v1/admin/transactions/{txn_id}/force-refund",
            json={"reason": "seller unreachable"},
            headers=ADMIN,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "REFUNDED"

        status = await client.get(f"/api/v1/transactions/{txn_id}/status", headers=BUYER)
        assert status.json()["disposition"] == "refunded_to_buyer"

    @pytest.mark.asyncio
    async def test_requires_admin(self, client, make_listing) -> None:
        txn_id = await _paid(client, make_listing)
        response = await client.post(
            f"/api/v1/admin/transactions/{txn_id}/force-refund",
            json={"reason": "please"},
            headers=BUYER,
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_unpaid_transaction_cannot_be_refunded(self, client, make_listing) -> None:
        listing = await make_listing()
        txn = (
            await client.post(
                "/api/v1/transactions", json={"listing_id": str(listing.id)}, headers=BUYER
            )
        ).json()

        response = await client.post(
            f"/api/v1/admin/transactions/{txn['id']}/force-refund",
            json={"reason": "nothing held"},
            headers=ADMIN,
        )

        assert response.status_code == 409

"""Tests for the escrow release queue, release, sweep and the retry loop under them."""

import asyncio
from datetime import timedelta

import pytest
from bson import ObjectId
from pymongo.errors import OperationFailure

from database import update_versioned
from models.order import DeliveryStatus
from models.user import SYSTEM_ACTOR
from utils.errors import (
    AlreadyReleasedError,
    ConflictError,
    InternalError,
    NotFoundError,
    StaleWriteError,
    ValidationError,
)
from utils.escrow_service import (
    get_escrow_detail,
    is_release_eligible,
    list_escrow_release_queue,
    release_blockers,
    release_escrow,
    sweep_eligible_releases,
)
from utils.order_service import admin_confirm_delivery, confirm_delivery
from utils.wallet_service import get_wallet


class TestReleaseQueue:
    async def test_return_window_expired_yesterday_is_listed(self, market, now):
        sub_id = await market.delivered_lamp_sub_order(delivered_at=now - timedelta(days=8))

        queue = await list_escrow_release_queue(market.store, now=now)

        assert [row["subOrderId"] for row in queue["items"]] == [sub_id]
        row = queue["items"][0]
        assert row["releaseReason"] == "return_window_expired"
        assert row["daysPastReturnWindow"] == 1
        assert row["commission"] == 125
        assert row["settleAmount"] == 2375
        assert queue["summary"] == {
            "count": 1,
            "totalAmount": 2500,
            "totalCommission": 125,
            "totalSettleAmount": 2375,
        }

    async def test_window_closing_tomorrow_is_not_listed(self, market, now):
        await market.delivered_lamp_sub_order(delivered_at=now - timedelta(days=6))
        queue = await list_escrow_release_queue(market.store, now=now)
        assert queue["items"] == []
        assert queue["summary"]["count"] == 0

    async def test_confirmed_delivery_is_listed_immediately(self, market, now):
        sub_id = await market.delivered_lamp_sub_order()
        await confirm_delivery(market.store, sub_id, market.customer, now=now)

        queue = await list_escrow_release_queue(market.store, now=now)

        assert queue["items"][0]["releaseReason"] == "customer_confirmed"

    async def test_unpaid_and_undelivered_are_excluded(self, market, now):
        await market.place_order()
        await market.place_paid_order()
        queue = await list_escrow_release_queue(market.store, now=now + timedelta(days=30))
        assert queue["items"] == []

    async def test_oldest_return_window_first(self, market, now):
        later = await market.delivered_lamp_sub_order(delivered_at=now - timedelta(days=8))
        earlier = await market.delivered_lamp_sub_order(delivered_at=now - timedelta(days=10))

        queue = await list_escrow_release_queue(market.store, now=now)

        assert [row["subOrderId"] for row in queue["items"]] == [earlier, later]

    async def test_vendor_filter(self, market, now):
        await market.delivered_lamp_sub_order(delivered_at=now - timedelta(days=8))

        mine = await list_escrow_release_queue(market.store, vendor_id=market.vendor.id, now=now)
        theirs = await list_escrow_release_queue(market.store, vendor_id=market.other_vendor.id, now=now)

        assert mine["summary"]["count"] == 1
        assert theirs["summary"]["count"] == 0

    async def test_pagination(self, market, now):
        for days in (8, 9, 10):
            await market.delivered_lamp_sub_order(delivered_at=now - timedelta(days=days))

        queue = await list_escrow_release_queue(market.store, page=2, limit=2, now=now)

        assert len(queue["items"]) == 1
        assert queue["pagination"] == {"page": 2, "limit": 2, "total": 3, "pages": 2}


class TestEligibility:
    def _sub(self, now, **overrides):
        sub = {
            "deliveryStatus": "delivered",
            "returnWindow": now - timedelta(seconds=1),
            "customerConfirmedDelivery": {"confirmed": False},
            "escrow": {"held": True, "released": False, "refunded": False},
        }
        sub.update(overrides)
        return sub

    def test_expired_window_is_eligible(self, now):
        assert is_release_eligible(self._sub(now), now)

    def test_window_end_is_exclusive(self, now):
        assert not is_release_eligible(self._sub(now, returnWindow=now), now)

    def test_reports_every_blocker(self, now):
        sub = self._sub(
            now,
            deliveryStatus="shipped",
            escrow={"held": False, "released": True, "refunded": False},
        )
        assert release_blockers(sub, now) == [
            "escrow already released",
            "escrow not held",
            "sub-order not delivered",
        ]


class TestReleaseEscrow:
    async def test_credits_vendor_once(self, market, now):
        sub_id = await market.delivered_lamp_sub_order(delivered_at=now - timedelta(days=8))

        result = await release_escrow(market.store, sub_id, market.admin, now=now)

        assert result["gross"] == 2500
        assert result["commission"] == 125
        assert result["settleAmount"] == 2375
        assert result["autoConfirmed"] is True

        wallet = await get_wallet(market.store, market.vendor.id)
        assert wallet["balance"] == 2375
        assert wallet["totalEarned"] == 2375
        assert wallet["pending"] == 0

        txns = [t async for t in market.store.wallet_transactions.find({"relatedDocumentId": sub_id})]
        assert len(txns) == 1
        assert txns[0]["_id"] == result["walletTransactionId"]
        assert txns[0]["type"] == "credit"
        assert txns[0]["source"] == "escrow_release"
        assert txns[0]["balanceAfter"] == 2375

    async def test_marks_sub_order_settled(self, market, now):
        sub_id = await market.delivered_lamp_sub_order(delivered_at=now - timedelta(days=8))
        await release_escrow(market.store, sub_id, market.admin, now=now)

        sub = await market.sub_order(sub_id)
        assert sub["escrow"]["held"] is False
        assert sub["escrow"]["released"] is True
        assert sub["escrow"]["releasedAt"] == now
        assert sub["customerConfirmedDelivery"]["autoConfirmed"] is True
        assert sub["settlement"]["settleAmount"] == 2375
        assert sub["statusHistory"][-1]["event"] == "escrow_released"

    async def test_confirmed_delivery_is_not_auto_confirmed(self, market, now):
        sub_id = await market.delivered_lamp_sub_order()
        await confirm_delivery(market.store, sub_id, market.customer, now=now)

        result = await release_escrow(market.store, sub_id, market.admin, now=now)

        assert result["autoConfirmed"] is False

    async def test_keeps_admin_confirmation_time(self, market, now):
        sub_id = await market.delivered_lamp_sub_order(delivered_at=now - timedelta(days=8))
        confirmed_at = now - timedelta(days=5)
        await admin_confirm_delivery(market.store, sub_id, market.admin, now=confirmed_at)

        result = await release_escrow(market.store, sub_id, market.admin, now=now)

        assert result["autoConfirmed"] is True
        sub = await market.sub_order(sub_id)
        assert sub["customerConfirmedDelivery"] == {
            "confirmed": True,
            "confirmedAt": confirmed_at,
            "autoConfirmed": True,
        }

    async def test_second_release_is_rejected(self, market, now):
        sub_id = await market.delivered_lamp_sub_order(delivered_at=now - timedelta(days=8))
        await release_escrow(market.store, sub_id, market.admin, now=now)

        with pytest.raises(AlreadyReleasedError) as exc:
            await release_escrow(market.store, sub_id, market.admin, now=now)

        assert isinstance(exc.value, ConflictError)
        wallet = await get_wallet(market.store, market.vendor.id)
        assert wallet["balance"] == 2375

    async def test_concurrent_releases_credit_once(self, market, interleaved, now):
        sub_id = await market.delivered_lamp_sub_order(delivered_at=now - timedelta(days=8))
        interleaved.call_log.clear()

        results = await asyncio.gather(
            release_escrow(interleaved, sub_id, market.admin, now=now),
            release_escrow(interleaved, sub_id, SYSTEM_ACTOR, now=now),
            return_exceptions=True,
        )

        assert interleaved.call_log.interleaved()
        successes = [r for r in results if isinstance(r, dict)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], AlreadyReleasedError)

        wallet = await get_wallet(interleaved, market.vendor.id)
        assert wallet["balance"] == 2375
        assert await interleaved.wallet_transactions.count_documents({"relatedDocumentId": sub_id}) == 1

    async def test_concurrent_releases_for_one_vendor_all_reach_the_wallet(self, market, interleaved, now):
        first = await market.delivered_lamp_sub_order(delivered_at=now - timedelta(days=8))
        second = await market.delivered_lamp_sub_order(delivered_at=now - timedelta(days=8))
        interleaved.call_log.clear()

        results = await asyncio.gather(
            release_escrow(interleaved, first, market.admin, now=now),
            release_escrow(interleaved, second, SYSTEM_ACTOR, now=now),
        )

        assert interleaved.call_log.interleaved()
        assert [r["settleAmount"] for r in results] == [2375, 2375]
        wallet = await get_wallet(interleaved, market.vendor.id)
        assert wallet["balance"] == 2 * 2375
        assert wallet["totalEarned"] == 2 * 2375
        for sub_id in (first, second):
            sub = await market.sub_order(sub_id)
            assert sub["escrow"]["released"] is True
            credit = await interleaved.wallet_transactions.find_one({"relatedDocumentId": sub_id})
            assert credit["_id"] == sub["settlement"]["walletTransactionId"]

    async def test_inside_return_window_is_rejected(self, market, now):
        sub_id = await market.delivered_lamp_sub_order()

        with pytest.raises(ValidationError):
            await release_escrow(market.store, sub_id, market.admin, now=now)

        assert await get_wallet(market.store, market.vendor.id) is None

    async def test_override_requires_adjudication_status(self, market, now):
        sub_id = await market.delivered_lamp_sub_order()
        with pytest.raises(ValidationError):
            await release_escrow(market.store, sub_id, market.admin, "Vendor shipped", override=True, now=now)

    async def test_writes_audit_row(self, market, now):
        sub_id = await market.delivered_lamp_sub_order(delivered_at=now - timedelta(days=8))
        await release_escrow(market.store, sub_id, market.admin, now=now)

        audit = await market.store.audit_logs.find_one({"action": "ESCROW_RELEASED"})
        assert audit["metadata"]["sub_order_id"] == str(sub_id)
        assert audit["metadata"]["settle_amount"] == 2375


class TestEscrowDetail:
    async def test_eligible_sub_order(self, market, now):
        sub_id = await market.delivered_lamp_sub_order(delivered_at=now - timedelta(days=8))

        detail = await get_escrow_detail(market.store, sub_id, now=now)

        assert detail["subOrderId"] == sub_id
        assert detail["eligibility"] == {"isEligible": True, "blockers": []}
        assert detail["escrow"]["held"] is True
        assert detail["escrow"]["amount"] == 2500
        assert detail["delivery"]["status"] == "delivered"
        assert detail["delivery"]["daysSinceReturnWindow"] == 1
        assert detail["delivery"]["shippingMethod"]["name"] == "standard"
        assert detail["order"]["paymentStatus"] == "paid"
        assert detail["commissionPreview"]["settleAmount"] == 2375
        assert detail["products"][0]["name"] == "Desk Lamp"
        assert detail["settlement"] is None

    async def test_reports_blockers_for_unpaid_order(self, market, now):
        order = await market.place_order(groups=[market.lamp_group()])

        detail = await get_escrow_detail(market.store, order["subOrders"][0]["id"], now=now)

        assert detail["eligibility"]["isEligible"] is False
        assert detail["eligibility"]["blockers"] == ["sub-order not delivered", "order not paid"]

    async def test_released_sub_order_shows_settlement(self, market, now):
        sub_id = await market.delivered_lamp_sub_order(delivered_at=now - timedelta(days=8))
        await release_escrow(market.store, sub_id, market.admin, now=now)

        detail = await get_escrow_detail(market.store, sub_id, now=now)

        assert detail["escrow"]["released"] is True
        assert detail["settlement"]["settleAmount"] == 2375
        assert "escrow already released" in detail["eligibility"]["blockers"]

    async def test_unknown_sub_order(self, market):
        with pytest.raises(NotFoundError):
            await get_escrow_detail(market.store, ObjectId())


class TestSweep:
    async def test_releases_everything_eligible(self, market, now):
        first = await market.delivered_lamp_sub_order(delivered_at=now - timedelta(days=8))
        second = await market.delivered_lamp_sub_order(delivered_at=now - timedelta(days=9))
        await market.delivered_lamp_sub_order(delivered_at=now - timedelta(days=2))

        counts = await sweep_eligible_releases(market.store, now=now)

        assert counts == {"candidates": 2, "released": 2, "skipped": 0, "failed": 0}
        for sub_id in (first, second):
            sub = await market.sub_order(sub_id)
            assert sub["escrow"]["released"] is True
            assert sub["statusHistory"][-1]["actor"]["role"] == "system"

        wallet = await get_wallet(market.store, market.vendor.id)
        assert wallet["balance"] == 2 * 2375

    async def test_second_sweep_finds_nothing(self, market, now):
        await market.delivered_lamp_sub_order(delivered_at=now - timedelta(days=8))
        await sweep_eligible_releases(market.store, now=now)

        counts = await sweep_eligible_releases(market.store, now=now)

        assert counts["candidates"] == 0

    async def test_canceled_sub_orders_stay_parked(self, market, now):
        order = await market.place_paid_order(groups=[market.lamp_group()])
        await market.advance(order["subOrders"][0]["id"], DeliveryStatus.CANCELED)

        counts = await sweep_eligible_releases(market.store, now=now + timedelta(days=30))

        assert counts["candidates"] == 0


class TestTransactions:
    async def test_stale_write_is_retried(self, store):
        calls = []

        async def operation(session):
            calls.append(session)
            if len(calls) == 1:
                raise StaleWriteError("lost the race")
            return "done"

        assert await store.run_in_transaction(operation) == "done"
        assert len(calls) == 2

    async def test_gives_up_after_attempts(self, store):
        async def operation(session):
            raise StaleWriteError("lost the race")

        with pytest.raises(StaleWriteError):
            await store.run_in_transaction(operation, attempts=2)

    async def test_database_errors_become_internal_errors(self, store):
        async def operation(session):
            raise OperationFailure("boom")

        with pytest.raises(InternalError):
            await store.run_in_transaction(operation)

    async def test_versioned_update_detects_stale_copy(self, store):
        doc = {"_id": ObjectId(), "totalAmount": 10, "version": 0}
        await store.orders.insert_one(dict(doc))

        stale = dict(doc)
        await update_versioned(store.orders, doc, {"$inc": {"totalAmount": 5}})
        assert doc["totalAmount"] == 15
        assert doc["version"] == 1

        with pytest.raises(StaleWriteError):
            await update_versioned(store.orders, stale, {"$inc": {"totalAmount": 5}})

        stored = await store.orders.find_one({"_id": doc["_id"]})
        assert stored["totalAmount"] == 15

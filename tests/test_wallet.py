"""Tests for wallet credits, debits, admin adjustments, history and reconciliation."""

import asyncio
from datetime import timedelta

import pytest
from bson import ObjectId

from models.wallet import TransactionSource
from utils.errors import InsufficientFundsError, ValidationError
from utils.wallet_service import (
    adjust_pending,
    available_balance,
    credit_wallet,
    debit_wallet,
    get_wallet,
    list_wallet_transactions,
    reconcile_wallet,
    record_adjustment,
    wallet_summary,
)


class TestAdjustments:
    async def test_credit_creates_wallet(self, market):
        txn = await market.fund_wallet(500000)

        assert txn["type"] == "credit"
        assert txn["source"] == "adjustment"
        assert txn["balanceAfter"] == 500000
        wallet = await get_wallet(market.store, market.vendor.id)
        assert wallet["balance"] == 500000
        assert wallet["available"] == 500000
        assert wallet["pending"] == 0
        assert wallet["totalEarned"] == 0
        assert wallet["currency"] == "NGN"

    async def test_debit_adjustment(self, market):
        await market.fund_wallet(500000)

        txn = await record_adjustment(market.store, market.vendor.id, "debit", 200000, "Chargeback", market.admin)

        assert txn["balanceAfter"] == 300000
        wallet = await get_wallet(market.store, market.vendor.id)
        assert wallet["balance"] == 300000

    async def test_debit_cannot_overdraw(self, market):
        await market.fund_wallet(1000)
        with pytest.raises(InsufficientFundsError):
            await record_adjustment(market.store, market.vendor.id, "debit", 1001, "Chargeback", market.admin)

    async def test_debit_cannot_touch_reserved_funds(self, market):
        await market.fund_wallet(1000)
        await adjust_pending(market.store, market.vendor.id, 600)

        with pytest.raises(InsufficientFundsError):
            await record_adjustment(market.store, market.vendor.id, "debit", 500, "Chargeback", market.admin)

    async def test_debit_without_wallet(self, market):
        with pytest.raises(InsufficientFundsError):
            await record_adjustment(market.store, market.vendor.id, "debit", 1, "Chargeback", market.admin)

    async def test_reason_required(self, market):
        with pytest.raises(ValidationError):
            await record_adjustment(market.store, market.vendor.id, "credit", 100, "   ", market.admin)

    async def test_amount_must_be_positive(self, market):
        with pytest.raises(ValidationError):
            await record_adjustment(market.store, market.vendor.id, "credit", 0, "Bonus", market.admin)

    async def test_audited(self, market):
        await market.fund_wallet(100)
        audit = await market.store.audit_logs.find_one({"action": "WALLET_ADJUSTMENT"})
        assert audit["actorRole"] == "admin"
        assert audit["metadata"]["amount"] == 100


class TestCreditDebit:
    async def test_earned_credit_counts_toward_total_earned(self, store, vendor):
        await credit_wallet(store, vendor.id, 2375, source=TransactionSource.ESCROW_RELEASE, count_as_earned=True)
        wallet = await get_wallet(store, vendor.id)
        assert wallet["totalEarned"] == 2375

    async def test_debit_insufficient_balance(self, store, vendor):
        await credit_wallet(store, vendor.id, 100, source=TransactionSource.ADJUSTMENT)
        with pytest.raises(InsufficientFundsError):
            await debit_wallet(store, vendor.id, 101, source=TransactionSource.ADJUSTMENT)

    async def test_debit_releasing_more_than_reserved(self, store, vendor):
        await credit_wallet(store, vendor.id, 100, source=TransactionSource.ADJUSTMENT)
        with pytest.raises(InsufficientFundsError):
            await debit_wallet(store, vendor.id, 50, source=TransactionSource.WITHDRAWAL_PAYOUT, release_pending=50)

    async def test_debit_without_wallet(self, store, vendor):
        with pytest.raises(InsufficientFundsError):
            await debit_wallet(store, vendor.id, 1, source=TransactionSource.ADJUSTMENT)
        assert await get_wallet(store, vendor.id) is None

    async def test_release_pending_cannot_exceed_amount(self, store, vendor):
        with pytest.raises(ValidationError):
            await debit_wallet(store, vendor.id, 50, source=TransactionSource.WITHDRAWAL_PAYOUT, release_pending=60)

    async def test_payout_from_reservation(self, store, vendor):
        await credit_wallet(store, vendor.id, 1000, source=TransactionSource.ADJUSTMENT)
        await adjust_pending(store, vendor.id, 400)

        txn = await debit_wallet(store, vendor.id, 400, source=TransactionSource.WITHDRAWAL_PAYOUT, release_pending=400)

        assert txn["balanceAfter"] == 600
        wallet = await get_wallet(store, vendor.id)
        assert (wallet["balance"], wallet["pending"], wallet["available"]) == (600, 0, 600)

    async def test_pending_reservation_round_trip(self, store, vendor):
        await credit_wallet(store, vendor.id, 1000, source=TransactionSource.ADJUSTMENT)

        wallet = await adjust_pending(store, vendor.id, 400)
        assert wallet["available"] == 600
        assert available_balance(wallet) == 600
        with pytest.raises(InsufficientFundsError):
            await adjust_pending(store, vendor.id, 601)
        with pytest.raises(ValidationError):
            await adjust_pending(store, vendor.id, -401)

        await adjust_pending(store, vendor.id, -400)
        stored = await get_wallet(store, vendor.id)
        assert stored["pending"] == 0
        assert stored["balance"] == 1000
        assert stored["available"] == 1000

    def test_available_balance_without_wallet(self):
        assert available_balance(None) == 0


class TestConcurrentWrites:
    async def test_interleaved_adjustments_all_land(self, market, interleaved):
        await market.fund_wallet(1000)
        interleaved.call_log.clear()

        await asyncio.gather(
            record_adjustment(interleaved, market.vendor.id, "credit", 500, "Bonus", market.admin),
            record_adjustment(interleaved, market.vendor.id, "debit", 300, "Chargeback", market.admin),
            record_adjustment(interleaved, market.vendor.id, "credit", 200, "Bonus", market.admin),
        )

        assert interleaved.call_log.interleaved()
        wallet = await get_wallet(interleaved, market.vendor.id)
        assert wallet["balance"] == 1400
        assert wallet["available"] == 1400
        report = await reconcile_wallet(interleaved, market.vendor.id)
        assert report["transactionCount"] == 4
        assert report["consistent"] is True

    async def test_interleaved_debits_never_overdraw(self, market, interleaved):
        await market.fund_wallet(1000)

        results = await asyncio.gather(
            record_adjustment(interleaved, market.vendor.id, "debit", 600, "Chargeback", market.admin),
            record_adjustment(interleaved, market.vendor.id, "debit", 600, "Chargeback", market.admin),
            return_exceptions=True,
        )

        assert sum(isinstance(r, dict) for r in results) == 1
        assert sum(isinstance(r, InsufficientFundsError) for r in results) == 1
        wallet = await get_wallet(interleaved, market.vendor.id)
        assert wallet["balance"] == 400


class TestTransactionHistory:
    async def test_filters(self, market, now):
        await market.fund_wallet(1000)
        await record_adjustment(market.store, market.vendor.id, "debit", 300, "Courier damage chargeback", market.admin)
        await credit_wallet(
            market.store,
            market.vendor.id,
            2375,
            source=TransactionSource.ESCROW_RELEASE,
            description="Escrow release",
            now=now - timedelta(days=40),
        )

        everything = await list_wallet_transactions(market.store, market.vendor.id)
        debits = await list_wallet_transactions(market.store, market.vendor.id, txn_type="debit")
        releases = await list_wallet_transactions(market.store, market.vendor.id, source="escrow_release")
        recent = await list_wallet_transactions(market.store, market.vendor.id, days=30)
        searched = await list_wallet_transactions(market.store, market.vendor.id, search="courier (damage")
        matched = await list_wallet_transactions(market.store, market.vendor.id, search="COURIER")

        assert everything["pagination"]["total"] == 3
        assert [t["amount"] for t in debits["items"]] == [300]
        assert [t["amount"] for t in releases["items"]] == [2375]
        assert recent["pagination"]["total"] == 2
        assert searched["items"] == []
        assert [t["amount"] for t in matched["items"]] == [300]

    async def test_other_vendors_are_hidden(self, market):
        await market.fund_wallet(1000, vendor=market.other_vendor)
        result = await list_wallet_transactions(market.store, market.vendor.id)
        assert result["items"] == []

    async def test_invalid_type(self, market):
        with pytest.raises(ValueError):
            await list_wallet_transactions(market.store, market.vendor.id, txn_type="bonus")


class TestSummaryAndReconcile:
    async def test_summary_without_wallet(self, market):
        summary = await wallet_summary(market.store, market.vendor.id)
        assert summary["balance"] == 0
        assert summary["available"] == 0

    async def test_consistent_wallet(self, market):
        await market.fund_wallet(1000)
        await record_adjustment(market.store, market.vendor.id, "debit", 250, "Chargeback", market.admin)

        report = await reconcile_wallet(market.store, market.vendor.id)

        assert report["storedBalance"] == 750
        assert report["derivedBalance"] == 750
        assert report["transactionCount"] == 2
        assert report["consistent"] is True

    async def test_detects_drift(self, market):
        await market.fund_wallet(1000)
        await market.store.wallets.update_one(
            {"vendorId": ObjectId(market.vendor.id)},
            {"$inc": {"balance": 5}},
        )

        report = await reconcile_wallet(market.store, market.vendor.id)

        assert report["drift"] == 5
        assert report["consistent"] is False

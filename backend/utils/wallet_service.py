import logging
import re
from datetime import datetime, timedelta

from bson import ObjectId
from pymongo import ReturnDocument

from config.constants import DEFAULT_CURRENCY, DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from models.wallet import TransactionSource, TransactionType
from utils.audit import log_audit
from utils.errors import InsufficientFundsError, ValidationError
from utils.guards import normalize_page, pagination_meta, parse_object_id
from utils.money import ensure_minor_units, format_amount

logger = logging.getLogger(__name__)


# ==============================
# Wallet documents
# ==============================
#
# Wallet writes are single guarded $inc updates, never read-modify-write.
# `available` is kept equal to balance - pending so reservation guards
# can sit in the update filter.

def empty_wallet(vendor_id: ObjectId) -> dict:
    return {
        "vendorId": vendor_id,
        "balance": 0,
        "pending": 0,
        "available": 0,
        "totalEarned": 0,
        "currency": DEFAULT_CURRENCY,
    }


def available_balance(wallet: dict | None) -> int:
    """Balance not already reserved by approved withdrawals."""
    if not wallet:
        return 0
    return wallet.get("balance", 0) - wallet.get("pending", 0)


async def get_wallet(store, vendor_id, *, session=None) -> dict | None:
    vendor_oid = parse_object_id(vendor_id, "vendor_id")
    return await store.wallets.find_one({"vendorId": vendor_oid}, session=session)


async def _apply(store, vendor_oid: ObjectId, guard: dict, inc: dict, now: datetime, *, session=None, upsert=False):
    update = {"$inc": inc, "$set": {"updatedAt": now}}
    if upsert:
        on_insert = {"currency": DEFAULT_CURRENCY, "createdAt": now}
        for field in ("pending", "totalEarned"):
            if field not in inc:
                on_insert[field] = 0
        update["$setOnInsert"] = on_insert

    return await store.wallets.find_one_and_update(
        {"vendorId": vendor_oid, **guard},
        update,
        upsert=upsert,
        return_document=ReturnDocument.AFTER,
        session=session,
    )


# ==============================
# Core: balance change + log row
# ==============================

def _transaction_doc(
    wallet: dict,
    txn_type: TransactionType,
    amount: int,
    source: TransactionSource,
    *,
    related_id=None,
    related_type: str | None = None,
    description: str | None = None,
    transaction_id: ObjectId | None = None,
    now: datetime,
) -> dict:
    return {
        "_id": transaction_id or ObjectId(),
        "walletId": wallet["_id"],
        "vendorId": wallet["vendorId"],
        "type": txn_type.value,
        "amount": amount,
        "source": source.value,
        "relatedDocumentId": related_id,
        "relatedDocumentType": related_type,
        "description": description,
        "balanceAfter": wallet["balance"],
        "createdAt": now,
    }


async def credit_wallet(
    store,
    vendor_id,
    amount: int,
    *,
    source: TransactionSource,
    related_id=None,
    related_type: str | None = None,
    description: str | None = None,
    count_as_earned: bool = False,
    transaction_id: ObjectId | None = None,
    session=None,
    now: datetime | None = None,
) -> dict:
    """Credit unconditionally, creating the wallet on first use."""
    ensure_minor_units(amount, "amount", allow_zero=False)
    now = now or datetime.utcnow()
    vendor_oid = parse_object_id(vendor_id, "vendor_id")

    inc = {"balance": amount, "available": amount}
    if count_as_earned:
        inc["totalEarned"] = amount

    wallet = await _apply(store, vendor_oid, {}, inc, now, session=session, upsert=True)

    txn = _transaction_doc(
        wallet,
        TransactionType.CREDIT,
        amount,
        source,
        related_id=related_id,
        related_type=related_type,
        description=description,
        transaction_id=transaction_id,
        now=now,
    )
    await store.wallet_transactions.insert_one(txn, session=session)

    logger.info(
        "WALLET_CREDIT vendor=%s amount=%s source=%s",
        vendor_oid, amount, source.value,
    )
    return txn


async def debit_wallet(
    store,
    vendor_id,
    amount: int,
    *,
    source: TransactionSource,
    release_pending: int = 0,
    related_id=None,
    related_type: str | None = None,
    description: str | None = None,
    session=None,
    now: datetime | None = None,
) -> dict:
    """
    Debit `amount`. Without `release_pending` only unreserved funds can be
    taken; `release_pending` pays out of a reservation held for the same
    money.
    """
    ensure_minor_units(amount, "amount", allow_zero=False)
    if release_pending < 0 or release_pending > amount:
        raise ValidationError("release_pending must be between 0 and the debit amount")
    now = now or datetime.utcnow()
    vendor_oid = parse_object_id(vendor_id, "vendor_id")

    unreserved = amount - release_pending
    guard = {"available": {"$gte": unreserved}}
    inc = {"balance": -amount, "available": -unreserved}
    if release_pending:
        guard["pending"] = {"$gte": release_pending}
        inc["pending"] = -release_pending

    wallet = await _apply(store, vendor_oid, guard, inc, now, session=session)
    if wallet is None:
        raise InsufficientFundsError(
            "Wallet balance is insufficient for this debit",
            vendor_id=vendor_oid,
        )

    txn = _transaction_doc(
        wallet,
        TransactionType.DEBIT,
        amount,
        source,
        related_id=related_id,
        related_type=related_type,
        description=description,
        now=now,
    )
    await store.wallet_transactions.insert_one(txn, session=session)

    logger.info(
        "WALLET_DEBIT vendor=%s amount=%s source=%s",
        vendor_oid, amount, source.value,
    )
    return txn


async def adjust_pending(store, vendor_id, delta: int, *, session=None, now=None) -> dict:
    """Reserve (delta > 0) or release (delta < 0) withdrawal funds."""
    if not delta:
        raise ValidationError("Reservation change must be non-zero")
    now = now or datetime.utcnow()
    vendor_oid = parse_object_id(vendor_id, "vendor_id")

    if delta > 0:
        guard = {"available": {"$gte": delta}}
    else:
        guard = {"pending": {"$gte": -delta}}

    wallet = await _apply(
        store, vendor_oid, guard, {"pending": delta, "available": -delta}, now, session=session
    )
    if wallet is None:
        if delta > 0:
            raise InsufficientFundsError(
                "Insufficient available balance to reserve this withdrawal",
                vendor_id=vendor_oid,
            )
        raise ValidationError("Cannot release more than the reserved amount")
    return wallet


# ==============================
# Admin adjustments
# ==============================

async def record_adjustment(
    store,
    vendor_id,
    txn_type: TransactionType | str,
    amount: int,
    reason: str,
    actor,
    *,
    related_id=None,
    now=None,
) -> dict:
    txn_type = TransactionType(txn_type)
    ensure_minor_units(amount, "amount", allow_zero=False)
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Adjustment reason is required")
    now = now or datetime.utcnow()
    related_oid = parse_object_id(related_id, "related_document_id") if related_id else None
    apply = credit_wallet if txn_type == TransactionType.CREDIT else debit_wallet

    async def _adjust(session):
        # Debits only reach unreserved funds.
        txn = await apply(
            store,
            vendor_id,
            amount,
            source=TransactionSource.ADJUSTMENT,
            related_id=related_oid,
            related_type="Adjustment" if related_oid else None,
            description=reason,
            session=session,
            now=now,
        )

        await log_audit(
            store,
            actor,
            "WALLET_ADJUSTMENT",
            {
                "vendor_id": str(txn["vendorId"]),
                "type": txn_type.value,
                "amount": amount,
                "reason": reason,
            },
            session=session,
        )
        return txn

    txn = await store.run_in_transaction(_adjust)
    logger.info(
        "WALLET_ADJUSTMENT vendor=%s type=%s amount=%s actor=%s",
        txn["vendorId"], txn_type.value, format_amount(amount), actor.id,
    )
    return txn


# ==============================
# Reads
# ==============================

async def list_wallet_transactions(
    store,
    vendor_id,
    *,
    txn_type: str | None = None,
    source: str | None = None,
    days: int | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    now=None,
) -> dict:
    page, limit = normalize_page(page, limit, default_limit=DEFAULT_PAGE_SIZE, max_limit=MAX_PAGE_SIZE)
    vendor_oid = parse_object_id(vendor_id, "vendor_id")

    query: dict = {"vendorId": vendor_oid}
    if txn_type:
        query["type"] = TransactionType(txn_type).value
    if source:
        query["source"] = TransactionSource(source).value
    if days:
        if days < 1:
            raise ValidationError("days must be positive")
        query["createdAt"] = {"$gte": (now or datetime.utcnow()) - timedelta(days=days)}
    if search:
        query["description"] = {"$regex": _escape_regex(search), "$options": "i"}

    total = await store.wallet_transactions.count_documents(query)
    cursor = (
        store.wallet_transactions.find(query)
        .sort("createdAt", -1)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    items = [txn async for txn in cursor]

    return {"items": items, "pagination": pagination_meta(page, limit, total)}


def _escape_regex(text: str) -> str:
    return re.escape(text.strip())


async def wallet_summary(store, vendor_id) -> dict:
    vendor_oid = parse_object_id(vendor_id, "vendor_id")
    wallet = await store.wallets.find_one({"vendorId": vendor_oid}) or empty_wallet(vendor_oid)
    return {
        "vendorId": vendor_oid,
        "balance": wallet.get("balance", 0),
        "pending": wallet.get("pending", 0),
        "available": available_balance(wallet),
        "totalEarned": wallet.get("totalEarned", 0),
        "currency": wallet.get("currency", DEFAULT_CURRENCY),
        "updatedAt": wallet.get("updatedAt"),
    }


# ==============================
# Reconciliation (derived only)
# ==============================

async def reconcile_wallet(store, vendor_id) -> dict:
    """
    Recompute the balance from the transaction log and compare it with the
    stored balance. A non-zero drift means a write bypassed credit/debit.
    """
    vendor_oid = parse_object_id(vendor_id, "vendor_id")
    wallet = await store.wallets.find_one({"vendorId": vendor_oid})

    credits = 0
    debits = 0
    count = 0
    async for txn in store.wallet_transactions.find({"vendorId": vendor_oid}):
        count += 1
        if txn["type"] == TransactionType.CREDIT.value:
            credits += txn["amount"]
        else:
            debits += txn["amount"]

    stored = wallet.get("balance", 0) if wallet else 0
    derived = credits - debits
    drift = stored - derived

    if drift:
        logger.error("WALLET_DRIFT vendor=%s stored=%s derived=%s", vendor_oid, stored, derived)

    return {
        "vendorId": vendor_oid,
        "storedBalance": stored,
        "derivedBalance": derived,
        "totalCredits": credits,
        "totalDebits": debits,
        "transactionCount": count,
        "drift": drift,
        "consistent": drift == 0,
    }

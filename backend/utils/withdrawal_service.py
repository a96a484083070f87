"""
Vendor withdrawal workflow.

pending -> under_review -> approved -> processing -> completed
pending | under_review -> rejected
processing -> failed

Creation only validates against the available balance (balance - pending).
Approval reserves the amount in wallet.pending, completion debits it, and
failure releases the reservation. Rejection never touches the wallet.

Wallet changes are guarded atomic updates, so only the request's version
guard is ever retried. The request is saved before its wallet change,
except at approval: the reservation is taken first and handed back if the
request save loses a race outside a transaction.
"""

import logging
import secrets
from datetime import datetime

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from config.constants import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    MIN_WITHDRAWAL_AMOUNT,
    WITHDRAWAL_REQUEST_PREFIX,
)
from database import update_versioned
from models.wallet import TransactionSource
from models.withdrawal import RESERVED_STATUSES, WITHDRAWAL_TRANSITIONS, WithdrawalStatus
from utils.audit import log_audit
from utils.commission import calculate_withdrawal_fee
from utils.crypto import decrypt_sensitive_value, encrypt_sensitive_value, mask_account_number
from utils.errors import (
    ConflictError,
    InsufficientFundsError,
    InternalError,
    NotFoundError,
    StaleWriteError,
    ValidationError,
)
from utils.guards import normalize_page, pagination_meta, parse_object_id
from utils.money import ensure_minor_units, format_amount
from utils.order_timeline import status_entry
from utils.wallet_service import adjust_pending, available_balance, debit_wallet, get_wallet

logger = logging.getLogger(__name__)

_REQUEST_NUMBER_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_request_number() -> str:
    suffix = "".join(secrets.choice(_REQUEST_NUMBER_ALPHABET) for _ in range(8))
    return f"{WITHDRAWAL_REQUEST_PREFIX}{suffix}"


def _snapshot_bank_account(account: dict) -> dict:
    number = str(account.get("accountNumber") or "").strip()
    if not number:
        raise ValidationError("Payout account has no account number")
    return {
        "accountId": str(account.get("id")),
        "bankName": account.get("bankName"),
        "bankCode": account.get("bankCode"),
        "accountHolderName": account.get("accountHolderName"),
        "accountNumberMasked": mask_account_number(number),
        "accountNumberEncrypted": encrypt_sensitive_value(number),
    }


# ==============================
# Create
# ==============================

async def create_withdrawal_request(store, vendor, amount: int, bank_account_id: str, description: str | None = None, *, now=None) -> dict:
    ensure_minor_units(amount, "amount", allow_zero=False)
    if amount < MIN_WITHDRAWAL_AMOUNT:
        raise ValidationError(
            f"Minimum withdrawal amount is {format_amount(MIN_WITHDRAWAL_AMOUNT)}"
        )

    fee, net = calculate_withdrawal_fee(amount)
    if net <= 0:
        raise ValidationError("Withdrawal amount does not cover the processing fee")

    now = now or datetime.utcnow()
    vendor_oid = parse_object_id(vendor.id, "vendor_id")

    vendor_doc = await store.vendors.find_one({"_id": vendor_oid})
    if not vendor_doc:
        raise NotFoundError("Vendor not found", vendor_id=vendor_oid)

    account = next(
        (a for a in vendor_doc.get("payoutAccounts") or [] if str(a.get("id")) == str(bank_account_id)),
        None,
    )
    if not account:
        raise ValidationError("Bank account not found among the vendor's payout accounts")
    bank_snapshot = _snapshot_bank_account(account)

    async def _create(session):
        wallet = await get_wallet(store, vendor_oid, session=session)
        available = available_balance(wallet)
        if amount > available:
            raise InsufficientFundsError(
                f"Requested {format_amount(amount)} exceeds available balance {format_amount(available)}",
                vendor_id=vendor_oid,
            )

        request = {
            "_id": ObjectId(),
            "requestNumber": generate_request_number(),
            "vendorId": vendor_oid,
            "requestedAmount": amount,
            "processingFee": fee,
            "netAmount": net,
            "bankAccountSnapshot": bank_snapshot,
            "status": WithdrawalStatus.PENDING.value,
            "statusHistory": [
                status_entry(
                    WithdrawalStatus.PENDING.value,
                    actor=vendor,
                    notes="Withdrawal requested",
                    timestamp=now,
                )
            ],
            "review": {
                "reviewedBy": None,
                "reviewedAt": None,
                "notes": None,
                "rejectionReason": None,
            },
            "processing": {
                "processedBy": None,
                "processedAt": None,
                "transactionReference": None,
                "failureReason": None,
            },
            "description": description,
            "version": 0,
            "createdAt": now,
            "updatedAt": now,
        }

        try:
            await store.withdrawal_requests.insert_one(request, session=session)
        except DuplicateKeyError:
            # Request number collision; rerun with a fresh number.
            raise StaleWriteError("Withdrawal request number collision")

        await log_audit(
            store,
            vendor,
            "WITHDRAWAL_REQUESTED",
            {
                "request_id": str(request["_id"]),
                "request_number": request["requestNumber"],
                "amount": amount,
                "fee": fee,
            },
            session=session,
        )
        return request

    request = await store.run_in_transaction(_create)
    logger.info(
        "WITHDRAWAL_REQUESTED request=%s vendor=%s amount=%s",
        request["requestNumber"], vendor_oid, amount,
    )
    return request


# ==============================
# Transitions
# ==============================

async def _load_request(store, request_id, *, session=None) -> dict:
    request_oid = parse_object_id(request_id, "request_id")
    request = await store.withdrawal_requests.find_one({"_id": request_oid}, session=session)
    if not request:
        raise NotFoundError("Withdrawal request not found", request_id=request_oid)
    return request


def _move(request: dict, target: WithdrawalStatus, actor, notes: str | None, now: datetime) -> None:
    current = WithdrawalStatus(request["status"])
    if target not in WITHDRAWAL_TRANSITIONS[current]:
        raise ConflictError(
            f"Withdrawal request is {current.value} and cannot move to {target.value}",
            request_id=request["_id"],
        )
    request["status"] = target.value
    request["statusHistory"].append(
        status_entry(target.value, actor=actor, notes=notes, timestamp=now)
    )


async def _save_request(store, request: dict, now: datetime, *, session=None) -> None:
    await update_versioned(
        store.withdrawal_requests,
        request,
        {
            "$set": {
                "status": request["status"],
                "statusHistory": request["statusHistory"],
                "review": request["review"],
                "processing": request["processing"],
                "updatedAt": now,
            }
        },
        session=session,
    )


def _mark_completed(request: dict, actor, transaction_reference: str, now) -> str:
    reference = (transaction_reference or "").strip()
    if not reference:
        raise ValidationError("A transaction reference is required to complete a withdrawal")

    _move(request, WithdrawalStatus.COMPLETED, actor, f"Paid out, reference {reference}", now)
    request["processing"].update({
        "processedBy": actor.id,
        "processedAt": now,
        "transactionReference": reference,
    })
    return reference


async def _pay_out(store, request: dict, reference: str, now, *, session=None) -> None:
    """Debit the wallet out of the reservation taken at approval."""
    amount = request["requestedAmount"]
    try:
        await debit_wallet(
            store,
            request["vendorId"],
            amount,
            source=TransactionSource.WITHDRAWAL_PAYOUT,
            release_pending=amount,
            related_id=request["_id"],
            related_type="WithdrawalRequest",
            description=f"Withdrawal {request['requestNumber']} ({reference})",
            session=session,
            now=now,
        )
    except InsufficientFundsError as exc:
        logger.error("WITHDRAWAL_RESERVATION_MISSING request=%s", request["requestNumber"])
        raise InternalError("Wallet reservation is missing for an approved withdrawal") from exc


async def _run_transition(store, request_id, actor, action: str, step) -> dict:
    async def _op(session):
        request = await _load_request(store, request_id, session=session)
        await step(request, session)
        await log_audit(
            store,
            actor,
            action,
            {
                "request_id": str(request["_id"]),
                "request_number": request["requestNumber"],
                "status": request["status"],
                "amount": request["requestedAmount"],
            },
            session=session,
        )
        return request

    request = await store.run_in_transaction(_op)
    logger.info(
        "%s request=%s status=%s actor=%s",
        action, request["requestNumber"], request["status"], actor.id,
    )
    return request


async def start_review(store, request_id, actor, notes: str | None = None, *, now=None) -> dict:
    now = now or datetime.utcnow()

    async def _step(request, session):
        _move(request, WithdrawalStatus.UNDER_REVIEW, actor, notes or "Under review", now)
        request["review"].update({"reviewedBy": actor.id, "reviewedAt": now, "notes": notes})
        await _save_request(store, request, now, session=session)

    return await _run_transition(store, request_id, actor, "WITHDRAWAL_REVIEW_STARTED", _step)


async def approve_withdrawal_request(
    store,
    request_id,
    actor,
    transaction_reference: str | None = None,
    notes: str | None = None,
    *,
    now=None,
) -> dict:
    """
    Approve and reserve the funds. With a transaction reference the payout
    was already made by hand, so the request is completed in the same
    transaction.
    """
    now = now or datetime.utcnow()

    async def _step(request, session):
        _move(request, WithdrawalStatus.APPROVED, actor, notes or "Approved", now)
        request["review"].update({"reviewedBy": actor.id, "reviewedAt": now, "notes": notes})

        reference = None
        if transaction_reference:
            _move(request, WithdrawalStatus.PROCESSING, actor, "Manual payout recorded", now)
            reference = _mark_completed(request, actor, transaction_reference, now)

        amount = request["requestedAmount"]
        try:
            await adjust_pending(store, request["vendorId"], amount, session=session, now=now)
        except InsufficientFundsError:
            wallet = await get_wallet(store, request["vendorId"], session=session)
            raise InsufficientFundsError(
                f"Available balance {format_amount(available_balance(wallet))} no longer covers {format_amount(amount)}",
                request_id=request["_id"],
            )

        try:
            await _save_request(store, request, now, session=session)
        except StaleWriteError:
            if session is None:
                await adjust_pending(store, request["vendorId"], -amount, now=now)
            raise

        if reference:
            await _pay_out(store, request, reference, now, session=session)

    return await _run_transition(store, request_id, actor, "WITHDRAWAL_APPROVED", _step)


async def mark_processing(store, request_id, actor, *, now=None) -> dict:
    now = now or datetime.utcnow()

    async def _step(request, session):
        _move(request, WithdrawalStatus.PROCESSING, actor, "Payout initiated", now)
        request["processing"].update({"processedBy": actor.id})
        await _save_request(store, request, now, session=session)

    return await _run_transition(store, request_id, actor, "WITHDRAWAL_PROCESSING", _step)


async def complete_withdrawal_request(store, request_id, actor, transaction_reference: str, *, now=None) -> dict:
    now = now or datetime.utcnow()

    async def _step(request, session):
        reference = _mark_completed(request, actor, transaction_reference, now)
        await _save_request(store, request, now, session=session)
        await _pay_out(store, request, reference, now, session=session)

    return await _run_transition(store, request_id, actor, "WITHDRAWAL_COMPLETED", _step)


async def fail_withdrawal_request(store, request_id, actor, reason: str, *, now=None) -> dict:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A failure reason is required")
    now = now or datetime.utcnow()

    async def _step(request, session):
        _move(request, WithdrawalStatus.FAILED, actor, reason, now)
        request["processing"].update({
            "processedBy": actor.id,
            "processedAt": now,
            "failureReason": reason,
        })

        await _save_request(store, request, now, session=session)
        try:
            await adjust_pending(store, request["vendorId"], -request["requestedAmount"], session=session, now=now)
        except ValidationError as exc:
            raise InternalError("Wallet reservation is missing for a processing withdrawal") from exc

    return await _run_transition(store, request_id, actor, "WITHDRAWAL_FAILED", _step)


async def reject_withdrawal_request(store, request_id, actor, reason: str, *, now=None) -> dict:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A rejection reason is required")
    now = now or datetime.utcnow()

    async def _step(request, session):
        _move(request, WithdrawalStatus.REJECTED, actor, reason, now)
        request["review"].update({
            "reviewedBy": actor.id,
            "reviewedAt": now,
            "rejectionReason": reason,
        })
        await _save_request(store, request, now, session=session)

    return await _run_transition(store, request_id, actor, "WITHDRAWAL_REJECTED", _step)


# ==============================
# Reads
# ==============================

async def get_withdrawal_request(store, request_id) -> dict:
    return await _load_request(store, request_id)


async def get_payout_instruction(store, request_id, actor) -> dict:
    """
    Full bank details for the transfer of an approved or processing request.
    Every read is audited.
    """
    request = await _load_request(store, request_id)
    if WithdrawalStatus(request["status"]) not in RESERVED_STATUSES:
        raise ConflictError(
            f"Withdrawal request is {request['status']}; payout details are only available while funds are reserved",
            request_id=request["_id"],
        )

    bank = request["bankAccountSnapshot"]
    encrypted_account_number = bank.get("accountNumberEncrypted")
    if not encrypted_account_number:
        raise ValidationError("Withdrawal request has no bank account number on file")
    account_number = decrypt_sensitive_value(encrypted_account_number)

    await log_audit(
        store,
        actor,
        "WITHDRAWAL_PAYOUT_DETAILS_VIEWED",
        {
            "request_id": str(request["_id"]),
            "request_number": request["requestNumber"],
        },
    )
    logger.info("WITHDRAWAL_PAYOUT_DETAILS_VIEWED request=%s actor=%s", request["requestNumber"], actor.id)

    return {
        "requestId": request["_id"],
        "requestNumber": request["requestNumber"],
        "vendorId": request["vendorId"],
        "status": request["status"],
        "netAmount": request["netAmount"],
        "bankName": bank.get("bankName"),
        "bankCode": bank.get("bankCode"),
        "accountHolderName": bank.get("accountHolderName"),
        "accountNumber": account_number,
    }


async def list_withdrawal_requests(
    store,
    *,
    status: str | None = None,
    vendor_id=None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
) -> dict:
    page, limit = normalize_page(page, limit, default_limit=DEFAULT_PAGE_SIZE, max_limit=MAX_PAGE_SIZE)

    query: dict = {}
    if status:
        query["status"] = WithdrawalStatus(status).value
    if vendor_id:
        query["vendorId"] = parse_object_id(vendor_id, "vendor_id")
    if from_date or to_date:
        query["createdAt"] = {}
        if from_date:
            query["createdAt"]["$gte"] = from_date
        if to_date:
            query["createdAt"]["$lte"] = to_date

    total = await store.withdrawal_requests.count_documents(query)
    cursor = (
        store.withdrawal_requests.find(query)
        .sort("createdAt", -1)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    items = [request async for request in cursor]

    scope = {k: v for k, v in query.items() if k != "status"}
    pending_count = await store.withdrawal_requests.count_documents(
        {**scope, "status": WithdrawalStatus.PENDING.value}
    )
    approved_amount = 0
    async for request in store.withdrawal_requests.find(
        {**scope, "status": {"$in": [s.value for s in RESERVED_STATUSES]}}
    ):
        approved_amount += request["requestedAmount"]

    return {
        "items": items,
        "pagination": pagination_meta(page, limit, total),
        "summary": {
            "pendingCount": pending_count,
            "approvedAmount": approved_amount,
        },
    }

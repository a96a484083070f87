from fastapi import APIRouter, Depends, Query
from datetime import datetime
from typing import Optional

from database import get_store
from models.order import (
    DeliveryStatus,
    EscrowReleaseRequest,
    PostDeliveryDispute,
    RefundResolution,
)
from models.user import (
    DELIVERIES_CONFIRM,
    ESCROW_RELEASE,
    ESCROW_VIEW,
    REFUNDS_RESOLVE,
    WALLET_ADJUST,
    WITHDRAWALS_PROCESS,
    WITHDRAWALS_REVIEW,
)
from models.wallet import WalletAdjustment
from models.withdrawal import (
    WithdrawalApprove,
    WithdrawalComplete,
    WithdrawalFail,
    WithdrawalReject,
    WithdrawalReview,
    WithdrawalStatus,
)
from utils.escrow_service import get_escrow_detail, list_escrow_release_queue, release_escrow
from utils.order_service import admin_confirm_delivery, list_delivery_confirmation_queue
from utils.refund_service import (
    list_refund_adjudication_queue,
    open_post_delivery_dispute,
    resolve_refund_adjudication,
)
from utils.security import require_capability
from utils.serializers import serialize_doc, serialize_docs, serialize_value
from utils.wallet_service import reconcile_wallet, record_adjustment
from utils.withdrawal_service import (
    approve_withdrawal_request,
    complete_withdrawal_request,
    fail_withdrawal_request,
    get_payout_instruction,
    get_withdrawal_request,
    list_withdrawal_requests,
    mark_processing,
    reject_withdrawal_request,
    start_review,
)

router = APIRouter(prefix="/admin", tags=["Admin"])


# ======================================================
# ESCROW RELEASE
# ======================================================

@router.get("/escrow/release-queue")
async def escrow_release_queue(
    vendor_id: Optional[str] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin=Depends(require_capability(ESCROW_VIEW)),
    store=Depends(get_store),
):
    queue = await list_escrow_release_queue(
        store,
        vendor_id=vendor_id,
        from_date=from_date,
        to_date=to_date,
        page=page,
        limit=limit,
    )
    return serialize_value(queue)


@router.get("/escrow/{sub_order_id}")
async def escrow_detail(
    sub_order_id: str,
    admin=Depends(require_capability(ESCROW_VIEW)),
    store=Depends(get_store),
):
    return serialize_value(await get_escrow_detail(store, sub_order_id))


@router.post("/escrow/{sub_order_id}/release")
async def release_sub_order_escrow(
    sub_order_id: str,
    data: EscrowReleaseRequest | None = None,
    admin=Depends(require_capability(ESCROW_RELEASE)),
    store=Depends(get_store),
):
    released = await release_escrow(store, sub_order_id, admin, data.notes if data else None)
    return {
        "message": "Escrow released",
        "release": serialize_value(released),
    }


# ======================================================
# DELIVERY CONFIRMATIONS
# ======================================================

@router.get("/deliveries/confirmation-queue")
async def delivery_confirmation_queue(
    vendor_id: Optional[str] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin=Depends(require_capability(DELIVERIES_CONFIRM)),
    store=Depends(get_store),
):
    queue = await list_delivery_confirmation_queue(
        store,
        vendor_id=vendor_id,
        from_date=from_date,
        to_date=to_date,
        page=page,
        limit=limit,
    )
    return serialize_value(queue)


@router.post("/deliveries/{sub_order_id}/confirm")
async def confirm_stale_delivery(
    sub_order_id: str,
    admin=Depends(require_capability(DELIVERIES_CONFIRM)),
    store=Depends(get_store),
):
    _, sub = await admin_confirm_delivery(store, sub_order_id, admin)
    return {
        "message": "Delivery confirmed",
        "subOrderId": str(sub["id"]),
        "customerConfirmedDelivery": serialize_doc(sub["customerConfirmedDelivery"]),
    }


# ======================================================
# REFUND ADJUDICATION
# ======================================================

@router.get("/refunds/queue")
async def refund_queue(
    status: Optional[DeliveryStatus] = None,
    vendor_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin=Depends(require_capability(REFUNDS_RESOLVE)),
    store=Depends(get_store),
):
    queue = await list_refund_adjudication_queue(
        store,
        status=status.value if status else None,
        vendor_id=vendor_id,
        page=page,
        limit=limit,
    )
    return serialize_value(queue)


@router.post("/refunds/{sub_order_id}/resolve")
async def resolve_refund(
    sub_order_id: str,
    data: RefundResolution,
    admin=Depends(require_capability(REFUNDS_RESOLVE)),
    store=Depends(get_store),
):
    resolution = await resolve_refund_adjudication(store, sub_order_id, data.decision, data.notes, admin)
    return {
        "message": "Refund adjudication resolved",
        "resolution": serialize_value(resolution),
    }


@router.post("/refunds/{sub_order_id}/post-delivery")
async def refund_delivered_sub_order(
    sub_order_id: str,
    data: PostDeliveryDispute,
    admin=Depends(require_capability(REFUNDS_RESOLVE)),
    store=Depends(get_store),
):
    refund = await open_post_delivery_dispute(store, sub_order_id, data.reason, admin)
    return {
        "message": "Delivered sub-order refunded",
        "refund": serialize_value(refund),
    }


# ======================================================
# WITHDRAWAL REQUESTS
# ======================================================

@router.get("/withdrawal-requests")
async def withdrawal_requests(
    status: Optional[WithdrawalStatus] = None,
    vendor_id: Optional[str] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin=Depends(require_capability(WITHDRAWALS_REVIEW)),
    store=Depends(get_store),
):
    result = await list_withdrawal_requests(
        store,
        status=status.value if status else None,
        vendor_id=vendor_id,
        from_date=from_date,
        to_date=to_date,
        page=page,
        limit=limit,
    )
    return {
        "requests": serialize_docs(result["items"]),
        "pagination": result["pagination"],
        "summary": result["summary"],
    }


@router.get("/withdrawal-requests/{request_id}")
async def withdrawal_request_detail(
    request_id: str,
    admin=Depends(require_capability(WITHDRAWALS_REVIEW)),
    store=Depends(get_store),
):
    return serialize_doc(await get_withdrawal_request(store, request_id))


@router.post("/withdrawal-requests/{request_id}/review")
async def review_withdrawal(
    request_id: str,
    data: WithdrawalReview | None = None,
    admin=Depends(require_capability(WITHDRAWALS_REVIEW)),
    store=Depends(get_store),
):
    request = await start_review(store, request_id, admin, data.notes if data else None)
    return {"message": "Withdrawal under review", "request": serialize_doc(request)}


@router.post("/withdrawal-requests/{request_id}/approve")
async def approve_withdrawal(
    request_id: str,
    data: WithdrawalApprove | None = None,
    admin=Depends(require_capability(WITHDRAWALS_REVIEW)),
    store=Depends(get_store),
):
    data = data or WithdrawalApprove()
    request = await approve_withdrawal_request(
        store,
        request_id,
        admin,
        data.transaction_reference,
        data.notes,
    )
    return {"message": "Withdrawal approved", "request": serialize_doc(request)}


@router.get("/withdrawal-requests/{request_id}/payout-instruction")
async def withdrawal_payout_instruction(
    request_id: str,
    admin=Depends(require_capability(WITHDRAWALS_PROCESS)),
    store=Depends(get_store),
):
    return serialize_value(await get_payout_instruction(store, request_id, admin))


@router.post("/withdrawal-requests/{request_id}/processing")
async def process_withdrawal(
    request_id: str,
    admin=Depends(require_capability(WITHDRAWALS_PROCESS)),
    store=Depends(get_store),
):
    request = await mark_processing(store, request_id, admin)
    return {"message": "Withdrawal processing", "request": serialize_doc(request)}


@router.post("/withdrawal-requests/{request_id}/complete")
async def complete_withdrawal(
    request_id: str,
    data: WithdrawalComplete,
    admin=Depends(require_capability(WITHDRAWALS_PROCESS)),
    store=Depends(get_store),
):
    request = await complete_withdrawal_request(store, request_id, admin, data.transaction_reference)
    return {"message": "Withdrawal completed", "request": serialize_doc(request)}


@router.post("/withdrawal-requests/{request_id}/fail")
async def fail_withdrawal(
    request_id: str,
    data: WithdrawalFail,
    admin=Depends(require_capability(WITHDRAWALS_PROCESS)),
    store=Depends(get_store),
):
    request = await fail_withdrawal_request(store, request_id, admin, data.reason)
    return {"message": "Withdrawal marked failed", "request": serialize_doc(request)}


@router.post("/withdrawal-requests/{request_id}/reject")
async def reject_withdrawal(
    request_id: str,
    data: WithdrawalReject,
    admin=Depends(require_capability(WITHDRAWALS_REVIEW)),
    store=Depends(get_store),
):
    request = await reject_withdrawal_request(store, request_id, admin, data.reason)
    return {"message": "Withdrawal rejected", "request": serialize_doc(request)}


# ======================================================
# WALLETS
# ======================================================

@router.post("/wallets/{vendor_id}/adjustments", status_code=201)
async def adjust_vendor_wallet(
    vendor_id: str,
    data: WalletAdjustment,
    admin=Depends(require_capability(WALLET_ADJUST)),
    store=Depends(get_store),
):
    txn = await record_adjustment(
        store,
        vendor_id,
        data.type,
        data.amount,
        data.reason,
        admin,
        related_id=data.related_document_id,
    )
    return {"message": "Wallet adjusted", "transaction": serialize_doc(txn)}


@router.get("/wallets/{vendor_id}/reconcile")
async def reconcile_vendor_wallet(
    vendor_id: str,
    admin=Depends(require_capability(WALLET_ADJUST)),
    store=Depends(get_store),
):
    return serialize_value(await reconcile_wallet(store, vendor_id))

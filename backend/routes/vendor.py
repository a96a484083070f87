from fastapi import APIRouter, Depends, Query
from typing import Optional

from database import get_store
from models.order import DeliveryStatusUpdate
from models.user import FULFILLMENT_UPDATE, WALLET_READ, WITHDRAWALS_CREATE
from models.wallet import TransactionSource, TransactionType
from models.withdrawal import WithdrawalCreate, WithdrawalStatus
from utils.order_service import update_delivery_status
from utils.security import require_capability
from utils.serializers import serialize_doc, serialize_docs, serialize_value
from utils.wallet_service import list_wallet_transactions, wallet_summary
from utils.withdrawal_service import create_withdrawal_request, list_withdrawal_requests

router = APIRouter(prefix="/vendor", tags=["Vendor"])


# ======================================================
# VENDOR WALLET (READ ONLY)
# ======================================================

@router.get("/wallet")
async def get_vendor_wallet(
    vendor=Depends(require_capability(WALLET_READ)),
    store=Depends(get_store),
):
    summary = await wallet_summary(store, vendor.id)
    return serialize_value(summary)


@router.get("/wallet/transactions")
async def get_wallet_transactions(
    txn_type: Optional[TransactionType] = Query(None, alias="type"),
    source: Optional[TransactionSource] = None,
    days: Optional[int] = Query(None, ge=1, le=365),
    search: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    vendor=Depends(require_capability(WALLET_READ)),
    store=Depends(get_store),
):
    result = await list_wallet_transactions(
        store,
        vendor.id,
        txn_type=txn_type.value if txn_type else None,
        source=source.value if source else None,
        days=days,
        search=search,
        page=page,
        limit=limit,
    )
    return {
        "transactions": serialize_docs(result["items"]),
        "pagination": result["pagination"],
    }


# ======================================================
# WITHDRAWALS
# ======================================================

@router.post("/withdrawal-requests", status_code=201)
async def request_withdrawal(
    data: WithdrawalCreate,
    vendor=Depends(require_capability(WITHDRAWALS_CREATE)),
    store=Depends(get_store),
):
    request = await create_withdrawal_request(
        store,
        vendor,
        data.amount,
        data.bank_account_id,
        data.description,
    )
    return {
        "message": "Withdrawal request submitted",
        "request": serialize_doc(request),
    }


@router.get("/withdrawal-requests")
async def my_withdrawal_requests(
    status: Optional[WithdrawalStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    vendor=Depends(require_capability(WITHDRAWALS_CREATE)),
    store=Depends(get_store),
):
    result = await list_withdrawal_requests(
        store,
        status=status.value if status else None,
        vendor_id=vendor.id,
        page=page,
        limit=limit,
    )
    return {
        "requests": serialize_docs(result["items"]),
        "pagination": result["pagination"],
        "summary": result["summary"],
    }


# ======================================================
# FULFILMENT
# ======================================================

@router.patch("/orders/{sub_order_id}/status")
async def update_sub_order_status(
    sub_order_id: str,
    data: DeliveryStatusUpdate,
    vendor=Depends(require_capability(FULFILLMENT_UPDATE)),
    store=Depends(get_store),
):
    _, sub = await update_delivery_status(store, sub_order_id, data.status, vendor, data.notes)
    return {
        "message": "Sub-order status updated",
        "subOrderId": str(sub["id"]),
        "deliveryStatus": sub["deliveryStatus"],
        "returnWindow": serialize_value(sub.get("returnWindow")),
    }

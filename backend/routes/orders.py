from fastapi import APIRouter, Depends, Query
from typing import Optional

from database import get_store
from models.order import OrderCreate, PaymentStatus
from models.user import ORDERS_CONFIRM_DELIVERY, ORDERS_CREATE, ORDERS_READ
from utils.order_service import (
    confirm_delivery,
    create_order,
    get_order,
    list_customer_orders,
)
from utils.security import require_capability
from utils.serializers import serialize_doc, serialize_docs

router = APIRouter(prefix="/orders", tags=["Orders"])


# ======================================================
# CUSTOMER ORDERS
# ======================================================

@router.post("", status_code=201)
async def place_order(
    data: OrderCreate,
    customer=Depends(require_capability(ORDERS_CREATE)),
    store=Depends(get_store),
):
    order = await create_order(store, customer, data)
    return {
        "message": "Order created",
        "order": serialize_doc(order),
    }


@router.get("")
async def my_orders(
    payment_status: Optional[PaymentStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    customer=Depends(require_capability(ORDERS_READ)),
    store=Depends(get_store),
):
    result = await list_customer_orders(
        store,
        customer.id,
        payment_status=payment_status.value if payment_status else None,
        page=page,
        limit=limit,
    )
    return {
        "orders": serialize_docs(result["items"]),
        "pagination": result["pagination"],
    }


@router.get("/{order_id}")
async def order_detail(
    order_id: str,
    principal=Depends(require_capability(ORDERS_READ)),
    store=Depends(get_store),
):
    order = await get_order(store, order_id, principal)
    return serialize_doc(order)


@router.post("/sub-orders/{sub_order_id}/confirm-delivery")
async def confirm_sub_order_delivery(
    sub_order_id: str,
    customer=Depends(require_capability(ORDERS_CONFIRM_DELIVERY)),
    store=Depends(get_store),
):
    _, sub = await confirm_delivery(store, sub_order_id, customer)
    return {
        "message": "Delivery confirmed",
        "subOrderId": str(sub["id"]),
        "deliveryStatus": sub["deliveryStatus"],
        "customerConfirmedDelivery": serialize_doc(sub["customerConfirmedDelivery"]),
    }

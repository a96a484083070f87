import logging
from datetime import datetime, timedelta

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from config.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, STALE_CONFIRMATION_DAYS
from config.env import RETURN_WINDOW_DAYS, TAX_RATE_PERCENT
from database import update_versioned
from models.order import (
    DELIVERY_TRANSITIONS,
    DeliveryStatus,
    OrderCreate,
    PaymentStatus,
    VendorCartGroup,
)
from models.product import ProductSize, ProductSnapshot
from models.user import Role
from utils.audit import log_audit
from utils.errors import (
    ConflictError,
    DuplicateOrderError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from utils.guards import normalize_page, pagination_meta, parse_object_id
from utils.money import ensure_minor_units, percentage_of
from utils.order_timeline import status_entry, time_in_status as history_time_in_status

logger = logging.getLogger(__name__)


# ======================================================
# LOOKUPS
# ======================================================

def get_sub_order(order: dict, sub_order_id) -> dict:
    sub_oid = parse_object_id(sub_order_id, "sub_order_id")
    for sub in order.get("subOrders", []):
        if sub["id"] == sub_oid:
            return sub
    raise NotFoundError("Sub-order not found", sub_order_id=sub_oid)


async def find_sub_order(store, sub_order_id, *, session=None) -> tuple[dict, dict]:
    """Returns (order, sub_order). The sub-order is a reference into the order."""
    sub_oid = parse_object_id(sub_order_id, "sub_order_id")
    order = await store.orders.find_one({"subOrders.id": sub_oid}, session=session)
    if not order:
        raise NotFoundError("Sub-order not found", sub_order_id=sub_oid)
    return order, get_sub_order(order, sub_oid)


async def get_order(store, order_id, principal=None) -> dict:
    order_oid = parse_object_id(order_id, "order_id")
    order = await store.orders.find_one({"_id": order_oid})
    if not order:
        raise NotFoundError("Order not found", order_id=order_oid)

    if principal is not None and principal.role == Role.CUSTOMER:
        if str(order["customerId"]) != principal.id:
            raise NotFoundError("Order not found", order_id=order_oid)

    return order


async def list_customer_orders(
    store,
    customer_id,
    *,
    payment_status: str | None = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
) -> dict:
    page, limit = normalize_page(page, limit, default_limit=DEFAULT_PAGE_SIZE, max_limit=MAX_PAGE_SIZE)
    query: dict = {"customerId": parse_object_id(customer_id, "customer_id")}
    if payment_status:
        query["paymentStatus"] = PaymentStatus(payment_status).value

    total = await store.orders.count_documents(query)
    cursor = (
        store.orders.find(query)
        .sort("createdAt", -1)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    items = [order async for order in cursor]
    return {"items": items, "pagination": pagination_meta(page, limit, total)}


def time_in_status(sub_order: dict, now: datetime | None = None) -> timedelta | None:
    return history_time_in_status(
        sub_order.get("statusHistory", []),
        sub_order["deliveryStatus"],
        now or datetime.utcnow(),
    )


# ======================================================
# CREATE
# ======================================================

def _snapshot_product(product: dict, item) -> ProductSnapshot:
    price = product.get("price")
    size = None

    if item.size:
        match = next(
            (s for s in product.get("sizes") or [] if s.get("size") == item.size),
            None,
        )
        if not match:
            raise ValidationError(
                f"Size {item.size} is not available for {product.get('name')}",
                product_id=product["_id"],
            )
        price = match.get("price", price)
        size = ProductSize(size=match["size"], price=ensure_minor_units(price, "size price"))

    ensure_minor_units(price, "product price")
    images = product.get("images") or []

    return ProductSnapshot(
        productId=str(product["_id"]),
        name=product["name"],
        price=price,
        quantity=item.quantity,
        size=size,
        image=images[0] if images else None,
    )


async def _build_sub_order(store, group: VendorCartGroup, customer, now: datetime) -> dict:
    vendor_oid = parse_object_id(group.vendor_id, "vendor_id")
    vendor = await store.vendors.find_one({"_id": vendor_oid})
    if not vendor:
        raise NotFoundError("Vendor not found", vendor_id=vendor_oid)

    method = next(
        (m for m in vendor.get("shippingMethods") or [] if m.get("name") == group.shipping_method),
        None,
    )
    if not method:
        raise ValidationError(
            f"Shipping method {group.shipping_method} is not offered by this vendor",
            vendor_id=vendor_oid,
        )
    shipping_price = ensure_minor_units(method.get("price", 0), "shipping price")

    snapshots = []
    for item in group.items:
        product_oid = parse_object_id(item.product_id, "product_id")
        product = await store.products.find_one({"_id": product_oid})
        if not product or not product.get("active", True):
            raise NotFoundError("Product not found or inactive", product_id=product_oid)
        if product.get("vendorId") != vendor_oid:
            raise ValidationError("Product does not belong to this vendor", product_id=product_oid)
        snapshots.append(_snapshot_product(product, item))

    items_total = sum(s.line_total for s in snapshots)

    return {
        "id": ObjectId(),
        "vendorId": vendor_oid,
        "products": [s.to_document() for s in snapshots],
        "itemsTotal": items_total,
        "totalAmount": items_total + shipping_price,
        "shippingMethod": {
            "name": method["name"],
            "price": shipping_price,
            "estimatedDeliveryDays": method.get("estimatedDeliveryDays"),
        },
        "deliveryStatus": DeliveryStatus.ORDER_PLACED.value,
        "deliveryDate": None,
        "returnWindow": None,
        "customerConfirmedDelivery": {
            "confirmed": False,
            "confirmedAt": None,
            "autoConfirmed": False,
        },
        "escrow": {
            "held": True,
            "released": False,
            "releasedAt": None,
            "refunded": False,
            "refundedAt": None,
            "refundReason": None,
        },
        "settlement": None,
        "statusHistory": [
            status_entry(
                DeliveryStatus.ORDER_PLACED.value,
                actor=customer,
                notes="Order placed",
                timestamp=now,
            )
        ],
    }


async def create_order(store, customer, payload: OrderCreate, *, now=None) -> dict:
    """
    Turn a multi-vendor cart into one order with a sub-order per vendor.

    The idempotency key is checked up front and enforced again by the unique
    index, so two concurrent submissions leave exactly one order.
    """
    now = now or datetime.utcnow()
    key = payload.idempotency_key.strip()

    existing = await store.orders.find_one({"idempotencyKey": key}, {"_id": 1})
    if existing:
        raise DuplicateOrderError(
            "An order with this idempotency key already exists",
            order_id=existing["_id"],
        )

    vendor_ids = [g.vendor_id for g in payload.groups]
    if len(set(vendor_ids)) != len(vendor_ids):
        raise ValidationError("Each vendor may appear only once per order")

    sub_orders = [await _build_sub_order(store, group, customer, now) for group in payload.groups]

    subtotal = sum(s["itemsTotal"] for s in sub_orders)
    shipping_total = sum(s["shippingMethod"]["price"] for s in sub_orders)
    tax_amount = percentage_of(subtotal, TAX_RATE_PERCENT)

    order = {
        "_id": ObjectId(),
        "customerId": parse_object_id(customer.id, "customer_id"),
        "idempotencyKey": key,
        "subtotal": subtotal,
        "shippingTotal": shipping_total,
        "taxAmount": tax_amount,
        "totalAmount": subtotal + shipping_total + tax_amount,
        "paymentStatus": PaymentStatus.PENDING.value,
        "payment": {
            "gateway": payload.payment.gateway,
            "gatewayReference": None,
            "amountPaid": None,
            "paidAt": None,
        },
        "shippingAddress": {
            "address": payload.shipping_address.address,
            "postalCode": payload.shipping_address.postal_code,
            "deliveryType": payload.shipping_address.delivery_type,
        },
        "subOrders": sub_orders,
        "statusHistory": [
            status_entry(
                PaymentStatus.PENDING.value,
                actor=customer,
                notes="Awaiting payment",
                timestamp=now,
            )
        ],
        "version": 0,
        "createdAt": now,
        "updatedAt": now,
    }

    async def _insert(session):
        try:
            await store.orders.insert_one(order, session=session)
        except DuplicateKeyError:
            raise DuplicateOrderError("An order with this idempotency key already exists")

        await log_audit(
            store,
            customer,
            "ORDER_CREATED",
            {
                "order_id": str(order["_id"]),
                "sub_orders": len(sub_orders),
                "total_amount": order["totalAmount"],
            },
            session=session,
        )
        return order

    created = await store.run_in_transaction(_insert)
    logger.info(
        "ORDER_CREATED order=%s customer=%s sub_orders=%s total=%s",
        created["_id"], customer.id, len(sub_orders), created["totalAmount"],
    )
    return created


# ======================================================
# DELIVERY LIFECYCLE
# ======================================================

def apply_delivery_transition(sub_order: dict, new_status: DeliveryStatus, actor, notes, now) -> None:
    current = DeliveryStatus(sub_order["deliveryStatus"])
    if new_status not in DELIVERY_TRANSITIONS[current]:
        raise ValidationError(
            f"Cannot move sub-order from {current.value} to {new_status.value}",
            sub_order_id=sub_order["id"],
        )

    sub_order["deliveryStatus"] = new_status.value
    if new_status == DeliveryStatus.DELIVERED:
        sub_order["deliveryDate"] = now
        sub_order["returnWindow"] = now + timedelta(days=RETURN_WINDOW_DAYS)

    sub_order["statusHistory"].append(
        status_entry(new_status.value, actor=actor, notes=notes, timestamp=now)
    )


async def save_sub_orders(store, order: dict, now: datetime, *, session=None) -> None:
    await update_versioned(
        store.orders,
        order,
        {"$set": {"subOrders": order["subOrders"], "updatedAt": now}},
        session=session,
    )


async def update_delivery_status(store, sub_order_id, status, actor, notes=None, *, now=None):
    status = DeliveryStatus(status)
    if status == DeliveryStatus.REFUNDED:
        raise ValidationError("Refunds after delivery go through refund adjudication")

    now = now or datetime.utcnow()

    async def _apply(session):
        order, sub = await find_sub_order(store, sub_order_id, session=session)

        if actor.role == Role.VENDOR and str(sub["vendorId"]) != actor.id:
            raise PermissionDeniedError("Sub-order belongs to another vendor")
        if order["paymentStatus"] != PaymentStatus.PAID.value:
            raise ValidationError("Delivery can only progress on paid orders")

        apply_delivery_transition(sub, status, actor, notes, now)
        await save_sub_orders(store, order, now, session=session)

        await log_audit(
            store,
            actor,
            "SUB_ORDER_STATUS_CHANGED",
            {"sub_order_id": str(sub["id"]), "status": status.value},
            session=session,
        )
        return order, sub

    order, sub = await store.run_in_transaction(_apply)
    logger.info("SUB_ORDER_STATUS sub_order=%s status=%s actor=%s", sub["id"], status.value, actor.id)
    return order, sub


async def confirm_delivery(store, sub_order_id, customer, *, now=None):
    """
    Customer confirms receipt. From out_for_delivery this also marks the
    sub-order delivered. Confirming twice is a no-op.
    """
    now = now or datetime.utcnow()

    async def _confirm(session):
        order, sub = await find_sub_order(store, sub_order_id, session=session)

        if str(order["customerId"]) != customer.id:
            raise PermissionDeniedError("Only the ordering customer can confirm delivery")
        if order["paymentStatus"] != PaymentStatus.PAID.value:
            raise ValidationError("Delivery can only be confirmed on paid orders")

        confirmation = sub["customerConfirmedDelivery"]
        if confirmation.get("confirmed"):
            return order, sub, False

        current = DeliveryStatus(sub["deliveryStatus"])
        if current == DeliveryStatus.OUT_FOR_DELIVERY:
            apply_delivery_transition(sub, DeliveryStatus.DELIVERED, customer, "Delivered (confirmed by customer)", now)
        elif current != DeliveryStatus.DELIVERED:
            raise ValidationError(f"Delivery cannot be confirmed while sub-order is {current.value}")

        confirmation.update({"confirmed": True, "confirmedAt": now, "autoConfirmed": False})
        sub["statusHistory"].append(
            status_entry(
                sub["deliveryStatus"],
                actor=customer,
                notes="Customer confirmed delivery",
                event="delivery_confirmed",
                timestamp=now,
            )
        )
        await save_sub_orders(store, order, now, session=session)
        return order, sub, True

    order, sub, changed = await store.run_in_transaction(_confirm)
    if changed:
        logger.info("DELIVERY_CONFIRMED sub_order=%s customer=%s", sub["id"], customer.id)
    return order, sub


# ======================================================
# STALE DELIVERY CONFIRMATIONS (ADMIN)
# ======================================================

def _awaiting_confirmation(sub: dict) -> bool:
    confirmation = sub.get("customerConfirmedDelivery") or {}
    return (
        sub["deliveryStatus"] == DeliveryStatus.DELIVERED.value
        and not confirmation.get("confirmed")
        and not confirmation.get("autoConfirmed")
    )


async def list_delivery_confirmation_queue(
    store,
    *,
    vendor_id=None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    now: datetime | None = None,
) -> dict:
    """
    Paid sub-orders delivered before the start of the day
    STALE_CONFIRMATION_DAYS ago that the customer never confirmed and no
    admin has confirmed yet. Oldest delivery first. The date range filters
    on delivery date.
    """
    page, limit = normalize_page(page, limit, default_limit=DEFAULT_PAGE_SIZE, max_limit=MAX_PAGE_SIZE)
    now = now or datetime.utcnow()
    cutoff = (now - timedelta(days=STALE_CONFIRMATION_DAYS)).replace(hour=0, minute=0, second=0, microsecond=0)
    vendor_oid = parse_object_id(vendor_id, "vendor_id") if vendor_id else None

    rows = []
    query = {
        "paymentStatus": PaymentStatus.PAID.value,
        "subOrders.deliveryStatus": DeliveryStatus.DELIVERED.value,
    }
    async for order in store.orders.find(query):
        for sub in order.get("subOrders", []):
            delivered_at = sub.get("deliveryDate")
            if not _awaiting_confirmation(sub) or not delivered_at or delivered_at > cutoff:
                continue
            if vendor_oid and sub["vendorId"] != vendor_oid:
                continue
            if from_date and delivered_at < from_date:
                continue
            if to_date and delivered_at > to_date:
                continue
            rows.append({
                "orderId": order["_id"],
                "subOrderId": sub["id"],
                "vendorId": sub["vendorId"],
                "customerId": order["customerId"],
                "totalAmount": sub["totalAmount"],
                "deliveryStatus": sub["deliveryStatus"],
                "deliveryDate": delivered_at,
                "returnWindow": sub.get("returnWindow"),
                "daysSinceDelivery": (now - delivered_at).days,
            })

    rows.sort(key=lambda r: r["deliveryDate"])
    start = (page - 1) * limit
    return {
        "items": rows[start:start + limit],
        "pagination": pagination_meta(page, limit, len(rows)),
    }


async def admin_confirm_delivery(store, sub_order_id, actor, *, now=None):
    """
    Admin confirms a delivery the customer left unconfirmed. The sub-order
    is marked autoConfirmed; escrow still waits for the return window.
    """
    now = now or datetime.utcnow()

    async def _confirm(session):
        order, sub = await find_sub_order(store, sub_order_id, session=session)

        if sub["deliveryStatus"] != DeliveryStatus.DELIVERED.value:
            raise ValidationError(
                f"Delivery cannot be confirmed while sub-order is {sub['deliveryStatus']}",
                sub_order_id=sub["id"],
            )
        if not _awaiting_confirmation(sub):
            raise ConflictError("Delivery is already confirmed", sub_order_id=sub["id"])

        sub["customerConfirmedDelivery"].update({"confirmedAt": now, "autoConfirmed": True})
        sub["statusHistory"].append(
            status_entry(
                sub["deliveryStatus"],
                actor=actor,
                notes="Delivery auto-confirmed by admin",
                event="delivery_auto_confirmed",
                timestamp=now,
            )
        )
        await save_sub_orders(store, order, now, session=session)

        await log_audit(
            store,
            actor,
            "DELIVERY_AUTO_CONFIRMED",
            {"order_id": str(order["_id"]), "sub_order_id": str(sub["id"])},
            session=session,
        )
        return order, sub

    order, sub = await store.run_in_transaction(_confirm)
    logger.info("DELIVERY_AUTO_CONFIRMED sub_order=%s actor=%s", sub["id"], actor.id)
    return order, sub

import logging
from datetime import datetime

from config.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from models.order import ADJUDICATION_STATUSES, DeliveryStatus, PaymentStatus, RefundDecision
from utils.audit import log_audit
from utils.errors import ValidationError
from utils.escrow_service import assert_unresolved, release_escrow
from utils.guards import normalize_page, pagination_meta, parse_object_id
from utils.order_service import apply_delivery_transition, find_sub_order, save_sub_orders
from utils.order_timeline import status_entered_at, status_entry

logger = logging.getLogger(__name__)

_ADJUDICATION_VALUES = [s.value for s in ADJUDICATION_STATUSES]


def needs_adjudication(sub_order: dict) -> bool:
    escrow = sub_order.get("escrow") or {}
    return (
        sub_order.get("deliveryStatus") in _ADJUDICATION_VALUES
        and escrow.get("held")
        and not escrow.get("released")
        and not escrow.get("refunded")
    )


async def list_refund_adjudication_queue(
    store,
    *,
    status: str | None = None,
    vendor_id=None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    now: datetime | None = None,
) -> dict:
    """Held escrow on canceled, returned or failed sub-orders, oldest first."""
    page, limit = normalize_page(page, limit, default_limit=DEFAULT_PAGE_SIZE, max_limit=MAX_PAGE_SIZE)
    now = now or datetime.utcnow()

    statuses = _ADJUDICATION_VALUES
    if status:
        wanted = DeliveryStatus(status)
        if wanted not in ADJUDICATION_STATUSES:
            raise ValidationError(f"{wanted.value} is not an adjudication status")
        statuses = [wanted.value]

    vendor_oid = parse_object_id(vendor_id, "vendor_id") if vendor_id else None
    query = {
        "paymentStatus": PaymentStatus.PAID.value,
        "subOrders.deliveryStatus": {"$in": statuses},
    }

    rows = []
    async for order in store.orders.find(query):
        for sub in order.get("subOrders", []):
            if sub["deliveryStatus"] not in statuses or not needs_adjudication(sub):
                continue
            if vendor_oid and sub["vendorId"] != vendor_oid:
                continue
            entered = status_entered_at(sub.get("statusHistory", []), sub["deliveryStatus"])
            rows.append({
                "orderId": order["_id"],
                "subOrderId": sub["id"],
                "vendorId": sub["vendorId"],
                "customerId": order["customerId"],
                "deliveryStatus": sub["deliveryStatus"],
                "totalAmount": sub["totalAmount"],
                "statusSince": entered,
                "daysInStatus": (now - entered).days if entered else None,
                "lastNotes": (sub.get("statusHistory") or [{}])[-1].get("notes"),
            })

    rows.sort(key=lambda r: r["statusSince"] or datetime.min)
    start = (page - 1) * limit
    return {
        "items": rows[start:start + limit],
        "pagination": pagination_meta(page, limit, len(rows)),
        "summary": {
            "count": len(rows),
            "totalAmount": sum(r["totalAmount"] for r in rows),
        },
    }


async def _approve_refund(store, sub_order_id, actor, notes, now) -> dict:
    async def _refund(session):
        order, sub = await find_sub_order(store, sub_order_id, session=session)
        assert_unresolved(sub)

        status = DeliveryStatus(sub["deliveryStatus"])
        if status not in ADJUDICATION_STATUSES:
            raise ValidationError(f"Sub-order in {status.value} is not awaiting refund adjudication")
        if not sub["escrow"].get("held"):
            raise ValidationError("Escrow is not held for this sub-order")

        reason = notes or f"Refund approved for {status.value} sub-order"
        sub["escrow"].update({
            "held": False,
            "refunded": True,
            "refundedAt": now,
            "refundReason": reason,
        })
        sub["statusHistory"].append(
            status_entry(status.value, actor=actor, notes=reason, event="escrow_refunded", timestamp=now)
        )
        await save_sub_orders(store, order, now, session=session)

        await log_audit(
            store,
            actor,
            "ESCROW_REFUNDED",
            {
                "order_id": str(order["_id"]),
                "sub_order_id": str(sub["id"]),
                "amount": sub["totalAmount"],
                "reason": reason,
            },
            session=session,
        )
        return {
            "orderId": order["_id"],
            "subOrderId": sub["id"],
            "refundedAmount": sub["totalAmount"],
            "refundReason": reason,
        }

    return await store.run_in_transaction(_refund)


async def resolve_refund_adjudication(store, sub_order_id, decision, notes, actor, *, now=None) -> dict:
    """
    Settle a parked sub-order either way. Refunds touch no wallet; an
    override release pays the vendor and needs a written justification.
    """
    decision = RefundDecision(decision)
    now = now or datetime.utcnow()
    notes = (notes or "").strip() or None

    if decision == RefundDecision.OVERRIDE_RELEASE:
        if not notes:
            raise ValidationError("A justification note is required to override-release escrow")
        result = await release_escrow(store, sub_order_id, actor, notes, override=True, now=now)
    else:
        result = await _approve_refund(store, sub_order_id, actor, notes, now)

    logger.info(
        "REFUND_ADJUDICATED sub_order=%s decision=%s actor=%s",
        result["subOrderId"], decision.value, actor.id,
    )
    return {"decision": decision.value, **result}


async def open_post_delivery_dispute(store, sub_order_id, reason, actor, *, now=None) -> dict:
    """
    Refund a delivered sub-order whose escrow has not been released yet.
    Moves it to refunded and marks the escrow refunded in one step.
    """
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A dispute reason is required")
    now = now or datetime.utcnow()

    async def _dispute(session):
        order, sub = await find_sub_order(store, sub_order_id, session=session)
        assert_unresolved(sub)

        if not sub["escrow"].get("held"):
            raise ValidationError("Escrow is not held for this sub-order")

        apply_delivery_transition(sub, DeliveryStatus.REFUNDED, actor, reason, now)
        sub["escrow"].update({
            "held": False,
            "refunded": True,
            "refundedAt": now,
            "refundReason": reason,
        })
        sub["statusHistory"].append(
            status_entry(
                DeliveryStatus.REFUNDED.value,
                actor=actor,
                notes=reason,
                event="escrow_refunded",
                timestamp=now,
            )
        )
        await save_sub_orders(store, order, now, session=session)

        await log_audit(
            store,
            actor,
            "POST_DELIVERY_REFUND",
            {
                "order_id": str(order["_id"]),
                "sub_order_id": str(sub["id"]),
                "amount": sub["totalAmount"],
                "reason": reason,
            },
            session=session,
        )
        return {
            "orderId": order["_id"],
            "subOrderId": sub["id"],
            "refundedAmount": sub["totalAmount"],
            "refundReason": reason,
        }

    result = await store.run_in_transaction(_dispute)
    logger.info("POST_DELIVERY_REFUND sub_order=%s actor=%s", result["subOrderId"], actor.id)
    return result

import logging
from datetime import datetime

from bson import ObjectId

from config.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from models.order import ADJUDICATION_STATUSES, DeliveryStatus, PaymentStatus
from models.user import SYSTEM_ACTOR
from models.wallet import TransactionSource
from utils.audit import log_audit
from utils.commission import calculate_commission
from utils.errors import (
    AlreadyReleasedError,
    AlreadyResolvedError,
    ConflictError,
    EngineError,
    ValidationError,
)
from utils.guards import normalize_page, pagination_meta, parse_object_id
from utils.order_service import find_sub_order, save_sub_orders
from utils.order_timeline import status_entry
from utils.wallet_service import credit_wallet

logger = logging.getLogger(__name__)


# ==============================
# Eligibility (single rule)
# ==============================

def release_blockers(sub_order: dict, now: datetime) -> list[str]:
    """
    Reasons a sub-order cannot be released yet. Empty means eligible:
    delivered, confirmed or past its return window, escrow held and
    neither released nor refunded.
    """
    blockers = []
    escrow = sub_order.get("escrow") or {}

    if escrow.get("released"):
        blockers.append("escrow already released")
    if escrow.get("refunded"):
        blockers.append("escrow already refunded")
    if not escrow.get("held"):
        blockers.append("escrow not held")

    if sub_order.get("deliveryStatus") != DeliveryStatus.DELIVERED.value:
        blockers.append("sub-order not delivered")
    else:
        confirmed = (sub_order.get("customerConfirmedDelivery") or {}).get("confirmed")
        window = sub_order.get("returnWindow")
        if not confirmed and not (window and now > window):
            blockers.append("awaiting customer confirmation or return window expiry")

    return blockers


def is_release_eligible(sub_order: dict, now: datetime) -> bool:
    return not release_blockers(sub_order, now)


# ==============================
# Release queue (live read)
# ==============================

def _queue_row(order: dict, sub: dict, now: datetime) -> dict:
    preview = calculate_commission(sub["totalAmount"])
    window = sub.get("returnWindow")
    confirmed = sub["customerConfirmedDelivery"].get("confirmed", False)
    return {
        "orderId": order["_id"],
        "subOrderId": sub["id"],
        "vendorId": sub["vendorId"],
        "customerId": order["customerId"],
        "totalAmount": sub["totalAmount"],
        "commission": preview.commission,
        "settleAmount": preview.settle_amount,
        "breakdown": preview.as_dict()["breakdown"],
        "deliveryDate": sub.get("deliveryDate"),
        "returnWindow": window,
        "customerConfirmed": confirmed,
        "releaseReason": "customer_confirmed" if confirmed else "return_window_expired",
        "daysPastReturnWindow": (now - window).days if window and now > window else 0,
        "orderCreatedAt": order.get("createdAt"),
    }


async def _eligible_sub_orders(store, now: datetime, *, vendor_id=None, from_date=None, to_date=None):
    query: dict = {
        "paymentStatus": PaymentStatus.PAID.value,
        "subOrders.deliveryStatus": DeliveryStatus.DELIVERED.value,
    }
    if from_date or to_date:
        query["createdAt"] = {}
        if from_date:
            query["createdAt"]["$gte"] = from_date
        if to_date:
            query["createdAt"]["$lte"] = to_date

    vendor_oid = parse_object_id(vendor_id, "vendor_id") if vendor_id else None

    async for order in store.orders.find(query):
        for sub in order.get("subOrders", []):
            if vendor_oid and sub["vendorId"] != vendor_oid:
                continue
            if is_release_eligible(sub, now):
                yield order, sub


async def list_escrow_release_queue(
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
    Sub-orders whose escrow can be released right now, oldest return window
    first. Computed from storage on every call.
    """
    page, limit = normalize_page(page, limit, default_limit=DEFAULT_PAGE_SIZE, max_limit=MAX_PAGE_SIZE)
    now = now or datetime.utcnow()

    rows = [
        _queue_row(order, sub, now)
        async for order, sub in _eligible_sub_orders(
            store, now, vendor_id=vendor_id, from_date=from_date, to_date=to_date
        )
    ]
    rows.sort(key=lambda r: (r["returnWindow"] or datetime.max, r["orderCreatedAt"] or datetime.max))

    start = (page - 1) * limit
    return {
        "items": rows[start:start + limit],
        "pagination": pagination_meta(page, limit, len(rows)),
        "summary": {
            "count": len(rows),
            "totalAmount": sum(r["totalAmount"] for r in rows),
            "totalCommission": sum(r["commission"] for r in rows),
            "totalSettleAmount": sum(r["settleAmount"] for r in rows),
        },
    }


# ==============================
# Detail (single sub-order)
# ==============================

async def get_escrow_detail(store, sub_order_id, *, now: datetime | None = None) -> dict:
    """
    Escrow, delivery and order context for one sub-order, with the
    commission preview and every reason it cannot be released yet.
    """
    now = now or datetime.utcnow()
    order, sub = await find_sub_order(store, sub_order_id)

    blockers = release_blockers(sub, now)
    if order["paymentStatus"] != PaymentStatus.PAID.value:
        blockers.append("order not paid")

    window = sub.get("returnWindow")
    return {
        "orderId": order["_id"],
        "subOrderId": sub["id"],
        "vendorId": sub["vendorId"],
        "customerId": order["customerId"],
        "products": sub["products"],
        "escrow": {**sub["escrow"], "amount": sub["totalAmount"]},
        "delivery": {
            "status": sub["deliveryStatus"],
            "deliveredAt": sub.get("deliveryDate"),
            "returnWindow": window,
            "daysSinceReturnWindow": (now - window).days if window and now > window else 0,
            "customerConfirmation": sub["customerConfirmedDelivery"],
            "shippingMethod": sub["shippingMethod"],
        },
        "order": {
            "totalAmount": order["totalAmount"],
            "paymentStatus": order["paymentStatus"],
            "shippingAddress": order.get("shippingAddress"),
            "createdAt": order.get("createdAt"),
            "updatedAt": order.get("updatedAt"),
        },
        "commissionPreview": calculate_commission(sub["totalAmount"]).as_dict(),
        "settlement": sub.get("settlement"),
        "eligibility": {"isEligible": not blockers, "blockers": blockers},
    }


# ==============================
# Release
# ==============================

def assert_unresolved(sub: dict) -> None:
    escrow = sub["escrow"]
    if escrow.get("released"):
        raise AlreadyReleasedError(
            "Escrow has already been released for this sub-order",
            sub_order_id=sub["id"],
        )
    if escrow.get("refunded"):
        raise AlreadyResolvedError(
            "Escrow has already been refunded for this sub-order",
            sub_order_id=sub["id"],
        )


async def release_escrow(store, sub_order_id, actor, notes: str | None = None, *, override: bool = False, now=None) -> dict:
    """
    Move a sub-order's escrowed funds (less commission) into the vendor's
    wallet.

    Order, wallet and transaction log change in one transaction. The
    order's version guard is the only contended write: a lost race is
    retried from a fresh read, where the guard reports AlreadyReleasedError.
    The wallet credit that follows is an unconditional $inc, so a committed
    release always reaches the wallet. `override` releases a sub-order
    parked in adjudication and skips the eligibility rule.
    """
    now = now or datetime.utcnow()

    async def _release(session):
        order, sub = await find_sub_order(store, sub_order_id, session=session)
        assert_unresolved(sub)

        if order["paymentStatus"] != PaymentStatus.PAID.value:
            raise ValidationError("Escrow can only be released on paid orders")

        confirmation = sub["customerConfirmedDelivery"]
        auto_confirmed = False

        if override:
            if DeliveryStatus(sub["deliveryStatus"]) not in ADJUDICATION_STATUSES:
                raise ValidationError("Only sub-orders awaiting adjudication can be override-released")
            if not sub["escrow"].get("held"):
                raise ValidationError("Escrow is not held for this sub-order")
        else:
            blockers = release_blockers(sub, now)
            if blockers:
                raise ValidationError(
                    "Sub-order is not eligible for escrow release: " + "; ".join(blockers),
                    sub_order_id=sub["id"],
                )
            if not confirmation.get("confirmed"):
                auto_confirmed = True
                confirmation.update({
                    "confirmed": True,
                    "confirmedAt": confirmation.get("confirmedAt") or now,
                    "autoConfirmed": True,
                })

        result = calculate_commission(sub["totalAmount"])
        txn_id = ObjectId() if result.settle_amount > 0 else None

        sub["escrow"].update({"held": False, "released": True, "releasedAt": now})
        sub["settlement"] = {
            "commission": result.commission,
            "settleAmount": result.settle_amount,
            "breakdown": result.as_dict()["breakdown"],
            "walletTransactionId": txn_id,
            "settledAt": now,
            "override": override,
        }
        sub["statusHistory"].append(
            status_entry(
                sub["deliveryStatus"],
                actor=actor,
                notes=notes or ("Auto-confirmed after return window" if auto_confirmed else "Escrow released"),
                event="escrow_override_released" if override else "escrow_released",
                timestamp=now,
            )
        )
        await save_sub_orders(store, order, now, session=session)

        if txn_id:
            await credit_wallet(
                store,
                sub["vendorId"],
                result.settle_amount,
                source=TransactionSource.ESCROW_RELEASE,
                related_id=sub["id"],
                related_type="SubOrder",
                description=f"Escrow release for sub-order {sub['id']}",
                count_as_earned=True,
                transaction_id=txn_id,
                session=session,
                now=now,
            )

        await log_audit(
            store,
            actor,
            "ESCROW_OVERRIDE_RELEASED" if override else "ESCROW_RELEASED",
            {
                "order_id": str(order["_id"]),
                "sub_order_id": str(sub["id"]),
                "vendor_id": str(sub["vendorId"]),
                "gross": result.gross,
                "commission": result.commission,
                "settle_amount": result.settle_amount,
                "auto_confirmed": auto_confirmed,
                "notes": notes,
            },
            session=session,
        )

        return {
            "orderId": order["_id"],
            "subOrderId": sub["id"],
            "vendorId": sub["vendorId"],
            "walletTransactionId": txn_id,
            "autoConfirmed": auto_confirmed,
            **result.as_dict(),
        }

    released = await store.run_in_transaction(_release)
    logger.info(
        "ESCROW_RELEASED sub_order=%s vendor=%s settle=%s commission=%s actor=%s",
        released["subOrderId"], released["vendorId"], released["settleAmount"],
        released["commission"], actor.id,
    )
    return released


# ==============================
# Sweep
# ==============================

async def sweep_eligible_releases(store, now: datetime | None = None) -> dict:
    """
    Release everything currently eligible as the system actor. One failure
    never stops the rest of the sweep.
    """
    now = now or datetime.utcnow()
    candidates = [sub["id"] async for _, sub in _eligible_sub_orders(store, now)]

    released = 0
    skipped = 0
    failed = 0

    for sub_order_id in candidates:
        try:
            await release_escrow(
                store,
                sub_order_id,
                SYSTEM_ACTOR,
                "Released by escrow sweep",
                now=now,
            )
            released += 1
        except ConflictError:
            skipped += 1
            logger.info("ESCROW_SWEEP_SKIPPED sub_order=%s", sub_order_id)
        except EngineError:
            failed += 1
            logger.exception("ESCROW_SWEEP_ERROR sub_order=%s", sub_order_id)

    if candidates:
        logger.info(
            "ESCROW_SWEEP_DONE candidates=%s released=%s skipped=%s failed=%s",
            len(candidates), released, skipped, failed,
        )
    return {"candidates": len(candidates), "released": released, "skipped": skipped, "failed": failed}

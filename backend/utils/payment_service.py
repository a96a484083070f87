import logging
from datetime import datetime
from enum import Enum

from database import update_versioned
from models.order import PaymentStatus
from models.user import SYSTEM_ACTOR
from utils.audit import log_audit
from utils.errors import ConflictError, ExternalGatewayError, NotFoundError, ValidationError
from utils.money import ensure_minor_units, format_amount
from utils.order_timeline import status_entry

logger = logging.getLogger(__name__)


class PaymentConfirmation(str, Enum):
    ORDER_CONFIRMED = "order_confirmed"
    ALREADY_CONFIRMED = "already_confirmed"
    AMOUNT_MISMATCH = "amount_mismatch"


class AmountMismatchError(ExternalGatewayError):
    code = "amount_mismatch"
    result = PaymentConfirmation.AMOUNT_MISMATCH


async def confirm_payment(store, idempotency_key: str, gateway_reference: str, amount_paid: int, *, now=None) -> tuple[PaymentConfirmation, dict]:
    """
    Apply a gateway's "charge succeeded" notification to its order.

    Replays of an already-paid order write nothing. A paid amount that
    differs from the order total marks the order failed and then raises
    AmountMismatchError.
    """
    ensure_minor_units(amount_paid, "amount_paid")
    key = (idempotency_key or "").strip()
    if not key:
        raise ValidationError("Payment reference is missing")
    now = now or datetime.utcnow()

    async def _confirm(session):
        order = await store.orders.find_one({"idempotencyKey": key}, session=session)
        if not order:
            raise NotFoundError("No order matches this payment reference", reference=key)

        status = order["paymentStatus"]
        if status == PaymentStatus.PAID.value:
            return PaymentConfirmation.ALREADY_CONFIRMED, order
        if status == PaymentStatus.FAILED.value:
            raise ConflictError("Order payment has already failed", order_id=order["_id"])
        if not order.get("subOrders"):
            raise ValidationError("Order has no sub-orders", order_id=order["_id"])

        payment = order["payment"]
        payment.update({"gatewayReference": gateway_reference, "amountPaid": amount_paid})

        if amount_paid != order["totalAmount"]:
            next_status = PaymentStatus.FAILED
            result = PaymentConfirmation.AMOUNT_MISMATCH
            notes = (
                f"Paid {format_amount(amount_paid)} but order total is "
                f"{format_amount(order['totalAmount'])}"
            )
        else:
            next_status = PaymentStatus.PAID
            result = PaymentConfirmation.ORDER_CONFIRMED
            payment["paidAt"] = now
            notes = f"Payment confirmed ({gateway_reference})"

        order["paymentStatus"] = next_status.value
        order["statusHistory"].append(
            status_entry(next_status.value, actor=SYSTEM_ACTOR, notes=notes, timestamp=now)
        )
        await update_versioned(
            store.orders,
            order,
            {
                "$set": {
                    "paymentStatus": order["paymentStatus"],
                    "payment": payment,
                    "statusHistory": order["statusHistory"],
                    "updatedAt": now,
                }
            },
            session=session,
        )
        await log_audit(
            store,
            SYSTEM_ACTOR,
            "PAYMENT_CONFIRMED" if result == PaymentConfirmation.ORDER_CONFIRMED else "PAYMENT_AMOUNT_MISMATCH",
            {
                "order_id": str(order["_id"]),
                "gateway_reference": gateway_reference,
                "amount_paid": amount_paid,
                "order_total": order["totalAmount"],
            },
            session=session,
        )
        return result, order

    result, order = await store.run_in_transaction(_confirm)

    if result == PaymentConfirmation.AMOUNT_MISMATCH:
        logger.warning(
            "PAYMENT_AMOUNT_MISMATCH order=%s paid=%s expected=%s",
            order["_id"], amount_paid, order["totalAmount"],
        )
        raise AmountMismatchError(
            "Paid amount does not match the order total",
            order_id=order["_id"],
            amount_paid=amount_paid,
        )

    if result == PaymentConfirmation.ORDER_CONFIRMED:
        logger.info("PAYMENT_CONFIRMED order=%s reference=%s", order["_id"], gateway_reference)
    else:
        logger.info("PAYMENT_REPLAY order=%s reference=%s", order["_id"], gateway_reference)

    return result, order

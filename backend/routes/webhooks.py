import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from database import get_store
from utils.gateway import (
    CHARGE_SUCCESS_EVENT,
    SIGNATURE_HEADER,
    parse_charge_event,
    verify_webhook_signature,
)
from utils.payment_service import AmountMismatchError, confirm_payment

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


# =========================================================
# PAYMENT WEBHOOK (IDEMPOTENT, SAFE)
# =========================================================

@router.post("/payments")
async def payment_webhook(request: Request, store=Depends(get_store)):
    """
    Payment gateway webhook.

    Guarantees:
    - Signature verified before anything is read
    - Replays are answered without writing
    - Amount mismatches are acknowledged so the gateway stops retrying
    """
    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        raise HTTPException(401, "Missing signature")

    raw_body = await request.body()
    if not verify_webhook_signature(raw_body=raw_body, received_signature=signature):
        logger.warning("PAYMENT_WEBHOOK_BAD_SIGNATURE")
        raise HTTPException(401, "Invalid webhook signature")

    charge = parse_charge_event(raw_body)
    if charge.event != CHARGE_SUCCESS_EVENT:
        return {"ok": True, "ignored": True, "event": charge.event}

    try:
        result, order = await confirm_payment(
            store,
            charge.idempotency_key,
            charge.reference,
            charge.amount,
        )
    except AmountMismatchError as exc:
        return {"ok": True, "result": exc.result.value}

    return {
        "ok": True,
        "result": result.value,
        "orderId": str(order["_id"]),
    }

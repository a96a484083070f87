import hashlib
import hmac
import json
from dataclasses import dataclass

from config.env import PAYMENT_WEBHOOK_SECRET
from utils.errors import InternalError, ValidationError

SIGNATURE_HEADER = "X-Paystack-Signature"
CHARGE_SUCCESS_EVENT = "charge.success"


@dataclass(frozen=True)
class GatewayCharge:
    event: str
    reference: str
    amount: int
    idempotency_key: str


def compute_signature(raw_body: bytes, secret: str | None = None) -> str:
    secret = secret or PAYMENT_WEBHOOK_SECRET
    if not secret:
        raise InternalError("Payment webhook secret is not configured")
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_webhook_signature(*, raw_body: bytes, received_signature: str) -> bool:
    expected = compute_signature(raw_body)
    return hmac.compare_digest(expected, received_signature or "")


def parse_charge_event(raw_body: bytes) -> GatewayCharge:
    """
    Pull the fields settlement needs out of a gateway charge event.

    The order's idempotency key travels as `data.metadata.idempotencyKey`;
    the gateway's own reference is kept for reconciliation.
    """
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("Invalid JSON payload")
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    data = payload.get("data") or {}
    metadata = data.get("metadata") or {}

    reference = data.get("reference")
    amount = data.get("amount")
    idempotency_key = metadata.get("idempotencyKey") or reference

    if not reference or not idempotency_key:
        raise ValidationError("Payment event is missing its reference")
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("Payment event amount must be an integer in minor units")

    return GatewayCharge(
        event=payload.get("event") or "",
        reference=str(reference),
        amount=amount,
        idempotency_key=str(idempotency_key),
    )

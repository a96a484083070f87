from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from config.constants import IDEMPOTENCY_KEY_MIN_LENGTH, IDEMPOTENCY_KEY_MAX_LENGTH


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class DeliveryStatus(str, Enum):
    ORDER_PLACED = "order_placed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELED = "canceled"
    RETURNED = "returned"
    FAILED_DELIVERY = "failed_delivery"
    REFUNDED = "refunded"


# Terminal states that park escrow until an admin decides.
ADJUDICATION_STATUSES = frozenset({
    DeliveryStatus.CANCELED,
    DeliveryStatus.RETURNED,
    DeliveryStatus.FAILED_DELIVERY,
})

_EXITS = ADJUDICATION_STATUSES

DELIVERY_TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.ORDER_PLACED: frozenset({DeliveryStatus.PROCESSING}) | _EXITS,
    DeliveryStatus.PROCESSING: frozenset({DeliveryStatus.SHIPPED}) | _EXITS,
    DeliveryStatus.SHIPPED: frozenset({DeliveryStatus.OUT_FOR_DELIVERY}) | _EXITS,
    DeliveryStatus.OUT_FOR_DELIVERY: frozenset({DeliveryStatus.DELIVERED}) | _EXITS,
    DeliveryStatus.DELIVERED: frozenset({DeliveryStatus.REFUNDED}),
    DeliveryStatus.CANCELED: frozenset(),
    DeliveryStatus.RETURNED: frozenset(),
    DeliveryStatus.FAILED_DELIVERY: frozenset(),
    DeliveryStatus.REFUNDED: frozenset(),
}


class RefundDecision(str, Enum):
    APPROVE_REFUND = "approve_refund"
    OVERRIDE_RELEASE = "override_release"


# ======================================================
# REQUEST SCHEMAS
# ======================================================

class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(..., gt=0)
    size: Optional[str] = None


class VendorCartGroup(BaseModel):
    vendor_id: str
    items: List[CartItem] = Field(..., min_length=1)
    shipping_method: str = Field(..., min_length=1)


class ShippingAddress(BaseModel):
    address: str = Field(..., min_length=3)
    postal_code: Optional[str] = None
    delivery_type: Literal["campus", "off-campus"] = "off-campus"


class PaymentSelection(BaseModel):
    gateway: Literal["paystack", "flutterwave"] = "paystack"


class OrderCreate(BaseModel):
    idempotency_key: str = Field(
        ...,
        min_length=IDEMPOTENCY_KEY_MIN_LENGTH,
        max_length=IDEMPOTENCY_KEY_MAX_LENGTH,
    )
    groups: List[VendorCartGroup] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment: PaymentSelection = PaymentSelection()


class DeliveryStatusUpdate(BaseModel):
    status: DeliveryStatus
    notes: Optional[str] = Field(None, max_length=500)


class EscrowReleaseRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=500)


class RefundResolution(BaseModel):
    decision: RefundDecision
    notes: Optional[str] = Field(None, max_length=1000)


class PostDeliveryDispute(BaseModel):
    reason: str = Field(..., min_length=3, max_length=1000)

from pydantic import BaseModel
from enum import Enum


class Role(str, Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"
    ADMIN = "admin"
    FINANCE = "finance"
    SYSTEM = "system"


# -----------------------------
# CAPABILITIES
# -----------------------------

ORDERS_CREATE = "orders:create"
ORDERS_READ = "orders:read"
ORDERS_CONFIRM_DELIVERY = "orders:confirm_delivery"
FULFILLMENT_UPDATE = "fulfillment:update"
DELIVERIES_CONFIRM = "deliveries:confirm"
WALLET_READ = "wallet:read"
WALLET_ADJUST = "wallet:adjust"
WITHDRAWALS_CREATE = "withdrawals:create"
WITHDRAWALS_REVIEW = "withdrawals:review"
WITHDRAWALS_PROCESS = "withdrawals:process"
ESCROW_VIEW = "escrow:view"
ESCROW_RELEASE = "escrow:release"
REFUNDS_RESOLVE = "refunds:resolve"


ROLE_CAPABILITIES: dict[Role, frozenset[str]] = {
    Role.CUSTOMER: frozenset({ORDERS_CREATE, ORDERS_READ, ORDERS_CONFIRM_DELIVERY}),
    Role.VENDOR: frozenset({FULFILLMENT_UPDATE, WALLET_READ, WITHDRAWALS_CREATE}),
    Role.ADMIN: frozenset({
        ORDERS_READ,
        FULFILLMENT_UPDATE,
        DELIVERIES_CONFIRM,
        ESCROW_VIEW,
        ESCROW_RELEASE,
        REFUNDS_RESOLVE,
        WITHDRAWALS_REVIEW,
        WALLET_ADJUST,
    }),
    Role.FINANCE: frozenset({ESCROW_VIEW, WITHDRAWALS_REVIEW, WITHDRAWALS_PROCESS}),
    Role.SYSTEM: frozenset({ESCROW_RELEASE}),
}


class Principal(BaseModel):
    id: str
    role: Role
    capabilities: frozenset[str] = frozenset()

    @classmethod
    def for_role(cls, principal_id: str, role: Role | str) -> "Principal":
        role = Role(role)
        return cls(id=principal_id, role=role, capabilities=ROLE_CAPABILITIES[role])

    def can(self, capability: str) -> bool:
        return capability in self.capabilities

    def ref(self) -> dict:
        return {"id": self.id, "role": self.role.value}


SYSTEM_ACTOR = Principal.for_role("system", Role.SYSTEM)

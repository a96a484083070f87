import os

os.environ["ENV"] = "test"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["PAYMENT_WEBHOOK_SECRET"] = "test-webhook-secret"
os.environ["BANK_DATA_ENCRYPTION_KEY"] = "test-bank-data-key"
os.environ["RETURN_WINDOW_DAYS"] = "7"
os.environ["TAX_RATE_PERCENT"] = "0"
os.environ["ESCROW_SWEEP_ENABLED"] = "false"

import asyncio
import inspect
from datetime import datetime
from uuid import uuid4

import pytest
from bson import ObjectId
from jose import jwt
from mongomock_motor import AsyncMongoMockClient

from config.env import JWT_ALGORITHM, JWT_SECRET
from database import MarketStore
from models.order import CartItem, DeliveryStatus, OrderCreate, ShippingAddress, VendorCartGroup
from models.user import Principal, Role
from utils.indexes import ensure_indexes
from utils.order_service import create_order, update_delivery_status
from utils.payment_service import confirm_payment
from utils.wallet_service import record_adjustment

NOW = datetime(2026, 3, 2, 12, 0, 0)

# Vendor A: 2,000 lamp + 500 shipping -> sub-order total 2,500
# Vendor B: 4,000 chair + 1,000 shipping -> sub-order total 5,000
LAMP_PRICE = 2000
LAMP_LARGE_PRICE = 2400
STANDARD_SHIPPING = 500
CHAIR_PRICE = 4000
EXPRESS_SHIPPING = 1000


def mint_token(subject: str, role: str) -> str:
    """Stand-in for the external auth service that issues bearer tokens."""
    payload = {"sub": subject, "role": role, "iat": datetime.utcnow()}
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


class CallLog(list):
    """(method, task) pairs for calls made through InterleavingCollection."""

    def interleaved(self) -> bool:
        """True when a second task made a call before the first one was done."""
        tasks = [task for _, task in self]
        switch = next((i for i, task in enumerate(tasks) if task is not tasks[0]), None)
        return switch is not None and tasks[0] in tasks[switch:]


class InterleavingCollection:
    """
    Wraps a mongomock collection so every awaited call yields to the event
    loop before and after it runs, the way a network round trip would.
    Without this, gathered coroutines run one after another.
    """

    def __init__(self, collection, log: CallLog):
        self._collection = collection
        self._log = log

    def __getattr__(self, name):
        attr = getattr(self._collection, name)
        if not callable(attr):
            return attr

        def call(*args, **kwargs):
            result = attr(*args, **kwargs)
            if not inspect.isawaitable(result):
                return result
            self._log.append((name, asyncio.current_task()))
            return self._round_trip(result)

        return call

    @staticmethod
    async def _round_trip(awaitable):
        await asyncio.sleep(0)
        result = await awaitable
        await asyncio.sleep(0)
        return result


@pytest.fixture
async def store():
    client = AsyncMongoMockClient()
    db = client[f"settlement_{uuid4().hex}"]
    store = MarketStore(client, db, use_transactions=False)
    await ensure_indexes(store)
    return store


@pytest.fixture
def interleaved(store):
    """Route order, wallet and withdrawal calls through InterleavingCollection."""
    store.call_log = CallLog()
    for name in ("orders", "wallets", "wallet_transactions", "withdrawal_requests"):
        setattr(store, name, InterleavingCollection(getattr(store, name), store.call_log))
    return store


@pytest.fixture
def customer():
    return Principal.for_role(str(ObjectId()), Role.CUSTOMER)


@pytest.fixture
def vendor():
    return Principal.for_role(str(ObjectId()), Role.VENDOR)


@pytest.fixture
def other_vendor():
    return Principal.for_role(str(ObjectId()), Role.VENDOR)


@pytest.fixture
def admin():
    return Principal.for_role(str(ObjectId()), Role.ADMIN)


@pytest.fixture
def finance():
    return Principal.for_role(str(ObjectId()), Role.FINANCE)


class Marketplace:
    """Seeds the read-only catalog and walks orders through their lifecycle."""

    def __init__(self, store, customer, vendor, other_vendor, admin):
        self.store = store
        self.customer = customer
        self.vendor = vendor
        self.other_vendor = other_vendor
        self.admin = admin
        self.lamp_id = ObjectId()
        self.chair_id = ObjectId()
        self.inactive_id = ObjectId()
        self.bank_account_id = "acct-1"

    async def seed(self):
        await self.store.vendors.insert_many([
            {
                "_id": ObjectId(self.vendor.id),
                "name": "Lamp House",
                "shippingMethods": [
                    {"name": "standard", "price": STANDARD_SHIPPING, "estimatedDeliveryDays": 3},
                ],
                "payoutAccounts": [
                    {
                        "id": self.bank_account_id,
                        "bankName": "First Bank",
                        "bankCode": "011",
                        "accountHolderName": "Lamp House Ltd",
                        "accountNumber": "0123456789",
                    }
                ],
            },
            {
                "_id": ObjectId(self.other_vendor.id),
                "name": "Chair Co",
                "shippingMethods": [
                    {"name": "express", "price": EXPRESS_SHIPPING, "estimatedDeliveryDays": 1},
                ],
                "payoutAccounts": [],
            },
        ])
        await self.store.products.insert_many([
            {
                "_id": self.lamp_id,
                "vendorId": ObjectId(self.vendor.id),
                "name": "Desk Lamp",
                "price": LAMP_PRICE,
                "sizes": [{"size": "L", "price": LAMP_LARGE_PRICE}],
                "images": ["https://cdn.example.com/lamp.jpg"],
                "active": True,
            },
            {
                "_id": self.chair_id,
                "vendorId": ObjectId(self.other_vendor.id),
                "name": "Office Chair",
                "price": CHAIR_PRICE,
                "images": [],
                "active": True,
            },
            {
                "_id": self.inactive_id,
                "vendorId": ObjectId(self.vendor.id),
                "name": "Retired Lamp",
                "price": 1500,
                "active": False,
            },
        ])
        return self

    def lamp_group(self, quantity=1, size=None):
        return VendorCartGroup(
            vendor_id=self.vendor.id,
            items=[CartItem(product_id=str(self.lamp_id), quantity=quantity, size=size)],
            shipping_method="standard",
        )

    def chair_group(self, quantity=1):
        return VendorCartGroup(
            vendor_id=self.other_vendor.id,
            items=[CartItem(product_id=str(self.chair_id), quantity=quantity)],
            shipping_method="express",
        )

    def payload(self, groups=None, key=None):
        return OrderCreate(
            idempotency_key=key or f"checkout-{uuid4().hex}",
            groups=groups or [self.lamp_group(), self.chair_group()],
            shipping_address=ShippingAddress(address="12 Marina Road, Lagos", postal_code="100001"),
        )

    async def place_order(self, groups=None, key=None):
        return await create_order(self.store, self.customer, self.payload(groups, key), now=NOW)

    async def place_paid_order(self, groups=None, key=None):
        order = await self.place_order(groups, key)
        await confirm_payment(self.store, order["idempotencyKey"], "PSK_REF_1", order["totalAmount"], now=NOW)
        return await self.store.orders.find_one({"_id": order["_id"]})

    async def advance(self, sub_order_id, *statuses, actor=None, now=NOW):
        actor = actor or self.vendor
        for status in statuses:
            await update_delivery_status(self.store, sub_order_id, status, actor, now=now)

    async def deliver(self, sub_order_id, actor=None, now=NOW):
        await self.advance(
            sub_order_id,
            DeliveryStatus.PROCESSING,
            DeliveryStatus.SHIPPED,
            DeliveryStatus.OUT_FOR_DELIVERY,
            DeliveryStatus.DELIVERED,
            actor=actor,
            now=now,
        )

    async def delivered_lamp_sub_order(self, delivered_at=NOW):
        """A paid single-vendor order whose lamp sub-order was delivered at `delivered_at`."""
        order = await self.place_paid_order(groups=[self.lamp_group()])
        sub_id = order["subOrders"][0]["id"]
        await self.deliver(sub_id, now=delivered_at)
        return sub_id

    async def sub_order(self, sub_order_id):
        order = await self.store.orders.find_one({"subOrders.id": sub_order_id})
        return next(s for s in order["subOrders"] if s["id"] == sub_order_id)

    async def fund_wallet(self, amount, vendor=None):
        vendor = vendor or self.vendor
        return await record_adjustment(self.store, vendor.id, "credit", amount, "Opening balance", self.admin)


@pytest.fixture
async def market(store, customer, vendor, other_vendor, admin):
    return await Marketplace(store, customer, vendor, other_vendor, admin).seed()


@pytest.fixture
def now():
    return NOW

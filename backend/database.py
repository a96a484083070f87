import logging
from contextlib import asynccontextmanager

from fastapi import Request
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

from config.env import MONGO_URI, MONGO_DB_NAME, MONGO_USE_TRANSACTIONS
from utils.errors import InternalError, StaleWriteError

logger = logging.getLogger(__name__)

MAX_TRANSACTION_ATTEMPTS = 3


class MarketStore:
    """
    Handle on the settlement collections.

    Built once at startup and passed explicitly to every service.
    """

    def __init__(self, client, db, *, use_transactions: bool = True):
        self.client = client
        self.db = db
        self.use_transactions = use_transactions

        self.orders = db.orders
        self.products = db.products
        self.vendors = db.vendors
        self.wallets = db.wallets
        self.wallet_transactions = db.wallet_transactions
        self.withdrawal_requests = db.withdrawal_requests
        self.audit_logs = db.audit_logs

    @asynccontextmanager
    async def transaction(self):
        if not self.use_transactions:
            yield None
            return

        async with await self.client.start_session() as session:
            async with session.start_transaction(
                read_concern=ReadConcern("snapshot"),
                write_concern=WriteConcern("majority"),
            ):
                yield session

    async def run_in_transaction(self, operation, *, attempts: int = MAX_TRANSACTION_ATTEMPTS):
        """
        Run `operation(session)` in one transaction.

        A stale write or a transient transaction error aborts the attempt and
        the operation runs again from a fresh read, so guards are always
        re-evaluated against committed state.
        """
        for attempt in range(1, attempts + 1):
            try:
                async with self.transaction() as session:
                    return await operation(session)
            except StaleWriteError:
                if attempt == attempts:
                    raise
                logger.info("TXN_RETRY stale_write attempt=%s", attempt)
            except PyMongoError as exc:
                if exc.has_error_label("TransientTransactionError") and attempt < attempts:
                    logger.info("TXN_RETRY transient attempt=%s", attempt)
                    continue
                logger.exception("TXN_FAILED attempt=%s", attempt)
                raise InternalError("Database operation failed") from exc

    async def ping(self):
        await self.db.command("ping")


async def update_versioned(collection, doc: dict, update: dict, *, session=None) -> None:
    """
    Conditional write on {_id, version}. Bumps `version` on success and
    raises StaleWriteError when another writer got there first.
    """
    update = {op: dict(fields) for op, fields in update.items()}
    update.setdefault("$inc", {})["version"] = 1

    current_version = doc.get("version", 0)
    result = await collection.update_one(
        {"_id": doc["_id"], "version": current_version},
        update,
        session=session,
    )
    if result.modified_count != 1:
        raise StaleWriteError(
            "Document was modified concurrently",
            document_id=doc["_id"],
        )

    # Keep the caller's copy in step with what was written.
    for field, value in update.get("$set", {}).items():
        if "." not in field:
            doc[field] = value
    for field, delta in update["$inc"].items():
        if "." not in field and field != "version":
            doc[field] = doc.get(field, 0) + delta
    doc["version"] = current_version + 1


def create_store() -> MarketStore:
    if not MONGO_URI:
        raise RuntimeError("MONGODB_URI not set")

    client = AsyncIOMotorClient(MONGO_URI, tz_aware=False)
    db = client.get_default_database(MONGO_DB_NAME)
    return MarketStore(client, db, use_transactions=MONGO_USE_TRANSACTIONS)


def get_store(request: Request) -> MarketStore:
    return request.app.state.store

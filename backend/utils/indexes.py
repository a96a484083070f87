from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure


def _normalize_key_pairs(keys):
    return [(k, v) for k, v in keys]


async def _create_index_safe(collection, keys, **kwargs):
    """
    Create index safely.
    If Mongo reports IndexOptionsConflict/IndexKeySpecsConflict for same key pattern,
    drop the conflicting index and recreate with desired options.
    """
    desired_key = _normalize_key_pairs(keys)
    desired_name = kwargs.get("name")
    try:
        await collection.create_index(keys, **kwargs)
        return
    except OperationFailure as e:
        if getattr(e, "code", None) not in {85, 86}:
            raise

        conflicting_names = []
        async for idx in collection.list_indexes():
            idx_key = _normalize_key_pairs(list(idx.get("key", {}).items()))
            if idx_key == desired_key:
                idx_name = idx.get("name")
                if idx_name and idx_name != desired_name:
                    conflicting_names.append(idx_name)

        for idx_name in conflicting_names:
            await collection.drop_index(idx_name)

        await collection.create_index(keys, **kwargs)


async def ensure_indexes(store):
    # Orders
    await _create_index_safe(
        store.orders,
        [("idempotencyKey", ASCENDING)],
        name="orders_idempotency_key_unique",
        unique=True,
    )
    await _create_index_safe(
        store.orders,
        [("subOrders.id", ASCENDING)],
        name="orders_sub_order_id_idx",
    )
    await _create_index_safe(
        store.orders,
        [("customerId", ASCENDING), ("createdAt", DESCENDING)],
        name="orders_customer_created_at_idx",
    )
    await _create_index_safe(
        store.orders,
        [
            ("paymentStatus", ASCENDING),
            ("subOrders.deliveryStatus", ASCENDING),
            ("subOrders.escrow.released", ASCENDING),
            ("subOrders.escrow.refunded", ASCENDING),
        ],
        name="orders_escrow_queue_idx",
    )
    await _create_index_safe(
        store.orders,
        [("subOrders.vendorId", ASCENDING), ("createdAt", DESCENDING)],
        name="orders_vendor_created_at_idx",
    )

    # Wallets
    await _create_index_safe(
        store.wallets,
        [("vendorId", ASCENDING)],
        name="wallets_vendor_unique",
        unique=True,
    )

    # Wallet transactions (append-only)
    await _create_index_safe(
        store.wallet_transactions,
        [("walletId", ASCENDING), ("createdAt", DESCENDING)],
        name="wallet_transactions_wallet_created_at_idx",
    )
    await _create_index_safe(
        store.wallet_transactions,
        [("relatedDocumentId", ASCENDING)],
        name="wallet_transactions_related_document_idx",
    )

    # Withdrawal requests
    await _create_index_safe(
        store.withdrawal_requests,
        [("requestNumber", ASCENDING)],
        name="withdrawal_requests_number_unique",
        unique=True,
    )
    await _create_index_safe(
        store.withdrawal_requests,
        [("status", ASCENDING), ("createdAt", DESCENDING)],
        name="withdrawal_requests_status_created_at_idx",
    )
    await _create_index_safe(
        store.withdrawal_requests,
        [("vendorId", ASCENDING), ("createdAt", DESCENDING)],
        name="withdrawal_requests_vendor_created_at_idx",
    )

    # Audit
    await _create_index_safe(
        store.audit_logs,
        [("action", ASCENDING), ("createdAt", DESCENDING)],
        name="audit_logs_action_created_at_idx",
    )

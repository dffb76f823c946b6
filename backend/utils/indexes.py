from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure

from config.constants import (
    AUDIT_LOGS,
    ORDERS,
    REFUND_DETAILS,
    REFUND_RECONCILIATIONS,
    RETURN_INDEX,
)


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


async def ensure_indexes(db):
    # Orders
    await _create_index_safe(
        db[ORDERS],
        [("refund_account.account_status", ASCENDING)],
        name="orders_account_status_idx",
    )
    await _create_index_safe(
        db[ORDERS],
        [("updated_at", DESCENDING)],
        name="orders_updated_at_idx",
    )

    # Refund details
    await _create_index_safe(
        db[REFUND_DETAILS],
        [("order_id", ASCENDING), ("created_at", DESCENDING)],
        name="refund_details_order_created_idx",
    )
    await _create_index_safe(
        db[REFUND_DETAILS],
        [("refund_type", ASCENDING)],
        name="refund_details_type_idx",
    )

    # Reconciliations
    await _create_index_safe(
        db[REFUND_RECONCILIATIONS],
        [("refund_detail_id", ASCENDING), ("updated_at", DESCENDING)],
        name="refund_reconciliations_detail_updated_idx",
    )
    await _create_index_safe(
        db[REFUND_RECONCILIATIONS],
        [("status", ASCENDING), ("updated_at", DESCENDING)],
        name="refund_reconciliations_status_idx",
    )

    # Return index
    await _create_index_safe(
        db[RETURN_INDEX],
        [("order_id", ASCENDING)],
        name="return_index_order_idx",
    )
    await _create_index_safe(
        db[RETURN_INDEX],
        [("refund_detail_id", ASCENDING)],
        name="return_index_refund_detail_idx",
    )

    # Audit
    await _create_index_safe(
        db[AUDIT_LOGS],
        [("created_at", DESCENDING)],
        name="audit_logs_created_at_idx",
    )

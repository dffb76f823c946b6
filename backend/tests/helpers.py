from datetime import datetime

from config.constants import ORDERS, REFUND_DETAILS, REFUND_RECONCILIATIONS


async def seed_order(store, order_id: str, buyer_refund_amount: float = 0, **fields):
    now = datetime.utcnow()
    await store.set(
        ORDERS,
        order_id,
        {
            "order_id": order_id,
            "buyer_refund_amount": buyer_refund_amount,
            "created_at": now,
            "updated_at": now,
            **fields,
        },
        merge=False,
    )


async def seed_refund(store, order_id: str, refund_amount: float, **fields) -> str:
    now = datetime.utcnow()
    return await store.add(
        REFUND_DETAILS,
        {
            "order_id": order_id,
            "refund_type": "OTHERS",
            "refund_amount": refund_amount,
            "status": "INITIATED",
            "accounting_status": "UNACCOUNTED",
            "return_trackings": [],
            "created_by": "test",
            "created_at": now,
            "updated_at": now,
            **fields,
        },
    )


async def seed_reconciliation(store, refund_detail_id: str, actual_value, updated_at: datetime, **fields) -> str:
    return await store.add(
        REFUND_RECONCILIATIONS,
        {
            "refund_detail_id": refund_detail_id,
            "expected_value": fields.pop("expected_value", actual_value),
            "actual_value": actual_value,
            "variance": 0,
            "status": "MATCHED",
            "created_at": updated_at,
            "updated_at": updated_at,
            **fields,
        },
    )

import asyncio
import logging
from datetime import datetime

from pymongo import DESCENDING

from config.constants import ORDERS, REFUND_DETAILS, SYSTEM_ACTOR
from config.env import SNAPSHOT_FANOUT_CONCURRENCY
from models.order import OrderRecord
from models.refund import AccountingStatus, RefundStatus, RefundType
from utils.audit import log_audit
from utils.errors import ConsistencyError, NotFoundError, RefundAccountingError
from utils.money import amount_differs, to_decimal
from utils.snapshot import (
    recompute_and_write_order_refund_snapshot,
    validate_refund_details_sum_equals_order,
)
from utils.snapshot_cache import snapshot_cache
from utils.store import new_id
from utils.validators import parse_payload

logger = logging.getLogger(__name__)


# ======================================================
# DELTA DETECTION
# ======================================================

async def apply_order_delta(
    store,
    order_id: str,
    incoming_buyer_refund_amount,
    *,
    order_fields: dict | None = None,
    epsilon: float | None = None,
    cache=snapshot_cache,
) -> dict:
    """
    Merge an ingested order and, when its buyer_refund_amount moved by
    at least epsilon, create an OTHERS correction for the difference.
    The order merge and the correction commit together.
    """
    incoming = to_decimal(incoming_buyer_refund_amount)
    now = datetime.utcnow()
    correction_id = new_id()

    fields = {k: v for k, v in (order_fields or {}).items() if k not in ("refund_account", "id", "_id")}
    fields.update({
        "order_id": order_id,
        "buyer_refund_amount": float(incoming),
        "updated_at": now,
    })

    async def merge(session):
        stored = await store.get(ORDERS, order_id, session=session)
        if stored is None:
            await store.set(ORDERS, order_id, {**fields, "created_at": now}, merge=True, session=session)
            return True, None

        previous = to_decimal(stored.get("buyer_refund_amount") or 0)
        correction = None

        if amount_differs(incoming, previous, epsilon):
            difference = incoming - previous
            correction = {
                "order_id": order_id,
                "refund_type": RefundType.OTHERS.value,
                "refund_amount": float(difference),
                "refund_date": now,
                "status": (RefundStatus.INITIATED if difference >= 0 else RefundStatus.PROCESSING).value,
                "accounting_status": AccountingStatus.UNACCOUNTED.value,
                "return_trackings": [],
                "created_by": SYSTEM_ACTOR,
                "created_at": now,
                "updated_at": now,
            }
            await store.add(REFUND_DETAILS, correction, doc_id=correction_id, session=session)
            await log_audit(
                store,
                "REFUND_CORRECTION_CREATED",
                actor_id=SYSTEM_ACTOR,
                actor_role="system",
                metadata={
                    "order_id": order_id,
                    "refund_id": correction_id,
                    "previous_buyer_refund_amount": float(previous),
                    "incoming_buyer_refund_amount": float(incoming),
                    "refund_amount": correction["refund_amount"],
                },
                session=session,
            )

        await store.set(ORDERS, order_id, fields, merge=True, session=session)
        return False, correction

    created, correction = await store.run_transaction(merge)
    await recompute_and_write_order_refund_snapshot(store, order_id, cache=cache)

    if correction:
        logger.info(
            "REFUND_CORRECTION order=%s refund=%s amount=%s",
            order_id,
            correction_id,
            correction["refund_amount"],
        )
        correction = {**correction, "id": correction_id}

    return {"order_id": order_id, "created": created, "correction": correction}


# ======================================================
# INGESTION
# ======================================================

async def ingest_orders(
    store,
    records: list,
    *,
    epsilon: float | None = None,
    validate: bool = True,
    concurrency: int = SNAPSHOT_FANOUT_CONCURRENCY,
    cache=snapshot_cache,
) -> dict:
    """
    Merge a batch of ingested orders. A failing order is recorded
    and the rest of the batch continues.
    """
    results = {
        "total": len(records),
        "successful": 0,
        "failed": 0,
        "errors": [],
        "corrections": [],
        "mismatches": [],
    }
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def ingest_one(raw):
        async with semaphore:
            order_id = raw.get("order_id") if isinstance(raw, dict) else getattr(raw, "order_id", None)
            try:
                record = parse_payload(OrderRecord, raw)
                order_id = record.order_id
                outcome = await apply_order_delta(
                    store,
                    record.order_id,
                    record.buyer_refund_amount,
                    order_fields=record.model_dump(),
                    epsilon=epsilon,
                    cache=cache,
                )
            except RefundAccountingError as e:
                results["failed"] += 1
                results["errors"].append(f"Order {order_id}: {e.message}")
                return

            results["successful"] += 1
            if outcome["correction"]:
                results["corrections"].append(outcome["correction"])

            if validate:
                try:
                    await validate_refund_details_sum_equals_order(store, record.order_id, epsilon)
                except ConsistencyError as e:
                    logger.warning("REFUND_SUM_MISMATCH order=%s %s", record.order_id, e.message)
                    results["mismatches"].append({"order_id": record.order_id, **e.details})

    await asyncio.gather(*[ingest_one(raw) for raw in records])
    return results


# ======================================================
# READS
# ======================================================

async def get_order(store, order_id: str) -> dict:
    order = await store.get(ORDERS, order_id)
    if not order:
        raise NotFoundError("Order not found", {"order_id": order_id})
    return order


async def list_orders(store, *, limit: int | None = None, skip: int | None = None) -> list[dict]:
    return await store.find(ORDERS, {}, sort=[("updated_at", DESCENDING)], limit=limit, skip=skip)

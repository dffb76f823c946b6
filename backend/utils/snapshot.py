import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from config.constants import ORDERS, REFUND_DETAILS, REFUND_RECONCILIATIONS
from config.env import REFUND_EPSILON, SNAPSHOT_FANOUT_CONCURRENCY
from models.order import AccountStatus
from models.refund import AccountingStatus, ItemCondition
from utils.errors import ConsistencyError, NotFoundError
from utils.money import ZERO, to_decimal
from utils.snapshot_cache import snapshot_cache

logger = logging.getLogger(__name__)

SOURCE_RECONCILIATION = "reconciliation"
SOURCE_RETURNS = "returns"
SOURCE_NONE = "none"
SOURCE_ERROR = "error"


@dataclass(frozen=True)
class DetailContribution:
    refund_detail_id: str
    actual_value: Decimal
    source: str
    error: str | None = None


# ==============================
# Per-detail computation
# ==============================

def _timestamp(value) -> float:
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str):
        return datetime.fromisoformat(value).timestamp()
    raise ValueError(f"Unreadable updated_at: {value!r}")


def latest_reconciliation(reconciliations: list[dict]) -> dict | None:
    """
    Latest by updated_at, then by id. Ids are ObjectIds, so records stored
    within the same millisecond still order by creation. Records without
    ids tie-break to the last one seen.
    """
    latest = None
    latest_key = None
    for rec in reconciliations:
        key = (_timestamp(rec.get("updated_at")), str(rec.get("id") or ""))
        if latest is None or key >= latest_key:
            latest = rec
            latest_key = key
    return latest


def good_items_value(return_trackings: list) -> Decimal:
    total = ZERO
    for tracking in return_trackings:
        items = tracking.get("return_items")
        if not isinstance(items, list):
            continue
        for item in items:
            if item.get("condition") != ItemCondition.GOOD.value:
                continue
            quantity = to_decimal(item.get("quantity") or 0)
            unit_price = to_decimal(item.get("unit_price") or 0)
            total += quantity * unit_price
    return total


def compute_detail_contribution(order_id: str, detail: dict, reconciliations: list[dict]) -> DetailContribution:
    """
    Actual recovered value of one refund detail. Never raises:
    malformed data is logged and counts as zero.
    """
    detail_id = detail.get("id")
    try:
        if reconciliations:
            latest = latest_reconciliation(reconciliations)
            return DetailContribution(
                detail_id,
                to_decimal(latest.get("actual_value") or 0),
                SOURCE_RECONCILIATION,
            )

        trackings = detail.get("return_trackings")
        if isinstance(trackings, list) and trackings:
            return DetailContribution(detail_id, good_items_value(trackings), SOURCE_RETURNS)

        return DetailContribution(detail_id, ZERO, SOURCE_NONE)

    except Exception as exc:
        logger.warning(
            "SNAPSHOT_DETAIL_MALFORMED order=%s refund_detail=%s error=%s",
            order_id,
            detail_id,
            exc,
        )
        return DetailContribution(detail_id, ZERO, SOURCE_ERROR, str(exc))


def compute_account_status(details: list[dict]) -> AccountStatus:
    if not details:
        return AccountStatus.UNINITIATED

    fully = AccountingStatus.FULLY_ACCOUNTED.value
    if all(d.get("accounting_status") == fully for d in details):
        return AccountStatus.FULLY_ACCOUNTED
    return AccountStatus.PARTIALLY_ACCOUNTED


# ==============================
# Order snapshot
# ==============================

async def _reconciliations_by_detail(store, detail_ids: list[str], session=None) -> dict[str, list[dict]]:
    grouped = defaultdict(list)
    if not detail_ids:
        return grouped

    recs = await store.find_in(REFUND_RECONCILIATIONS, "refund_detail_id", detail_ids, session=session)
    for rec in recs:
        grouped[rec.get("refund_detail_id")].append(rec)
    return grouped


async def compute_order_refund_snapshot(store, order_id: str, *, session=None) -> dict:
    details = await store.find(REFUND_DETAILS, {"order_id": order_id}, session=session)
    recs = await _reconciliations_by_detail(store, [d["id"] for d in details], session=session)

    accounted = ZERO
    for detail in details:
        contribution = compute_detail_contribution(order_id, detail, recs.get(detail["id"], []))
        accounted += contribution.actual_value

    return {
        "accounted_refund_amount": float(accounted),
        "account_status": compute_account_status(details).value,
    }


async def recompute_and_write_order_refund_snapshot(store, order_id: str, *, cache=snapshot_cache) -> dict:
    """
    Recompute the order's refund_account from its refund details and
    write it back. Reads and the write share one transaction so two
    concurrent recomputations for the same order cannot interleave.
    """
    cache.invalidate(order_id)

    async def write_snapshot(session):
        snapshot = await compute_order_refund_snapshot(store, order_id, session=session)
        await store.set(ORDERS, order_id, {"refund_account": snapshot}, merge=True, session=session)
        return snapshot

    snapshot = await store.run_transaction(write_snapshot)
    cache.put(order_id, snapshot)

    logger.debug(
        "SNAPSHOT_WRITTEN order=%s accounted=%s status=%s",
        order_id,
        snapshot["accounted_refund_amount"],
        snapshot["account_status"],
    )
    return snapshot


async def get_order_refund_snapshot(store, order_id: str, *, cache=snapshot_cache) -> dict:
    cached = cache.get(order_id)
    if cached is not None:
        return cached

    # a write that lands while this computes wins over the stale result
    version = cache.version(order_id)
    snapshot = await compute_order_refund_snapshot(store, order_id)
    cache.put(order_id, snapshot, if_version=version)
    return snapshot


async def recompute_snapshots_for_orders(
    store,
    order_ids,
    *,
    concurrency: int = SNAPSHOT_FANOUT_CONCURRENCY,
    cache=snapshot_cache,
) -> dict[str, dict]:
    unique_ids = [oid for oid in dict.fromkeys(order_ids) if oid]
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def recompute(order_id):
        async with semaphore:
            return await recompute_and_write_order_refund_snapshot(store, order_id, cache=cache)

    snapshots = await asyncio.gather(*[recompute(oid) for oid in unique_ids])
    return dict(zip(unique_ids, snapshots))


# ==============================
# Totals / validation
# ==============================

async def get_refund_details_total_amount(store, order_id: str, *, session=None) -> float:
    details = await store.find(REFUND_DETAILS, {"order_id": order_id}, session=session)
    total = sum((to_decimal(d.get("refund_amount") or 0) for d in details), ZERO)
    return float(total)


async def validate_refund_details_sum_equals_order(
    store,
    order_id: str,
    epsilon: float | None = None,
    *,
    session=None,
) -> dict:
    order = await store.get(ORDERS, order_id, session=session)
    if not order:
        raise NotFoundError(f"Order {order_id} not found", {"order_id": order_id})

    eps = to_decimal(REFUND_EPSILON if epsilon is None else epsilon)
    expected_total = to_decimal(order.get("buyer_refund_amount") or 0)
    actual_total = to_decimal(await get_refund_details_total_amount(store, order_id, session=session))

    if abs(actual_total - expected_total) > eps:
        raise ConsistencyError(
            f"RefundDetails sum ({actual_total}) does not match order refund amount ({expected_total})",
            {
                "order_id": order_id,
                "actual_total": float(actual_total),
                "expected_total": float(expected_total),
            },
        )

    return {"actual_total": float(actual_total), "expected_total": float(expected_total)}

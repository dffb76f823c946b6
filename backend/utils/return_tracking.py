from datetime import datetime

from config.constants import REFUND_DETAILS, RETURN_INDEX
from models.refund import ReturnInitiate, ReturnStatus
from utils.audit import log_audit
from utils.errors import NotFoundError, ValidationError
from utils.money import ZERO, to_decimal
from utils.snapshot import recompute_and_write_order_refund_snapshot
from utils.snapshot_cache import snapshot_cache
from utils.store import new_id
from utils.validators import parse_payload

# Action slug -> target status
RETURN_ACTIONS = {
    "mark-in-transit": ReturnStatus.IN_TRANSIT,
    "mark-received": ReturnStatus.RECEIVED,
    "inspect": ReturnStatus.INSPECTING,
    "restock": ReturnStatus.RESTOCKED,
    "mark-discrepancy": ReturnStatus.DISCREPANCY_FOUND,
    "mark-lost-by-courier": ReturnStatus.LOST_BY_COURIER,
    "mark-paid-by-courier": ReturnStatus.PAID_BY_COURIER,
}


# ==============================
# Helpers
# ==============================

def total_return_value(return_items: list[dict]) -> float:
    total = ZERO
    for item in return_items:
        total += to_decimal(item["quantity"]) * to_decimal(item["unit_price"])
    return float(total)


def build_return_tracking(payload: ReturnInitiate, now: datetime) -> dict:
    items = [item.model_dump() for item in payload.return_items]
    status = ReturnStatus(payload.return_status)

    return {
        "id": new_id(),
        "return_status": status.value,
        "return_items": items,
        # fixed at creation; item edits do not recompute it
        "total_return_value": total_return_value(items),
        "return_initiated_date": now,
        "expected_return_date": payload.expected_return_date,
        "actual_return_date": now if status == ReturnStatus.RECEIVED else None,
        "reason": payload.reason,
    }


def prepare_trackings(trackings: list[dict], previous=None, now: datetime | None = None) -> list[dict]:
    """
    Trackings as they will be stored on a detail. New trackings get their
    total_return_value derived from the items; trackings the detail already
    holds keep the value fixed when they were created.
    """
    now = now or datetime.utcnow()
    known = {t.get("id"): t for t in previous or [] if isinstance(t, dict)}

    seen = set()
    prepared = []
    for tracking in trackings or []:
        tracking = dict(tracking)
        tracking_id = tracking.get("id")
        if tracking_id in seen:
            raise ValidationError("Duplicate return tracking id", {"return_id": tracking_id})
        seen.add(tracking_id)

        if tracking_id in known:
            tracking["total_return_value"] = known[tracking_id].get("total_return_value", 0)
        else:
            tracking["total_return_value"] = total_return_value(tracking.get("return_items") or [])
            tracking["return_initiated_date"] = tracking.get("return_initiated_date") or now
        prepared.append(tracking)

    return prepared


def index_entry(detail: dict, tracking: dict, now: datetime) -> dict:
    return {
        "refund_detail_id": detail["id"],
        "order_id": detail.get("order_id"),
        "return_status": tracking.get("return_status"),
        "total_return_value": tracking.get("total_return_value", 0),
        "updated_at": now,
    }


async def sync_return_index(store, detail: dict, *, previous_trackings=None, session=None, now=None):
    """
    Make return_index mirror the detail's embedded trackings.
    Entries for trackings no longer embedded are removed. A tracking id
    indexed under another refund detail is rejected.
    """
    now = now or datetime.utcnow()
    trackings = detail.get("return_trackings") or []
    current_ids = {t["id"] for t in trackings}

    for tracking in trackings:
        existing = await store.get(RETURN_INDEX, tracking["id"], session=session)
        if existing and existing.get("refund_detail_id") != detail["id"]:
            raise ValidationError(
                "Return tracking belongs to another refund detail",
                {"return_id": tracking["id"], "refund_detail_id": existing.get("refund_detail_id")},
            )

    for tracking in trackings:
        await store.set(RETURN_INDEX, tracking["id"], index_entry(detail, tracking, now), merge=True, session=session)

    for tracking in previous_trackings or []:
        tracking_id = tracking.get("id")
        if tracking_id and tracking_id not in current_ids:
            await store.delete(RETURN_INDEX, tracking_id, session=session)


# ==============================
# Operations
# ==============================

async def initiate_return(store, payload, *, actor_id: str | None = None, cache=snapshot_cache) -> dict:
    payload = parse_payload(ReturnInitiate, payload)
    now = datetime.utcnow()
    tracking = build_return_tracking(payload, now)

    async def append_tracking(session):
        detail = await store.get(REFUND_DETAILS, payload.refund_detail_id, session=session)
        if not detail:
            raise NotFoundError(
                "Refund detail not found",
                {"refund_detail_id": payload.refund_detail_id},
            )

        trackings = list(detail.get("return_trackings") or [])
        trackings.append(tracking)

        await store.update(
            REFUND_DETAILS,
            detail["id"],
            {"return_trackings": trackings, "updated_at": now},
            session=session,
        )
        await store.add(
            RETURN_INDEX,
            {**index_entry(detail, tracking, now), "created_at": now},
            doc_id=tracking["id"],
            session=session,
        )
        await log_audit(
            store,
            "RETURN_INITIATED",
            actor_id=actor_id,
            metadata={
                "order_id": detail.get("order_id"),
                "refund_detail_id": detail["id"],
                "return_id": tracking["id"],
                "total_return_value": tracking["total_return_value"],
            },
            session=session,
        )
        return detail.get("order_id")

    order_id = await store.run_transaction(append_tracking)
    await recompute_and_write_order_refund_snapshot(store, order_id, cache=cache)

    return {**tracking, "refund_detail_id": payload.refund_detail_id, "order_id": order_id}


async def update_return_status(
    store,
    return_id: str,
    target_status,
    *,
    actor_id: str | None = None,
    cache=snapshot_cache,
) -> dict:
    """
    Move a return to target_status. Any status may follow any other.
    The embedded tracking and its index entry change in one transaction.
    """
    try:
        status = ReturnStatus(target_status)
    except ValueError:
        raise ValidationError("Invalid return status", {"return_status": target_status})

    now = datetime.utcnow()

    async def apply_status(session):
        entry = await store.get(RETURN_INDEX, return_id, session=session)
        if not entry:
            raise NotFoundError("Return not found", {"return_id": return_id})

        detail = await store.get(REFUND_DETAILS, entry["refund_detail_id"], session=session)
        if not detail:
            raise NotFoundError(
                "Refund detail not found for return",
                {"return_id": return_id, "refund_detail_id": entry["refund_detail_id"]},
            )

        trackings = [dict(t) for t in detail.get("return_trackings") or []]
        tracking = next((t for t in trackings if t.get("id") == return_id), None)
        if tracking is None:
            raise NotFoundError(
                "Return not found on refund detail",
                {"return_id": return_id, "refund_detail_id": detail["id"]},
            )

        previous_status = tracking.get("return_status")
        tracking["return_status"] = status.value
        if status == ReturnStatus.RECEIVED and not tracking.get("actual_return_date"):
            tracking["actual_return_date"] = now

        await store.update(
            REFUND_DETAILS,
            detail["id"],
            {"return_trackings": trackings, "updated_at": now},
            session=session,
        )
        await store.update(
            RETURN_INDEX,
            return_id,
            {"return_status": status.value, "updated_at": now},
            session=session,
        )
        await log_audit(
            store,
            "RETURN_STATUS_CHANGED",
            actor_id=actor_id,
            metadata={
                "order_id": detail.get("order_id"),
                "refund_detail_id": detail["id"],
                "return_id": return_id,
                "from": previous_status,
                "to": status.value,
            },
            session=session,
        )
        return detail.get("order_id"), detail["id"], tracking

    order_id, detail_id, tracking = await store.run_transaction(apply_status)
    await recompute_and_write_order_refund_snapshot(store, order_id, cache=cache)

    return {**tracking, "refund_detail_id": detail_id, "order_id": order_id}


async def get_return(store, return_id: str) -> dict:
    entry = await store.get(RETURN_INDEX, return_id)
    if not entry:
        raise NotFoundError("Return not found", {"return_id": return_id})
    return entry


async def list_returns(store, *, order_id: str | None = None, return_status=None) -> list[dict]:
    query = {}
    if order_id:
        query["order_id"] = order_id
    if return_status:
        query["return_status"] = ReturnStatus(return_status).value
    return await store.find(RETURN_INDEX, query)


# ==============================
# Index rebuild
# ==============================

async def _rebuild_detail_entries(store, detail_id: str, session) -> int:
    detail = await store.get(REFUND_DETAILS, detail_id, session=session)
    if not detail:
        return 0

    now = datetime.utcnow()
    written = 0
    for tracking in detail.get("return_trackings") or []:
        if not isinstance(tracking, dict) or not tracking.get("id"):
            continue
        await store.set(RETURN_INDEX, tracking["id"], index_entry(detail, tracking, now), merge=True, session=session)
        written += 1
    return written


async def _drop_if_stale(store, entry_id: str, session) -> bool:
    entry = await store.get(RETURN_INDEX, entry_id, session=session)
    if not entry:
        return False

    detail = await store.get(REFUND_DETAILS, entry.get("refund_detail_id"), session=session)
    tracking_ids = {
        t.get("id") for t in (detail or {}).get("return_trackings") or [] if isinstance(t, dict)
    }
    if entry_id in tracking_ids:
        return False

    await store.delete(RETURN_INDEX, entry_id, session=session)
    return True


async def rebuild_return_index(store, *, order_id: str | None = None) -> int:
    """
    Regenerate return_index from the embedded trackings, which are the
    source of truth. Each detail is re-read and re-indexed in its own
    transaction so a concurrent status change or delete is never undone.
    Returns the number of index entries written.
    """
    query = {"order_id": order_id} if order_id else {}

    written = 0
    for detail in await store.find(REFUND_DETAILS, query):
        written += await store.run_transaction(
            lambda session, detail_id=detail["id"]: _rebuild_detail_entries(store, detail_id, session)
        )

    for entry in await store.find(RETURN_INDEX, query):
        await store.run_transaction(
            lambda session, entry_id=entry["id"]: _drop_if_stale(store, entry_id, session)
        )

    return written

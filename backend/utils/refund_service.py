import logging
from datetime import datetime, timezone

from pymongo import DESCENDING

from config.constants import (
    AUDIT_LOGS,
    DEFAULT_ACTOR,
    ORDERS,
    REFUND_DETAILS,
    RETURN_INDEX,
    SPLIT_REGENERATED_FIELDS,
)
from config.env import BULK_UPDATE_TOLERANCE_SECONDS
from models.refund import (
    BulkRefundUpdate,
    RefundChanges,
    RefundInitiate,
    RefundSplitEntry,
    RefundStatus,
)
from utils.audit import log_audit
from utils.errors import ConflictError, NotFoundError, ValidationError
from utils.return_tracking import index_entry, prepare_trackings, sync_return_index
from utils.snapshot import (
    recompute_and_write_order_refund_snapshot,
    recompute_snapshots_for_orders,
)
from utils.snapshot_cache import snapshot_cache
from utils.store import chunked, new_id
from utils.validators import parse_payload, require_nonnegative_unless_others

logger = logging.getLogger(__name__)


def _naive_utc(value) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _with_prepared_trackings(fields: dict, detail: dict, now: datetime) -> dict:
    if "return_trackings" not in fields:
        return fields
    return {
        **fields,
        "return_trackings": prepare_trackings(
            fields["return_trackings"],
            previous=detail.get("return_trackings"),
            now=now,
        ),
    }


async def _get_refund_or_404(store, refund_id: str, session=None) -> dict:
    detail = await store.get(REFUND_DETAILS, refund_id, session=session)
    if not detail:
        raise NotFoundError("Refund detail not found", {"refund_id": refund_id})
    return detail


# ======================================================
# READS
# ======================================================

async def get_refund(store, refund_id: str) -> dict:
    return await _get_refund_or_404(store, refund_id)


async def list_refunds(
    store,
    *,
    order_id: str | None = None,
    status=None,
    refund_type=None,
    limit: int | None = None,
    skip: int | None = None,
) -> list[dict]:
    query = {}
    if order_id:
        query["order_id"] = order_id
    if status:
        query["status"] = status
    if refund_type:
        query["refund_type"] = refund_type

    return await store.find(
        REFUND_DETAILS,
        query,
        sort=[("created_at", DESCENDING)],
        limit=limit,
        skip=skip,
    )


# ======================================================
# INITIATE
# ======================================================

async def initiate_refund(store, payload, *, actor_id: str | None = None, cache=snapshot_cache) -> dict:
    payload = parse_payload(RefundInitiate, payload)
    now = datetime.utcnow()

    data = payload.model_dump()
    data["return_trackings"] = prepare_trackings(data.get("return_trackings"), now=now)
    data["refund_date"] = data.get("refund_date") or now
    data["created_by"] = data.get("created_by") or actor_id or DEFAULT_ACTOR
    data["created_at"] = now
    data["updated_at"] = now
    refund_id = new_id()

    async def create(session):
        order = await store.get(ORDERS, payload.order_id, session=session)
        if not order:
            raise NotFoundError("Order not found", {"order_id": payload.order_id})

        await store.add(REFUND_DETAILS, data, doc_id=refund_id, session=session)
        await sync_return_index(store, {**data, "id": refund_id}, session=session, now=now)
        await log_audit(
            store,
            "REFUND_INITIATED",
            actor_id=data["created_by"],
            metadata={
                "order_id": payload.order_id,
                "refund_id": refund_id,
                "refund_type": data["refund_type"],
                "refund_amount": data["refund_amount"],
            },
            session=session,
        )

    await store.run_transaction(create)
    await recompute_and_write_order_refund_snapshot(store, payload.order_id, cache=cache)

    return {**data, "id": refund_id}


# ======================================================
# SPLIT
# ======================================================

def _merge_split_entry(original: dict, entry: RefundSplitEntry, now: datetime) -> dict:
    inherited = {k: v for k, v in original.items() if k not in SPLIT_REGENERATED_FIELDS}
    overrides = entry.model_dump(exclude_unset=True, exclude_none=True)
    if "return_trackings" in overrides:
        overrides["return_trackings"] = prepare_trackings(
            overrides["return_trackings"],
            previous=original.get("return_trackings"),
            now=now,
        )

    merged = {**inherited, **overrides, "created_at": now, "updated_at": now}

    if not merged.get("order_id"):
        raise ValidationError("Split entry is missing order_id", {"entry": overrides})
    if merged["order_id"] != original.get("order_id"):
        raise ValidationError(
            "Split entry cannot move a refund to another order",
            {"order_id": merged["order_id"], "original_order_id": original.get("order_id")},
        )
    if not _is_number(merged.get("refund_amount")):
        raise ValidationError("Split entry is missing a numeric refund_amount", {"entry": overrides})

    require_nonnegative_unless_others(merged["refund_amount"], merged.get("refund_type"))
    return merged


async def split_refund(
    store,
    refund_id: str,
    splits: list,
    *,
    actor_id: str | None = None,
    cache=snapshot_cache,
) -> dict:
    """
    Replace one refund detail with one new detail per split entry.
    Entries inherit every field they do not set from the original;
    ids and timestamps are always regenerated.
    """
    entries = [parse_payload(RefundSplitEntry, s) for s in splits or []]
    if not entries:
        raise ValidationError("At least one split entry is required", {"refund_id": refund_id})

    original = await _get_refund_or_404(store, refund_id)
    now = datetime.utcnow()
    merged_docs = [_merge_split_entry(original, entry, now) for entry in entries]
    order_id = original["order_id"]

    batch = store.batch()
    # a concurrent split or delete of the original aborts this one
    batch.delete(REFUND_DETAILS, refund_id, must_exist=True)

    created = []
    index_targets = {}
    for doc in merged_docs:
        new_refund_id = batch.add(REFUND_DETAILS, doc)
        created.append({**doc, "id": new_refund_id})
        for tracking in doc.get("return_trackings") or []:
            # a tracking inherited by several entries indexes to the last one
            index_targets[tracking["id"]] = ({**doc, "id": new_refund_id}, tracking)

    for tracking_id in index_targets:
        existing = await store.get(RETURN_INDEX, tracking_id)
        if existing and existing.get("refund_detail_id") != refund_id:
            raise ValidationError(
                "Return tracking belongs to another refund detail",
                {"return_id": tracking_id, "refund_detail_id": existing.get("refund_detail_id")},
            )

    for tracking_id, (doc, tracking) in index_targets.items():
        batch.set(RETURN_INDEX, tracking_id, index_entry(doc, tracking, now))
    for tracking in original.get("return_trackings") or []:
        tracking_id = tracking.get("id")
        if tracking_id and tracking_id not in index_targets:
            batch.delete(RETURN_INDEX, tracking_id)

    batch.add(AUDIT_LOGS, {
        "actor_id": actor_id or DEFAULT_ACTOR,
        "actor_role": "staff",
        "action": "REFUND_SPLIT",
        "metadata": {
            "order_id": order_id,
            "refund_id": refund_id,
            "created_ids": [c["id"] for c in created],
            "amounts": [c["refund_amount"] for c in created],
        },
        "created_at": now,
    })

    await batch.commit()
    await recompute_and_write_order_refund_snapshot(store, order_id, cache=cache)

    return {
        "deleted_id": refund_id,
        "created_ids": [c["id"] for c in created],
        "refunds": created,
    }


# ======================================================
# IN-PLACE UPDATES
# ======================================================

async def update_refund_status(
    store,
    refund_id: str,
    status,
    *,
    actor_id: str | None = None,
    cache=snapshot_cache,
) -> dict:
    try:
        status = RefundStatus(status)
    except ValueError:
        raise ValidationError("Invalid refund status", {"status": status})

    now = datetime.utcnow()

    async def apply(session):
        detail = await _get_refund_or_404(store, refund_id, session)
        await store.update(
            REFUND_DETAILS,
            refund_id,
            {"status": status.value, "updated_at": now},
            session=session,
        )
        await log_audit(
            store,
            "REFUND_STATUS_CHANGED",
            actor_id=actor_id,
            metadata={
                "order_id": detail.get("order_id"),
                "refund_id": refund_id,
                "from": detail.get("status"),
                "to": status.value,
            },
            session=session,
        )
        return {**detail, "status": status.value, "updated_at": now}

    updated = await store.run_transaction(apply)
    await recompute_and_write_order_refund_snapshot(store, updated["order_id"], cache=cache)
    return updated


async def update_refund_type_data(
    store,
    refund_id: str,
    changes,
    *,
    actor_id: str | None = None,
    cache=snapshot_cache,
) -> dict:
    """Only return_trackings, accounting_status and status may change."""
    changes = parse_payload(RefundChanges, changes)
    fields = changes.model_dump(exclude_unset=True)
    if not fields:
        raise ValidationError("No changes supplied", {"refund_id": refund_id})

    now = datetime.utcnow()

    async def apply(session):
        detail = await _get_refund_or_404(store, refund_id, session)
        prepared = _with_prepared_trackings(fields, detail, now)
        await store.update(REFUND_DETAILS, refund_id, {**prepared, "updated_at": now}, session=session)

        updated = {**detail, **prepared, "updated_at": now}
        if "return_trackings" in prepared:
            await sync_return_index(
                store,
                updated,
                previous_trackings=detail.get("return_trackings"),
                session=session,
                now=now,
            )

        await log_audit(
            store,
            "REFUND_TYPE_DATA_UPDATED",
            actor_id=actor_id,
            metadata={
                "order_id": detail.get("order_id"),
                "refund_id": refund_id,
                "fields": sorted(fields),
            },
            session=session,
        )
        return updated

    updated = await store.run_transaction(apply)
    await recompute_and_write_order_refund_snapshot(store, updated["order_id"], cache=cache)
    return updated


# ======================================================
# BULK UPDATE
# ======================================================

def _check_expected_timestamp(item: BulkRefundUpdate, detail: dict, tolerance: float):
    if item.last_updated_at is None:
        return

    stored = _naive_utc(detail.get("updated_at"))
    expected = _naive_utc(item.last_updated_at)
    if stored is None or abs((stored - expected).total_seconds()) > tolerance:
        raise ConflictError(
            "Refund detail was modified since it was last read",
            {
                "refund_id": item.id,
                "expected_updated_at": expected.isoformat(),
                "stored_updated_at": stored.isoformat() if stored else None,
            },
        )


async def bulk_update_refunds(
    store,
    updates: list,
    *,
    actor_id: str | None = None,
    tolerance_seconds: float = BULK_UPDATE_TOLERANCE_SECONDS,
    cache=snapshot_cache,
) -> dict:
    """
    Apply [{id, changes, last_updated_at?}, ...].

    Every target is read (and its timestamp checked) before anything
    is written, so a conflict or a missing id rejects the whole batch.
    Several entries for one id are merged in order into a single write.
    Writes commit in chunks; a failure while committing a later chunk
    restores the chunks already written.
    """
    items = [parse_payload(BulkRefundUpdate, u) for u in updates or []]
    if not items:
        return {"updated": 0, "order_ids": []}

    pre_images = {}
    merged = {}
    guarded = set()
    for item in items:
        if item.id not in pre_images:
            pre_images[item.id] = await _get_refund_or_404(store, item.id)
        _check_expected_timestamp(item, pre_images[item.id], tolerance_seconds)

        merged.setdefault(item.id, {}).update(item.changes.model_dump(exclude_unset=True))
        if item.last_updated_at is not None:
            guarded.add(item.id)

    now = datetime.utcnow()
    applied = []

    async def write_chunk(refund_ids, session):
        for refund_id in refund_ids:
            current = await _get_refund_or_404(store, refund_id, session)
            if refund_id in guarded and current.get("updated_at") != pre_images[refund_id].get("updated_at"):
                raise ConflictError(
                    "Refund detail was modified during the bulk update",
                    {"refund_id": refund_id},
                )

            fields = _with_prepared_trackings(merged[refund_id], current, now)
            await store.update(REFUND_DETAILS, refund_id, {**fields, "updated_at": now}, session=session)
            if "return_trackings" in fields:
                await sync_return_index(
                    store,
                    {**current, **fields},
                    previous_trackings=current.get("return_trackings"),
                    session=session,
                    now=now,
                )

    try:
        for chunk in chunked(list(merged), store.batch_limit):
            await store.run_transaction(lambda session, chunk=chunk: write_chunk(chunk, session))
            applied.extend(chunk)
    except Exception:
        if applied:
            await _restore_pre_images(store, [pre_images[refund_id] for refund_id in applied])
        raise

    # order ids come from the pre-images read before the writes
    order_ids = list(dict.fromkeys(pre_images[refund_id]["order_id"] for refund_id in merged))

    await log_audit(
        store,
        "REFUND_BULK_UPDATED",
        actor_id=actor_id,
        metadata={"refund_ids": list(merged), "order_ids": order_ids},
    )

    await recompute_snapshots_for_orders(store, order_ids, cache=cache)
    return {"updated": len(merged), "order_ids": order_ids}


async def _restore_pre_images(store, details: list[dict]):
    logger.warning("BULK_UPDATE_ROLLBACK refunds=%s", [d["id"] for d in details])

    for detail in details:
        async def restore(session, detail=detail):
            current = await store.get(REFUND_DETAILS, detail["id"], session=session)
            await store.set(REFUND_DETAILS, detail["id"], detail, merge=False, session=session)
            await sync_return_index(
                store,
                detail,
                previous_trackings=(current or {}).get("return_trackings"),
                session=session,
            )

        await store.run_transaction(restore)


# ======================================================
# DELETE
# ======================================================

async def delete_refund(store, refund_id: str, *, actor_id: str | None = None, cache=snapshot_cache) -> dict:
    async def remove(session):
        detail = await _get_refund_or_404(store, refund_id, session)
        await store.delete(REFUND_DETAILS, refund_id, session=session)
        await store.delete_where(RETURN_INDEX, {"refund_detail_id": refund_id}, session=session)
        await log_audit(
            store,
            "REFUND_DELETED",
            actor_id=actor_id,
            metadata={
                "order_id": detail.get("order_id"),
                "refund_id": refund_id,
                "refund_amount": detail.get("refund_amount"),
            },
            session=session,
        )
        return detail

    detail = await store.run_transaction(remove)
    await recompute_and_write_order_refund_snapshot(store, detail["order_id"], cache=cache)
    return {"deleted_id": refund_id, "order_id": detail["order_id"]}

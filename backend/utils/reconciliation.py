from datetime import datetime

from pymongo import DESCENDING

from config.constants import REFUND_DETAILS, REFUND_RECONCILIATIONS
from models.refund import AccountingStatus, ReconcileRequest, ReconciliationStatus
from utils.audit import log_audit
from utils.errors import NotFoundError, ValidationError
from utils.money import to_decimal
from utils.snapshot import recompute_and_write_order_refund_snapshot
from utils.snapshot_cache import snapshot_cache
from utils.validators import parse_payload

# Reconciliation outcome -> refund detail accounting status.
# PENDING leaves the detail untouched.
ACCOUNTING_OUTCOMES = {
    ReconciliationStatus.MATCHED.value: AccountingStatus.FULLY_ACCOUNTED.value,
    ReconciliationStatus.VARIANCE_FOUND.value: AccountingStatus.PARTIALLY_ACCOUNTED.value,
}


# ==============================
# Append-only ledger write
# ==============================

async def reconcile(
    store,
    refund_detail_id: str,
    payload,
    *,
    actor_id: str | None = None,
    cache=snapshot_cache,
) -> dict:
    """
    Append a reconciliation record for a refund detail. Earlier records
    are never modified; the latest one drives the snapshot.
    """
    payload = parse_payload(ReconcileRequest, payload)
    now = datetime.utcnow()

    variance = to_decimal(payload.actual_value) - to_decimal(payload.expected_value)
    record = {
        "refund_detail_id": refund_detail_id,
        "expected_value": payload.expected_value,
        "actual_value": payload.actual_value,
        "variance": float(variance),
        "status": payload.status,
        "notes": payload.notes,
        "reconciled_by": payload.reconciled_by or actor_id,
        "reconciled_date": now,
        "created_at": now,
        "updated_at": now,
    }

    async def append(session):
        detail = await store.get(REFUND_DETAILS, refund_detail_id, session=session)
        if not detail:
            raise NotFoundError("Refund detail not found", {"refund_detail_id": refund_detail_id})

        record_id = await store.add(
            REFUND_RECONCILIATIONS,
            {**record, "order_id": detail.get("order_id")},
            session=session,
        )

        accounting_status = ACCOUNTING_OUTCOMES.get(payload.status)
        if accounting_status:
            await store.update(
                REFUND_DETAILS,
                refund_detail_id,
                {"accounting_status": accounting_status, "updated_at": now},
                session=session,
            )

        await log_audit(
            store,
            "REFUND_RECONCILED",
            actor_id=actor_id,
            metadata={
                "order_id": detail.get("order_id"),
                "refund_detail_id": refund_detail_id,
                "reconciliation_id": record_id,
                "status": payload.status,
                "variance": record["variance"],
            },
            session=session,
        )
        return record_id, detail.get("order_id")

    record_id, order_id = await store.run_transaction(append)
    await recompute_and_write_order_refund_snapshot(store, order_id, cache=cache)

    return {**record, "id": record_id, "order_id": order_id}


# ==============================
# Reads
# ==============================

async def list_reconciliations(store, refund_detail_id: str) -> list[dict]:
    return await store.find(
        REFUND_RECONCILIATIONS,
        {"refund_detail_id": refund_detail_id},
        sort=[("updated_at", DESCENDING)],
    )


async def list_reconciliations_by_status(store, status) -> list[dict]:
    try:
        status = ReconciliationStatus(status)
    except ValueError:
        raise ValidationError("Invalid reconciliation status", {"status": status})

    return await store.find(
        REFUND_RECONCILIATIONS,
        {"status": status.value},
        sort=[("updated_at", DESCENDING)],
    )

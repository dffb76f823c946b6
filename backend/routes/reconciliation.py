from fastapi import APIRouter, Depends

from database import get_store
from models.refund import ReconcileRequest, ReconciliationStatus
from utils.reconciliation import (
    list_reconciliations,
    list_reconciliations_by_status,
    reconcile,
)
from utils.security import get_actor, require_api_key
from utils.serializers import serialize_doc, serialize_docs

router = APIRouter(
    prefix="/reconciliation",
    tags=["Reconciliation"],
    dependencies=[Depends(require_api_key)],
)


@router.get("/unaccounted")
async def unaccounted(store=Depends(get_store)):
    items = await list_reconciliations_by_status(store, ReconciliationStatus.PENDING)
    return {"success": True, "count": len(items), "items": serialize_docs(items)}


@router.get("/partial")
async def partial(store=Depends(get_store)):
    items = await list_reconciliations_by_status(store, ReconciliationStatus.VARIANCE_FOUND)
    return {"success": True, "count": len(items), "items": serialize_docs(items)}


@router.get("/variance-report")
async def variance_report(store=Depends(get_store)):
    items = await list_reconciliations_by_status(store, ReconciliationStatus.VARIANCE_FOUND)
    total_variance = sum(float(i.get("variance") or 0) for i in items)
    return {
        "success": True,
        "count": len(items),
        "total_variance": total_variance,
        "items": serialize_docs(items),
    }


@router.get("/{refund_id}/history")
async def history(refund_id: str, store=Depends(get_store)):
    items = await list_reconciliations(store, refund_id)
    return {"success": True, "count": len(items), "items": serialize_docs(items)}


@router.post("/{refund_id}/reconcile", status_code=201)
async def reconcile_refund(
    refund_id: str,
    payload: ReconcileRequest,
    actor=Depends(get_actor),
    store=Depends(get_store),
):
    record = await reconcile(store, refund_id, payload, actor_id=actor)
    return {"success": True, "reconciliation": serialize_doc(record)}

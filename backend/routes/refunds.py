from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel

from database import get_store
from models.refund import RefundInitiate, RefundStatus
from utils.refund_service import (
    bulk_update_refunds,
    delete_refund,
    get_refund,
    initiate_refund,
    list_refunds,
    split_refund,
    update_refund_status,
    update_refund_type_data,
)
from utils.security import get_actor, require_api_key
from utils.serializers import serialize_doc, serialize_docs

router = APIRouter(
    prefix="/refunds",
    tags=["Refunds"],
    dependencies=[Depends(require_api_key)],
)


class SplitRequest(BaseModel):
    refund_id: str
    splits: list[dict]


class StatusUpdate(BaseModel):
    status: RefundStatus


class BulkUpdateRequest(BaseModel):
    updates: list[dict]


# ======================================================
# READ
# ======================================================

@router.get("")
async def refunds_list(
    order_id: str | None = Query(None),
    limit: int = Query(100, gt=0, le=1000),
    skip: int = Query(0, ge=0),
    store=Depends(get_store),
):
    refunds = await list_refunds(store, order_id=order_id, limit=limit, skip=skip)
    return {"success": True, "count": len(refunds), "refunds": serialize_docs(refunds)}


@router.get("/{refund_id}")
async def refund_get(refund_id: str, store=Depends(get_store)):
    refund = await get_refund(store, refund_id)
    return {"success": True, "refund": serialize_doc(refund)}


# ======================================================
# MUTATIONS
# ======================================================

@router.post("/initiate", status_code=201)
async def refund_initiate(
    payload: RefundInitiate,
    actor=Depends(get_actor),
    store=Depends(get_store),
):
    refund = await initiate_refund(store, payload, actor_id=actor)
    return {"success": True, "refund": serialize_doc(refund)}


@router.post("/split")
async def refund_split(
    payload: SplitRequest,
    actor=Depends(get_actor),
    store=Depends(get_store),
):
    result = await split_refund(store, payload.refund_id, payload.splits, actor_id=actor)
    return {
        "success": True,
        "deleted_id": result["deleted_id"],
        "created_ids": result["created_ids"],
    }


@router.post("/bulk-update")
async def refund_bulk_update(
    payload: BulkUpdateRequest,
    actor=Depends(get_actor),
    store=Depends(get_store),
):
    result = await bulk_update_refunds(store, payload.updates, actor_id=actor)
    return {"success": True, **result}


@router.put("/{refund_id}/status")
async def refund_status(
    refund_id: str,
    payload: StatusUpdate,
    actor=Depends(get_actor),
    store=Depends(get_store),
):
    refund = await update_refund_status(store, refund_id, payload.status, actor_id=actor)
    return {"success": True, "refund": serialize_doc(refund)}


@router.put("/{refund_id}/type-data")
async def refund_type_data(
    refund_id: str,
    changes: dict = Body(...),
    actor=Depends(get_actor),
    store=Depends(get_store),
):
    refund = await update_refund_type_data(store, refund_id, changes, actor_id=actor)
    return {"success": True, "refund": serialize_doc(refund)}


@router.delete("/{refund_id}")
async def refund_delete(
    refund_id: str,
    actor=Depends(get_actor),
    store=Depends(get_store),
):
    result = await delete_refund(store, refund_id, actor_id=actor)
    return {"success": True, **result}

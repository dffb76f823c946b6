from typing import Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from database import get_store
from models.order import OrderRecord
from utils.order_delta import apply_order_delta, get_order, ingest_orders, list_orders
from utils.security import require_api_key
from utils.serializers import serialize_doc, serialize_docs
from utils.snapshot import (
    get_order_refund_snapshot,
    get_refund_details_total_amount,
    recompute_and_write_order_refund_snapshot,
    validate_refund_details_sum_equals_order,
)

router = APIRouter(
    prefix="/orders",
    tags=["Orders"],
    dependencies=[Depends(require_api_key)],
)


class IngestRequest(BaseModel):
    # "sheet" rows use the export's column titles
    format: Literal["records", "sheet"] = "records"
    orders: list[dict]


class DeltaRequest(BaseModel):
    buyer_refund_amount: float


# ======================================================
# READ
# ======================================================

@router.get("")
async def orders_list(
    limit: int = Query(100, gt=0, le=1000),
    skip: int = Query(0, ge=0),
    store=Depends(get_store),
):
    orders = await list_orders(store, limit=limit, skip=skip)
    return {"success": True, "count": len(orders), "orders": serialize_docs(orders)}


@router.get("/{order_id}")
async def order_get(order_id: str, store=Depends(get_store)):
    order = await get_order(store, order_id)
    return {"success": True, "order": serialize_doc(order)}


# ======================================================
# REFUND ACCOUNT
# ======================================================

@router.get("/{order_id}/refund-account")
async def order_refund_account(order_id: str, store=Depends(get_store)):
    snapshot = await get_order_refund_snapshot(store, order_id)
    return {"success": True, "refund_account": snapshot}


@router.post("/{order_id}/refund-account/recompute")
async def order_refund_account_recompute(order_id: str, store=Depends(get_store)):
    await get_order(store, order_id)
    snapshot = await recompute_and_write_order_refund_snapshot(store, order_id)
    return {"success": True, "refund_account": snapshot}


@router.get("/{order_id}/refund-validation")
async def order_refund_validation(
    order_id: str,
    epsilon: float | None = Query(None, ge=0),
    store=Depends(get_store),
):
    totals = await validate_refund_details_sum_equals_order(store, order_id, epsilon)
    return {"success": True, **totals}


@router.get("/{order_id}/refund-total")
async def order_refund_total(order_id: str, store=Depends(get_store)):
    total = await get_refund_details_total_amount(store, order_id)
    return {"success": True, "total": total}


# ======================================================
# INGESTION
# ======================================================

@router.post("/ingest")
async def orders_ingest(payload: IngestRequest, store=Depends(get_store)):
    records = payload.orders
    if payload.format == "sheet":
        records = [
            OrderRecord.from_sheet_row(row)
            for row in records
            if str(row.get("Order No") or "").strip() not in ("", "Order No")
        ]

    results = await ingest_orders(store, records)
    return {
        "success": True,
        "message": f"Successfully imported {results['successful']} orders",
        "results": serialize_doc(results),
    }


@router.post("/{order_id}/delta")
async def order_delta(order_id: str, payload: DeltaRequest, store=Depends(get_store)):
    outcome = await apply_order_delta(store, order_id, payload.buyer_refund_amount)
    return {"success": True, **serialize_doc(outcome)}

from fastapi import APIRouter, Depends, HTTPException, Query

from database import get_store
from models.refund import ReturnInitiate, ReturnStatus
from utils.return_tracking import (
    RETURN_ACTIONS,
    get_return,
    initiate_return,
    list_returns,
    rebuild_return_index,
    update_return_status,
)
from utils.security import get_actor, require_api_key
from utils.serializers import serialize_doc, serialize_docs

router = APIRouter(
    prefix="/returns",
    tags=["Returns"],
    dependencies=[Depends(require_api_key)],
)


@router.get("")
async def returns_list(
    order_id: str | None = Query(None),
    return_status: ReturnStatus | None = Query(None),
    store=Depends(get_store),
):
    returns = await list_returns(store, order_id=order_id, return_status=return_status)
    return {"success": True, "count": len(returns), "returns": serialize_docs(returns)}


@router.get("/{return_id}")
async def return_get(return_id: str, store=Depends(get_store)):
    entry = await get_return(store, return_id)
    return {"success": True, "return": serialize_doc(entry)}


@router.post("/initiate", status_code=201)
async def return_initiate(
    payload: ReturnInitiate,
    actor=Depends(get_actor),
    store=Depends(get_store),
):
    tracking = await initiate_return(store, payload, actor_id=actor)
    return {"success": True, "id": tracking["id"], "return": serialize_doc(tracking)}


@router.post("/rebuild-index")
async def return_index_rebuild(
    order_id: str | None = Query(None),
    store=Depends(get_store),
):
    count = await rebuild_return_index(store, order_id=order_id)
    return {"success": True, "entries": count}


# ======================================================
# STATUS ACTIONS
# ======================================================

@router.post("/{return_id}/{action}")
async def return_action(
    return_id: str,
    action: str,
    actor=Depends(get_actor),
    store=Depends(get_store),
):
    target = RETURN_ACTIONS.get(action)
    if target is None:
        raise HTTPException(404, "Unknown return action")

    tracking = await update_return_status(store, return_id, target, actor_id=actor)
    return {"success": True, "return": serialize_doc(tracking)}

import asyncio

import pytest

from config.constants import AUDIT_LOGS, ORDERS, REFUND_DETAILS, RETURN_INDEX
from helpers import seed_order, seed_refund
from utils.errors import NotFoundError, ValidationError
from utils.refund_service import delete_refund
from utils.return_tracking import (
    RETURN_ACTIONS,
    get_return,
    initiate_return,
    list_returns,
    rebuild_return_index,
    update_return_status,
)


def return_payload(refund_detail_id, **overrides):
    payload = {
        "refund_detail_id": refund_detail_id,
        "return_items": [
            {"sku_name": "SKU-A", "quantity": 2, "unit_price": 50, "condition": "GOOD"},
            {"sku_name": "SKU-B", "quantity": 1, "unit_price": 30, "condition": "DAMAGED"},
        ],
        "reason": "wrong size",
    }
    payload.update(overrides)
    return payload


class TestInitiateReturn:

    @pytest.mark.asyncio
    async def test_appends_tracking_and_index(self, store, cache):
        await seed_order(store, "O-1", 130)
        rid = await seed_refund(store, "O-1", 130)

        tracking = await initiate_return(store, return_payload(rid), actor_id="staff-1", cache=cache)

        assert tracking["return_status"] == "PENDING"
        assert tracking["total_return_value"] == 130.0
        assert tracking["actual_return_date"] is None

        detail = await store.get(REFUND_DETAILS, rid)
        assert [t["id"] for t in detail["return_trackings"]] == [tracking["id"]]

        entry = await store.get(RETURN_INDEX, tracking["id"])
        assert entry["refund_detail_id"] == rid
        assert entry["order_id"] == "O-1"
        assert entry["return_status"] == "PENDING"

        order = await store.get(ORDERS, "O-1")
        assert order["refund_account"]["accounted_refund_amount"] == 100.0

        assert store.all(AUDIT_LOGS)[-1]["action"] == "RETURN_INITIATED"

    @pytest.mark.asyncio
    async def test_created_as_received_sets_actual_date(self, store, cache):
        await seed_order(store, "O-1", 100)
        rid = await seed_refund(store, "O-1", 100)

        tracking = await initiate_return(store, return_payload(rid, return_status="RECEIVED"), cache=cache)

        assert tracking["actual_return_date"] is not None

    @pytest.mark.asyncio
    async def test_requires_items(self, store, cache):
        await seed_order(store, "O-1", 100)
        rid = await seed_refund(store, "O-1", 100)

        with pytest.raises(ValidationError):
            await initiate_return(store, return_payload(rid, return_items=[]), cache=cache)

    @pytest.mark.asyncio
    async def test_missing_refund_detail(self, store, cache):
        with pytest.raises(NotFoundError):
            await initiate_return(store, return_payload("NOPE"), cache=cache)
        assert store.all(RETURN_INDEX) == []

    @pytest.mark.asyncio
    async def test_index_failure_rolls_back_tracking(self, store, cache):
        await seed_order(store, "O-1", 100)
        rid = await seed_refund(store, "O-1", 100)
        store.fail_on.add(("add", RETURN_INDEX))

        with pytest.raises(RuntimeError):
            await initiate_return(store, return_payload(rid), cache=cache)

        detail = await store.get(REFUND_DETAILS, rid)
        assert detail["return_trackings"] == []


class TestReturnStatus:

    @pytest.mark.asyncio
    async def test_received_sets_actual_return_date(self, store, cache):
        await seed_order(store, "O-1", 100)
        rid = await seed_refund(store, "O-1", 100)
        tracking = await initiate_return(store, return_payload(rid), cache=cache)

        updated = await update_return_status(store, tracking["id"], "RECEIVED", cache=cache)

        assert updated["return_status"] == "RECEIVED"
        assert updated["actual_return_date"] is not None
        assert updated["refund_detail_id"] == rid

        embedded = (await store.get(REFUND_DETAILS, rid))["return_trackings"][0]
        assert embedded["return_status"] == "RECEIVED"
        assert embedded["actual_return_date"] == updated["actual_return_date"]
        assert (await store.get(RETURN_INDEX, tracking["id"]))["return_status"] == "RECEIVED"

    @pytest.mark.asyncio
    async def test_second_receive_keeps_first_date(self, store, cache):
        await seed_order(store, "O-1", 100)
        rid = await seed_refund(store, "O-1", 100)
        tracking = await initiate_return(store, return_payload(rid), cache=cache)

        first = await update_return_status(store, tracking["id"], "RECEIVED", cache=cache)
        await update_return_status(store, tracking["id"], "INSPECTING", cache=cache)
        again = await update_return_status(store, tracking["id"], "RECEIVED", cache=cache)

        assert again["actual_return_date"] == first["actual_return_date"]

    @pytest.mark.asyncio
    async def test_any_status_may_follow_any_other(self, store, cache):
        await seed_order(store, "O-1", 100)
        rid = await seed_refund(store, "O-1", 100)
        tracking = await initiate_return(store, return_payload(rid, return_status="RESTOCKED"), cache=cache)

        updated = await update_return_status(store, tracking["id"], "PENDING", cache=cache)
        assert updated["return_status"] == "PENDING"

    @pytest.mark.asyncio
    async def test_every_action_maps_to_a_status(self, store, cache):
        await seed_order(store, "O-1", 100)
        rid = await seed_refund(store, "O-1", 100)
        tracking = await initiate_return(store, return_payload(rid), cache=cache)

        for slug, status in RETURN_ACTIONS.items():
            updated = await update_return_status(store, tracking["id"], status, cache=cache)
            assert updated["return_status"] == status.value, slug

    @pytest.mark.asyncio
    async def test_unknown_status(self, store, cache):
        with pytest.raises(ValidationError):
            await update_return_status(store, "T-1", "BURNED", cache=cache)

    @pytest.mark.asyncio
    async def test_unknown_return(self, store, cache):
        with pytest.raises(NotFoundError):
            await update_return_status(store, "NOPE", "RECEIVED", cache=cache)

    @pytest.mark.asyncio
    async def test_index_points_at_missing_detail(self, store, cache):
        await store.set(RETURN_INDEX, "T-1", {"refund_detail_id": "GONE", "order_id": "O-1"})

        with pytest.raises(NotFoundError):
            await update_return_status(store, "T-1", "RECEIVED", cache=cache)

    @pytest.mark.asyncio
    async def test_detail_missing_the_tracking(self, store, cache):
        await seed_order(store, "O-1", 100)
        rid = await seed_refund(store, "O-1", 100)
        await store.set(RETURN_INDEX, "T-1", {"refund_detail_id": rid, "order_id": "O-1"})

        with pytest.raises(NotFoundError):
            await update_return_status(store, "T-1", "RECEIVED", cache=cache)

    @pytest.mark.asyncio
    async def test_index_failure_rolls_back_embedded_status(self, store, cache):
        await seed_order(store, "O-1", 100)
        rid = await seed_refund(store, "O-1", 100)
        tracking = await initiate_return(store, return_payload(rid), cache=cache)
        store.fail_on.add(("update", RETURN_INDEX))

        with pytest.raises(RuntimeError):
            await update_return_status(store, tracking["id"], "RECEIVED", cache=cache)

        embedded = (await store.get(REFUND_DETAILS, rid))["return_trackings"][0]
        assert embedded["return_status"] == "PENDING"


class TestReturnIndex:

    @pytest.mark.asyncio
    async def test_get_and_list(self, store, cache):
        await seed_order(store, "O-1", 100)
        await seed_order(store, "O-2", 100)
        r1 = await seed_refund(store, "O-1", 100)
        r2 = await seed_refund(store, "O-2", 100)
        t1 = await initiate_return(store, return_payload(r1), cache=cache)
        await initiate_return(store, return_payload(r2, return_status="IN_TRANSIT"), cache=cache)

        assert (await get_return(store, t1["id"]))["refund_detail_id"] == r1
        assert len(await list_returns(store)) == 2
        assert len(await list_returns(store, order_id="O-1")) == 1
        assert len(await list_returns(store, return_status="IN_TRANSIT")) == 1

        with pytest.raises(NotFoundError):
            await get_return(store, "NOPE")

    @pytest.mark.asyncio
    async def test_rebuild_restores_missing_and_drops_stale(self, store, cache):
        await seed_order(store, "O-1", 100)
        rid = await seed_refund(store, "O-1", 100)
        tracking = await initiate_return(store, return_payload(rid), cache=cache)

        await store.delete(RETURN_INDEX, tracking["id"])
        await store.set(RETURN_INDEX, "STALE", {"refund_detail_id": "GONE", "order_id": "O-1"})

        written = await rebuild_return_index(store)

        assert written == 1
        ids = {e["id"] for e in store.all(RETURN_INDEX)}
        assert ids == {tracking["id"]}
        entry = await store.get(RETURN_INDEX, tracking["id"])
        assert entry["refund_detail_id"] == rid
        assert entry["return_status"] == "PENDING"

    @pytest.mark.asyncio
    async def test_rebuild_scoped_to_order(self, store, cache):
        await seed_order(store, "O-1", 100)
        await seed_order(store, "O-2", 100)
        r1 = await seed_refund(store, "O-1", 100)
        await initiate_return(store, return_payload(r1), cache=cache)
        await store.set(RETURN_INDEX, "OTHER-STALE", {"refund_detail_id": "GONE", "order_id": "O-2"})

        written = await rebuild_return_index(store, order_id="O-1")

        assert written == 1
        assert await store.get(RETURN_INDEX, "OTHER-STALE") is not None

    @pytest.mark.asyncio
    async def test_rebuild_does_not_undo_concurrent_status_change(self, store, cache):
        await seed_order(store, "O-1", 100)
        rid = await seed_refund(store, "O-1", 100)
        tracking = await initiate_return(store, return_payload(rid), cache=cache)
        store.yield_on_read = True

        await asyncio.gather(
            rebuild_return_index(store),
            update_return_status(store, tracking["id"], "RECEIVED", cache=cache),
        )

        embedded = (await store.get(REFUND_DETAILS, rid))["return_trackings"][0]
        entry = await store.get(RETURN_INDEX, tracking["id"])
        assert embedded["return_status"] == "RECEIVED"
        assert entry["return_status"] == "RECEIVED"

    @pytest.mark.asyncio
    async def test_rebuild_does_not_resurrect_deleted_detail(self, store, cache):
        await seed_order(store, "O-1", 100)
        rid = await seed_refund(store, "O-1", 100)
        await initiate_return(store, return_payload(rid), cache=cache)
        store.yield_on_read = True

        await asyncio.gather(
            rebuild_return_index(store),
            delete_refund(store, rid, cache=cache),
        )

        assert store.all(REFUND_DETAILS) == []
        assert store.all(RETURN_INDEX) == []

import pytest

from config.constants import AUDIT_LOGS, ORDERS, REFUND_DETAILS, SYSTEM_ACTOR
from helpers import seed_order, seed_refund
from models.order import OrderRecord
from utils.errors import ConsistencyError
from utils.order_delta import apply_order_delta, get_order, ingest_orders, list_orders
from utils.snapshot import validate_refund_details_sum_equals_order


class TestApplyOrderDelta:

    @pytest.mark.asyncio
    async def test_new_order_creates_no_correction(self, store, cache):
        outcome = await apply_order_delta(store, "O-1", 500, order_fields={"store_name": "Main"}, cache=cache)

        assert outcome == {"order_id": "O-1", "created": True, "correction": None}
        order = await store.get(ORDERS, "O-1")
        assert order["buyer_refund_amount"] == 500
        assert order["store_name"] == "Main"
        assert order["refund_account"]["account_status"] == "UNINITIATED"
        assert store.all(REFUND_DETAILS) == []

    @pytest.mark.asyncio
    async def test_increase_creates_initiated_correction(self, store, cache):
        await apply_order_delta(store, "O-1", 500, cache=cache)
        await seed_refund(store, "O-1", 500)

        outcome = await apply_order_delta(store, "O-1", 800, cache=cache)

        correction = outcome["correction"]
        assert correction["refund_amount"] == 300.0
        assert correction["refund_type"] == "OTHERS"
        assert correction["status"] == "INITIATED"
        assert correction["accounting_status"] == "UNACCOUNTED"
        assert correction["created_by"] == SYSTEM_ACTOR

        stored = await store.get(REFUND_DETAILS, correction["id"])
        assert stored["refund_amount"] == 300.0
        assert (await store.get(ORDERS, "O-1"))["buyer_refund_amount"] == 800

        totals = await validate_refund_details_sum_equals_order(store, "O-1")
        assert totals["actual_total"] == 800.0

        actions = [a["action"] for a in store.all(AUDIT_LOGS)]
        assert "REFUND_CORRECTION_CREATED" in actions

    @pytest.mark.asyncio
    async def test_decrease_creates_processing_correction(self, store, cache):
        await seed_order(store, "O-1", 800)

        outcome = await apply_order_delta(store, "O-1", 650, cache=cache)

        assert outcome["correction"]["refund_amount"] == -150.0
        assert outcome["correction"]["status"] == "PROCESSING"

    @pytest.mark.asyncio
    async def test_change_below_epsilon_is_ignored(self, store, cache):
        await seed_order(store, "O-1", 100)
        await seed_refund(store, "O-1", 100)

        outcome = await apply_order_delta(store, "O-1", 100.005, cache=cache)

        assert outcome["correction"] is None
        assert len(store.all(REFUND_DETAILS)) == 1
        await validate_refund_details_sum_equals_order(store, "O-1")

    @pytest.mark.asyncio
    async def test_change_at_epsilon_creates_correction(self, store, cache):
        await seed_order(store, "O-1", 100)

        outcome = await apply_order_delta(store, "O-1", 100.01, cache=cache)

        assert outcome["correction"]["refund_amount"] == 0.01

    @pytest.mark.asyncio
    async def test_correction_reopens_fully_accounted_order(self, store, cache):
        await seed_order(store, "O-1", 500)
        await seed_refund(store, "O-1", 500, accounting_status="FULLY_ACCOUNTED")

        await apply_order_delta(store, "O-1", 800, cache=cache)

        order = await store.get(ORDERS, "O-1")
        assert order["refund_account"]["account_status"] == "PARTIALLY_ACCOUNTED"

    @pytest.mark.asyncio
    async def test_ingested_refund_account_is_ignored(self, store, cache):
        await seed_order(store, "O-1", 100)

        await apply_order_delta(
            store,
            "O-1",
            100,
            order_fields={"refund_account": {"accounted_refund_amount": 999, "account_status": "FULLY_ACCOUNTED"}},
            cache=cache,
        )

        order = await store.get(ORDERS, "O-1")
        assert order["refund_account"] == {"accounted_refund_amount": 0.0, "account_status": "UNINITIATED"}

    @pytest.mark.asyncio
    async def test_failed_correction_leaves_order_untouched(self, store, cache):
        await seed_order(store, "O-1", 500)
        store.fail_on.add(("add", REFUND_DETAILS))

        with pytest.raises(RuntimeError):
            await apply_order_delta(store, "O-1", 800, cache=cache)

        assert (await store.get(ORDERS, "O-1"))["buyer_refund_amount"] == 500


class TestIngestOrders:

    @pytest.mark.asyncio
    async def test_batch_continues_past_bad_records(self, store, cache):
        results = await ingest_orders(
            store,
            [
                {"order_id": "O-1", "buyer_refund_amount": 0},
                {"buyer_refund_amount": 10},
                {"order_id": "O-2", "buyer_refund_amount": 0},
            ],
            cache=cache,
        )

        assert results["total"] == 3
        assert results["successful"] == 2
        assert results["failed"] == 1
        assert len(results["errors"]) == 1
        assert {o["id"] for o in await list_orders(store)} == {"O-1", "O-2"}

    @pytest.mark.asyncio
    async def test_reports_corrections_and_mismatches(self, store, cache):
        await seed_order(store, "O-1", 500)
        await seed_refund(store, "O-1", 500)
        await seed_order(store, "O-2", 200)

        results = await ingest_orders(
            store,
            [
                {"order_id": "O-1", "buyer_refund_amount": 800},
                {"order_id": "O-3", "buyer_refund_amount": 50},
            ],
            cache=cache,
        )

        assert results["successful"] == 2
        assert [c["refund_amount"] for c in results["corrections"]] == [300.0]
        # O-3 is new with no refund details yet
        assert [m["order_id"] for m in results["mismatches"]] == ["O-3"]

    @pytest.mark.asyncio
    async def test_validation_can_be_skipped(self, store, cache):
        results = await ingest_orders(
            store,
            [{"order_id": "O-1", "buyer_refund_amount": 50}],
            validate=False,
            cache=cache,
        )
        assert results["mismatches"] == []

        with pytest.raises(ConsistencyError):
            await validate_refund_details_sum_equals_order(store, "O-1")

    @pytest.mark.asyncio
    async def test_get_order(self, store):
        await seed_order(store, "O-1", 10)
        assert (await get_order(store, "O-1"))["buyer_refund_amount"] == 10


class TestSheetRows:

    def test_from_sheet_row(self):
        record = OrderRecord.from_sheet_row({
            "Order No": " 250101ABC ",
            "BigSeller Store Name": "Main Store",
            "Merchant SKU": "SKU-A\nSKU-B",
            "Sales Volume": "2\n1",
            "Gift": "No\nYes",
            "Order Revenue": "1,234.50",
            "Buyer Refund Amount": "₱ 300.00",
            "Profit Rate": "12.5%",
            "Order Time": "2024-03-01 10:15",
            "Completed Time": "",
        })

        assert record.order_id == "250101ABC"
        assert record.store_name == "Main Store"
        assert [(i.merchant_sku, i.sales_volume, i.is_gift) for i in record.items] == [
            ("SKU-A", 2.0, False),
            ("SKU-B", 1.0, True),
        ]
        assert record.order_revenue == 1234.5
        assert record.buyer_refund_amount == 300.0
        assert record.profit_rate == 12.5
        assert record.order_time.hour == 10
        assert record.completed_time is None
        assert record.commission_fee == 0

    @pytest.mark.asyncio
    async def test_ingest_sheet_records(self, store, cache):
        record = OrderRecord.from_sheet_row({"Order No": "O-9", "Buyer Refund Amount": "75"})

        results = await ingest_orders(store, [record], validate=False, cache=cache)

        assert results["successful"] == 1
        assert (await store.get(ORDERS, "O-9"))["buyer_refund_amount"] == 75.0

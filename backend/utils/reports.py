from collections import defaultdict

from config.constants import ORDERS, REFUND_DETAILS
from models.order import AccountStatus
from models.refund import RefundType
from utils.money import ZERO, to_decimal


def _amount(value):
    try:
        return to_decimal(value or 0)
    except ValueError:
        return ZERO


# ==============================
# Refund summary
# ==============================

async def refund_summary(store) -> dict:
    details = await store.find(REFUND_DETAILS, {})

    total = ZERO
    by_type = defaultdict(lambda: ZERO)
    for detail in details:
        amount = _amount(detail.get("refund_amount"))
        total += amount
        by_type[detail.get("refund_type") or "UNKNOWN"] += amount

    return {
        "total_amount": float(total),
        "by_type": {k: float(v) for k, v in by_type.items()},
    }


# ==============================
# Accounting status (snapshot based)
# ==============================

async def accounting_status_totals(store) -> dict:
    orders = await store.find(ORDERS, {})

    totals = {}
    for order in orders:
        account = order.get("refund_account") or {}
        status = account.get("account_status") or AccountStatus.UNINITIATED.value

        bucket = totals.setdefault(status, {"amount": ZERO, "count": 0})
        bucket["amount"] += _amount(order.get("buyer_refund_amount"))
        bucket["count"] += 1

    return {
        status: {"amount": float(bucket["amount"]), "count": bucket["count"]}
        for status, bucket in totals.items()
    }


async def financial_impact(store) -> dict:
    orders = await store.find(ORDERS, {})

    total_refunds = sum((_amount(o.get("buyer_refund_amount")) for o in orders), ZERO)
    total_accounted = sum(
        (_amount((o.get("refund_account") or {}).get("accounted_refund_amount")) for o in orders),
        ZERO,
    )

    return {
        "total_refunds": float(total_refunds),
        "total_accounted": float(total_accounted),
        "recovery_rate": float(total_accounted / total_refunds) if total_refunds else 0.0,
    }


# ==============================
# Cause-specific reports
# ==============================

async def staff_error_report(store) -> dict:
    details = await store.find(REFUND_DETAILS, {"refund_type": RefundType.INCORRECT_PACKING.value})

    by_staff = {}
    for detail in details:
        staff = (detail.get("packing_error") or {}).get("packed_by_staff_code") or "UNKNOWN"
        variance = sum(
            (_amount(d.get("variance")) for d in detail.get("discrepancies") or [] if isinstance(d, dict)),
            ZERO,
        )

        row = by_staff.setdefault(staff, {"count": 0, "total_variance": ZERO})
        row["count"] += 1
        row["total_variance"] += variance

    return {
        staff: {"count": row["count"], "total_variance": float(row["total_variance"])}
        for staff, row in by_staff.items()
    }


async def defective_products_report(store) -> list[dict]:
    details = await store.find(REFUND_DETAILS, {"refund_type": RefundType.DEFECTIVE_PRODUCTS.value})

    items = []
    for detail in details:
        for item in detail.get("defective_items") or []:
            if not isinstance(item, dict):
                continue
            items.append({
                "order_id": detail.get("order_id"),
                "refund_detail_id": detail["id"],
                **item,
            })
    return items

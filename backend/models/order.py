from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import Field

from models.refund import StoredModel
from utils.money import parse_amount, parse_datetime, parse_percentage


class AccountStatus(str, Enum):
    UNINITIATED = "UNINITIATED"
    PARTIALLY_ACCOUNTED = "PARTIALLY_ACCOUNTED"
    FULLY_ACCOUNTED = "FULLY_ACCOUNTED"


class RefundAccount(StoredModel):
    accounted_refund_amount: float = 0
    account_status: AccountStatus = AccountStatus.UNINITIATED


class OrderItem(StoredModel):
    merchant_sku: str
    sales_volume: float = 0
    is_gift: bool = False


# Column titles of the marketplace order export
SHEET_AMOUNT_COLUMNS = {
    "order_revenue": "Order Revenue",
    "commodity_cost": "Commodity Cost",
    "profit_loss": "Profit/Loss",
    "product_sales": "Product Sales",
    "shipping_fee_paid_by_buyer": "Shipping Fee Paid by Buyer",
    "subsidy_for_discount_promotion": "Subsidy for Discount & Promotion",
    "commission_fee": "Commission Fee",
    "transaction_fee": "Transaction Fee",
    "service_charge": "Service Charge",
    "shipping_fee_paid_by_seller": "Shipping Fee Paid by Seller",
    "marketing_fees": "Marketing Fees",
    "buyer_refund_amount": "Buyer Refund Amount",
    "other_platform_fees": "Other Platform Fees",
}

SHEET_DATE_COLUMNS = {
    "order_time": "Order Time",
    "confirm_time": "Confirm Time",
    "release_time": "Release Time",
    "update_time": "Update Time",
    "completed_time": "Completed Time",
}


class OrderRecord(StoredModel):
    """
    One ingested order. refund_account is deliberately absent:
    it belongs to the snapshot engine.
    """

    order_id: str = Field(..., min_length=1)
    store_name: Optional[str] = None
    items: List[OrderItem] = Field(default_factory=list)

    order_revenue: float = 0
    commodity_cost: float = 0
    profit_loss: float = 0
    profit_rate: float = 0
    product_sales: float = 0
    shipping_fee_paid_by_buyer: float = 0
    subsidy_for_discount_promotion: float = 0
    commission_fee: float = 0
    transaction_fee: float = 0
    service_charge: float = 0
    shipping_fee_paid_by_seller: float = 0
    marketing_fees: float = 0
    buyer_refund_amount: float = 0
    other_platform_fees: float = 0

    order_time: Optional[datetime] = None
    confirm_time: Optional[datetime] = None
    release_time: Optional[datetime] = None
    update_time: Optional[datetime] = None
    completed_time: Optional[datetime] = None
    order_status: Optional[str] = None

    @classmethod
    def from_sheet_row(cls, row: dict) -> "OrderRecord":
        data = {
            "order_id": str(row.get("Order No") or "").strip(),
            "store_name": row.get("BigSeller Store Name") or None,
            "items": _parse_items(
                row.get("Merchant SKU"),
                row.get("Sales Volume"),
                row.get("Gift"),
            ),
            "profit_rate": float(parse_percentage(row.get("Profit Rate"))),
            "order_status": row.get("Order Status") or None,
        }
        for field, column in SHEET_AMOUNT_COLUMNS.items():
            data[field] = float(parse_amount(row.get(column)))
        for field, column in SHEET_DATE_COLUMNS.items():
            data[field] = parse_datetime(row.get(column))

        return cls(**data)


def _parse_items(skus, volumes, gifts) -> List[OrderItem]:
    # Multi-item orders put one value per line in each column
    if not skus:
        return []

    sku_list = [s.strip() for s in str(skus).split("\n") if s.strip()]
    volume_list = [parse_amount(v) for v in str(volumes).split("\n")] if volumes else []
    gift_list = [g.strip().lower() == "yes" for g in str(gifts).split("\n")] if gifts else []

    items = []
    for index, sku in enumerate(sku_list):
        items.append(OrderItem(
            merchant_sku=sku,
            sales_volume=float(volume_list[index]) if index < len(volume_list) else 0,
            is_gift=gift_list[index] if index < len(gift_list) else False,
        ))
    return items

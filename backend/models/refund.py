from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class StoredModel(BaseModel):
    model_config = ConfigDict(use_enum_values=True)


class RefundType(str, Enum):
    ORDER_CANCELLED = "ORDER_CANCELLED"
    INCORRECT_PACKING = "INCORRECT_PACKING"
    FAILED_DELIVERY = "FAILED_DELIVERY"
    DEFECTIVE_PRODUCTS = "DEFECTIVE_PRODUCTS"
    CUSTOMER_CHANGED_MIND = "CUSTOMER_CHANGED_MIND"
    PLATFORM_FEES = "PLATFORM_FEES"
    OTHERS = "OTHERS"


class RefundStatus(str, Enum):
    INITIATED = "INITIATED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class AccountingStatus(str, Enum):
    UNACCOUNTED = "UNACCOUNTED"
    PARTIALLY_ACCOUNTED = "PARTIALLY_ACCOUNTED"
    FULLY_ACCOUNTED = "FULLY_ACCOUNTED"


class ReturnStatus(str, Enum):
    PENDING = "PENDING"
    IN_TRANSIT = "IN_TRANSIT"
    RECEIVED = "RECEIVED"
    INSPECTING = "INSPECTING"
    RESTOCKED = "RESTOCKED"
    DISCREPANCY_FOUND = "DISCREPANCY_FOUND"
    LOST_BY_COURIER = "LOST_BY_COURIER"
    PAID_BY_COURIER = "PAID_BY_COURIER"


class ItemCondition(str, Enum):
    GOOD = "GOOD"
    DAMAGED = "DAMAGED"
    MISSING = "MISSING"


class ReconciliationStatus(str, Enum):
    PENDING = "PENDING"
    MATCHED = "MATCHED"
    VARIANCE_FOUND = "VARIANCE_FOUND"


# =====================================================
# RETURNS
# =====================================================

class ReturnItem(StoredModel):
    sku_name: str = Field(..., min_length=1)
    quantity: float = Field(..., ge=0)
    unit_price: float = Field(..., ge=0)
    condition: ItemCondition
    restocked_date: Optional[datetime] = None
    restocked_by: Optional[str] = None


class ReturnTracking(StoredModel):
    id: str = Field(..., min_length=1)
    return_status: ReturnStatus = ReturnStatus.PENDING
    return_items: List[ReturnItem] = Field(default_factory=list)
    total_return_value: float = 0
    return_initiated_date: Optional[datetime] = None
    expected_return_date: Optional[datetime] = None
    actual_return_date: Optional[datetime] = None
    reason: Optional[str] = None


class ReturnInitiate(StoredModel):
    refund_detail_id: str = Field(..., min_length=1)
    return_items: List[ReturnItem] = Field(..., min_length=1)
    return_status: ReturnStatus = ReturnStatus.PENDING
    expected_return_date: Optional[datetime] = None
    reason: Optional[str] = None


# =====================================================
# REFUNDS
# =====================================================

def _check_negative_amount(amount, refund_type):
    if amount is not None and amount < 0 and refund_type != RefundType.OTHERS:
        raise ValueError("Negative refund_amount is only allowed for refund_type OTHERS")


class RefundInitiate(StoredModel):
    order_id: str = Field(..., min_length=1)
    refund_amount: float
    refund_type: RefundType
    status: RefundStatus = RefundStatus.INITIATED
    accounting_status: AccountingStatus = AccountingStatus.UNACCOUNTED
    refund_date: Optional[datetime] = None
    return_trackings: List[ReturnTracking] = Field(default_factory=list)
    packing_error: Optional[dict] = None
    defective_items: Optional[List[dict]] = None
    discrepancies: Optional[List[dict]] = None
    created_by: Optional[str] = None

    @model_validator(mode="after")
    def negative_only_for_others(self):
        _check_negative_amount(self.refund_amount, self.refund_type)
        return self


class RefundSplitEntry(StoredModel):
    """Fields left unset are inherited from the refund being split."""

    order_id: Optional[str] = None
    refund_amount: Optional[float] = None
    refund_type: Optional[RefundType] = None
    status: Optional[RefundStatus] = None
    accounting_status: Optional[AccountingStatus] = None
    refund_date: Optional[datetime] = None
    return_trackings: Optional[List[ReturnTracking]] = None
    packing_error: Optional[dict] = None
    defective_items: Optional[List[dict]] = None
    discrepancies: Optional[List[dict]] = None
    created_by: Optional[str] = None


class RefundChanges(StoredModel):
    model_config = ConfigDict(use_enum_values=True, extra="forbid")

    return_trackings: Optional[List[ReturnTracking]] = None
    accounting_status: Optional[AccountingStatus] = None
    status: Optional[RefundStatus] = None


class BulkRefundUpdate(StoredModel):
    id: str = Field(..., min_length=1)
    changes: RefundChanges
    last_updated_at: Optional[datetime] = None


# =====================================================
# RECONCILIATION
# =====================================================

class ReconcileRequest(StoredModel):
    expected_value: float = 0
    actual_value: float = 0
    status: ReconciliationStatus
    notes: Optional[str] = None
    reconciled_by: Optional[str] = None

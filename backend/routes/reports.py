from fastapi import APIRouter, Depends

from database import get_store
from utils.reports import (
    accounting_status_totals,
    defective_products_report,
    financial_impact,
    refund_summary,
    staff_error_report,
)
from utils.security import require_api_key

router = APIRouter(
    prefix="/reports",
    tags=["Reports"],
    dependencies=[Depends(require_api_key)],
)


@router.get("/refund-summary")
async def report_refund_summary(store=Depends(get_store)):
    return {"success": True, **await refund_summary(store)}


@router.get("/accounting-status")
async def report_accounting_status(store=Depends(get_store)):
    return {"success": True, "status_totals": await accounting_status_totals(store)}


@router.get("/financial-impact")
async def report_financial_impact(store=Depends(get_store)):
    return {"success": True, "totals": await financial_impact(store)}


@router.get("/staff-errors")
async def report_staff_errors(store=Depends(get_store)):
    return {"success": True, "by_staff": await staff_error_report(store)}


@router.get("/defective-products")
async def report_defective_products(store=Depends(get_store)):
    items = await defective_products_report(store)
    return {"success": True, "count": len(items), "items": items}

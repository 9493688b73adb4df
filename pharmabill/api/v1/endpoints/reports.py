"""GST report endpoints. All amounts are in paise."""
from datetime import date
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query

from pharmabill.api.deps import DB, Tenant
from pharmabill.services.invoice_sequence_service import business_date
from pharmabill.services.report_service import ReportService

router = APIRouter()


@router.get("/hsn-summary")
async def hsn_summary(
    db: DB,
    tenant: Tenant,
    date_from: date = Query(..., alias="from"),
    date_to: date = Query(..., alias="to"),
):
    """HSN-wise summary for GSTR-1."""
    return await ReportService(db).hsn_summary(tenant, date_from, date_to)


@router.get("/daily-summary")
async def daily_summary(
    db: DB,
    tenant: Tenant,
    day: Optional[date] = Query(None, alias="date"),
):
    """End-of-day sales summary (defaults to today)."""
    return await ReportService(db).daily_summary(tenant, day or business_date())


@router.get("/year-end-summary")
async def year_end_summary(
    db: DB,
    tenant: Tenant,
    year: Optional[int] = None,
    seller_org_id: Optional[UUID] = None,
):
    """Calendar-year GST summary (defaults to the current year)."""
    return await ReportService(db).year_end_summary(tenant, year or business_date().year, seller_org_id)

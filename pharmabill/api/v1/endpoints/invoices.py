"""Invoice lookup, payments and status transitions."""
from datetime import date
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query

from pharmabill.api.deps import DB, Tenant, Provider
from pharmabill.models.billing import InvoiceStatus, InvoiceType
from pharmabill.schemas.billing import (
    InvoiceDetailResponse,
    InvoiceListResponse,
    InvoiceResponse,
    RecordPaymentsResponse,
)
from pharmabill.schemas.payment import PaymentResponse, RecordPaymentsRequest
from pharmabill.services.invoice_service import InvoiceService
from pharmabill.services.payment_ledger_service import PaymentLedgerService

router = APIRouter()


@router.get("", response_model=InvoiceListResponse)
async def list_invoices(
    db: DB,
    tenant: Tenant,
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    status: Optional[InvoiceStatus] = None,
    invoice_type: Optional[InvoiceType] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    """List invoices with optional filters."""
    items, total = await InvoiceService(db).list_invoices(
        tenant,
        date_from=date_from,
        date_to=date_to,
        status=status.value if status else None,
        invoice_type=invoice_type.value if invoice_type else None,
        skip=skip,
        limit=limit,
    )
    return InvoiceListResponse(
        items=[InvoiceResponse.model_validate(i) for i in items],
        total=total,
    )


@router.get("/{invoice_id}", response_model=InvoiceDetailResponse)
async def get_invoice(invoice_id: UUID, db: DB, tenant: Tenant):
    """Get an invoice with line items, tax lines and payments."""
    return await InvoiceService(db).get_invoice(tenant, invoice_id)


@router.post("/{invoice_id}/payments", response_model=RecordPaymentsResponse)
async def record_payments(
    invoice_id: UUID,
    payload: RecordPaymentsRequest,
    db: DB,
    tenant: Tenant,
    provider: Provider,
):
    """Record one or more tenders against an invoice."""
    result = await PaymentLedgerService(db, provider).record_payments(tenant, invoice_id, payload.payments)
    return RecordPaymentsResponse(
        payments=[PaymentResponse.model_validate(p) for p in result.payments],
        invoice=InvoiceResponse.model_validate(result.invoice),
        remaining_due_paise=result.remaining_due_paise,
    )


@router.post("/{invoice_id}/issue", response_model=InvoiceResponse)
async def issue_invoice(invoice_id: UUID, db: DB, tenant: Tenant):
    """Issue a DRAFT invoice."""
    return await InvoiceService(db).issue_invoice(tenant, invoice_id)


@router.post("/{invoice_id}/cancel", response_model=InvoiceResponse)
async def cancel_invoice(invoice_id: UUID, db: DB, tenant: Tenant):
    """Cancel an unpaid DRAFT or ISSUED invoice."""
    return await InvoiceService(db).cancel_invoice(tenant, invoice_id)


@router.post("/{invoice_id}/file", response_model=InvoiceResponse)
async def mark_invoice_filed(invoice_id: UUID, db: DB, tenant: Tenant):
    """Mark an ISSUED invoice as included in a GST return."""
    return await InvoiceService(db).mark_filed(tenant, invoice_id)

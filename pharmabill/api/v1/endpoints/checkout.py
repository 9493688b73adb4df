"""POS checkout endpoint."""
import logging

from fastapi import APIRouter, status
from sqlalchemy.exc import IntegrityError

from pharmabill.api.deps import DB, Tenant, Provider
from pharmabill.models.billing import Invoice
from pharmabill.schemas.billing import CheckoutRequest, CheckoutResponse, InvoiceDetailResponse
from pharmabill.services.invoice_service import InvoiceService
from pharmabill.services.payment_ledger_service import PaymentLedgerService

router = APIRouter()
logger = logging.getLogger(__name__)


def _checkout_response(invoice: Invoice) -> CheckoutResponse:
    return CheckoutResponse(
        id=invoice.id,
        invoice_no=invoice.invoice_number,
        invoice=InvoiceDetailResponse.model_validate(invoice),
        remaining_due_paise=invoice.balance_due_paise,
    )


@router.post("/checkout", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def checkout(
    payload: CheckoutRequest,
    db: DB,
    tenant: Tenant,
    provider: Provider,
):
    """
    Price the cart, assemble the invoice and record any tenders.

    A repeated request with the same idempotency key returns the invoice
    created the first time.
    """
    service = InvoiceService(db)

    if payload.idempotency_key:
        existing = await service.find_by_idempotency_key(tenant, payload.idempotency_key)
        if existing:
            return _checkout_response(existing)

    try:
        invoice = await service.create_invoice(tenant, payload)
    except IntegrityError:
        # a concurrent request with the same key committed first
        if not payload.idempotency_key:
            raise
        await db.rollback()
        existing = await service.find_by_idempotency_key(tenant, payload.idempotency_key)
        if not existing:
            raise
        logger.info(f"Checkout {payload.idempotency_key} raced; returning {existing.invoice_number}")
        return _checkout_response(existing)

    if payload.payments:
        await PaymentLedgerService(db, provider).record_payments(tenant, invoice.id, payload.payments)
        invoice = await service.get_invoice(tenant, invoice.id)

    return _checkout_response(invoice)

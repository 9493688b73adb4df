"""Payment confirmation and provider webhook."""
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Header, Request

from pharmabill.api.deps import DB, Tenant, Provider
from pharmabill.schemas.payment import ConfirmPaymentRequest, FailPaymentRequest, PaymentResponse
from pharmabill.services.payment_ledger_service import PaymentLedgerService

router = APIRouter()


@router.post("/webhook", response_model=PaymentResponse)
async def payment_webhook(
    request: Request,
    db: DB,
    provider: Provider,
    x_webhook_signature: Optional[str] = Header(None),
):
    """
    Provider callback for captured or failed payments.

    The body must be signed (HMAC-SHA256) with the configured webhook secret.
    """
    body = await request.body()
    return await PaymentLedgerService(db, provider).handle_provider_event(body, x_webhook_signature)


@router.post("/{payment_id}/confirm", response_model=PaymentResponse)
async def confirm_payment(
    payment_id: UUID,
    db: DB,
    tenant: Tenant,
    provider: Provider,
    payload: Optional[ConfirmPaymentRequest] = None,
):
    """Confirm an INITIATED payment. Repeating the call is harmless."""
    return await PaymentLedgerService(db, provider).confirm_payment(
        tenant,
        payment_id,
        payload.provider_payment_id if payload else None,
    )


@router.post("/{payment_id}/fail", response_model=PaymentResponse)
async def fail_payment(
    payment_id: UUID,
    payload: FailPaymentRequest,
    db: DB,
    tenant: Tenant,
    provider: Provider,
):
    """Mark an INITIATED payment as failed."""
    return await PaymentLedgerService(db, provider).fail_payment(tenant, payment_id, payload.reason)

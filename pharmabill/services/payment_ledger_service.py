"""Payment ledger: multi-method, partial and credit settlement of invoices.

Rules:
- remaining due = invoice total - sum of PAID payments; new tenders may
  not exceed it (OVERPAYMENT)
- CASH and CREDIT settle immediately (PAID); other methods start
  INITIATED and are confirmed later by the provider or the API
- CREDIT needs a customer; balance + credit may not exceed the limit
  (CREDIT_LIMIT_EXCEEDED) and each credit sale appends a DEBIT entry
- paid amount is always recomputed from PAID rows, never incremented,
  so replayed confirmations cannot double-credit an invoice
"""
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from pydantic import ValidationError
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from pharmabill.core.errors import BillingError, ErrorKind, invalid_input, not_found
from pharmabill.core.tenant_context import TenantContext
from pharmabill.models.billing import (
    Invoice,
    Payment,
    InvoiceStatus,
    PaymentMethod,
    PaymentRecordStatus,
    PaymentStatus,
    INSTANT_METHODS,
)
from pharmabill.models.customer import LedgerEntryType
from pharmabill.schemas.payment import PaymentIn, ProviderEvent, SplitPayment
from pharmabill.services.customer_service import CustomerService
from pharmabill.services.invoice_service import InvoiceService
from pharmabill.services.payment_provider import PaymentProvider, PaymentProviderError, verify_webhook_signature


logger = logging.getLogger(__name__)


@dataclass
class PaymentBatchResult:
    """Outcome of recording one or more tenders against an invoice."""
    invoice: Invoice
    payments: List[Payment] = field(default_factory=list)

    @property
    def remaining_due_paise(self) -> int:
        return self.invoice.total_invoice_paise - self.invoice.paid_amount_paise


def settlement_status(total_paise: int, paid_paise: int) -> PaymentStatus:
    """PAID once PAID rows cover the total, PARTIALLY_PAID for anything in between."""
    if paid_paise >= total_paise:
        return PaymentStatus.PAID
    if paid_paise > 0:
        return PaymentStatus.PARTIALLY_PAID
    return PaymentStatus.PENDING


def flatten_payments(payments: Sequence[PaymentIn]) -> List[Tuple[PaymentIn, Optional[uuid.UUID]]]:
    """Expand SPLIT tenders into their parts, tagged with a shared group id."""
    flat: List[Tuple[PaymentIn, Optional[uuid.UUID]]] = []
    for payment in payments:
        if isinstance(payment, SplitPayment):
            group_id = uuid.uuid4()
            flat.extend((part, group_id) for part in payment.parts)
        else:
            flat.append((payment, None))
    return flat


class PaymentLedgerService:
    """Service for recording and settling payments against invoices."""

    def __init__(self, db: AsyncSession, provider: Optional[PaymentProvider] = None):
        self.db = db
        self.provider = provider
        self.invoices = InvoiceService(db)
        self.customers = CustomerService(db)

    async def _sum_paid(self, invoice_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.sum(Payment.amount_paise), 0)).where(
                Payment.invoice_id == invoice_id,
                Payment.status == PaymentRecordStatus.PAID.value,
                Payment.is_refund == False,  # noqa: E712
            )
        )
        return int(result.scalar() or 0)

    async def refresh_settlement(self, invoice: Invoice) -> None:
        """Recompute paid amount and payment status from PAID rows."""
        invoice.paid_amount_paise = await self._sum_paid(invoice.id)
        if invoice.payment_status != PaymentStatus.REFUNDED.value:
            invoice.payment_status = settlement_status(
                invoice.total_invoice_paise, invoice.paid_amount_paise
            ).value
        await self.db.flush()

    async def _get_payment(self, payment_id: uuid.UUID, tenant: Optional[TenantContext] = None) -> Payment:
        stmt = select(Payment).where(Payment.id == payment_id).with_for_update()
        if tenant:
            stmt = stmt.where(Payment.tenant_id == tenant.tenant_id)
        result = await self.db.execute(stmt)
        payment = result.scalar_one_or_none()
        if not payment:
            raise not_found(f"Payment {payment_id} not found", payment_id=str(payment_id))
        return payment

    async def _ensure_provider_id_unused(self, provider_payment_id: str, payment_id: Optional[uuid.UUID] = None) -> None:
        stmt = select(Payment.id).where(Payment.provider_payment_id == provider_payment_id)
        if payment_id:
            stmt = stmt.where(Payment.id != payment_id)
        result = await self.db.execute(stmt)
        if result.first():
            raise invalid_input(
                f"Provider payment id {provider_payment_id} is already recorded",
                provider_payment_id=provider_payment_id,
            )

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record_payments(
        self,
        tenant: TenantContext,
        invoice_id: uuid.UUID,
        payments: Sequence[PaymentIn],
    ) -> PaymentBatchResult:
        """
        Record tenders against an invoice.

        Raises:
            BillingError: NOT_FOUND, INVALID_INPUT, OVERPAYMENT,
                CREDIT_LIMIT_EXCEEDED, PROVIDER_ERROR
        """
        if not payments:
            raise invalid_input("At least one payment is required")

        invoice = await self.invoices.get_invoice(tenant, invoice_id, for_update=True)
        if invoice.status == InvoiceStatus.CANCELLED.value:
            raise invalid_input(f"Invoice {invoice.invoice_number} is cancelled")
        if invoice.is_credit_note:
            raise invalid_input("Payments cannot be recorded against a credit note")

        tenders = flatten_payments(payments)
        requested = sum(tender.amount_paise for tender, _ in tenders)
        already_paid = await self._sum_paid(invoice.id)
        remaining_due = invoice.total_invoice_paise - already_paid
        if requested > remaining_due:
            raise BillingError(
                ErrorKind.OVERPAYMENT,
                f"Payment of {requested} paise exceeds remaining due {remaining_due} paise",
                {"requested_paise": requested, "remaining_due_paise": remaining_due},
            )

        credit_requested = sum(
            tender.amount_paise for tender, _ in tenders if tender.method == PaymentMethod.CREDIT.value
        )
        customer = None
        if credit_requested:
            if not invoice.customer_id:
                raise invalid_input("Credit payment requires a customer on the invoice")
            customer = await self.customers.get_customer(tenant, invoice.customer_id, for_update=True)
            limit = customer.credit_limit_paise
            if limit is not None and customer.credit_balance_paise + credit_requested > limit:
                raise BillingError(
                    ErrorKind.CREDIT_LIMIT_EXCEEDED,
                    f"Credit of {credit_requested} paise exceeds limit: balance "
                    f"{customer.credit_balance_paise}, limit {limit}",
                    {
                        "balance_paise": customer.credit_balance_paise,
                        "limit_paise": limit,
                        "requested_paise": credit_requested,
                    },
                )

        seen_provider_ids = set()
        for tender, _ in tenders:
            if tender.provider_payment_id:
                if tender.provider_payment_id in seen_provider_ids:
                    raise invalid_input(f"Duplicate provider payment id {tender.provider_payment_id}")
                seen_provider_ids.add(tender.provider_payment_id)
                await self._ensure_provider_id_unused(tender.provider_payment_id)

        now = datetime.now(timezone.utc)
        created: List[Payment] = []
        for tender, group_id in tenders:
            instant = tender.method in INSTANT_METHODS
            payment = Payment(
                tenant_id=tenant.tenant_id,
                invoice_id=invoice.id,
                method=tender.method,
                amount_paise=tender.amount_paise,
                status=PaymentRecordStatus.PAID.value if instant else PaymentRecordStatus.INITIATED.value,
                provider_payment_id=tender.provider_payment_id,
                details=tender.method_details() or None,
                split_group_id=group_id,
                paid_at=now if instant else None,
            )
            self.db.add(payment)
            created.append(payment)
        await self.db.flush()

        for payment in created:
            if payment.method == PaymentMethod.CREDIT.value:
                await self.customers.append_ledger_entry(
                    customer,
                    LedgerEntryType.DEBIT,
                    payment.amount_paise,
                    invoice_id=invoice.id,
                    payment_id=payment.id,
                    description=f"Credit sale {invoice.invoice_number}",
                )

        await self.refresh_settlement(invoice)
        await self._register_with_provider(invoice, created)

        logger.info(
            f"Recorded {len(created)} payment(s) totalling {requested} paise on "
            f"{invoice.invoice_number}; status {invoice.payment_status}"
        )
        return PaymentBatchResult(invoice=invoice, payments=created)

    async def _register_with_provider(self, invoice: Invoice, payments: Sequence[Payment]) -> None:
        """
        Hand INITIATED payments to the provider.

        On failure those payments are marked FAILED and the transaction is
        committed before PROVIDER_ERROR is raised, so the invoice and the
        failed attempt stay on record.
        """
        pending = [p for p in payments if p.status == PaymentRecordStatus.INITIATED.value]
        if not self.provider or not pending:
            return

        for payment in pending:
            try:
                reference = await self.provider.register_payment(payment, invoice)
            except PaymentProviderError as e:
                logger.error(f"Provider rejected payment {payment.id} on {invoice.invoice_number}: {e}")
                for failed in pending:
                    if failed.status == PaymentRecordStatus.INITIATED.value:
                        failed.status = PaymentRecordStatus.FAILED.value
                        failed.failure_reason = f"Provider error: {e}"[:500]
                await self.db.commit()
                raise BillingError(
                    ErrorKind.PROVIDER_ERROR,
                    "Payment provider is unavailable",
                    {"payment_id": str(payment.id), "invoice_id": str(invoice.id)},
                )
            if reference and not payment.provider_payment_id:
                payment.provider_payment_id = reference
        await self.db.flush()

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    async def confirm_payment(
        self,
        tenant: TenantContext,
        payment_id: uuid.UUID,
        provider_payment_id: Optional[str] = None,
    ) -> Payment:
        """
        Mark an INITIATED payment PAID. Replays on a PAID payment are no-ops.

        Raises:
            BillingError: NOT_FOUND, INVALID_INPUT (failed payment),
                OVERPAYMENT (confirmation would exceed the invoice total)
        """
        payment = await self._get_payment(payment_id, tenant)
        invoice = await self.invoices.get_invoice(tenant, payment.invoice_id, for_update=True)

        if payment.status == PaymentRecordStatus.PAID.value:
            logger.info(f"Payment {payment.id} already confirmed; ignoring replay")
            return payment
        if payment.status != PaymentRecordStatus.INITIATED.value:
            raise invalid_input(
                f"Payment {payment.id} is {payment.status} and cannot be confirmed",
                status=payment.status,
            )

        if provider_payment_id and provider_payment_id != payment.provider_payment_id:
            await self._ensure_provider_id_unused(provider_payment_id, payment.id)
            payment.provider_payment_id = provider_payment_id

        already_paid = await self._sum_paid(invoice.id)
        if already_paid + payment.amount_paise > invoice.total_invoice_paise:
            raise BillingError(
                ErrorKind.OVERPAYMENT,
                f"Confirming {payment.amount_paise} paise would exceed invoice total "
                f"{invoice.total_invoice_paise} (already paid {already_paid})",
                {
                    "requested_paise": payment.amount_paise,
                    "remaining_due_paise": invoice.total_invoice_paise - already_paid,
                },
            )

        payment.status = PaymentRecordStatus.PAID.value
        payment.paid_at = datetime.now(timezone.utc)
        await self.db.flush()
        await self.refresh_settlement(invoice)

        logger.info(
            f"Confirmed payment {payment.id} ({payment.amount_paise} paise) on "
            f"{invoice.invoice_number}; status {invoice.payment_status}"
        )
        return payment

    async def fail_payment(self, tenant: TenantContext, payment_id: uuid.UUID, reason: str) -> Payment:
        """Mark an INITIATED payment FAILED. Replays on a FAILED payment are no-ops."""
        payment = await self._get_payment(payment_id, tenant)
        if payment.status == PaymentRecordStatus.FAILED.value:
            return payment
        if payment.status != PaymentRecordStatus.INITIATED.value:
            raise invalid_input(
                f"Payment {payment.id} is {payment.status} and cannot be failed",
                status=payment.status,
            )
        payment.status = PaymentRecordStatus.FAILED.value
        payment.failure_reason = reason
        await self.db.flush()
        logger.warning(f"Payment {payment.id} failed: {reason}")
        return payment

    async def handle_provider_event(self, body: bytes, signature: Optional[str]) -> Payment:
        """
        Apply a signed provider webhook.

        The payment is located by provider payment id (or our payment id);
        the tenant context is taken from the payment's invoice.
        """
        if not verify_webhook_signature(body, signature):
            raise invalid_input("Invalid webhook signature")

        try:
            event = ProviderEvent.model_validate(json.loads(body))
        except (ValueError, ValidationError) as e:
            raise invalid_input(f"Malformed webhook body: {e}")

        stmt = select(Payment)
        if event.payment_id:
            stmt = stmt.where(Payment.id == event.payment_id)
        else:
            stmt = stmt.where(Payment.provider_payment_id == event.provider_payment_id)
        result = await self.db.execute(stmt)
        payment = result.scalar_one_or_none()
        if not payment:
            raise not_found(
                f"No payment for provider id {event.provider_payment_id}",
                provider_payment_id=event.provider_payment_id,
            )

        invoice_result = await self.db.execute(
            select(Invoice.seller_org_id).where(Invoice.id == payment.invoice_id)
        )
        tenant = TenantContext(tenant_id=payment.tenant_id, seller_org_id=invoice_result.scalar_one())

        logger.info(f"Webhook {event.event} for payment {payment.id}")
        if event.event == "payment.captured":
            return await self.confirm_payment(tenant, payment.id, event.provider_payment_id)
        return await self.fail_payment(tenant, payment.id, event.reason or "Declined by provider")

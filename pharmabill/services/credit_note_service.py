"""Returns and credit notes.

A return produces a CREDIT_NOTE invoice that mirrors the returned part of
the original sale with every amount negated. Amounts come from what the
original lines actually charged, prorated on the cumulative returned
quantity, so a line returned in several parts nets to exactly zero. The
credit note goes through the same draft/reconcile assembly as a sale.

Refunds are capped at what was collected on the original invoice and not
yet refunded.

Returned stock goes back through the inventory gateway once per
(original line, return batch); a replayed return with the same
idempotency key returns the existing credit note and restocks nothing.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from pharmabill.config import settings
from pharmabill.core.errors import BillingError, ErrorKind, invalid_input, not_found
from pharmabill.core.money import bps_to_rate
from pharmabill.core.tenant_context import TenantContext
from pharmabill.models.billing import (
    Invoice,
    InvoiceLineItem,
    Payment,
    InvoiceType,
    InvoiceStatus,
    PaymentMethod,
    PaymentRecordStatus,
    PaymentStatus,
    REPORTABLE_STATUSES,
)
from pharmabill.models.customer import Customer, LedgerEntryType
from pharmabill.models.restock import RestockRecord
from pharmabill.schemas.returns import ReturnRequest
from pharmabill.services.customer_service import CustomerService
from pharmabill.services.invoice_sequence_service import SERIES_CREDIT_NOTE
from pharmabill.services.invoice_service import InvoiceService
from pharmabill.services.inventory_gateway import InventoryGateway, NullInventoryGateway, RestockError
from pharmabill.services.tax_engine import (
    CartLine,
    LineCharge,
    LineReturn,
    TaxInclusion,
    reverse_returns,
)


logger = logging.getLogger(__name__)

NOTHING_CREDITED = LineCharge(quantity=0)


@dataclass
class ReturnOutcome:
    credit_note: Invoice
    original_invoice: Invoice


class CreditNoteService:
    """Service for sales returns."""

    def __init__(self, db: AsyncSession, inventory: Optional[InventoryGateway] = None):
        self.db = db
        self.inventory = inventory or NullInventoryGateway()
        self.invoices = InvoiceService(db)
        self.customers = CustomerService(db)

    async def credited_charges(self, line_item_ids: List[uuid.UUID]) -> Dict[uuid.UUID, LineCharge]:
        """Quantity and amounts already credited per original line, across live credit notes."""
        if not line_item_ids:
            return {}
        result = await self.db.execute(
            select(
                InvoiceLineItem.original_line_item_id,
                func.coalesce(func.sum(InvoiceLineItem.quantity), 0),
                func.coalesce(func.sum(InvoiceLineItem.discount_paise), 0),
                func.coalesce(func.sum(InvoiceLineItem.taxable_paise), 0),
                func.coalesce(func.sum(InvoiceLineItem.cgst_paise), 0),
                func.coalesce(func.sum(InvoiceLineItem.sgst_paise), 0),
                func.coalesce(func.sum(InvoiceLineItem.igst_paise), 0),
            )
            .join(Invoice, Invoice.id == InvoiceLineItem.invoice_id)
            .where(
                InvoiceLineItem.original_line_item_id.in_(line_item_ids),
                Invoice.status != InvoiceStatus.CANCELLED.value,
            )
            .group_by(InvoiceLineItem.original_line_item_id)
        )
        # credit note rows are negative; keep the credited amounts positive
        return {
            line_id: LineCharge(
                quantity=int(qty),
                discount_paise=-int(discount),
                taxable_paise=-int(taxable),
                cgst_paise=-int(cgst),
                sgst_paise=-int(sgst),
                igst_paise=-int(igst),
            )
            for line_id, qty, discount, taxable, cgst, sgst, igst in result.all()
        }

    async def refunded_amount(self, original_invoice_id: uuid.UUID) -> int:
        """Total already refunded through credit notes of an invoice."""
        result = await self.db.execute(
            select(func.coalesce(func.sum(Payment.amount_paise), 0))
            .join(Invoice, Invoice.id == Payment.invoice_id)
            .where(
                Invoice.original_invoice_id == original_invoice_id,
                Payment.is_refund == True,  # noqa: E712
                Payment.status == PaymentRecordStatus.PAID.value,
            )
        )
        return int(result.scalar() or 0)

    async def process_return(self, tenant: TenantContext, request: ReturnRequest) -> ReturnOutcome:
        """
        Create a credit note for returned lines, restock and optionally refund.

        Raises:
            BillingError: NOT_FOUND (invoice or line), INVALID_INPUT (quantity,
                invoice state), RESTOCK_FAILURE, RECONCILIATION_FAILURE
        """
        if request.idempotency_key:
            existing = await self.invoices.find_by_idempotency_key(tenant, request.idempotency_key)
            if existing:
                if not existing.is_credit_note or existing.original_invoice_id != request.original_invoice_id:
                    raise invalid_input(
                        f"Idempotency key {request.idempotency_key} was used for a different request"
                    )
                logger.info(f"Return replay {request.idempotency_key}; returning {existing.invoice_number}")
                original = await self.invoices.get_invoice(tenant, existing.original_invoice_id)
                return ReturnOutcome(credit_note=existing, original_invoice=original)

        original = await self.invoices.get_invoice(tenant, request.original_invoice_id, for_update=True)
        if original.is_credit_note:
            raise invalid_input("Cannot return against a credit note")
        if original.status not in REPORTABLE_STATUSES:
            raise invalid_input(
                f"Returns are only accepted against issued invoices (invoice is {original.status})",
                status=original.status,
            )

        lines_by_id = {line.id: line for line in original.line_items}
        requested_ids = [item.line_item_id for item in request.line_items]
        if len(set(requested_ids)) != len(requested_ids):
            raise invalid_input("Each invoice line may appear only once in a return")
        for line_id in requested_ids:
            if line_id not in lines_by_id:
                raise not_found(
                    f"Line item {line_id} not found on invoice {original.invoice_number}",
                    line_item_id=str(line_id),
                )

        credited = await self.credited_charges(requested_ids)
        for item in request.line_items:
            line = lines_by_id[item.line_item_id]
            returnable = line.quantity - credited.get(line.id, NOTHING_CREDITED).quantity
            if item.quantity > returnable:
                raise invalid_input(
                    f"Cannot return {item.quantity} of {line.product_name}; {returnable} returnable",
                    line_item_id=str(line.id),
                    returnable=returnable,
                )

        customer = None
        refundable = 0
        if request.refund_method:
            if request.refund_method == PaymentMethod.CREDIT.value:
                if not original.customer_id:
                    raise invalid_input("Credit refund requires a customer on the original invoice")
                customer = await self.customers.get_customer(tenant, original.customer_id, for_update=True)
            refunded = await self.refunded_amount(original.id)
            refundable = original.paid_amount_paise - refunded
            if refundable <= 0:
                raise invalid_input(
                    f"Nothing collected on {original.invoice_number} is left to refund",
                    paid_amount_paise=original.paid_amount_paise,
                    refunded_paise=refunded,
                )

        cart_lines: List[CartLine] = []
        returns: List[LineReturn] = []
        for item in request.line_items:
            line = lines_by_id[item.line_item_id]
            cart_lines.append(CartLine(
                product_ref=line.product_ref,
                product_name=line.product_name,
                hsn_code=line.hsn_code,
                quantity=item.quantity,
                unit_price_paise=line.unit_price_paise,
                gst_rate_percent=bps_to_rate(line.gst_rate_bps),
                tax_inclusion=TaxInclusion(line.tax_inclusion),
                batch_ref=line.batch_ref,
                unit_cost_paise=line.unit_cost_paise,
            ))
            returns.append(LineReturn(
                gst_rate_bps=line.gst_rate_bps,
                sold=LineCharge(
                    quantity=line.quantity,
                    discount_paise=line.discount_paise,
                    taxable_paise=line.taxable_paise,
                    cgst_paise=line.cgst_paise,
                    sgst_paise=line.sgst_paise,
                    igst_paise=line.igst_paise,
                ),
                credited=credited.get(line.id, NOTHING_CREDITED),
                quantity=item.quantity,
            ))

        computation = reverse_returns(returns, original.is_inter_state)

        seller = TenantContext(
            tenant_id=tenant.tenant_id,
            seller_org_id=original.seller_org_id,
            seller_gstin_id=original.seller_gstin_id,
        )
        draft = await self.invoices.persist_draft(
            seller,
            lines=cart_lines,
            computation=computation,
            seller_state_code=original.seller_state_code,
            place_of_supply=original.place_of_supply,
            invoice_type=InvoiceType.CREDIT_NOTE,
            series=SERIES_CREDIT_NOTE,
            returns=returns,
            original_line_ids=requested_ids,
            customer_id=original.customer_id,
            buyer_name=original.buyer_name,
            buyer_gstin=original.buyer_gstin,
            original_invoice_id=original.id,
            return_reason=request.reason,
            idempotency_key=request.idempotency_key,
        )
        reconciled = await self.invoices.reconcile(draft)
        credit_note = reconciled.invoice
        credit_note.status = InvoiceStatus.ISSUED.value
        credit_note.issued_at = datetime.now(timezone.utc)
        await self.db.flush()

        return_batch_ref = request.idempotency_key or str(credit_note.id)
        for item in request.line_items:
            await self._restock_line(tenant, credit_note, lines_by_id[item.line_item_id], item.quantity, return_batch_ref)

        if request.refund_method:
            await self._refund(tenant, credit_note, request.refund_method, customer, refundable)

        await self._mark_original_if_fully_returned(original)

        logger.info(
            f"Created credit note {credit_note.invoice_number} for {original.invoice_number} "
            f"total={credit_note.total_invoice_paise}"
        )
        credit_note = await self.invoices.get_invoice(tenant, credit_note.id)
        original = await self.invoices.get_invoice(tenant, original.id)
        return ReturnOutcome(credit_note=credit_note, original_invoice=original)

    async def _restock_line(
        self,
        tenant: TenantContext,
        credit_note: Invoice,
        line: InvoiceLineItem,
        quantity: int,
        return_batch_ref: str,
    ) -> None:
        """Restock once per (line, return batch), retrying transient failures."""
        result = await self.db.execute(
            select(RestockRecord.id).where(
                RestockRecord.original_line_item_id == line.id,
                RestockRecord.return_batch_ref == return_batch_ref,
            )
        )
        if result.first():
            logger.info(f"Line {line.id} already restocked for {return_batch_ref}")
            return

        idempotency_key = f"{return_batch_ref}:{line.id}"
        attempts = max(settings.RESTOCK_MAX_ATTEMPTS, 1)
        for attempt in range(1, attempts + 1):
            try:
                await self.inventory.restock(
                    tenant,
                    product_ref=line.product_ref,
                    batch_ref=line.batch_ref,
                    quantity=quantity,
                    idempotency_key=idempotency_key,
                )
                break
            except RestockError as e:
                logger.warning(f"Restock attempt {attempt}/{attempts} for line {line.id} failed: {e}")
                if attempt == attempts:
                    raise BillingError(
                        ErrorKind.RESTOCK_FAILURE,
                        f"Could not restock {line.product_name}; return aborted",
                        {"line_item_id": str(line.id), "attempts": attempts},
                    )

        self.db.add(RestockRecord(
            tenant_id=tenant.tenant_id,
            original_line_item_id=line.id,
            return_batch_ref=return_batch_ref,
            credit_note_id=credit_note.id,
            product_ref=line.product_ref,
            batch_ref=line.batch_ref,
            quantity=quantity,
        ))
        await self.db.flush()

    async def _refund(
        self,
        tenant: TenantContext,
        credit_note: Invoice,
        method: str,
        customer: Optional[Customer],
        refundable: int,
    ) -> None:
        due = abs(credit_note.total_invoice_paise)
        amount = min(due, refundable)
        if amount < due:
            logger.info(
                f"Refund on {credit_note.invoice_number} capped at {amount} of {due}; "
                f"only {refundable} collected and not yet refunded"
            )
        refund = Payment(
            tenant_id=tenant.tenant_id,
            invoice_id=credit_note.id,
            method=method,
            amount_paise=amount,
            status=PaymentRecordStatus.PAID.value,
            is_refund=True,
            paid_at=datetime.now(timezone.utc),
        )
        self.db.add(refund)
        await self.db.flush()

        if method == PaymentMethod.CREDIT.value:
            await self.customers.append_ledger_entry(
                customer,
                LedgerEntryType.CREDIT,
                amount,
                invoice_id=credit_note.id,
                payment_id=refund.id,
                description=f"Return {credit_note.invoice_number}",
            )

        credit_note.paid_amount_paise = -amount
        credit_note.payment_status = (
            PaymentStatus.REFUNDED.value if amount == due else PaymentStatus.PARTIALLY_PAID.value
        )
        await self.db.flush()

    async def _mark_original_if_fully_returned(self, original: Invoice) -> None:
        credited = await self.credited_charges([line.id for line in original.line_items])
        if all(credited.get(line.id, NOTHING_CREDITED).quantity >= line.quantity for line in original.line_items):
            original.payment_status = PaymentStatus.REFUNDED.value
            await self.db.flush()
            logger.info(f"Invoice {original.invoice_number} fully returned")

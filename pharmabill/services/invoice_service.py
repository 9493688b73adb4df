"""Invoice assembly and lifecycle.

An invoice is written in two phases inside one transaction:

1. DraftInvoice: number allocated, header with engine totals, tax lines,
   and line items in cart order with zero tax allocations.
2. ReconciledInvoice: line items are re-read by position, allocations are
   recomputed with the same engine inputs and written back, then the
   persisted rows are checked against the header and tax lines.

A failed check raises RECONCILIATION_FAILURE; the request transaction
rolls back, so a half-reconciled invoice is never committed.

Lifecycle: DRAFT -> ISSUED -> FILED, DRAFT/ISSUED -> CANCELLED.
"""
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, func
from sqlalchemy.orm import selectinload
from sqlalchemy.ext.asyncio import AsyncSession

from pharmabill.config import settings
from pharmabill.core.errors import BillingError, ErrorKind, invalid_input, not_found
from pharmabill.core.money import round_to_rupee
from pharmabill.core.tenant_context import TenantContext
from pharmabill.models.billing import (
    Invoice,
    InvoiceLineItem,
    TaxLine,
    InvoiceType,
    InvoiceStatus,
    PaymentRecordStatus,
    TaxType,
)
from pharmabill.schemas.billing import CheckoutRequest
from pharmabill.services.customer_service import CustomerService
from pharmabill.services.invoice_sequence_service import (
    InvoiceSequenceService,
    SERIES_INVOICE,
    business_date,
)
from pharmabill.services.tax_engine import (
    CartLine,
    LineReturn,
    TaxComputation,
    compute_tax,
    distribute_bill_discount,
    reverse_returns,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DraftInvoice:
    """Persisted header, tax lines and unallocated line items."""
    invoice: Invoice
    cart_lines: Tuple[CartLine, ...]
    returns: Tuple[LineReturn, ...] = ()


@dataclass(frozen=True)
class ReconciledInvoice:
    """Invoice whose line allocations match its header and tax lines."""
    invoice: Invoice
    computation: TaxComputation


class InvoiceService:
    """Service for invoice assembly, lookup and status transitions."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def get_invoice(
        self,
        tenant: TenantContext,
        invoice_id: uuid.UUID,
        for_update: bool = False,
    ) -> Invoice:
        """Load an invoice of the tenant with lines, tax lines and payments."""
        stmt = (
            select(Invoice)
            .options(
                selectinload(Invoice.line_items),
                selectinload(Invoice.tax_lines),
                selectinload(Invoice.payments),
            )
            .where(
                Invoice.id == invoice_id,
                Invoice.tenant_id == tenant.tenant_id,
            )
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        invoice = result.scalar_one_or_none()
        if not invoice:
            raise not_found(f"Invoice {invoice_id} not found", invoice_id=str(invoice_id))
        return invoice

    async def find_by_idempotency_key(self, tenant: TenantContext, key: str) -> Optional[Invoice]:
        result = await self.db.execute(
            select(Invoice.id).where(
                Invoice.tenant_id == tenant.tenant_id,
                Invoice.idempotency_key == key,
            )
        )
        invoice_id = result.scalar_one_or_none()
        if invoice_id is None:
            return None
        return await self.get_invoice(tenant, invoice_id)

    async def list_invoices(
        self,
        tenant: TenantContext,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        status: Optional[str] = None,
        invoice_type: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[Invoice], int]:
        """List invoices with optional date, status and type filters."""
        filters = [Invoice.tenant_id == tenant.tenant_id]
        if date_from:
            filters.append(Invoice.invoice_date >= date_from)
        if date_to:
            filters.append(Invoice.invoice_date <= date_to)
        if status:
            filters.append(Invoice.status == status)
        if invoice_type:
            filters.append(Invoice.invoice_type == invoice_type)

        total = (await self.db.execute(select(func.count(Invoice.id)).where(*filters))).scalar() or 0
        result = await self.db.execute(
            select(Invoice)
            .where(*filters)
            .order_by(Invoice.invoice_date.desc(), Invoice.invoice_number.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    async def create_invoice(self, tenant: TenantContext, request: CheckoutRequest) -> Invoice:
        """
        Build, persist and reconcile a sales invoice from a checkout request.

        Raises:
            BillingError: INVALID_INPUT / NOT_FOUND for bad input,
                RECONCILIATION_FAILURE if persisted rows disagree
        """
        customer = None
        if request.customer_id:
            customer = await CustomerService(self.db).get_customer(tenant, request.customer_id)

        buyer_state_code = request.buyer_state_code or (customer.state_code if customer else None)
        buyer_gstin = request.buyer_gstin or (customer.gstin if customer else None)
        buyer_name = request.buyer_name or (customer.name if customer else None)

        lines = distribute_bill_discount(
            request.cart_lines(),
            request.bill_discount_paise,
            request.bill_discount_percent,
        )
        computation = compute_tax(lines, request.seller_state_code, buyer_state_code or "")

        round_off = settings.ROUND_OFF_TO_RUPEE if request.round_off is None else request.round_off
        round_off_paise = round_to_rupee(computation.grand_total_paise)[1] if round_off else 0

        invoice_type = InvoiceType.B2B if buyer_gstin else InvoiceType.B2C
        if request.cash_memo:
            total = computation.grand_total_paise + round_off_paise
            if buyer_gstin:
                raise invalid_input("A cash memo cannot be issued to a GST-registered buyer")
            if total >= settings.CASH_MEMO_THRESHOLD_PAISE:
                raise invalid_input(
                    f"Cash memo total {total} must be below {settings.CASH_MEMO_THRESHOLD_PAISE} paise",
                    total_paise=total,
                )
            invoice_type = InvoiceType.CASH_MEMO

        draft = await self.persist_draft(
            tenant,
            lines=lines,
            computation=computation,
            seller_state_code=request.seller_state_code,
            place_of_supply=buyer_state_code,
            invoice_type=invoice_type,
            round_off_paise=round_off_paise,
            customer_id=customer.id if customer else None,
            buyer_name=buyer_name,
            buyer_gstin=buyer_gstin,
            idempotency_key=request.idempotency_key,
        )
        reconciled = await self.reconcile(draft)

        invoice = reconciled.invoice
        if request.issue:
            invoice.status = InvoiceStatus.ISSUED.value
            invoice.issued_at = datetime.now(timezone.utc)
            await self.db.flush()

        logger.info(
            f"Created invoice {invoice.invoice_number} ({invoice.invoice_type}, {invoice.status}) "
            f"total={invoice.total_invoice_paise} for tenant {tenant.tenant_id}"
        )
        return await self.get_invoice(tenant, invoice.id)

    async def persist_draft(
        self,
        tenant: TenantContext,
        *,
        lines: Sequence[CartLine],
        computation: TaxComputation,
        seller_state_code: str,
        place_of_supply: str,
        invoice_type: InvoiceType,
        series: str = SERIES_INVOICE,
        round_off_paise: int = 0,
        returns: Sequence[LineReturn] = (),
        original_line_ids: Optional[Sequence[uuid.UUID]] = None,
        **header: Any,
    ) -> DraftInvoice:
        """
        Phase 1: write header, tax lines and zero-allocation line items.

        ``computation`` must already carry the final sign. Credit notes pass
        the ``returns`` they were reversed from so phase 2 replays the same
        reversal instead of pricing the cart.
        """
        invoice_number = await InvoiceSequenceService(self.db).get_next_number(
            tenant.seller_org_id, series
        )

        invoice = Invoice(
            tenant_id=tenant.tenant_id,
            seller_org_id=tenant.seller_org_id,
            seller_gstin_id=tenant.seller_gstin_id,
            seller_state_code=seller_state_code,
            place_of_supply=place_of_supply,
            is_inter_state=computation.is_inter_state,
            invoice_number=invoice_number,
            invoice_type=invoice_type.value,
            status=InvoiceStatus.DRAFT.value,
            invoice_date=business_date(),
            total_taxable_paise=computation.subtotal_paise,
            total_cgst_paise=computation.cgst_paise,
            total_sgst_paise=computation.sgst_paise,
            total_igst_paise=computation.igst_paise,
            total_gst_paise=computation.tax_total_paise,
            round_off_paise=round_off_paise,
            total_invoice_paise=computation.grand_total_paise + round_off_paise,
            paid_amount_paise=0,
            **header,
        )
        self.db.add(invoice)
        await self.db.flush()

        for bucket in computation.buckets:
            # 0% buckets stay in the computation but carry no tax line
            if bucket.gst_rate_bps == 0 or bucket.tax_paise == 0:
                continue
            for tax_type, amount in (
                (TaxType.CGST, bucket.cgst_paise),
                (TaxType.SGST, bucket.sgst_paise),
                (TaxType.IGST, bucket.igst_paise),
            ):
                if amount:
                    self.db.add(TaxLine(
                        invoice_id=invoice.id,
                        tax_type=tax_type.value,
                        tax_rate_bps=bucket.gst_rate_bps,
                        tax_paise=amount,
                    ))

        for position, line in enumerate(lines):
            self.db.add(InvoiceLineItem(
                invoice_id=invoice.id,
                position=position,
                product_ref=line.product_ref,
                product_name=line.product_name,
                hsn_code=line.hsn_code,
                batch_ref=line.batch_ref,
                quantity=line.quantity,
                unit_price_paise=line.unit_price_paise,
                unit_cost_paise=line.unit_cost_paise,
                gst_rate_bps=line.gst_rate_bps,
                tax_inclusion=line.tax_inclusion.value,
                discount_paise=0,
                taxable_paise=0,
                cgst_paise=0,
                sgst_paise=0,
                igst_paise=0,
                line_total_paise=0,
                original_line_item_id=original_line_ids[position] if original_line_ids else None,
            ))
        await self.db.flush()

        return DraftInvoice(invoice=invoice, cart_lines=tuple(lines), returns=tuple(returns))

    async def reconcile(self, draft: DraftInvoice) -> ReconciledInvoice:
        """Phase 2: backfill line allocations and verify the invoice."""
        invoice = draft.invoice

        result = await self.db.execute(
            select(InvoiceLineItem)
            .where(InvoiceLineItem.invoice_id == invoice.id)
            .order_by(InvoiceLineItem.position)
        )
        rows = list(result.scalars().all())
        if len(rows) != len(draft.cart_lines):
            self._fail_reconciliation(
                invoice,
                [f"expected {len(draft.cart_lines)} line items, found {len(rows)}"],
            )

        if draft.returns:
            computation = reverse_returns(draft.returns, invoice.is_inter_state)
        else:
            computation = compute_tax(draft.cart_lines, invoice.seller_state_code, invoice.place_of_supply)

        for row, allocation in zip(rows, computation.lines):
            row.discount_paise = allocation.discount_paise
            row.taxable_paise = allocation.taxable_paise
            row.cgst_paise = allocation.cgst_paise
            row.sgst_paise = allocation.sgst_paise
            row.igst_paise = allocation.igst_paise
            row.line_total_paise = allocation.line_total_paise
        await self.db.flush()

        await self.verify_reconciled(invoice, rows)
        return ReconciledInvoice(invoice=invoice, computation=computation)

    async def verify_reconciled(self, invoice: Invoice, rows: Sequence[InvoiceLineItem]) -> None:
        """Check persisted line items and tax lines against the header."""
        result = await self.db.execute(select(TaxLine).where(TaxLine.invoice_id == invoice.id))
        tax_lines = list(result.scalars().all())

        problems: List[str] = []

        line_taxable = sum(row.taxable_paise for row in rows)
        if line_taxable != invoice.total_taxable_paise:
            problems.append(f"line taxable {line_taxable} != header {invoice.total_taxable_paise}")

        line_sums: Dict[Tuple[str, int], int] = defaultdict(int)
        for row in rows:
            line_sums[(TaxType.CGST.value, row.gst_rate_bps)] += row.cgst_paise
            line_sums[(TaxType.SGST.value, row.gst_rate_bps)] += row.sgst_paise
            line_sums[(TaxType.IGST.value, row.gst_rate_bps)] += row.igst_paise
        tax_line_sums: Dict[Tuple[str, int], int] = defaultdict(int)
        for tax_line in tax_lines:
            tax_line_sums[(tax_line.tax_type, tax_line.tax_rate_bps)] += tax_line.tax_paise

        for key in sorted(set(line_sums) | set(tax_line_sums)):
            if line_sums[key] != tax_line_sums[key]:
                problems.append(
                    f"{key[0]} at {key[1]}bps: lines {line_sums[key]} != tax line {tax_line_sums[key]}"
                )

        header_by_type = {
            TaxType.CGST.value: invoice.total_cgst_paise,
            TaxType.SGST.value: invoice.total_sgst_paise,
            TaxType.IGST.value: invoice.total_igst_paise,
        }
        for tax_type, header_amount in header_by_type.items():
            tax_line_amount = sum(t.tax_paise for t in tax_lines if t.tax_type == tax_type)
            if tax_line_amount != header_amount:
                problems.append(f"header {tax_type} {header_amount} != tax lines {tax_line_amount}")

        if invoice.total_gst_paise != sum(header_by_type.values()):
            problems.append(f"header GST {invoice.total_gst_paise} != CGST+SGST+IGST")
        expected_total = invoice.total_taxable_paise + invoice.total_gst_paise + invoice.round_off_paise
        if invoice.total_invoice_paise != expected_total:
            problems.append(f"header total {invoice.total_invoice_paise} != {expected_total}")

        if problems:
            self._fail_reconciliation(invoice, problems)

    def _fail_reconciliation(self, invoice: Invoice, problems: List[str]) -> None:
        correlation_id = uuid.uuid4().hex
        logger.error(
            f"Invoice {invoice.invoice_number} failed reconciliation "
            f"[correlation_id={correlation_id}]: {'; '.join(problems)}"
        )
        raise BillingError(
            ErrorKind.RECONCILIATION_FAILURE,
            "Invoice totals could not be reconciled",
            {"correlation_id": correlation_id, "invoice_number": invoice.invoice_number},
        )

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    async def issue_invoice(self, tenant: TenantContext, invoice_id: uuid.UUID) -> Invoice:
        invoice = await self.get_invoice(tenant, invoice_id, for_update=True)
        if invoice.status != InvoiceStatus.DRAFT.value:
            raise invalid_input(
                f"Only DRAFT invoices can be issued (invoice is {invoice.status})",
                status=invoice.status,
            )
        invoice.status = InvoiceStatus.ISSUED.value
        invoice.issued_at = datetime.now(timezone.utc)
        await self.db.flush()
        logger.info(f"Issued invoice {invoice.invoice_number}")
        return invoice

    async def cancel_invoice(self, tenant: TenantContext, invoice_id: uuid.UUID) -> Invoice:
        """Cancel a DRAFT or ISSUED invoice that has not been paid or returned against."""
        invoice = await self.get_invoice(tenant, invoice_id, for_update=True)
        if invoice.is_credit_note:
            raise invalid_input("Credit notes cannot be cancelled")
        if invoice.status not in (InvoiceStatus.DRAFT.value, InvoiceStatus.ISSUED.value):
            raise invalid_input(
                f"Cannot cancel an invoice in status {invoice.status}",
                status=invoice.status,
            )
        if any(p.status == PaymentRecordStatus.PAID.value for p in invoice.payments):
            raise invalid_input("Cannot cancel an invoice with settled payments")

        credit_notes = await self.db.execute(
            select(func.count(Invoice.id)).where(Invoice.original_invoice_id == invoice.id)
        )
        if credit_notes.scalar():
            raise invalid_input("Cannot cancel an invoice that has credit notes")

        for payment in invoice.payments:
            if payment.status == PaymentRecordStatus.INITIATED.value:
                payment.status = PaymentRecordStatus.FAILED.value
                payment.failure_reason = "Invoice cancelled"

        invoice.status = InvoiceStatus.CANCELLED.value
        invoice.cancelled_at = datetime.now(timezone.utc)
        await self.db.flush()
        logger.info(f"Cancelled invoice {invoice.invoice_number}")
        return invoice

    async def mark_filed(self, tenant: TenantContext, invoice_id: uuid.UUID) -> Invoice:
        """Record that the invoice has been included in a GST return."""
        invoice = await self.get_invoice(tenant, invoice_id, for_update=True)
        if invoice.status != InvoiceStatus.ISSUED.value:
            raise invalid_input(
                f"Only ISSUED invoices can be filed (invoice is {invoice.status})",
                status=invoice.status,
            )
        invoice.status = InvoiceStatus.FILED.value
        invoice.filed_at = datetime.now(timezone.utc)
        await self.db.flush()
        logger.info(f"Marked invoice {invoice.invoice_number} as filed")
        return invoice

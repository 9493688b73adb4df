"""GST reports.

Read-only aggregates over persisted rows of ISSUED and FILED invoices.
Credit notes are included; their amounts are negative, so returns net
out of every total without special handling. Nothing is recomputed from
prices here.
"""
import logging
import uuid
from collections import defaultdict
from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func, case, distinct
from sqlalchemy.ext.asyncio import AsyncSession

from pharmabill.core.errors import invalid_input
from pharmabill.core.tenant_context import TenantContext
from pharmabill.models.billing import (
    Invoice,
    InvoiceLineItem,
    TaxLine,
    Payment,
    InvoiceType,
    PaymentRecordStatus,
    TaxType,
    REPORTABLE_STATUSES,
)


logger = logging.getLogger(__name__)

TOP_N = 10


def _empty_totals() -> Dict[str, int]:
    return {"count": 0, "taxable_paise": 0, "gst_paise": 0, "invoice_paise": 0}


def _buyer_class(invoice: Invoice) -> str:
    """B2B when the buyer is GST-registered, B2C otherwise (credit notes follow their buyer)."""
    return "B2B" if invoice.buyer_gstin else "B2C"


class ReportService:
    """Service for HSN, daily and year-end GST summaries."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _invoice_filters(
        self,
        tenant: TenantContext,
        date_from: date,
        date_to: date,
        seller_org_id: Optional[uuid.UUID] = None,
    ) -> list:
        filters = [
            Invoice.tenant_id == tenant.tenant_id,
            Invoice.status.in_(REPORTABLE_STATUSES),
            Invoice.invoice_date >= date_from,
            Invoice.invoice_date <= date_to,
        ]
        if seller_org_id:
            filters.append(Invoice.seller_org_id == seller_org_id)
        return filters

    async def _invoices(self, filters: list) -> List[Invoice]:
        result = await self.db.execute(
            select(Invoice).where(*filters).order_by(Invoice.invoice_date, Invoice.invoice_number)
        )
        return list(result.scalars().all())

    async def _tax_by_type(self, filters: list) -> Dict[str, int]:
        result = await self.db.execute(
            select(TaxLine.tax_type, func.coalesce(func.sum(TaxLine.tax_paise), 0))
            .join(Invoice, Invoice.id == TaxLine.invoice_id)
            .where(*filters)
            .group_by(TaxLine.tax_type)
        )
        totals = {t.value: 0 for t in TaxType}
        for tax_type, amount in result.all():
            totals[tax_type] = int(amount)
        return totals

    # ------------------------------------------------------------------
    # HSN summary
    # ------------------------------------------------------------------

    async def hsn_summary(self, tenant: TenantContext, date_from: date, date_to: date) -> Dict[str, Any]:
        """Per HSN code and rate: net quantity, taxable value and tax components."""
        if date_from > date_to:
            raise invalid_input("date_from must not be after date_to")

        filters = self._invoice_filters(tenant, date_from, date_to)
        signed_quantity = case(
            (Invoice.invoice_type == InvoiceType.CREDIT_NOTE.value, -InvoiceLineItem.quantity),
            else_=InvoiceLineItem.quantity,
        )
        result = await self.db.execute(
            select(
                InvoiceLineItem.hsn_code,
                InvoiceLineItem.gst_rate_bps,
                func.sum(signed_quantity),
                func.sum(InvoiceLineItem.taxable_paise),
                func.sum(InvoiceLineItem.cgst_paise),
                func.sum(InvoiceLineItem.sgst_paise),
                func.sum(InvoiceLineItem.igst_paise),
                func.count(InvoiceLineItem.id),
                func.count(distinct(InvoiceLineItem.invoice_id)),
            )
            .join(Invoice, Invoice.id == InvoiceLineItem.invoice_id)
            .where(*filters)
            .group_by(InvoiceLineItem.hsn_code, InvoiceLineItem.gst_rate_bps)
            .order_by(InvoiceLineItem.hsn_code, InvoiceLineItem.gst_rate_bps)
        )

        rows = []
        totals = {
            "taxable_paise": 0,
            "cgst_paise": 0,
            "sgst_paise": 0,
            "igst_paise": 0,
            "gst_paise": 0,
        }
        for hsn, bps, qty, taxable, cgst, sgst, igst, line_count, invoice_count in result.all():
            taxable, cgst, sgst, igst = int(taxable), int(cgst), int(sgst), int(igst)
            gst = cgst + sgst + igst
            rows.append({
                "hsn_code": hsn,
                "gst_rate_bps": bps,
                "quantity": int(qty),
                "taxable_paise": taxable,
                "cgst_paise": cgst,
                "sgst_paise": sgst,
                "igst_paise": igst,
                "gst_paise": gst,
                "line_count": line_count,
                "invoice_count": invoice_count,
            })
            totals["taxable_paise"] += taxable
            totals["cgst_paise"] += cgst
            totals["sgst_paise"] += sgst
            totals["igst_paise"] += igst
            totals["gst_paise"] += gst

        logger.info(f"HSN summary {date_from}..{date_to}: {len(rows)} rows for tenant {tenant.tenant_id}")
        return {"date_from": date_from, "date_to": date_to, "rows": rows, "totals": totals}

    # ------------------------------------------------------------------
    # Daily summary
    # ------------------------------------------------------------------

    async def daily_summary(self, tenant: TenantContext, day: date) -> Dict[str, Any]:
        """Sales, GST, payment methods, buyer classes and top products for one day."""
        filters = self._invoice_filters(tenant, day, day)
        invoices = await self._invoices(filters)

        totals = {
            "taxable_paise": 0,
            "gst_paise": 0,
            "round_off_paise": 0,
            "invoice_paise": 0,
        }
        by_class = {"B2B": _empty_totals(), "B2C": _empty_totals()}
        sales_count = 0
        credit_note_count = 0
        for invoice in invoices:
            if invoice.is_credit_note:
                credit_note_count += 1
            else:
                sales_count += 1
            totals["taxable_paise"] += invoice.total_taxable_paise
            totals["gst_paise"] += invoice.total_gst_paise
            totals["round_off_paise"] += invoice.round_off_paise
            totals["invoice_paise"] += invoice.total_invoice_paise

            bucket = by_class[_buyer_class(invoice)]
            bucket["count"] += 1
            bucket["taxable_paise"] += invoice.total_taxable_paise
            bucket["gst_paise"] += invoice.total_gst_paise
            bucket["invoice_paise"] += invoice.total_invoice_paise

        gst_by_type = await self._tax_by_type(filters)

        signed_amount = case(
            (Payment.is_refund == True, -Payment.amount_paise),  # noqa: E712
            else_=Payment.amount_paise,
        )
        payment_result = await self.db.execute(
            select(Payment.method, func.count(Payment.id), func.sum(signed_amount))
            .join(Invoice, Invoice.id == Payment.invoice_id)
            .where(*filters, Payment.status == PaymentRecordStatus.PAID.value)
            .group_by(Payment.method)
            .order_by(Payment.method)
        )
        payment_methods = {
            method: {"count": count, "amount_paise": int(amount)}
            for method, count, amount in payment_result.all()
        }

        signed_quantity = case(
            (Invoice.invoice_type == InvoiceType.CREDIT_NOTE.value, -InvoiceLineItem.quantity),
            else_=InvoiceLineItem.quantity,
        )
        net_total = func.sum(InvoiceLineItem.line_total_paise)
        product_result = await self.db.execute(
            select(
                InvoiceLineItem.product_ref,
                InvoiceLineItem.product_name,
                func.sum(signed_quantity),
                net_total,
            )
            .join(Invoice, Invoice.id == InvoiceLineItem.invoice_id)
            .where(*filters)
            .group_by(InvoiceLineItem.product_ref, InvoiceLineItem.product_name)
            .order_by(net_total.desc(), InvoiceLineItem.product_ref)
            .limit(TOP_N)
        )
        top_products = [
            {
                "product_ref": ref,
                "product_name": name,
                "quantity": int(qty),
                "total_paise": int(total),
            }
            for ref, name, qty, total in product_result.all()
        ]

        return {
            "date": day,
            "invoice_count": sales_count,
            "credit_note_count": credit_note_count,
            "totals": {
                **totals,
                "cgst_paise": gst_by_type[TaxType.CGST.value],
                "sgst_paise": gst_by_type[TaxType.SGST.value],
                "igst_paise": gst_by_type[TaxType.IGST.value],
            },
            "payment_methods": payment_methods,
            "by_buyer_class": by_class,
            "top_products": top_products,
        }

    # ------------------------------------------------------------------
    # Year-end summary
    # ------------------------------------------------------------------

    async def year_end_summary(
        self,
        tenant: TenantContext,
        year: int,
        seller_org_id: Optional[uuid.UUID] = None,
    ) -> Dict[str, Any]:
        """Calendar-year totals with monthly, buyer-class, HSN and state-wise breakdowns."""
        if not (2000 <= year <= 2999):
            raise invalid_input(f"Invalid year {year}")

        date_from, date_to = date(year, 1, 1), date(year, 12, 31)
        filters = self._invoice_filters(tenant, date_from, date_to, seller_org_id)
        invoices = await self._invoices(filters)

        monthly: Dict[str, Dict[str, int]] = {
            f"{year}-{month:02d}": {
                "count": 0,
                "taxable_paise": 0,
                "cgst_paise": 0,
                "sgst_paise": 0,
                "igst_paise": 0,
                "gst_paise": 0,
                "invoice_paise": 0,
            }
            for month in range(1, 13)
        }
        annual = {
            "count": 0,
            "taxable_paise": 0,
            "cgst_paise": 0,
            "sgst_paise": 0,
            "igst_paise": 0,
            "gst_paise": 0,
            "invoice_paise": 0,
        }
        by_class = {"B2B": _empty_totals(), "B2C": _empty_totals()}
        state_wise: Dict[str, Dict[str, int]] = defaultdict(_empty_totals)

        for invoice in invoices:
            month = monthly[invoice.invoice_date.strftime("%Y-%m")]
            for target in (month, annual):
                target["count"] += 1
                target["taxable_paise"] += invoice.total_taxable_paise
                target["cgst_paise"] += invoice.total_cgst_paise
                target["sgst_paise"] += invoice.total_sgst_paise
                target["igst_paise"] += invoice.total_igst_paise
                target["gst_paise"] += invoice.total_gst_paise
                target["invoice_paise"] += invoice.total_invoice_paise

            for target in (by_class[_buyer_class(invoice)], state_wise[invoice.place_of_supply]):
                target["count"] += 1
                target["taxable_paise"] += invoice.total_taxable_paise
                target["gst_paise"] += invoice.total_gst_paise
                target["invoice_paise"] += invoice.total_invoice_paise

        hsn_taxable = func.sum(InvoiceLineItem.taxable_paise)
        hsn_result = await self.db.execute(
            select(InvoiceLineItem.hsn_code, hsn_taxable)
            .join(Invoice, Invoice.id == InvoiceLineItem.invoice_id)
            .where(*filters)
            .group_by(InvoiceLineItem.hsn_code)
            .order_by(hsn_taxable.desc(), InvoiceLineItem.hsn_code)
            .limit(TOP_N)
        )
        top_hsn = [{"hsn_code": hsn, "taxable_paise": int(taxable)} for hsn, taxable in hsn_result.all()]

        return {
            "year": year,
            "seller_org_id": seller_org_id,
            "annual": annual,
            "monthly": monthly,
            "by_buyer_class": by_class,
            "top_hsn": top_hsn,
            "state_wise": dict(sorted(state_wise.items())),
            "tax_lines": await self._tax_by_type(filters),
        }

"""Billing models: invoices, line items, tax lines and payments.

Supports:
- Tax invoices (B2B with buyer GSTIN, B2C walk-in) and cash memos
- Credit notes for returns (negative amounts, linked to the original)
- Per-rate CGST/SGST/IGST tax lines
- Multi-method, partial and credit payments

All money columns hold integer paise.
"""
import uuid
from datetime import datetime, date, timezone
from enum import Enum
from typing import TYPE_CHECKING, Optional, List

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Text, Date
from sqlalchemy import UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pharmabill.database import Base
from pharmabill.db_types import JSONType, PaiseType, UUIDType

if TYPE_CHECKING:
    from pharmabill.models.customer import Customer


class InvoiceType(str, Enum):
    """Invoice type enumeration."""
    B2B = "B2B"                  # Buyer has a GSTIN
    B2C = "B2C"                  # Walk-in / unregistered buyer
    CREDIT_NOTE = "CREDIT_NOTE"  # Return against an earlier invoice
    CASH_MEMO = "CASH_MEMO"      # Small B2C cash sale


class InvoiceStatus(str, Enum):
    """Invoice lifecycle. Invoices are never deleted, only transitioned."""
    DRAFT = "DRAFT"
    ISSUED = "ISSUED"
    FILED = "FILED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    """Settlement state of an invoice."""
    PENDING = "PENDING"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    REFUNDED = "REFUNDED"


class TaxType(str, Enum):
    CGST = "CGST"
    SGST = "SGST"
    IGST = "IGST"


class PaymentMethod(str, Enum):
    """Payment method enumeration."""
    CASH = "CASH"
    CARD = "CARD"
    UPI = "UPI"
    WALLET = "WALLET"
    CHEQUE = "CHEQUE"
    BANK_TRANSFER = "BANK_TRANSFER"
    CREDIT = "CREDIT"
    SPLIT = "SPLIT"


class PaymentRecordStatus(str, Enum):
    """Status of a single payment row."""
    INITIATED = "INITIATED"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


# Settled at the counter; everything else waits for provider confirmation
INSTANT_METHODS = {PaymentMethod.CASH.value, PaymentMethod.CREDIT.value}

# Invoices that count towards reports and accept returns
REPORTABLE_STATUSES = (InvoiceStatus.ISSUED.value, InvoiceStatus.FILED.value)


class Invoice(Base):
    """
    GST invoice or credit note.

    Header totals always satisfy:
        total_invoice = total_taxable + total_gst + round_off
        total_gst = total_cgst + total_sgst + total_igst
    """
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("seller_org_id", "invoice_number", name="uq_invoice_seller_number"),
        UniqueConstraint("tenant_id", "idempotency_key", name="uq_invoice_idempotency"),
        Index("ix_invoices_tenant_date", "tenant_id", "invoice_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    # Ownership
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    seller_org_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False)
    seller_gstin_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    seller_state_code: Mapped[str] = mapped_column(
        String(2),
        nullable=False,
        comment="GST state code of the selling location"
    )

    # Buyer
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("customers.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )
    buyer_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    buyer_gstin: Mapped[Optional[str]] = mapped_column(String(15), nullable=True)
    place_of_supply: Mapped[str] = mapped_column(
        String(2),
        nullable=False,
        comment="Buyer state code"
    )
    is_inter_state: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Identity
    invoice_number: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        index=True,
        comment="INV-YYYYMMDD-NNNN or CN-YYYYMMDD-NNNN"
    )
    invoice_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=InvoiceType.B2C.value,
        comment="B2B, B2C, CREDIT_NOTE, CASH_MEMO"
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=InvoiceStatus.DRAFT.value,
        index=True,
        comment="DRAFT, ISSUED, FILED, CANCELLED"
    )
    payment_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=PaymentStatus.PENDING.value,
        comment="PENDING, PARTIALLY_PAID, PAID, REFUNDED"
    )
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)

    # Totals (paise)
    total_taxable_paise: Mapped[int] = mapped_column(PaiseType, default=0, nullable=False)
    total_cgst_paise: Mapped[int] = mapped_column(PaiseType, default=0, nullable=False)
    total_sgst_paise: Mapped[int] = mapped_column(PaiseType, default=0, nullable=False)
    total_igst_paise: Mapped[int] = mapped_column(PaiseType, default=0, nullable=False)
    total_gst_paise: Mapped[int] = mapped_column(PaiseType, default=0, nullable=False)
    round_off_paise: Mapped[int] = mapped_column(PaiseType, default=0, nullable=False)
    total_invoice_paise: Mapped[int] = mapped_column(PaiseType, default=0, nullable=False)
    paid_amount_paise: Mapped[int] = mapped_column(
        PaiseType,
        default=0,
        nullable=False,
        comment="Sum of PAID payments, recomputed from rows"
    )

    # Credit note linkage
    original_invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("invoices.id", ondelete="RESTRICT"),
        nullable=True,
        index=True
    )
    return_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Timestamps
    issued_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    filed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    # Relationships
    line_items: Mapped[List["InvoiceLineItem"]] = relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLineItem.position"
    )
    tax_lines: Mapped[List["TaxLine"]] = relationship(
        "TaxLine",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="TaxLine.tax_rate_bps"
    )
    payments: Mapped[List["Payment"]] = relationship(
        "Payment",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="Payment.created_at"
    )
    customer: Mapped[Optional["Customer"]] = relationship("Customer")
    original_invoice: Mapped[Optional["Invoice"]] = relationship(
        "Invoice",
        remote_side="Invoice.id"
    )

    @property
    def balance_due_paise(self) -> int:
        return self.total_invoice_paise - self.paid_amount_paise

    @property
    def is_credit_note(self) -> bool:
        return self.invoice_type == InvoiceType.CREDIT_NOTE.value

    def __repr__(self) -> str:
        return f"<Invoice(number='{self.invoice_number}', total={self.total_invoice_paise})>"


class InvoiceLineItem(Base):
    """Invoice line item with HSN and per-line tax allocation."""
    __tablename__ = "invoice_line_items"
    __table_args__ = (
        UniqueConstraint("invoice_id", "position", name="uq_line_item_position"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    position: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Zero-based cart order"
    )

    # Item
    product_ref: Mapped[str] = mapped_column(String(100), nullable=False)
    product_name: Mapped[str] = mapped_column(String(300), nullable=False)
    hsn_code: Mapped[str] = mapped_column(String(8), nullable=False)
    batch_ref: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Pricing
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_paise: Mapped[int] = mapped_column(PaiseType, nullable=False)
    discount_paise: Mapped[int] = mapped_column(PaiseType, default=0, nullable=False)
    unit_cost_paise: Mapped[Optional[int]] = mapped_column(
        PaiseType,
        nullable=True,
        comment="Purchase cost from the batch, for margin reporting"
    )
    gst_rate_bps: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="GST rate in basis points (1800 = 18%)"
    )
    tax_inclusion: Mapped[str] = mapped_column(String(10), nullable=False)

    # Tax allocation (zero until the invoice is reconciled)
    taxable_paise: Mapped[int] = mapped_column(PaiseType, default=0, nullable=False)
    cgst_paise: Mapped[int] = mapped_column(PaiseType, default=0, nullable=False)
    sgst_paise: Mapped[int] = mapped_column(PaiseType, default=0, nullable=False)
    igst_paise: Mapped[int] = mapped_column(PaiseType, default=0, nullable=False)
    line_total_paise: Mapped[int] = mapped_column(PaiseType, default=0, nullable=False)

    # Credit note linkage
    original_line_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("invoice_line_items.id", ondelete="RESTRICT"),
        nullable=True,
        index=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="line_items")

    def __repr__(self) -> str:
        return f"<InvoiceLineItem(product='{self.product_ref}', qty={self.quantity})>"


class TaxLine(Base):
    """One tax component for one rate bucket of an invoice."""
    __tablename__ = "invoice_tax_lines"
    __table_args__ = (
        UniqueConstraint("invoice_id", "tax_type", "tax_rate_bps", name="uq_tax_line_bucket"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    tax_type: Mapped[str] = mapped_column(String(4), nullable=False, comment="CGST, SGST, IGST")
    tax_rate_bps: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Full GST rate of the bucket in basis points"
    )
    tax_paise: Mapped[int] = mapped_column(PaiseType, nullable=False)

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="tax_lines")

    def __repr__(self) -> str:
        return f"<TaxLine({self.tax_type} @ {self.tax_rate_bps}bps = {self.tax_paise})>"


class Payment(Base):
    """A single payment (or refund) against an invoice."""
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    method: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="CASH, CARD, UPI, WALLET, CHEQUE, BANK_TRANSFER, CREDIT"
    )
    amount_paise: Mapped[int] = mapped_column(PaiseType, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=PaymentRecordStatus.INITIATED.value,
        index=True
    )
    provider_payment_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        unique=True,
        comment="Gateway / bank reference used to match confirmations"
    )
    details: Mapped[Optional[dict]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Method-specific fields (card last4, UPI VPA, cheque number...)"
    )
    split_group_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        nullable=True,
        comment="Shared by the parts of one split tender"
    )
    is_refund: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="payments")

    def __repr__(self) -> str:
        return f"<Payment(method='{self.method}', amount={self.amount_paise}, status='{self.status}')>"

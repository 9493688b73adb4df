"""Checkout and invoice schemas."""
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import Field

from pharmabill.schemas.base import BaseCreateSchema, BaseResponseSchema
from pharmabill.schemas.payment import PaymentIn, PaymentResponse
from pharmabill.services.tax_engine import CartLine, TaxInclusion


GSTIN_PATTERN = r"^[0-9]{2}[A-Z0-9]{13}$"


class CartItemIn(BaseCreateSchema):
    """One cart line as sent by the POS."""
    product_ref: str = Field(..., min_length=1, max_length=100)
    product_name: str = Field(..., min_length=1, max_length=300)
    hsn_code: str = Field(..., pattern=r"^\d{4,8}$")
    quantity: int = Field(..., ge=1)
    unit_price_paise: int = Field(..., ge=0)
    gst_rate_percent: Decimal = Field(..., ge=0, le=100)
    tax_inclusion: TaxInclusion = TaxInclusion.EXCLUSIVE
    discount_paise: int = Field(0, ge=0)
    discount_percent: Optional[Decimal] = Field(None, ge=0, le=100)
    batch_ref: Optional[str] = Field(None, max_length=100)
    unit_cost_paise: Optional[int] = Field(None, ge=0)

    def to_cart_line(self) -> CartLine:
        return CartLine(
            product_ref=self.product_ref,
            product_name=self.product_name,
            hsn_code=self.hsn_code,
            quantity=self.quantity,
            unit_price_paise=self.unit_price_paise,
            gst_rate_percent=self.gst_rate_percent,
            tax_inclusion=self.tax_inclusion,
            discount_paise=self.discount_paise,
            discount_percent=self.discount_percent,
            batch_ref=self.batch_ref,
            unit_cost_paise=self.unit_cost_paise,
        )


class CheckoutRequest(BaseCreateSchema):
    """
    POS checkout.

    buyer_state_code falls back to the customer's state code when a
    customer is given. Payments are optional; an unpaid invoice stays
    PENDING until payments are recorded.
    """
    seller_state_code: str = Field(..., min_length=1, max_length=2)
    buyer_state_code: Optional[str] = Field(None, max_length=2)
    buyer_name: Optional[str] = Field(None, max_length=200)
    buyer_gstin: Optional[str] = Field(None, pattern=GSTIN_PATTERN)
    customer_id: Optional[UUID] = None
    items: List[CartItemIn]
    payments: List[PaymentIn] = Field(default_factory=list)
    bill_discount_paise: int = Field(0, ge=0)
    bill_discount_percent: Optional[Decimal] = Field(None, ge=0, le=100)
    round_off: Optional[bool] = None
    cash_memo: bool = False
    issue: bool = True
    idempotency_key: Optional[str] = Field(None, max_length=100)

    def cart_lines(self) -> List[CartLine]:
        return [item.to_cart_line() for item in self.items]


class InvoiceLineItemResponse(BaseResponseSchema):
    id: UUID
    position: int
    product_ref: str
    product_name: str
    hsn_code: str
    batch_ref: Optional[str] = None
    quantity: int
    unit_price_paise: int
    discount_paise: int
    gst_rate_bps: int
    tax_inclusion: str
    taxable_paise: int
    cgst_paise: int
    sgst_paise: int
    igst_paise: int
    line_total_paise: int
    original_line_item_id: Optional[UUID] = None


class TaxLineResponse(BaseResponseSchema):
    tax_type: str
    tax_rate_bps: int
    tax_paise: int


class InvoiceResponse(BaseResponseSchema):
    id: UUID
    invoice_number: str
    invoice_type: str
    status: str
    payment_status: str
    invoice_date: date
    seller_state_code: str
    place_of_supply: str
    is_inter_state: bool
    customer_id: Optional[UUID] = None
    buyer_name: Optional[str] = None
    buyer_gstin: Optional[str] = None
    total_taxable_paise: int
    total_cgst_paise: int
    total_sgst_paise: int
    total_igst_paise: int
    total_gst_paise: int
    round_off_paise: int
    total_invoice_paise: int
    paid_amount_paise: int
    original_invoice_id: Optional[UUID] = None
    return_reason: Optional[str] = None
    issued_at: Optional[datetime] = None
    created_at: datetime


class InvoiceDetailResponse(InvoiceResponse):
    line_items: List[InvoiceLineItemResponse] = []
    tax_lines: List[TaxLineResponse] = []
    payments: List[PaymentResponse] = []


class InvoiceListResponse(BaseResponseSchema):
    items: List[InvoiceResponse]
    total: int


class CheckoutResponse(BaseResponseSchema):
    id: UUID
    invoice_no: str
    invoice: InvoiceDetailResponse
    remaining_due_paise: int


class RecordPaymentsResponse(BaseResponseSchema):
    payments: List[PaymentResponse]
    invoice: InvoiceResponse
    remaining_due_paise: int

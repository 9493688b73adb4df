from typing import List, Literal, Optional
from uuid import UUID

from pydantic import Field

from pharmabill.schemas.base import BaseCreateSchema, BaseResponseSchema
from pharmabill.schemas.billing import InvoiceDetailResponse


RefundMethod = Literal["CASH", "CARD", "UPI", "WALLET", "BANK_TRANSFER", "CREDIT"]


class ReturnLineIn(BaseCreateSchema):
    line_item_id: UUID
    quantity: int = Field(..., ge=1)


class ReturnRequest(BaseCreateSchema):
    original_invoice_id: UUID
    line_items: List[ReturnLineIn] = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, max_length=500)
    refund_method: Optional[RefundMethod] = None
    idempotency_key: Optional[str] = Field(None, max_length=100)


class ReturnResponse(BaseResponseSchema):
    credit_note: InvoiceDetailResponse
    original_invoice_id: UUID
    original_payment_status: str

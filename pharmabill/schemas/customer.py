from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import Field

from pharmabill.schemas.base import BaseCreateSchema, BaseResponseSchema
from pharmabill.schemas.billing import GSTIN_PATTERN


class CustomerCreate(BaseCreateSchema):
    name: str = Field(..., min_length=1, max_length=200)
    phone: Optional[str] = Field(None, max_length=20)
    gstin: Optional[str] = Field(None, pattern=GSTIN_PATTERN)
    state_code: Optional[str] = Field(None, min_length=2, max_length=2)
    credit_limit_paise: Optional[int] = Field(None, ge=0, description="Omit for unlimited credit")


class CustomerResponse(BaseResponseSchema):
    id: UUID
    name: str
    phone: Optional[str] = None
    gstin: Optional[str] = None
    state_code: Optional[str] = None
    credit_limit_paise: Optional[int] = None
    credit_balance_paise: int
    created_at: datetime


class CreditLedgerEntryResponse(BaseResponseSchema):
    id: UUID
    entry_no: int
    entry_type: str
    amount_paise: int
    balance_after_paise: int
    invoice_id: UUID
    payment_id: Optional[UUID] = None
    description: str
    created_at: datetime


class CustomerLedgerResponse(BaseResponseSchema):
    customer: CustomerResponse
    entries: List[CreditLedgerEntryResponse]

"""Payment request/response schemas.

Payment input is a closed tagged union keyed by ``method``; each variant
carries only the fields that make sense for it. SPLIT wraps two or more
single-method parts.
"""
from datetime import date, datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import UUID

from pydantic import Field, model_validator

from pharmabill.schemas.base import BaseCreateSchema, BaseResponseSchema


class _PaymentBase(BaseCreateSchema):
    amount_paise: int = Field(..., gt=0)
    provider_payment_id: Optional[str] = Field(None, max_length=100)

    def method_details(self) -> Dict[str, Any]:
        """Variant-specific fields, as stored in Payment.details."""
        return self.model_dump(
            mode="json",
            exclude={"method", "amount_paise", "provider_payment_id"},
            exclude_none=True,
        )


class CashPayment(_PaymentBase):
    method: Literal["CASH"]
    tendered_paise: Optional[int] = Field(None, ge=0, description="Cash handed over, for change")


class CardPayment(_PaymentBase):
    method: Literal["CARD"]
    card_last4: str = Field(..., pattern=r"^\d{4}$")
    card_network: Optional[str] = Field(None, max_length=30)


class UpiPayment(_PaymentBase):
    method: Literal["UPI"]
    upi_vpa: Optional[str] = Field(None, max_length=100)
    upi_provider: Optional[str] = Field(None, max_length=50)


class WalletPayment(_PaymentBase):
    method: Literal["WALLET"]
    wallet_provider: str = Field(..., min_length=1, max_length=50)


class ChequePayment(_PaymentBase):
    method: Literal["CHEQUE"]
    cheque_number: str = Field(..., min_length=1, max_length=20)
    bank_name: Optional[str] = Field(None, max_length=100)
    cheque_date: Optional[date] = None


class BankTransferPayment(_PaymentBase):
    method: Literal["BANK_TRANSFER"]
    utr: str = Field(..., min_length=1, max_length=50, description="Bank UTR reference")


class CreditPayment(_PaymentBase):
    method: Literal["CREDIT"]
    due_date: Optional[date] = None


SinglePayment = Annotated[
    Union[
        CashPayment,
        CardPayment,
        UpiPayment,
        WalletPayment,
        ChequePayment,
        BankTransferPayment,
        CreditPayment,
    ],
    Field(discriminator="method"),
]


class SplitPayment(BaseCreateSchema):
    method: Literal["SPLIT"]
    amount_paise: int = Field(..., gt=0)
    parts: List[SinglePayment] = Field(..., min_length=2)

    @model_validator(mode="after")
    def parts_sum_to_amount(self):
        total = sum(part.amount_paise for part in self.parts)
        if total != self.amount_paise:
            raise ValueError(
                f"Split parts sum to {total} paise but split amount is {self.amount_paise}"
            )
        return self


PaymentIn = Annotated[
    Union[
        CashPayment,
        CardPayment,
        UpiPayment,
        WalletPayment,
        ChequePayment,
        BankTransferPayment,
        CreditPayment,
        SplitPayment,
    ],
    Field(discriminator="method"),
]


class RecordPaymentsRequest(BaseCreateSchema):
    payments: List[PaymentIn] = Field(..., min_length=1)


class ConfirmPaymentRequest(BaseCreateSchema):
    provider_payment_id: Optional[str] = Field(None, max_length=100)


class FailPaymentRequest(BaseCreateSchema):
    reason: str = Field(..., min_length=1, max_length=500)


class ProviderEvent(BaseCreateSchema):
    """Webhook body sent by a payment provider."""
    event: Literal["payment.captured", "payment.failed"]
    provider_payment_id: str = Field(..., min_length=1, max_length=100)
    payment_id: Optional[UUID] = None
    reason: Optional[str] = None


class PaymentResponse(BaseResponseSchema):
    id: UUID
    invoice_id: UUID
    method: str
    amount_paise: int
    status: str
    provider_payment_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    split_group_id: Optional[UUID] = None
    is_refund: bool = False
    failure_reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime

import json

import pytest
from pydantic import ValidationError

from pharmabill.config import settings
from pharmabill.core.errors import BillingError, ErrorKind
from pharmabill.models.billing import PaymentRecordStatus, PaymentStatus
from pharmabill.schemas.customer import CustomerCreate
from pharmabill.services.customer_service import CustomerService
from pharmabill.services.invoice_service import InvoiceService
from pharmabill.services.payment_ledger_service import PaymentLedgerService, settlement_status
from pharmabill.services.payment_provider import sign_webhook_body
from tests.factories import StubProvider, checkout_request, tenders

pytestmark = pytest.mark.anyio


async def _invoice(session, tenant, **overrides):
    return await InvoiceService(session).create_invoice(tenant, checkout_request(**overrides))


def test_settlement_status() -> None:
    assert settlement_status(22400, 0) == PaymentStatus.PENDING
    assert settlement_status(22400, 100) == PaymentStatus.PARTIALLY_PAID
    assert settlement_status(22400, 22400) == PaymentStatus.PAID
    assert settlement_status(0, 0) == PaymentStatus.PAID


def test_split_parts_must_sum_to_amount() -> None:
    with pytest.raises(ValidationError):
        tenders({
            "method": "SPLIT",
            "amount_paise": 1000,
            "parts": [
                {"method": "CASH", "amount_paise": 400},
                {"method": "UPI", "amount_paise": 500},
            ],
        })


def test_card_requires_last4() -> None:
    with pytest.raises(ValidationError):
        tenders({"method": "CARD", "amount_paise": 1000})
    with pytest.raises(ValidationError):
        tenders({"method": "BARTER", "amount_paise": 1000})


async def test_full_cash_payment_then_overpayment(session, tenant) -> None:
    invoice = await _invoice(session, tenant)
    ledger = PaymentLedgerService(session)

    result = await ledger.record_payments(
        tenant, invoice.id, tenders({"method": "CASH", "amount_paise": 22400, "tendered_paise": 25000})
    )

    assert result.invoice.payment_status == "PAID"
    assert result.invoice.paid_amount_paise == 22400
    assert result.remaining_due_paise == 0
    [payment] = result.payments
    assert payment.status == "PAID"
    assert payment.paid_at is not None
    assert payment.details == {"tendered_paise": 25000}

    with pytest.raises(BillingError) as exc_info:
        await ledger.record_payments(tenant, invoice.id, tenders({"method": "CASH", "amount_paise": 1}))
    assert exc_info.value.kind == ErrorKind.OVERPAYMENT
    assert exc_info.value.details == {"requested_paise": 1, "remaining_due_paise": 0}


async def test_partial_payments_accumulate(session, tenant) -> None:
    invoice = await _invoice(session, tenant)
    ledger = PaymentLedgerService(session)

    first = await ledger.record_payments(tenant, invoice.id, tenders({"method": "CASH", "amount_paise": 10000}))
    assert first.invoice.payment_status == "PARTIALLY_PAID"
    assert first.remaining_due_paise == 12400

    with pytest.raises(BillingError) as exc_info:
        await ledger.record_payments(tenant, invoice.id, tenders({"method": "CASH", "amount_paise": 12401}))
    assert exc_info.value.kind == ErrorKind.OVERPAYMENT

    second = await ledger.record_payments(tenant, invoice.id, tenders({"method": "CASH", "amount_paise": 12400}))
    assert second.invoice.payment_status == "PAID"


async def test_split_tender_with_deferred_confirmation(session, tenant) -> None:
    invoice = await _invoice(session, tenant)
    ledger = PaymentLedgerService(session)

    result = await ledger.record_payments(tenant, invoice.id, tenders({
        "method": "SPLIT",
        "amount_paise": 22400,
        "parts": [
            {"method": "CASH", "amount_paise": 10000},
            {"method": "CARD", "amount_paise": 12400, "card_last4": "4242", "card_network": "VISA"},
        ],
    }))

    cash, card = result.payments
    assert cash.split_group_id is not None
    assert cash.split_group_id == card.split_group_id
    assert cash.status == "PAID"
    assert card.status == "INITIATED"
    assert card.details == {"card_last4": "4242", "card_network": "VISA"}
    assert result.invoice.payment_status == "PARTIALLY_PAID"

    await ledger.confirm_payment(tenant, card.id, "pay_abc123")
    invoice = await InvoiceService(session).get_invoice(tenant, invoice.id)
    assert invoice.payment_status == "PAID"
    assert invoice.paid_amount_paise == 22400

    replay = await ledger.confirm_payment(tenant, card.id, "pay_abc123")
    assert replay.status == "PAID"
    invoice = await InvoiceService(session).get_invoice(tenant, invoice.id)
    assert invoice.paid_amount_paise == 22400


async def test_failed_payment_cannot_be_confirmed(session, tenant) -> None:
    invoice = await _invoice(session, tenant)
    ledger = PaymentLedgerService(session)
    result = await ledger.record_payments(tenant, invoice.id, tenders({"method": "UPI", "amount_paise": 22400}))
    [upi] = result.payments

    failed = await ledger.fail_payment(tenant, upi.id, "Customer abandoned")
    assert failed.status == "FAILED"
    assert failed.failure_reason == "Customer abandoned"
    assert (await ledger.fail_payment(tenant, upi.id, "again")).failure_reason == "Customer abandoned"

    with pytest.raises(BillingError) as exc_info:
        await ledger.confirm_payment(tenant, upi.id)
    assert exc_info.value.kind == ErrorKind.INVALID_INPUT


async def test_confirmation_cannot_overpay(session, tenant) -> None:
    invoice = await _invoice(session, tenant)
    ledger = PaymentLedgerService(session)
    pending = await ledger.record_payments(tenant, invoice.id, tenders({"method": "UPI", "amount_paise": 22400}))
    # Cash settles the whole bill while the UPI attempt is still pending
    await ledger.record_payments(tenant, invoice.id, tenders({"method": "CASH", "amount_paise": 22400}))

    with pytest.raises(BillingError) as exc_info:
        await ledger.confirm_payment(tenant, pending.payments[0].id)
    assert exc_info.value.kind == ErrorKind.OVERPAYMENT

    invoice = await InvoiceService(session).get_invoice(tenant, invoice.id)
    assert invoice.paid_amount_paise == 22400


async def test_credit_sale_within_limit_writes_ledger(session, tenant) -> None:
    customers = CustomerService(session)
    customer = await customers.create_customer(
        tenant, CustomerCreate(name="R. Iyer", state_code="MH", credit_limit_paise=50000)
    )
    invoice = await _invoice(session, tenant, customer_id=str(customer.id))

    result = await PaymentLedgerService(session).record_payments(
        tenant, invoice.id, tenders({"method": "CREDIT", "amount_paise": 22400})
    )

    assert result.invoice.payment_status == "PAID"
    assert customer.credit_balance_paise == 22400
    [entry] = await customers.get_ledger(tenant, customer.id)
    assert entry.entry_no == 1
    assert entry.entry_type == "DEBIT"
    assert entry.amount_paise == 22400
    assert entry.balance_after_paise == 22400
    assert entry.payment_id == result.payments[0].id


async def test_credit_limit_exceeded(session, tenant) -> None:
    customer = await CustomerService(session).create_customer(
        tenant, CustomerCreate(name="R. Iyer", credit_limit_paise=20000)
    )
    invoice = await _invoice(session, tenant, customer_id=str(customer.id))

    with pytest.raises(BillingError) as exc_info:
        await PaymentLedgerService(session).record_payments(
            tenant, invoice.id, tenders({"method": "CREDIT", "amount_paise": 22400})
        )

    assert exc_info.value.kind == ErrorKind.CREDIT_LIMIT_EXCEEDED
    assert exc_info.value.details == {"balance_paise": 0, "limit_paise": 20000, "requested_paise": 22400}
    assert customer.credit_balance_paise == 0


async def test_unlimited_credit_when_no_limit(session, tenant) -> None:
    customer = await CustomerService(session).create_customer(tenant, CustomerCreate(name="Walk-in regular"))
    invoice = await _invoice(session, tenant, customer_id=str(customer.id))

    result = await PaymentLedgerService(session).record_payments(
        tenant, invoice.id, tenders({"method": "CREDIT", "amount_paise": 22400})
    )
    assert result.invoice.payment_status == "PAID"


async def test_credit_requires_customer(session, tenant) -> None:
    invoice = await _invoice(session, tenant)

    with pytest.raises(BillingError) as exc_info:
        await PaymentLedgerService(session).record_payments(
            tenant, invoice.id, tenders({"method": "CREDIT", "amount_paise": 100})
        )
    assert exc_info.value.kind == ErrorKind.INVALID_INPUT


async def test_provider_reference_is_stored(session, tenant) -> None:
    invoice = await _invoice(session, tenant)
    provider = StubProvider()

    result = await PaymentLedgerService(session, provider).record_payments(tenant, invoice.id, tenders(
        {"method": "CASH", "amount_paise": 400},
        {"method": "WALLET", "amount_paise": 22000, "wallet_provider": "PAYTM"},
    ))

    cash, wallet = result.payments
    assert provider.registered == [wallet.id]
    assert wallet.provider_payment_id == "order_1"
    assert cash.provider_payment_id is None


async def test_provider_failure_marks_payment_failed(session, tenant) -> None:
    invoice = await _invoice(session, tenant)

    with pytest.raises(BillingError) as exc_info:
        await PaymentLedgerService(session, StubProvider(fail=True)).record_payments(
            tenant, invoice.id, tenders({"method": "UPI", "amount_paise": 22400})
        )
    assert exc_info.value.kind == ErrorKind.PROVIDER_ERROR
    assert exc_info.value.http_status == 502

    invoice = await InvoiceService(session).get_invoice(tenant, invoice.id)
    assert [p.status for p in invoice.payments] == [PaymentRecordStatus.FAILED.value]
    assert invoice.payment_status == "PENDING"


async def test_duplicate_provider_payment_id_rejected(session, tenant) -> None:
    invoice = await _invoice(session, tenant)
    ledger = PaymentLedgerService(session)
    await ledger.record_payments(
        tenant, invoice.id, tenders({"method": "UPI", "amount_paise": 1000, "provider_payment_id": "pay_1"})
    )

    with pytest.raises(BillingError) as exc_info:
        await ledger.record_payments(
            tenant, invoice.id, tenders({"method": "UPI", "amount_paise": 1000, "provider_payment_id": "pay_1"})
        )
    assert exc_info.value.kind == ErrorKind.INVALID_INPUT


async def test_signed_webhook_confirms_payment(session, tenant, monkeypatch) -> None:
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "whsec_test")
    invoice = await _invoice(session, tenant)
    ledger = PaymentLedgerService(session)
    result = await ledger.record_payments(
        tenant, invoice.id, tenders({"method": "UPI", "amount_paise": 22400, "provider_payment_id": "pay_77"})
    )

    body = json.dumps({"event": "payment.captured", "provider_payment_id": "pay_77"}).encode()
    payment = await ledger.handle_provider_event(body, sign_webhook_body(body, "whsec_test"))
    assert payment.id == result.payments[0].id
    assert payment.status == "PAID"

    # Duplicate delivery is a no-op
    await ledger.handle_provider_event(body, sign_webhook_body(body, "whsec_test"))
    invoice = await InvoiceService(session).get_invoice(tenant, invoice.id)
    assert invoice.paid_amount_paise == 22400

    with pytest.raises(BillingError) as exc_info:
        await ledger.handle_provider_event(body, "bad-signature")
    assert exc_info.value.kind == ErrorKind.INVALID_INPUT


async def test_payments_rejected_on_cancelled_invoice(session, tenant) -> None:
    invoice = await _invoice(session, tenant)
    await InvoiceService(session).cancel_invoice(tenant, invoice.id)

    with pytest.raises(BillingError) as exc_info:
        await PaymentLedgerService(session).record_payments(
            tenant, invoice.id, tenders({"method": "CASH", "amount_paise": 100})
        )
    assert exc_info.value.kind == ErrorKind.INVALID_INPUT

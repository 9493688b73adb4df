import re
import uuid
from dataclasses import replace
from datetime import date, datetime, timezone

import pytest
from sqlalchemy import delete, select

from pharmabill.core.errors import BillingError, ErrorKind
from pharmabill.core.tenant_context import TenantContext
from pharmabill.models.billing import InvoiceType, PaymentRecordStatus
from pharmabill.models.invoice_sequence import InvoiceSequence
from pharmabill.schemas.customer import CustomerCreate
from pharmabill.services.customer_service import CustomerService
from pharmabill.services.invoice_sequence_service import (
    InvoiceSequenceService,
    business_date,
    format_invoice_number,
)
from pharmabill.services.invoice_service import InvoiceService
from pharmabill.services.payment_ledger_service import PaymentLedgerService
from pharmabill.services.tax_engine import compute_tax
from tests.factories import cart_item, checkout_request, tenders

pytestmark = pytest.mark.anyio


def test_business_date_uses_india_time() -> None:
    assert business_date(datetime(2025, 3, 1, 20, 0, tzinfo=timezone.utc)) == date(2025, 3, 2)
    assert business_date(datetime(2025, 3, 1, 18, 0, tzinfo=timezone.utc)) == date(2025, 3, 1)


def test_format_invoice_number() -> None:
    assert format_invoice_number("INV", date(2025, 3, 1), 7) == "INV-20250301-0007"
    assert format_invoice_number("CN", date(2025, 12, 31), 12345) == "CN-20251231-12345"


async def test_create_invoice_persists_totals_lines_and_tax_lines(session, tenant) -> None:
    invoice = await InvoiceService(session).create_invoice(tenant, checkout_request())

    prefix = f"INV-{business_date().strftime('%Y%m%d')}-"
    assert invoice.invoice_number == f"{prefix}0001"
    assert invoice.status == "ISSUED"
    assert invoice.issued_at is not None
    assert invoice.payment_status == "PENDING"
    assert invoice.invoice_type == InvoiceType.B2C.value
    assert not invoice.is_inter_state
    assert invoice.total_taxable_paise == 20000
    assert invoice.total_cgst_paise == 1200
    assert invoice.total_sgst_paise == 1200
    assert invoice.total_igst_paise == 0
    assert invoice.total_gst_paise == 2400
    assert invoice.total_invoice_paise == 22400

    [item] = invoice.line_items
    assert item.position == 0
    assert item.gst_rate_bps == 1200
    assert (item.taxable_paise, item.cgst_paise, item.sgst_paise) == (20000, 1200, 1200)
    assert item.line_total_paise == 22400
    assert item.batch_ref == "B-2411"

    assert sorted((t.tax_type, t.tax_rate_bps, t.tax_paise) for t in invoice.tax_lines) == [
        ("CGST", 1200, 1200),
        ("SGST", 1200, 1200),
    ]


async def test_inter_state_invoice_has_only_igst_lines(session, tenant) -> None:
    invoice = await InvoiceService(session).create_invoice(tenant, checkout_request(buyer_state_code="DL"))

    assert invoice.is_inter_state
    assert invoice.place_of_supply == "DL"
    assert [(t.tax_type, t.tax_paise) for t in invoice.tax_lines] == [("IGST", 2400)]
    assert invoice.line_items[0].igst_paise == 2400


async def test_zero_rate_lines_get_no_tax_line(session, tenant) -> None:
    items = [
        cart_item(product_ref="SKU-ORS", hsn_code="30049011", quantity=1, unit_price_paise=2500, gst_rate_percent="0"),
        cart_item(quantity=1),
    ]
    invoice = await InvoiceService(session).create_invoice(tenant, checkout_request(items))

    assert {t.tax_rate_bps for t in invoice.tax_lines} == {1200}
    assert invoice.line_items[0].taxable_paise == 2500
    assert invoice.line_items[0].line_total_paise == 2500
    assert invoice.total_invoice_paise == 2500 + 11200


async def test_numbers_are_sequential_per_seller(session, tenant) -> None:
    service = InvoiceService(session)
    first = await service.create_invoice(tenant, checkout_request())
    second = await service.create_invoice(tenant, checkout_request())
    other_seller = TenantContext(tenant_id=tenant.tenant_id, seller_org_id=uuid.uuid4())
    third = await service.create_invoice(other_seller, checkout_request())

    assert first.invoice_number.endswith("-0001")
    assert second.invoice_number.endswith("-0002")
    assert third.invoice_number.endswith("-0001")


async def test_new_counter_is_seeded_from_existing_invoices(session, tenant) -> None:
    service = InvoiceService(session)
    await service.create_invoice(tenant, checkout_request())
    await session.execute(delete(InvoiceSequence))

    number = await InvoiceSequenceService(session).get_next_number(tenant.seller_org_id, "INV")
    assert number.endswith("-0002")

    with pytest.raises(ValueError):
        await InvoiceSequenceService(session).get_next_number(tenant.seller_org_id, "XYZ")


async def test_counter_created_by_a_concurrent_checkout_is_reused(session, tenant, monkeypatch) -> None:
    day = business_date()
    session.add(InvoiceSequence(
        seller_org_id=tenant.seller_org_id, series="INV", sequence_date=day, current_number=4
    ))
    await session.flush()

    service = InvoiceSequenceService(session)
    lock_sequence = service._lock_sequence
    lookups = []

    async def first_lookup_misses(*args):
        lookups.append(args)
        if len(lookups) == 1:
            return None
        return await lock_sequence(*args)

    monkeypatch.setattr(service, "_lock_sequence", first_lookup_misses)

    number = await service.get_next_number(tenant.seller_org_id, "INV", day)

    assert number == format_invoice_number("INV", day, 5)
    assert len(lookups) == 2
    counters = (await session.execute(select(InvoiceSequence))).scalars().all()
    assert len(counters) == 1


async def test_round_off_to_rupee(session, tenant) -> None:
    request = checkout_request(
        [cart_item(quantity=1, unit_price_paise=10050, gst_rate_percent="5")],
        round_off=True,
    )
    invoice = await InvoiceService(session).create_invoice(tenant, request)

    assert invoice.total_taxable_paise == 10050
    assert invoice.total_gst_paise == 503
    assert invoice.round_off_paise == 47
    assert invoice.total_invoice_paise == 10600


async def test_bill_discount_lands_on_line_items(session, tenant) -> None:
    items = [cart_item(quantity=1), cart_item(product_ref="SKU-2", quantity=3)]
    invoice = await InvoiceService(session).create_invoice(
        tenant, checkout_request(items, bill_discount_paise=2000)
    )

    assert [i.discount_paise for i in invoice.line_items] == [500, 1500]
    assert invoice.total_taxable_paise == 38000
    assert invoice.total_gst_paise == 4560


async def test_cash_memo_rules(session, tenant) -> None:
    service = InvoiceService(session)

    memo = await service.create_invoice(tenant, checkout_request([cart_item(quantity=1)], cash_memo=True))
    assert memo.invoice_type == InvoiceType.CASH_MEMO.value

    with pytest.raises(BillingError) as exc_info:
        await service.create_invoice(tenant, checkout_request(cash_memo=True))
    assert exc_info.value.kind == ErrorKind.INVALID_INPUT

    with pytest.raises(BillingError):
        await service.create_invoice(
            tenant,
            checkout_request([cart_item(quantity=1)], cash_memo=True, buyer_gstin="27AAACB1234C1Z5"),
        )


async def test_customer_supplies_buyer_details(session, tenant) -> None:
    customer = await CustomerService(session).create_customer(
        tenant,
        CustomerCreate(name="Sharma Clinic", gstin="07AAACB1234C1Z5", state_code="DL"),
    )
    request = checkout_request(buyer_state_code=None, customer_id=str(customer.id))
    invoice = await InvoiceService(session).create_invoice(tenant, request)

    assert invoice.invoice_type == InvoiceType.B2B.value
    assert invoice.buyer_name == "Sharma Clinic"
    assert invoice.buyer_gstin == "07AAACB1234C1Z5"
    assert invoice.is_inter_state
    assert invoice.total_igst_paise == 2400


async def test_missing_buyer_state_is_invalid(session, tenant) -> None:
    with pytest.raises(BillingError) as exc_info:
        await InvoiceService(session).create_invoice(tenant, checkout_request(buyer_state_code=None))
    assert exc_info.value.kind == ErrorKind.INVALID_INPUT


async def test_unknown_customer_is_not_found(session, tenant) -> None:
    with pytest.raises(BillingError) as exc_info:
        await InvoiceService(session).create_invoice(tenant, checkout_request(customer_id=str(uuid.uuid4())))
    assert exc_info.value.kind == ErrorKind.NOT_FOUND


async def test_reconcile_rejects_mismatched_rows(session, tenant) -> None:
    service = InvoiceService(session)
    lines = checkout_request().cart_lines()
    computation = compute_tax(lines, "MH", "MH")
    tampered = [replace(lines[0], unit_price_paise=9999)]

    draft = await service.persist_draft(
        tenant,
        lines=tampered,
        computation=computation,
        seller_state_code="MH",
        place_of_supply="MH",
        invoice_type=InvoiceType.B2C,
    )
    with pytest.raises(BillingError) as exc_info:
        await service.reconcile(draft)

    assert exc_info.value.kind == ErrorKind.RECONCILIATION_FAILURE
    assert exc_info.value.http_status == 500
    assert re.fullmatch(r"[0-9a-f]{32}", exc_info.value.details["correlation_id"])


async def test_status_transitions(session, tenant) -> None:
    service = InvoiceService(session)
    invoice = await service.create_invoice(tenant, checkout_request(issue=False))
    assert invoice.status == "DRAFT"

    with pytest.raises(BillingError):
        await service.mark_filed(tenant, invoice.id)

    invoice = await service.issue_invoice(tenant, invoice.id)
    assert invoice.status == "ISSUED"
    with pytest.raises(BillingError):
        await service.issue_invoice(tenant, invoice.id)

    invoice = await service.mark_filed(tenant, invoice.id)
    assert invoice.status == "FILED"
    assert invoice.filed_at is not None
    with pytest.raises(BillingError):
        await service.cancel_invoice(tenant, invoice.id)


async def test_cancel_fails_pending_payments(session, tenant) -> None:
    service = InvoiceService(session)
    invoice = await service.create_invoice(tenant, checkout_request())
    await PaymentLedgerService(session).record_payments(
        tenant, invoice.id, tenders({"method": "UPI", "amount_paise": 22400})
    )

    cancelled = await service.cancel_invoice(tenant, invoice.id)

    assert cancelled.status == "CANCELLED"
    assert cancelled.cancelled_at is not None
    assert [p.status for p in cancelled.payments] == [PaymentRecordStatus.FAILED.value]


async def test_paid_invoice_cannot_be_cancelled(session, tenant) -> None:
    service = InvoiceService(session)
    invoice = await service.create_invoice(tenant, checkout_request())
    await PaymentLedgerService(session).record_payments(
        tenant, invoice.id, tenders({"method": "CASH", "amount_paise": 100})
    )

    with pytest.raises(BillingError) as exc_info:
        await service.cancel_invoice(tenant, invoice.id)
    assert exc_info.value.kind == ErrorKind.INVALID_INPUT


async def test_invoices_are_tenant_scoped(session, tenant) -> None:
    service = InvoiceService(session)
    invoice = await service.create_invoice(tenant, checkout_request())
    stranger = TenantContext(tenant_id=uuid.uuid4(), seller_org_id=tenant.seller_org_id)

    with pytest.raises(BillingError) as exc_info:
        await service.get_invoice(stranger, invoice.id)
    assert exc_info.value.kind == ErrorKind.NOT_FOUND


async def test_list_invoices_filters(session, tenant) -> None:
    service = InvoiceService(session)
    await service.create_invoice(tenant, checkout_request())
    await service.create_invoice(tenant, checkout_request(issue=False))

    items, total = await service.list_invoices(tenant)
    assert total == 2
    assert len(items) == 2

    drafts, draft_total = await service.list_invoices(tenant, status="DRAFT")
    assert draft_total == 1
    assert drafts[0].status == "DRAFT"

    today = business_date()
    _, none_total = await service.list_invoices(tenant, date_from=date(today.year + 1, 1, 1))
    assert none_total == 0

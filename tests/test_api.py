import json
import re
import uuid

import pytest

from pharmabill.config import settings
from pharmabill.services.invoice_service import InvoiceService
from pharmabill.services.payment_provider import sign_webhook_body
from tests.factories import cart_item, checkout_payload

pytestmark = pytest.mark.anyio

INVOICE_NO = re.compile(r"^INV-\d{8}-\d{4}$")


async def _checkout(client, headers, **overrides):
    response = await client.post("/api/v1/pos/checkout", json=checkout_payload(**overrides), headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


async def test_checkout_returns_invoice_number(client, tenant_headers) -> None:
    body = await _checkout(client, tenant_headers)

    assert INVOICE_NO.match(body["invoice_no"])
    assert body["id"] == body["invoice"]["id"]
    invoice = body["invoice"]
    assert invoice["total_taxable_paise"] == 20000
    assert invoice["total_cgst_paise"] == 1200
    assert invoice["total_sgst_paise"] == 1200
    assert invoice["total_invoice_paise"] == 22400
    assert invoice["status"] == "ISSUED"
    assert len(invoice["line_items"]) == 1
    assert body["remaining_due_paise"] == 22400


async def test_checkout_with_payment_settles_invoice(client, tenant_headers) -> None:
    body = await _checkout(
        client, tenant_headers,
        payments=[{"method": "CASH", "amount_paise": 22400}],
    )

    assert body["invoice"]["payment_status"] == "PAID"
    assert body["remaining_due_paise"] == 0
    assert [p["method"] for p in body["invoice"]["payments"]] == ["CASH"]


async def test_checkout_is_idempotent(client, tenant_headers) -> None:
    first = await _checkout(client, tenant_headers, idempotency_key="pos-1-000042")
    second = await _checkout(client, tenant_headers, idempotency_key="pos-1-000042")

    assert first["id"] == second["id"]
    assert first["invoice_no"] == second["invoice_no"]


async def test_concurrent_checkout_with_same_key_returns_first_invoice(client, tenant_headers, monkeypatch) -> None:
    first = await _checkout(client, tenant_headers, idempotency_key="pos-2-000007")

    find_by_key = InvoiceService.find_by_idempotency_key
    lookups = []

    async def first_lookup_misses(self, tenant, key):
        lookups.append(key)
        if len(lookups) == 1:
            return None
        return await find_by_key(self, tenant, key)

    monkeypatch.setattr(InvoiceService, "find_by_idempotency_key", first_lookup_misses)
    second = await _checkout(client, tenant_headers, idempotency_key="pos-2-000007")

    assert second["id"] == first["id"]
    assert second["invoice_no"] == first["invoice_no"]
    assert len(lookups) == 2
    listing = await client.get("/api/v1/invoices", headers=tenant_headers)
    assert listing.json()["total"] == 1


async def test_empty_cart_is_invalid_input(client, tenant_headers) -> None:
    response = await client.post("/api/v1/pos/checkout", json=checkout_payload(items=[]), headers=tenant_headers)

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_INPUT"
    assert response.headers["X-Error-Code"] == "INVALID_INPUT"


async def test_malformed_request_is_invalid_input(client, tenant_headers) -> None:
    payload = checkout_payload(items=[cart_item(quantity=0)])
    response = await client.post("/api/v1/pos/checkout", json=payload, headers=tenant_headers)

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_INPUT"


async def test_missing_tenant_headers_rejected(client) -> None:
    response = await client.post("/api/v1/pos/checkout", json=checkout_payload())
    assert response.status_code == 400


async def test_overpayment_is_rejected(client, tenant_headers) -> None:
    body = await _checkout(client, tenant_headers, payments=[{"method": "CASH", "amount_paise": 22400}])

    response = await client.post(
        f"/api/v1/invoices/{body['id']}/payments",
        json={"payments": [{"method": "CASH", "amount_paise": 1}]},
        headers=tenant_headers,
    )

    assert response.status_code == 400
    assert response.json()["code"] == "OVERPAYMENT"
    assert response.json()["details"]["remaining_due_paise"] == 0


async def test_failed_checkout_payment_rolls_back_invoice(client, tenant_headers) -> None:
    response = await client.post(
        "/api/v1/pos/checkout",
        json=checkout_payload(payments=[{"method": "CASH", "amount_paise": 99999}]),
        headers=tenant_headers,
    )
    assert response.status_code == 400

    listing = await client.get("/api/v1/invoices", headers=tenant_headers)
    assert listing.json()["total"] == 0


async def test_record_and_confirm_card_payment(client, tenant_headers) -> None:
    body = await _checkout(client, tenant_headers)

    recorded = await client.post(
        f"/api/v1/invoices/{body['id']}/payments",
        json={"payments": [{"method": "CARD", "amount_paise": 22400, "card_last4": "1111"}]},
        headers=tenant_headers,
    )
    assert recorded.status_code == 200
    payment = recorded.json()["payments"][0]
    assert payment["status"] == "INITIATED"
    assert recorded.json()["remaining_due_paise"] == 22400

    for _ in range(2):
        confirmed = await client.post(
            f"/api/v1/payments/{payment['id']}/confirm",
            json={"provider_payment_id": "pay_card_1"},
            headers=tenant_headers,
        )
        assert confirmed.status_code == 200
        assert confirmed.json()["status"] == "PAID"

    invoice = (await client.get(f"/api/v1/invoices/{body['id']}", headers=tenant_headers)).json()
    assert invoice["payment_status"] == "PAID"
    assert invoice["paid_amount_paise"] == 22400


async def test_webhook_requires_valid_signature(client, tenant_headers, monkeypatch) -> None:
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "whsec_api")
    body = await _checkout(
        client, tenant_headers,
        payments=[{"method": "UPI", "amount_paise": 22400, "provider_payment_id": "pay_upi_9"}],
    )
    event = json.dumps({"event": "payment.captured", "provider_payment_id": "pay_upi_9"}).encode()

    rejected = await client.post(
        "/api/v1/payments/webhook", content=event, headers={"X-Webhook-Signature": "nope"}
    )
    assert rejected.status_code == 400

    accepted = await client.post(
        "/api/v1/payments/webhook",
        content=event,
        headers={"X-Webhook-Signature": sign_webhook_body(event, "whsec_api")},
    )
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "PAID"

    invoice = (await client.get(f"/api/v1/invoices/{body['id']}", headers=tenant_headers)).json()
    assert invoice["payment_status"] == "PAID"


async def test_return_creates_credit_note_and_restocks_once(client, tenant_headers, inventory) -> None:
    body = await _checkout(client, tenant_headers)
    line_id = body["invoice"]["line_items"][0]["id"]
    payload = {
        "original_invoice_id": body["id"],
        "line_items": [{"line_item_id": line_id, "quantity": 1}],
        "reason": "Wrong strength dispensed",
        "idempotency_key": "return-77",
    }

    first = await client.post("/api/v1/pos/returns", json=payload, headers=tenant_headers)
    second = await client.post("/api/v1/pos/returns", json=payload, headers=tenant_headers)

    assert first.status_code == 201, first.text
    credit_note = first.json()["credit_note"]
    assert credit_note["invoice_number"].startswith("CN-")
    assert credit_note["total_taxable_paise"] == -10000
    assert credit_note["total_cgst_paise"] == -600
    assert credit_note["total_sgst_paise"] == -600
    assert credit_note["total_invoice_paise"] == -11200
    assert second.json()["credit_note"]["id"] == credit_note["id"]
    assert len(inventory.calls) == 1


async def test_invoice_lifecycle_endpoints(client, tenant_headers) -> None:
    body = await _checkout(client, tenant_headers, issue=False)
    invoice_id = body["id"]
    assert body["invoice"]["status"] == "DRAFT"

    issued = await client.post(f"/api/v1/invoices/{invoice_id}/issue", headers=tenant_headers)
    assert issued.json()["status"] == "ISSUED"
    filed = await client.post(f"/api/v1/invoices/{invoice_id}/file", headers=tenant_headers)
    assert filed.json()["status"] == "FILED"

    cancel = await client.post(f"/api/v1/invoices/{invoice_id}/cancel", headers=tenant_headers)
    assert cancel.status_code == 400

    drafts = await client.get("/api/v1/invoices", params={"status": "FILED"}, headers=tenant_headers)
    assert drafts.json()["total"] == 1


async def test_unknown_invoice_is_not_found(client, tenant_headers) -> None:
    response = await client.get(f"/api/v1/invoices/{uuid.uuid4()}", headers=tenant_headers)

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


async def test_customer_credit_flow(client, tenant_headers) -> None:
    created = await client.post(
        "/api/v1/customers",
        json={"name": "Deshmukh Nursing Home", "state_code": "MH", "credit_limit_paise": 30000},
        headers=tenant_headers,
    )
    assert created.status_code == 201
    customer_id = created.json()["id"]

    body = await _checkout(
        client, tenant_headers,
        customer_id=customer_id,
        payments=[{"method": "CREDIT", "amount_paise": 22400}],
    )
    assert body["invoice"]["payment_status"] == "PAID"

    over_limit = await client.post(
        "/api/v1/pos/checkout",
        json=checkout_payload(customer_id=customer_id, payments=[{"method": "CREDIT", "amount_paise": 22400}]),
        headers=tenant_headers,
    )
    assert over_limit.status_code == 400
    assert over_limit.json()["code"] == "CREDIT_LIMIT_EXCEEDED"

    ledger = (await client.get(f"/api/v1/customers/{customer_id}/ledger", headers=tenant_headers)).json()
    assert ledger["customer"]["credit_balance_paise"] == 22400
    assert [e["entry_type"] for e in ledger["entries"]] == ["DEBIT"]


async def test_report_endpoints(client, tenant_headers) -> None:
    body = await _checkout(client, tenant_headers, payments=[{"method": "CASH", "amount_paise": 22400}])
    day = body["invoice"]["invoice_date"]

    hsn = await client.get("/api/v1/reports/hsn-summary", params={"from": day, "to": day}, headers=tenant_headers)
    assert hsn.status_code == 200
    assert hsn.json()["totals"]["gst_paise"] == 2400

    daily = await client.get("/api/v1/reports/daily-summary", params={"date": day}, headers=tenant_headers)
    assert daily.json()["payment_methods"]["CASH"]["amount_paise"] == 22400

    year_end = await client.get(
        "/api/v1/reports/year-end-summary", params={"year": day[:4]}, headers=tenant_headers
    )
    assert year_end.json()["annual"]["invoice_paise"] == 22400

    inverted = await client.get(
        "/api/v1/reports/hsn-summary", params={"from": "2025-03-02", "to": "2025-03-01"}, headers=tenant_headers
    )
    assert inverted.status_code == 400


async def test_health(client) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["app"] == settings.APP_NAME

from pharmabill.models.billing import (
    Invoice,
    InvoiceLineItem,
    TaxLine,
    Payment,
    InvoiceType,
    InvoiceStatus,
    PaymentStatus,
    PaymentMethod,
    PaymentRecordStatus,
    TaxType,
)
from pharmabill.models.customer import Customer, CreditLedgerEntry, LedgerEntryType
from pharmabill.models.invoice_sequence import InvoiceSequence
from pharmabill.models.restock import RestockRecord

__all__ = [
    "Invoice",
    "InvoiceLineItem",
    "TaxLine",
    "Payment",
    "InvoiceType",
    "InvoiceStatus",
    "PaymentStatus",
    "PaymentMethod",
    "PaymentRecordStatus",
    "TaxType",
    "Customer",
    "CreditLedgerEntry",
    "LedgerEntryType",
    "InvoiceSequence",
    "RestockRecord",
]

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List

from sqlalchemy import String, DateTime, ForeignKey, Integer, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pharmabill.database import Base
from pharmabill.db_types import PaiseType, UUIDType


class LedgerEntryType(str, Enum):
    """Direction of a credit ledger entry."""
    DEBIT = "DEBIT"    # Customer owes more (credit sale)
    CREDIT = "CREDIT"  # Customer owes less (settlement, return)


class Customer(Base):
    """
    Pharmacy customer with an optional credit (khata) account.

    credit_limit_paise NULL means no limit.
    """
    __tablename__ = "customers"
    __table_args__ = (
        Index("ix_customers_tenant_phone", "tenant_id", "phone"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    gstin: Mapped[Optional[str]] = mapped_column(String(15), nullable=True)
    state_code: Mapped[Optional[str]] = mapped_column(String(2), nullable=True)

    # Credit account
    credit_limit_paise: Mapped[Optional[int]] = mapped_column(
        PaiseType,
        nullable=True,
        comment="Maximum outstanding credit; NULL = unlimited"
    )
    credit_balance_paise: Mapped[int] = mapped_column(
        PaiseType,
        default=0,
        nullable=False,
        comment="Current outstanding credit"
    )

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

    ledger_entries: Mapped[List["CreditLedgerEntry"]] = relationship(
        "CreditLedgerEntry",
        back_populates="customer",
        order_by="CreditLedgerEntry.entry_no"
    )

    def __repr__(self) -> str:
        return f"<Customer(name='{self.name}', balance={self.credit_balance_paise})>"


class CreditLedgerEntry(Base):
    """
    Append-only customer credit ledger.
    Entries are never updated or deleted; reversals are new entries.
    """
    __tablename__ = "credit_ledger_entries"
    __table_args__ = (
        UniqueConstraint("customer_id", "entry_no", name="uq_credit_ledger_entry_no"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False)
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("customers.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    entry_no: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Strictly increasing per customer"
    )
    entry_type: Mapped[str] = mapped_column(String(10), nullable=False, comment="DEBIT, CREDIT")
    amount_paise: Mapped[int] = mapped_column(PaiseType, nullable=False)
    balance_after_paise: Mapped[int] = mapped_column(PaiseType, nullable=False)

    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("invoices.id", ondelete="RESTRICT"),
        nullable=False
    )
    payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("payments.id", ondelete="RESTRICT"),
        nullable=True
    )
    description: Mapped[str] = mapped_column(String(300), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    customer: Mapped["Customer"] = relationship("Customer", back_populates="ledger_entries")

    def __repr__(self) -> str:
        return f"<CreditLedgerEntry(#{self.entry_no} {self.entry_type} {self.amount_paise})>"

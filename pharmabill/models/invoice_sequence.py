import uuid
from datetime import date, datetime, timezone

from sqlalchemy import String, Date, DateTime, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from pharmabill.database import Base
from pharmabill.db_types import UUIDType


class InvoiceSequence(Base):
    """
    Daily invoice number counter per seller and series (INV, CN).
    Read with SELECT FOR UPDATE so concurrent checkouts never share a number.
    """
    __tablename__ = "invoice_sequences"
    __table_args__ = (
        UniqueConstraint("seller_org_id", "series", "sequence_date", name="uq_invoice_sequence_day"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    seller_org_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False)
    series: Mapped[str] = mapped_column(String(10), nullable=False, comment="INV or CN")
    sequence_date: Mapped[date] = mapped_column(Date, nullable=False)
    current_number: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

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

    def __repr__(self) -> str:
        return f"<InvoiceSequence({self.series} {self.sequence_date} #{self.current_number})>"

import uuid
from typing import Optional
from datetime import datetime, timezone

from sqlalchemy import String, DateTime, ForeignKey, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from pharmabill.database import Base
from pharmabill.db_types import UUIDType


class RestockRecord(Base):
    """
    One restock per returned line and return batch.
    The unique key keeps retried returns from restocking twice.
    """
    __tablename__ = "restock_records"
    __table_args__ = (
        UniqueConstraint("original_line_item_id", "return_batch_ref", name="uq_restock_line_batch"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False)
    original_line_item_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("invoice_line_items.id", ondelete="RESTRICT"),
        nullable=False
    )
    return_batch_ref: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Idempotency key of the return request"
    )
    credit_note_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("invoices.id", ondelete="RESTRICT"),
        nullable=False
    )
    product_ref: Mapped[str] = mapped_column(String(100), nullable=False)
    batch_ref: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<RestockRecord(product='{self.product_ref}', qty={self.quantity})>"

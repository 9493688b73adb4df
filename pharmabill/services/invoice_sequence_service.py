"""
Invoice number allocation.

Format: {SERIES}-{YYYYMMDD}-{NNNN}, e.g. INV-20250301-0001
- SERIES is INV for sales, CN for credit notes
- NNNN restarts every day and is scoped to the selling organisation
- the day is taken in the configured business timezone (Asia/Kolkata)

USAGE:
    service = InvoiceSequenceService(db)
    number = await service.get_next_number(seller_org_id, "INV")
"""
import logging
import uuid
from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from pharmabill.config import settings
from pharmabill.models.billing import Invoice
from pharmabill.models.invoice_sequence import InvoiceSequence


logger = logging.getLogger(__name__)

SERIES_INVOICE = "INV"
SERIES_CREDIT_NOTE = "CN"
VALID_SERIES = (SERIES_INVOICE, SERIES_CREDIT_NOTE)
SEQUENCE_PADDING = 4


def business_date(now: Optional[datetime] = None) -> date:
    """Calendar date in the business timezone."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(ZoneInfo(settings.INVOICE_TIMEZONE)).date()


def format_invoice_number(series: str, day: date, number: int) -> str:
    return f"{series}-{day.strftime('%Y%m%d')}-{str(number).zfill(SEQUENCE_PADDING)}"


class InvoiceSequenceService:
    """
    Generates invoice numbers with database-level locking.

    The counter row for (seller, series, day) is read with SELECT FOR UPDATE,
    so two checkouts for the same seller on the same day serialise here.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_next_number(
        self,
        seller_org_id: uuid.UUID,
        series: str = SERIES_INVOICE,
        day: Optional[date] = None,
    ) -> str:
        """Allocate and return the next number for the seller's series."""
        if series not in VALID_SERIES:
            raise ValueError(f"Invalid invoice series '{series}'. Valid series: {', '.join(VALID_SERIES)}")

        day = day or business_date()
        sequence = await self._get_or_create_sequence(seller_org_id, series, day)
        sequence.current_number += 1
        await self.db.flush()

        number = format_invoice_number(series, day, sequence.current_number)
        logger.debug(f"Allocated invoice number {number} for seller {seller_org_id}")
        return number

    async def _count_existing(self, seller_org_id: uuid.UUID, series: str, day: date) -> int:
        """Invoices already numbered in this series today (before the counter row existed)."""
        prefix = f"{series}-{day.strftime('%Y%m%d')}-"
        result = await self.db.execute(
            select(func.count(Invoice.id)).where(
                Invoice.seller_org_id == seller_org_id,
                Invoice.invoice_number.like(f"{prefix}%"),
            )
        )
        return result.scalar() or 0

    async def _get_or_create_sequence(
        self,
        seller_org_id: uuid.UUID,
        series: str,
        day: date,
    ) -> InvoiceSequence:
        """
        Get existing counter with row lock, or create it.

        A new counter is seeded with the count of that seller's invoices
        for the day, so numbering continues after a counter reset. The
        first checkouts of a day race to create the row; the insert skips
        on conflict and every caller then locks the one surviving row.
        """
        sequence = await self._lock_sequence(seller_org_id, series, day)
        if sequence:
            return sequence

        await self._insert_sequence(seller_org_id, series, day)
        return await self._lock_sequence(seller_org_id, series, day)

    async def _lock_sequence(
        self,
        seller_org_id: uuid.UUID,
        series: str,
        day: date,
    ) -> Optional[InvoiceSequence]:
        result = await self.db.execute(
            select(InvoiceSequence)
            .where(
                InvoiceSequence.seller_org_id == seller_org_id,
                InvoiceSequence.series == series,
                InvoiceSequence.sequence_date == day,
            )
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _insert_sequence(self, seller_org_id: uuid.UUID, series: str, day: date) -> None:
        """INSERT ... ON CONFLICT DO NOTHING for the day's counter row."""
        dialect = self.db.get_bind().dialect.name
        insert = sqlite_insert if dialect == "sqlite" else pg_insert
        stmt = (
            insert(InvoiceSequence)
            .values(
                seller_org_id=seller_org_id,
                series=series,
                sequence_date=day,
                current_number=await self._count_existing(seller_org_id, series, day),
            )
            .on_conflict_do_nothing(index_elements=["seller_org_id", "series", "sequence_date"])
        )
        await self.db.execute(stmt)
        logger.debug(f"Ensured {series} counter for {day}, seller {seller_org_id}")

"""Customer accounts and the append-only credit ledger."""
import logging
import uuid
from typing import List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from pharmabill.core.errors import not_found
from pharmabill.core.tenant_context import TenantContext
from pharmabill.models.customer import Customer, CreditLedgerEntry, LedgerEntryType
from pharmabill.schemas.customer import CustomerCreate


logger = logging.getLogger(__name__)


class CustomerService:
    """Service for customer credit accounts."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_customer(self, tenant: TenantContext, data: CustomerCreate) -> Customer:
        customer = Customer(
            tenant_id=tenant.tenant_id,
            name=data.name,
            phone=data.phone,
            gstin=data.gstin,
            state_code=data.state_code,
            credit_limit_paise=data.credit_limit_paise,
            credit_balance_paise=0,
        )
        self.db.add(customer)
        await self.db.flush()
        logger.info(f"Created customer {customer.id} for tenant {tenant.tenant_id}")
        return customer

    async def get_customer(
        self,
        tenant: TenantContext,
        customer_id: uuid.UUID,
        for_update: bool = False,
    ) -> Customer:
        """Fetch a customer of the tenant, optionally locking the row."""
        stmt = select(Customer).where(
            Customer.id == customer_id,
            Customer.tenant_id == tenant.tenant_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        customer = result.scalar_one_or_none()
        if not customer:
            raise not_found(f"Customer {customer_id} not found", customer_id=str(customer_id))
        return customer

    async def get_ledger(self, tenant: TenantContext, customer_id: uuid.UUID) -> List[CreditLedgerEntry]:
        await self.get_customer(tenant, customer_id)
        result = await self.db.execute(
            select(CreditLedgerEntry)
            .where(CreditLedgerEntry.customer_id == customer_id)
            .order_by(CreditLedgerEntry.entry_no)
        )
        return list(result.scalars().all())

    async def append_ledger_entry(
        self,
        customer: Customer,
        entry_type: LedgerEntryType,
        amount_paise: int,
        invoice_id: uuid.UUID,
        description: str,
        payment_id: Optional[uuid.UUID] = None,
    ) -> CreditLedgerEntry:
        """
        Append a ledger entry and move the customer's balance.

        The caller must hold the customer row lock (get_customer(for_update=True)).
        DEBIT raises the balance, CREDIT lowers it.
        """
        result = await self.db.execute(
            select(func.max(CreditLedgerEntry.entry_no))
            .where(CreditLedgerEntry.customer_id == customer.id)
        )
        last_entry_no = result.scalar() or 0

        if entry_type == LedgerEntryType.DEBIT:
            customer.credit_balance_paise += amount_paise
        else:
            customer.credit_balance_paise -= amount_paise

        entry = CreditLedgerEntry(
            tenant_id=customer.tenant_id,
            customer_id=customer.id,
            entry_no=last_entry_no + 1,
            entry_type=entry_type.value,
            amount_paise=amount_paise,
            balance_after_paise=customer.credit_balance_paise,
            invoice_id=invoice_id,
            payment_id=payment_id,
            description=description,
        )
        self.db.add(entry)
        await self.db.flush()

        logger.info(
            f"Ledger #{entry.entry_no} {entry_type.value} {amount_paise} for customer {customer.id}, "
            f"balance now {customer.credit_balance_paise}"
        )
        return entry

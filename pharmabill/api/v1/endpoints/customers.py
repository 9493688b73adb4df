"""Customer credit accounts."""
from uuid import UUID

from fastapi import APIRouter, status

from pharmabill.api.deps import DB, Tenant
from pharmabill.schemas.customer import (
    CustomerCreate,
    CustomerResponse,
    CustomerLedgerResponse,
    CreditLedgerEntryResponse,
)
from pharmabill.services.customer_service import CustomerService

router = APIRouter()


@router.post("", response_model=CustomerResponse, status_code=status.HTTP_201_CREATED)
async def create_customer(payload: CustomerCreate, db: DB, tenant: Tenant):
    """Create a customer, optionally with a credit limit."""
    return await CustomerService(db).create_customer(tenant, payload)


@router.get("/{customer_id}", response_model=CustomerResponse)
async def get_customer(customer_id: UUID, db: DB, tenant: Tenant):
    return await CustomerService(db).get_customer(tenant, customer_id)


@router.get("/{customer_id}/ledger", response_model=CustomerLedgerResponse)
async def get_customer_ledger(customer_id: UUID, db: DB, tenant: Tenant):
    """Credit ledger in entry order."""
    service = CustomerService(db)
    customer = await service.get_customer(tenant, customer_id)
    entries = await service.get_ledger(tenant, customer_id)
    return CustomerLedgerResponse(
        customer=CustomerResponse.model_validate(customer),
        entries=[CreditLedgerEntryResponse.model_validate(e) for e in entries],
    )

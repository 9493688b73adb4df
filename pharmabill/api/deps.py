from typing import Annotated, Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from pharmabill.core.tenant_context import TenantContext, require_tenant_context
from pharmabill.database import get_db
from pharmabill.services.inventory_gateway import InventoryGateway, get_inventory_gateway
from pharmabill.services.payment_provider import PaymentProvider, get_payment_provider


def get_inventory() -> InventoryGateway:
    return get_inventory_gateway()


def get_provider() -> Optional[PaymentProvider]:
    return get_payment_provider()


# Type aliases for dependency injection
DB = Annotated[AsyncSession, Depends(get_db)]
Tenant = Annotated[TenantContext, Depends(require_tenant_context)]
Inventory = Annotated[InventoryGateway, Depends(get_inventory)]
Provider = Annotated[Optional[PaymentProvider], Depends(get_provider)]

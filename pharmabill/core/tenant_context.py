"""
Tenant context for billing operations.

Every service call receives an explicit TenantContext. There is no
process-wide default tenant or seller: a request that does not name its
tenant and seller is rejected before it reaches a service.

Usage:

    # In an endpoint:
    async def checkout(payload: CheckoutRequest, db: DB, tenant: Tenant):
        service = InvoiceService(db)
        return await service.create_invoice(tenant, payload)

    # In a job or test:
    tenant = TenantContext(tenant_id=..., seller_org_id=..., seller_gstin_id=...)
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Request, HTTPException, status

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Tenant-ID"
SELLER_ORG_HEADER = "X-Seller-Org-ID"
SELLER_GSTIN_HEADER = "X-Seller-GSTIN-ID"


class NoTenantContextError(Exception):
    """Raised when code requires tenant context but none is provided."""
    pass


@dataclass(frozen=True)
class TenantContext:
    """Tenant and selling entity on whose behalf an operation runs."""
    tenant_id: uuid.UUID
    seller_org_id: uuid.UUID
    seller_gstin_id: Optional[uuid.UUID] = None


def _parse_uuid(request: Request, header: str, required: bool = True) -> Optional[uuid.UUID]:
    raw = request.headers.get(header)
    if not raw:
        if required:
            raise NoTenantContextError(f"Missing {header} header")
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise NoTenantContextError(f"Invalid {header} header: {raw}")


def get_tenant_from_request(request: Request) -> TenantContext:
    """
    Build the tenant context from request headers.

    Raises:
        NoTenantContextError: If tenant or seller headers are missing or malformed
    """
    return TenantContext(
        tenant_id=_parse_uuid(request, TENANT_HEADER),
        seller_org_id=_parse_uuid(request, SELLER_ORG_HEADER),
        seller_gstin_id=_parse_uuid(request, SELLER_GSTIN_HEADER, required=False),
    )


def require_tenant_context(request: Request) -> TenantContext:
    """
    FastAPI dependency to require tenant context.

    Raises:
        HTTPException: If no tenant context
    """
    try:
        return get_tenant_from_request(request)
    except NoTenantContextError as e:
        logger.warning(f"Rejected request without tenant context: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )

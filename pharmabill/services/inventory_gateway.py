"""
Inventory collaborator for returns.

Stock itself lives in the inventory service. Billing only asks it to put
returned units back, batch-aware when the sold line carried a batch. Each
call carries an idempotency key so the inventory side can dedupe too.
"""
import logging
from typing import Optional, Protocol

import httpx

from pharmabill.config import settings
from pharmabill.core.tenant_context import TenantContext


logger = logging.getLogger(__name__)


class RestockError(Exception):
    """Transient failure talking to inventory; the call may be retried."""
    pass


class InventoryGateway(Protocol):
    async def restock(
        self,
        tenant: TenantContext,
        *,
        product_ref: str,
        batch_ref: Optional[str],
        quantity: int,
        idempotency_key: str,
    ) -> None:
        ...


class HttpInventoryGateway:
    """Restocks through the inventory service's REST API."""

    def __init__(self, base_url: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def restock(
        self,
        tenant: TenantContext,
        *,
        product_ref: str,
        batch_ref: Optional[str],
        quantity: int,
        idempotency_key: str,
    ) -> None:
        payload = {
            "product_ref": product_ref,
            "batch_ref": batch_ref,
            "quantity": quantity,
            "reason": "SALES_RETURN",
        }
        headers = {
            "X-Tenant-ID": str(tenant.tenant_id),
            "Idempotency-Key": idempotency_key,
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(f"{self.base_url}/stock/restock", json=payload, headers=headers)
            except httpx.HTTPError as e:
                raise RestockError(f"Inventory service unreachable: {e}") from e

        if response.status_code >= 500:
            raise RestockError(f"Inventory service returned {response.status_code}")
        if response.status_code >= 400:
            # 409 means this key was already applied
            if response.status_code == 409:
                logger.info(f"Restock {idempotency_key} already applied by inventory service")
                return
            raise RestockError(f"Inventory service rejected restock: {response.status_code} {response.text}")


class NullInventoryGateway:
    """Used when no inventory service is configured; restocks are only recorded locally."""

    async def restock(
        self,
        tenant: TenantContext,
        *,
        product_ref: str,
        batch_ref: Optional[str],
        quantity: int,
        idempotency_key: str,
    ) -> None:
        logger.info(
            f"No inventory service configured; restock of {quantity} x {product_ref} "
            f"(batch {batch_ref or '-'}) recorded locally only"
        )


def get_inventory_gateway() -> InventoryGateway:
    if settings.INVENTORY_SERVICE_URL:
        return HttpInventoryGateway(settings.INVENTORY_SERVICE_URL)
    return NullInventoryGateway()

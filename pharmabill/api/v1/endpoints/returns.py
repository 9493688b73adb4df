"""Sales returns (credit notes)."""
from fastapi import APIRouter, status

from pharmabill.api.deps import DB, Tenant, Inventory
from pharmabill.schemas.billing import InvoiceDetailResponse
from pharmabill.schemas.returns import ReturnRequest, ReturnResponse
from pharmabill.services.credit_note_service import CreditNoteService

router = APIRouter()


@router.post("/returns", response_model=ReturnResponse, status_code=status.HTTP_201_CREATED)
async def create_return(
    payload: ReturnRequest,
    db: DB,
    tenant: Tenant,
    inventory: Inventory,
):
    """Return items from an issued invoice, restock them and issue a credit note."""
    outcome = await CreditNoteService(db, inventory).process_return(tenant, payload)
    return ReturnResponse(
        credit_note=InvoiceDetailResponse.model_validate(outcome.credit_note),
        original_invoice_id=outcome.original_invoice.id,
        original_payment_status=outcome.original_invoice.payment_status,
    )

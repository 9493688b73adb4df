"""
Base Schema Classes for Pydantic Models

RULE: All response schemas that read from ORM rows inherit from
BaseResponseSchema; request bodies inherit from BaseCreateSchema.
Monetary fields are integer paise on both sides.
"""

from pydantic import BaseModel, ConfigDict


class BaseResponseSchema(BaseModel):
    """
    Base class for all response schemas that read from ORM models.

    Usage:
        class InvoiceResponse(BaseResponseSchema):
            id: UUID
            invoice_number: str
    """
    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
    )


class BaseCreateSchema(BaseModel):
    """
    Base class for create/input schemas.

    Unknown fields are ignored (forward compatibility with POS clients).
    """
    model_config = ConfigDict(
        extra='ignore',
    )

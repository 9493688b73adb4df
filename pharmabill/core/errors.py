"""Billing error taxonomy.

Services raise BillingError with one of the kinds below; the API layer
maps the kind to an HTTP status (see pharmabill.main).
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    INVALID_INPUT = "INVALID_INPUT"
    NOT_FOUND = "NOT_FOUND"
    OVERPAYMENT = "OVERPAYMENT"
    CREDIT_LIMIT_EXCEEDED = "CREDIT_LIMIT_EXCEEDED"
    RECONCILIATION_FAILURE = "RECONCILIATION_FAILURE"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    RESTOCK_FAILURE = "RESTOCK_FAILURE"


HTTP_STATUS_BY_KIND = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.OVERPAYMENT: 400,
    ErrorKind.CREDIT_LIMIT_EXCEEDED: 400,
    ErrorKind.RECONCILIATION_FAILURE: 500,
    ErrorKind.PROVIDER_ERROR: 502,
    ErrorKind.RESTOCK_FAILURE: 503,
}


class BillingError(Exception):
    """Base exception for billing operations."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.kind = kind
        self.message = message
        self.error_code = kind.value
        self.details = details or {}
        super().__init__(message)

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_KIND[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "code": self.error_code,
            "details": self.details,
        }


def invalid_input(message: str, **details: Any) -> BillingError:
    return BillingError(ErrorKind.INVALID_INPUT, message, details)


def not_found(message: str, **details: Any) -> BillingError:
    return BillingError(ErrorKind.NOT_FOUND, message, details)

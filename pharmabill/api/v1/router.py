from fastapi import APIRouter

from pharmabill.api.v1.endpoints import (
    checkout,
    invoices,
    payments,
    returns,
    reports,
    customers,
)

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(checkout.router, prefix="/pos", tags=["POS Checkout"])
api_router.include_router(returns.router, prefix="/pos", tags=["Returns"])
api_router.include_router(invoices.router, prefix="/invoices", tags=["Invoices"])
api_router.include_router(payments.router, prefix="/payments", tags=["Payments"])
api_router.include_router(reports.router, prefix="/reports", tags=["GST Reports"])
api_router.include_router(customers.router, prefix="/customers", tags=["Customers"])

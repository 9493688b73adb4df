import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from pharmabill.config import settings
from pharmabill.api.v1.router import api_router
from pharmabill.core.errors import BillingError, ErrorKind
from pharmabill.database import async_session_factory


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    yield
    logger.info("Shutting down")


API_DESCRIPTION = """
## Pharmacy POS Billing API

GST tax computation and invoice settlement for pharmacy counters.

- **Checkout**: cart → GST invoice (CGST/SGST or IGST), amounts in paise
- **Payments**: cash, card, UPI, wallet, cheque, bank transfer, credit and split tenders
- **Returns**: credit notes with restock and refund
- **Reports**: HSN summary, daily summary, year-end summary

Every request names its tenant with `X-Tenant-ID` and `X-Seller-Org-ID`
(optionally `X-Seller-GSTIN-ID`).
"""

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=API_DESCRIPTION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    """Map billing error kinds to HTTP status codes."""
    if exc.kind in (ErrorKind.RECONCILIATION_FAILURE, ErrorKind.PROVIDER_ERROR, ErrorKind.RESTOCK_FAILURE):
        logger.error(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message} {exc.details}")
    else:
        logger.info(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")

    return JSONResponse(
        status_code=exc.http_status,
        content=jsonable_encoder(exc.to_dict()),
        headers={"X-Error-Code": exc.error_code},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed requests are INVALID_INPUT (400)."""
    return JSONResponse(
        status_code=400,
        content=jsonable_encoder({
            "error": "Invalid request",
            "code": ErrorKind.INVALID_INPUT.value,
            "details": {"errors": exc.errors()},
        }),
        headers={"X-Error-Code": ErrorKind.INVALID_INPUT.value},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Unexpected errors: log with traceback, return a generic 500."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "type": type(exc).__name__,
            "path": str(request.url.path),
            "method": request.method,
        },
    )


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint with database validation."""
    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown"
        }
    }

    try:
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
        health_status["checks"]["database"] = "healthy"
    except Exception as e:
        logger.warning(f"Health check database failure: {e}")
        health_status["status"] = "degraded"
        health_status["checks"]["database"] = "unhealthy"

    return health_status


@app.get("/", tags=["Root"])
async def root():
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }

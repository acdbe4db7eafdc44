import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api.dashboard import router as dashboard_router
from app.api.invoices import router as invoices_router
from app.api.payments import router as payments_router
from app.config import get_settings
from app.services.errors import BillingError, LedgerContention, NotFound

logging.basicConfig(
    level=get_settings().LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Invoice Billing Ledger API",
    version="0.1.0",
)


@app.exception_handler(BillingError)
def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    if isinstance(exc, NotFound):
        status_code = 404
    elif isinstance(exc, LedgerContention):
        status_code = 409
    else:
        status_code = 422
    logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content={"detail": exc.detail()})


@app.get("/health")
def health_check():
    return {"status": "ok"}

app.include_router(invoices_router)
app.include_router(payments_router)
app.include_router(dashboard_router)

from sqlalchemy import text

from isp_billing.core.observability import (
    http_exception_handler,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

from isp_billing.core.config import settings
from isp_billing.db.session import engine
from isp_billing.routers import billing, payments

app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description=(
        "Operator API for the ISP billing engine.\n\n"
        "Read-only diagnostics for the daily billing cycle and the payment "
        "settlement worker, plus manual reset of failed document dispatches."
    ),
    swagger_ui_parameters={
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "billing", "description": "Billing cycle diagnostics and document dispatch queue."},
        {"name": "payments", "description": "Payment settlement worker statistics."},
    ],
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(billing.router)
app.include_router(payments.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready",
    }


@app.get("/health", tags=["health"])
def health():
    return {"ok": True}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        return {"ok": False}
    return {"ok": True}

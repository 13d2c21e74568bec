"""Entry point for the FastAPI application.

This module constructs the FastAPI app, includes all routers and sets up
the lifespan (Sentry initialisation and table creation).  Run it with
uvicorn::

    uvicorn receiptflow.api.main:app --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from urllib.parse import urlparse

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.exception_handlers import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from receiptflow.api.error_handlers import (
    generic_exception_handler,
    receiptflow_exception_handler,
    validation_exception_handler,
)
from receiptflow.api.routes.billing import router as billing_router
from receiptflow.api.routes.claims import router as claims_router
from receiptflow.api.routes.entitlements import router as entitlements_router
from receiptflow.api.routes.stripe_webhooks import router as stripe_webhooks_router
from receiptflow.api.routes.teams import router as teams_router
from receiptflow.core.config import settings
from receiptflow.core.database import get_db_debug_info, init_db
from receiptflow.core.exceptions import ReceiptflowError
from receiptflow.core.observability import init_sentry

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    logger.info("Starting up...")
    # Centralised Sentry init (idempotent)
    if init_sentry("api"):
        logger.info("Sentry SDK initialized (api)")
    await init_db()
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    lifespan=lifespan,
)


# Enrich the Sentry scope with lightweight request info
@app.middleware("http")
async def sentry_context_middleware(request: Request, call_next):
    if settings.SENTRY_DSN:
        scope = sentry_sdk.get_current_scope()
        scope.set_tag("path", request.url.path)
        scope.set_tag("method", request.method)
    return await call_next(request)


"""CORS configuration.

Logic:
1. In development => allow all ( * ) for simplest DX.
2. Otherwise start from BACKEND_CORS_ORIGINS.
3. Ensure the FRONTEND_BASE_URL origin is present (parsed) when not wildcard.
"""
env_is_dev = (settings.ENVIRONMENT or "development").lower() == "development"
allow_origins = ["*"] if env_is_dev else list(settings.BACKEND_CORS_ORIGINS or [])

if not env_is_dev:
    parsed = urlparse(settings.FRONTEND_BASE_URL or "")
    if parsed.scheme and parsed.netloc:
        front_origin = f"{parsed.scheme}://{parsed.netloc}"
        if "*" not in allow_origins and front_origin not in allow_origins:
            allow_origins.append(front_origin)

# Deduplicate preserving order
seen = set()
allow_origins = [o for o in allow_origins if not (o in seen or seen.add(o))]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register custom exception handlers
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(ReceiptflowError, receiptflow_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Include routers
app.include_router(entitlements_router)
app.include_router(teams_router)
app.include_router(claims_router)
app.include_router(billing_router)
app.include_router(stripe_webhooks_router)


@app.api_route("/health", methods=["GET", "HEAD"])
async def health_check():
    """Health check endpoint (supports GET & HEAD)."""
    return {"status": "healthy"}


@app.get("/debug/db")
async def db_debug():
    """Return non-sensitive DB diagnostics (development only)."""
    if (settings.ENVIRONMENT or "development").lower() != "development":
        return {"ok": False, "message": "disabled in non-development env"}
    return get_db_debug_info()

"""
FastAPI application entry point for the entitlement and billing engine.

Run locally:
    uvicorn main:app --reload --app-dir backend
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from billing_engine import __version__
from billing_engine.api.error_handlers import register_error_handlers
from billing_engine.api.routes import admin
from billing_engine.api.routes import analytics
from billing_engine.api.routes import billing
from billing_engine.api.routes import health
from billing_engine.api.routes import webhooks_stripe
from billing_engine.config.pricing import get_pricing_loader, seed_pricing_tiers
from billing_engine.config.settings import get_settings
from billing_engine.database.session import create_tables, reset_engine, session_scope

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting billing engine API", extra={"version": __version__})
    settings = get_settings()

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error("DATABASE_URL is not set. All billing endpoints will return 503.")
        app.state.database_configured = False
    else:
        # Mask credentials for safe logging
        masked = database_url.split("@")[-1] if "@" in database_url else database_url.split("://")[0]
        logger.info("DATABASE_URL configured", extra={"host_db": masked})
        app.state.database_configured = True

    if app.state.database_configured:
        if settings.auto_create_tables:
            create_tables()

        try:
            with session_scope() as db:
                seed_pricing_tiers(db, get_pricing_loader(settings.pricing_config_path))
        except SQLAlchemyError as e:
            logger.exception("Pricing tier seeding failed", extra={"error": str(e)})

    yield

    # Shutdown
    logger.info("Shutting down billing engine API")
    reset_engine()


# Create FastAPI app
app = FastAPI(
    title="Billing Engine API",
    description="Entitlement, coupon and subscription reconciliation service",
    version=__version__,
    lifespan=lifespan
)

cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

# Include health route (no authentication)
app.include_router(health.router)

# Include billing routes
app.include_router(billing.router)

# Include Stripe webhook routes (uses signature verification)
app.include_router(webhooks_stripe.router)

# Include admin and analytics routes (require admin token)
app.include_router(admin.router)
app.include_router(analytics.router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with proper logging."""
    logger.error(
        "Unhandled exception",
        extra={
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path
        },
        exc_info=True
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "errorKind": "InternalError",
            "errorMessage": "Internal server error",
            "retryable": False,
        },
    )

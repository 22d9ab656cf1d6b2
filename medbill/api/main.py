"""
FastAPI Main Application
Entry point for the billing API server
Source: https://fastapi.tiangolo.com/
"""

from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI

from medbill.api.deps import BillingServices, build_sql_services
from medbill.api.routes import billing, health
from medbill.core.config import BillingSettings, get_billing_settings
from medbill.db.connection import close_db_connection, get_engine, get_session_maker, init_db
from medbill.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


def create_app(
    services: Optional[BillingServices] = None,
    settings: Optional[BillingSettings] = None,
) -> FastAPI:
    """
    Build the billing API.

    Args:
        services: Pre-wired billing services; when omitted the lifespan
            wires them against DATABASE_URL and creates missing tables
        settings: Billing settings (defaults to the environment)
    """
    settings = settings or get_billing_settings()
    setup_logging(level=settings.LOG_LEVEL, json_logs=settings.JSON_LOGS)

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # type: ignore[no-untyped-def]
        # Startup
        owns_database = services is None
        if owns_database:
            await init_db(get_engine())
            app.state.billing = build_sql_services(get_session_maker(), settings)
        else:
            app.state.billing = services
        logger.info("Billing API started")

        yield

        # Shutdown
        if owns_database:
            await close_db_connection()
            logger.info("Database connections closed")
        logger.info("Billing API stopped")

    app = FastAPI(
        title="medbill",
        description="Encounter to X12 837P billing engine",
        version="1.0.0",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.billing = services

    app.include_router(health.router)
    app.include_router(billing.router)

    @app.get("/")
    async def root() -> dict[str, Any]:
        """API information."""
        return {"name": "medbill", "version": "1.0.0", "docs": "/docs"}

    return app


# uvicorn medbill.api.main:app
app = create_app()

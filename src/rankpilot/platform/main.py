"""
FastAPI application factory.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from rankpilot.platform.billing.config import BillingConfig, get_billing_config, set_billing_config
from rankpilot.platform.billing.exceptions import BillingError
from rankpilot.platform.billing.router import router as billing_router
from rankpilot.platform.db import check_database_health
from rankpilot.platform.logging import setup_logging
from rankpilot.platform.settings import settings

logger = structlog.get_logger(__name__)

API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifecycle."""
    config = get_billing_config()
    logger.info(
        "service.startup",
        app=settings.app_name,
        environment=settings.environment.value,
        grace_period_days=config.dunning.grace_period_days,
        expiry_policy=config.dunning.expiry_policy.value,
        mapped_prices=len(config.price_tiers),
    )
    if not config.stripe.webhook_secret:
        logger.warning("service.startup.webhook_secret_missing")
    yield
    logger.info("service.shutdown")


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Render billing errors with their status code and machine-readable body."""
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "billing.error",
        path=request.url.path,
        error_code=exc.error_code,
        status_code=exc.status_code,
        message=exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(billing_config: BillingConfig | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    setup_logging()
    if billing_config is not None:
        set_billing_config(billing_config)
    else:
        # Fail at startup on invalid tier or price configuration
        get_billing_config()

    app = FastAPI(
        title="RankPilot Platform Services",
        description="Subscription lifecycle and quota enforcement",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
    )

    app.add_exception_handler(BillingError, billing_error_handler)  # type: ignore[arg-type]
    app.include_router(billing_router, prefix=API_PREFIX)

    @app.get("/health", tags=["Health"])
    async def health() -> dict[str, Any]:
        database_ok = await check_database_health()
        return {
            "status": "healthy" if database_ok else "degraded",
            "version": settings.app_version,
            "checks": {"database": database_ok},
        }

    return app

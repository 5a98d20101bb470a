from __future__ import annotations

"""Application factory for FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers and
rate limiting services) to improve testability and separation of concerns
compared to a monolithic main.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.adapters.rate_limit.base import AbstractRecordStore
from app.api.routes import health_router, ratelimit_router
from app.core.config import settings
from app.core.exception_handlers import setup_exception_handlers
from app.core.logging import configure_logging
from app.core.middleware import request_id_middleware
from app.core.openapi import apply_openapi_customizations
from app.core.rate_limit import build_rate_limit_services

logger = logging.getLogger(__name__)


def create_app(
    *,
    store: AbstractRecordStore | None = None,
    start_cleanup: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        store: Optional pre-built record store (tests inject one).
        start_cleanup: Start the periodic cleanup thread during lifespan.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        services = app.state.rate_limit
        if start_cleanup and services.cleanup_job is not None:
            services.cleanup_job.start()
        try:
            yield
        finally:
            if services.cleanup_job is not None:
                services.cleanup_job.stop()
            logger.info("app.shutdown")

    app = FastAPI(
        title="Rate Limit Service",
        description=(
            "Progressive rate limiting for sensitive user flows (signup, signin, "
            "OTP verification and resend, password reset, profile mutation, file "
            "upload). Counts attempts per identifier and action inside time "
            "windows and escalates block duration for repeat violators. "
            "Requires X-API-Key."
        ),
        version="0.1.0",
        license_info={
            "name": "MIT License",
            "url": "https://opensource.org/licenses/MIT",
        },
        lifespan=lifespan,
    )

    # Services are built eagerly so a broken policy table fails at startup
    app.state.rate_limit = build_rate_limit_services(settings.rate_limit, store=store)

    # Middleware
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(ratelimit_router, prefix="/v1")
    app.include_router(health_router)

    # OpenAPI customizations (security scheme, tags, exemptions)
    apply_openapi_customizations(app)

    return app

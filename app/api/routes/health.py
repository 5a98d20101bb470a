from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from app.adapters.rate_limit.redis_store import RedisRecordStore
from app.core.errors import StoreAppError
from app.core.rate_limit import get_services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check() -> dict:
    """Health check endpoint.

    Returns a simple status response to verify the API is operational.
    Used by load balancers and monitoring systems to determine service health.

    Returns:
        dict: A dictionary with a single "status" key set to "ok".
    """

    return {"status": "ok"}


@router.get("/health/ready")
def readiness_check(request: Request) -> JSONResponse:
    """Readiness check including the record store.

    The rate limiter fails open, so an unreachable store does not make the
    service unusable; it is reported as "degraded" with HTTP 200.
    """

    services = get_services(request)
    store_status = "ok"
    if isinstance(services.store, RedisRecordStore):
        try:
            services.store.ping()
        except StoreAppError as exc:
            logger.warning("health.store_unreachable", extra={"error_code": exc.code})
            store_status = "unreachable"

    cleanup = services.cleanup_job
    return JSONResponse(
        {
            "status": "ok" if store_status == "ok" else "degraded",
            "store": store_status,
            "store_backend": type(services.store).__name__,
            "cleanup_running": bool(cleanup and cleanup.running),
        }
    )

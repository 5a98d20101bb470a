"""Rate limiting wiring for FastAPI.

This module builds the rate limiting services and exposes them to the HTTP
layer.

Design goals:
- Explicit lifecycle: the engine, store and cleanup job are constructed once
  by ``build_rate_limit_services`` and attached to ``app.state`` by the
  app factory, instead of living in module globals.
- Minimal coupling: routes depend on ``get_engine`` or on the
  ``require_rate_limit(action)`` dependency only.
- Swap-friendly: the store backend is chosen by configuration behind the
  ``AbstractRecordStore`` interface.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable

from fastapi import HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from app.adapters.rate_limit.base import AbstractRecordStore
from app.adapters.rate_limit.factory import create_record_store
from app.core.config import RateLimitSettings, settings
from app.services.cleanup_job import CleanupJob
from app.services.policies import PolicyResolver
from app.services.rate_limit_engine import RateLimitEngine, RateLimitResult

logger = logging.getLogger(__name__)


@dataclass
class RateLimitServices:
    """Rate limiting components sharing one record store."""

    store: AbstractRecordStore
    engine: RateLimitEngine
    cleanup_job: CleanupJob | None


def build_rate_limit_services(
    config: RateLimitSettings | None = None,
    *,
    store: AbstractRecordStore | None = None,
) -> RateLimitServices:
    """Construct store, engine and cleanup job from settings.

    Args:
        config: Rate limit settings; defaults to the global settings.
        store: Pre-built store (tests inject one); built from config otherwise.

    Returns:
        RateLimitServices ready to be attached to the application.
    """

    cfg = config or settings.rate_limit
    record_store = store or create_record_store(cfg)
    resolver = PolicyResolver.from_file(cfg.policies_file)
    engine = RateLimitEngine(record_store, resolver)

    cleanup_job = None
    if cfg.cleanup_enabled:
        cleanup_job = CleanupJob(
            record_store,
            retention=timedelta(hours=cfg.retention_hours),
            interval_seconds=cfg.cleanup_interval_seconds,
        )

    logger.info(
        "rate_limit.services_built",
        extra={
            "store_backend": type(record_store).__name__,
            "cleanup_enabled": cfg.cleanup_enabled,
            "policy_count": len(resolver.policies()),
        },
    )
    return RateLimitServices(store=record_store, engine=engine, cleanup_job=cleanup_job)


def get_services(request: Request) -> RateLimitServices:
    services = getattr(request.app.state, "rate_limit", None)
    if services is None:
        raise RuntimeError("Rate limit services are not initialized on app.state")
    return services


def get_engine(request: Request) -> RateLimitEngine:
    """FastAPI dependency returning the application's engine."""
    return get_services(request).engine


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """Standard headers describing a rate limit decision."""

    headers = {
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(result.reset_time.timestamp())),
    }
    if result.blocked:
        headers["Retry-After"] = str(result.retry_after_seconds)
    return headers


def require_rate_limit(
    action: str,
    identifier_getter: Callable[[Request], Awaitable[str | None] | str | None] | None = None,
) -> Callable[[Request], Awaitable[RateLimitResult | None]]:
    """Build a dependency guarding a flow route with the engine.

    The identifier defaults to the ``X-Actor-Id`` header, falling back to the
    client IP.

    Usage:
        @router.post("/auth/signin", dependencies=[Depends(require_rate_limit("signin"))])
        async def signin(...):
            ...

    Raises:
        HTTPException: 429 Too Many Requests when the actor is blocked.
    """

    async def _dependency(request: Request) -> RateLimitResult | None:
        identifier: str | None
        if identifier_getter is not None:
            identifier = identifier_getter(request)
            if inspect.isawaitable(identifier):
                identifier = await identifier
        else:
            identifier = request.headers.get("X-Actor-Id") or (
                request.client.host if request.client else None
            )
        if not identifier:
            return None

        engine = get_engine(request)
        # Store calls may block (e.g. Redis), keep them off the event loop
        result = await run_in_threadpool(engine.check, identifier, action)
        if result.allowed:
            return result

        headers = {"Retry-After": str(result.retry_after_seconds)}
        if settings.rate_limit.include_headers:
            headers = rate_limit_headers(result)

        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=result.message(),
            headers=headers,
        )

    return _dependency

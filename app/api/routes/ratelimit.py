from fastapi import APIRouter, Depends, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from app.core.auth import verify_api_key
from app.core.config import settings
from app.core.rate_limit import get_engine, rate_limit_headers
from app.schemas.rate_limit import (
    PolicyTableResponse,
    RateLimitDecision,
    RateLimitKey,
)
from app.services.rate_limit_engine import RateLimitEngine

router = APIRouter(tags=["Rate Limit"], dependencies=[Depends(verify_api_key)])


@router.post(
    "/ratelimit/check",
    response_model=RateLimitDecision,
    responses={429: {"model": RateLimitDecision, "description": "Actor is blocked."}},
)
async def check_rate_limit(
    body: RateLimitKey,
    engine: RateLimitEngine = Depends(get_engine),
) -> JSONResponse:
    """Count one attempt for (identifier, action) and return the decision.

    Returns 200 when the attempt is allowed and 429 with a ``Retry-After``
    header when the actor is blocked. A degraded store never produces a 429:
    the engine fails open.

    Raises:
        ValidationAppError: 400 when identifier or action is empty.
    """
    result = await run_in_threadpool(engine.check, body.identifier, body.action)
    decision = RateLimitDecision.from_result(result)

    headers: dict[str, str] = {}
    if settings.rate_limit.include_headers:
        headers = rate_limit_headers(result)
    if result.blocked:
        headers["Retry-After"] = str(result.retry_after_seconds)

    return JSONResponse(
        status_code=status.HTTP_200_OK if result.allowed else status.HTTP_429_TOO_MANY_REQUESTS,
        content=decision.model_dump(mode="json"),
        headers=headers or None,
    )


@router.post("/ratelimit/status", response_model=RateLimitDecision)
async def rate_limit_status(
    body: RateLimitKey,
    engine: RateLimitEngine = Depends(get_engine),
) -> RateLimitDecision:
    """Read-only view of the remaining attempts, without counting one."""
    result = await run_in_threadpool(engine.status, body.identifier, body.action)
    return RateLimitDecision.from_result(result)


@router.post("/ratelimit/reset", status_code=status.HTTP_204_NO_CONTENT)
async def reset_rate_limit(
    body: RateLimitKey,
    engine: RateLimitEngine = Depends(get_engine),
) -> Response:
    """Clear all state for (identifier, action), lifetime violations included."""
    await run_in_threadpool(engine.reset, body.identifier, body.action)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/ratelimit/policies", response_model=PolicyTableResponse)
def list_policies(engine: RateLimitEngine = Depends(get_engine)) -> PolicyTableResponse:
    """Return the resolved action -> policy table."""
    policies = {
        action: config.to_dict() for action, config in engine.resolver.policies().items()
    }
    return PolicyTableResponse.model_validate({"policies": policies})

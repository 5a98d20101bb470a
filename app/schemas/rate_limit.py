"""Pydantic schemas for the rate limit endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List

from pydantic import BaseModel, Field

from app.services.rate_limit_engine import RateLimitResult


class RateLimitKey(BaseModel):
    """Actor and action a rate limit decision applies to."""

    identifier: str = Field(
        ..., description="Actor key: email address or user id (case-insensitive)."
    )
    action: str = Field(
        ..., description="Logical operation name, e.g. 'signin' or 'otp_verify'."
    )


class RateLimitDecision(BaseModel):
    """Rate limit decision returned by check/status."""

    allowed: bool = Field(..., description="Whether the request may proceed.")
    blocked: bool = Field(..., description="Whether the actor is currently blocked.")
    remaining: int = Field(..., description="Attempts left in the current window.")
    reset_time: datetime = Field(
        ..., description="Block expiry when blocked, otherwise end of the window."
    )
    retry_after_seconds: int = Field(
        0, description="Seconds to wait before retrying (0 when allowed)."
    )
    escalation_level: int = Field(
        0, description="Escalation tiers reached by the actor for this action."
    )
    message: str | None = Field(
        None, description="User-facing wait message when blocked."
    )

    @classmethod
    def from_result(cls, result: RateLimitResult) -> "RateLimitDecision":
        return cls(
            allowed=result.allowed,
            blocked=result.blocked,
            remaining=result.remaining,
            reset_time=result.reset_time,
            retry_after_seconds=result.retry_after_seconds,
            escalation_level=result.escalation_level,
            message=result.message(),
        )


class EscalationTierSchema(BaseModel):
    attempts_threshold: int
    block_duration_minutes: int


class PolicySchema(BaseModel):
    max_attempts: int
    window_minutes: int
    block_duration_minutes: int
    escalation_tiers: List[EscalationTierSchema] = Field(default_factory=list)


class PolicyTableResponse(BaseModel):
    """Resolved action -> policy table, including the 'default' entry."""

    policies: Dict[str, PolicySchema]

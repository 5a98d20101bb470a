"""Application-level exception types.

This module defines domain errors used across services/adapters, enabling
consistent error handling, logging, and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients.

    Fields are optional to keep backward compatibility while encouraging
    consistent shapes across the codebase.
    """

    code: str
    message: str
    hint: str
    field: str
    action: str
    backend: str
    error_type: str
    http_status: int
    retry_after: int
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when caller input fails validation (e.g. empty identifier)."""


class ConfigurationAppError(AppError):
    """Raised when the rate limit policy table or backend config is invalid.

    Never absorbed by the engine: an undefined policy is a deployment defect.
    """


class StoreAppError(AppError):
    """Raised by record store adapters when the backing store fails."""


class AuthenticationAppError(AppError):
    """Raised when authentication/authorization fails."""


class RateLimitExceededError(AppError):
    """Raised by guarded callables when the rate limiter blocks the request."""

    @property
    def retry_after_seconds(self) -> int:
        if self.details and "retry_after" in self.details:
            return int(self.details["retry_after"])
        return 0

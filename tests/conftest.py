"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It sets the environment before any module imports ``app.core.config`` so the
settings object is built from test values.
"""

import os
from datetime import datetime, timedelta, timezone

import pytest

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"

# Set default env vars that all tests might need
os.environ.setdefault("APP_API_KEY_REQUIRED", "true")
os.environ.setdefault("APP_API_KEYS", "test-api-key-123,test-api-key-456")
os.environ.setdefault("RATE_LIMIT_STORE_BACKEND", "memory")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from app.adapters.rate_limit.in_memory import InMemoryRecordStore  # noqa: E402
from app.services.policies import PolicyResolver, RateLimitConfig  # noqa: E402
from app.services.rate_limit_engine import RateLimitEngine  # noqa: E402


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def signin_policy() -> RateLimitConfig:
    return RateLimitConfig(max_attempts=5, window_minutes=60, block_duration_minutes=15)


@pytest.fixture
def engine(store: InMemoryRecordStore, clock: FakeClock, signin_policy: RateLimitConfig) -> RateLimitEngine:
    resolver = PolicyResolver(
        {
            "signin": signin_policy,
            "default": RateLimitConfig(30, 60, 5),
        }
    )
    return RateLimitEngine(store, resolver, clock=clock)

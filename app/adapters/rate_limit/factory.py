"""Factory pattern for creating record store instances."""

from datetime import timedelta

from app.adapters.rate_limit.base import AbstractRecordStore
from app.adapters.rate_limit.in_memory import InMemoryRecordStore
from app.adapters.rate_limit.redis_store import RedisRecordStore
from app.core.config import RateLimitSettings, settings
from app.core.errors import ConfigurationAppError


def create_record_store(config: RateLimitSettings | None = None) -> AbstractRecordStore:
    """Factory function to instantiate the configured record store.

    Reads configuration from app.core.config.settings (Pydantic Settings)
    unless explicit settings are passed.

    Returns:
        AbstractRecordStore: Configured store instance.

    Raises:
        ConfigurationAppError: If the backend name is unknown.
    """
    cfg = config or settings.rate_limit
    backend = cfg.store_backend.lower()

    if backend == "memory":
        return InMemoryRecordStore()

    if backend == "redis":
        return RedisRecordStore.from_url(
            cfg.redis_url,
            key_prefix=cfg.redis_key_prefix,
            retention=timedelta(hours=cfg.retention_hours),
            socket_timeout=cfg.redis_socket_timeout_seconds,
        )

    raise ConfigurationAppError(
        code="unknown_store_backend",
        message=(
            f"Unknown rate limit store backend: '{backend}'. "
            "Supported backends: memory, redis"
        ),
        details={"backend": backend},
    )

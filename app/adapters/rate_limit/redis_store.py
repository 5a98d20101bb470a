"""Redis-backed rate limit record store.

Records are stored as JSON strings, one key per (identifier, action):

    {prefix}{action}:{identifier}

``atomic`` runs the engine's read-modify-write inside a redis-py optimistic
transaction (WATCH / MULTI / EXEC). When another worker writes the same key
between the read and EXEC, Redis aborts the transaction and redis-py retries
it with fresh state, so concurrent checks can never both count from the same
attempt number.
"""

from __future__ import annotations

import json
import logging
import math
from datetime import datetime, timedelta, timezone

import redis
from redis.client import Pipeline

from app.adapters.rate_limit.base import AbstractRecordStore, Mutator, RateLimitRecord, T
from app.core.errors import StoreAppError

logger = logging.getLogger(__name__)


class RedisRecordStore(AbstractRecordStore):
    """Record store shared across processes through Redis."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        key_prefix: str = "ratelimit:",
        retention: timedelta = timedelta(hours=24),
    ) -> None:
        """Initialize the store.

        Args:
            client: Configured Redis client (``decode_responses=True``).
            key_prefix: Namespace applied to every key.
            retention: Minimum TTL given to written keys, so idle records
                expire in Redis even when the cleanup job is not running.
        """
        self._client = client
        self._prefix = key_prefix
        self._retention = retention

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        key_prefix: str = "ratelimit:",
        retention: timedelta = timedelta(hours=24),
        socket_timeout: float | None = None,
    ) -> "RedisRecordStore":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, key_prefix=key_prefix, retention=retention)

    def _key(self, identifier: str, action: str) -> str:
        return f"{self._prefix}{action}:{identifier}"

    def _decode(self, raw: str | None) -> RateLimitRecord | None:
        if raw is None:
            return None
        try:
            return RateLimitRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            raise StoreAppError(
                code="store_corrupt_record",
                message="Stored rate limit record could not be decoded",
                details={"backend": "redis", "error_type": type(exc).__name__},
            ) from exc

    def _ttl_seconds(self, record: RateLimitRecord) -> int:
        ttl = self._retention.total_seconds()
        if record.blocked_until is not None:
            remaining = (record.blocked_until - datetime.now(timezone.utc)).total_seconds()
            ttl = max(ttl, remaining)
        return max(1, math.ceil(ttl))

    def _write(self, pipe: Pipeline | redis.Redis, record: RateLimitRecord) -> None:
        pipe.set(
            self._key(record.identifier, record.action),
            json.dumps(record.to_dict()),
            ex=self._ttl_seconds(record),
        )

    def _store_error(self, exc: redis.RedisError, operation: str) -> StoreAppError:
        return StoreAppError(
            code="store_unavailable",
            message=f"Redis {operation} failed",
            details={"backend": "redis", "error_type": type(exc).__name__},
        )

    def find(
        self, identifier: str, action: str, window_start: datetime
    ) -> RateLimitRecord | None:
        try:
            raw = self._client.get(self._key(identifier, action))
        except redis.RedisError as exc:
            raise self._store_error(exc, "find") from exc
        record = self._decode(raw)
        return record if self._visible(record, window_start) else None

    def upsert(self, record: RateLimitRecord) -> RateLimitRecord:
        try:
            self._write(self._client, record)
        except redis.RedisError as exc:
            raise self._store_error(exc, "upsert") from exc
        return record

    def delete(self, identifier: str, action: str) -> None:
        try:
            self._client.delete(self._key(identifier, action))
        except redis.RedisError as exc:
            raise self._store_error(exc, "delete") from exc

    def delete_older_than(self, cutoff: datetime) -> int:
        deleted = 0
        try:
            for key in self._client.scan_iter(match=f"{self._prefix}*", count=500):
                if self._client.transaction(
                    lambda pipe, key=key: self._delete_if_stale(pipe, key, cutoff),
                    key,
                    value_from_callable=True,
                ):
                    deleted += 1
        except redis.RedisError as exc:
            raise self._store_error(exc, "cleanup") from exc
        return deleted

    def _delete_if_stale(self, pipe: Pipeline, key: str, cutoff: datetime) -> bool:
        try:
            record = self._decode(pipe.get(key))
        except StoreAppError:
            # Undecodable payloads are garbage; drop them
            record = None
        else:
            if record is None:
                return False
            if record.is_blocked(cutoff):
                return False
            if record.updated_at is not None and record.updated_at >= cutoff:
                return False
        pipe.multi()
        pipe.delete(key)
        return True

    def atomic(self, identifier: str, action: str, mutate: Mutator[T]) -> T:
        key = self._key(identifier, action)

        def _apply(pipe: Pipeline) -> T:
            # After WATCH the pipeline executes reads immediately
            current = self._decode(pipe.get(key))
            new_record, value = mutate(current)
            pipe.multi()
            if new_record is not None:
                self._write(pipe, new_record)
            return value

        try:
            return self._client.transaction(_apply, key, value_from_callable=True)
        except redis.RedisError as exc:
            raise self._store_error(exc, "atomic update") from exc

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError as exc:
            raise self._store_error(exc, "ping") from exc

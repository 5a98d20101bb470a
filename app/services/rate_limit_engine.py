"""Progressive rate limiting engine.

The engine decides, per (identifier, action), whether a request may proceed.
It is stateless: all counters live in the record store, and every check runs
as one atomic read-modify-write on that store so concurrent checks for the
same key cannot both be allowed from the same attempt count.

Decision flow for ``check``:
1. Resolve the action's policy.
2. Atomically read the key's record.
3. Still blocked -> deny without touching counters.
4. Count the attempt in the open window (or start a fresh one).
5. Apply escalation from the lifetime violation count.
6. Over the effective limit -> record a violation and block.

Store failures fail open: an outage of the counting store must never lock
legitimate users out. Configuration errors always propagate.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Callable, Iterable, ParamSpec, TypeVar

from app.adapters.rate_limit.base import (
    AbstractRecordStore,
    RateLimitRecord,
    normalize_identifier,
)
from app.core.errors import (
    ConfigurationAppError,
    RateLimitExceededError,
    StoreAppError,
    ValidationAppError,
)
from app.core.logging import identifier_fields
from app.services.escalation import compute_effective_policy, escalation_level_for
from app.services.policies import PolicyResolver, RateLimitConfig

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate limit check.

    Attributes:
        allowed: Whether the request may proceed.
        blocked: Whether the actor is currently blocked for the action.
        remaining: Attempts left in the current window (0 when blocked).
        reset_time: Block expiry when blocked, otherwise window end.
        retry_after_seconds: Wait time before retrying (0 when allowed).
        escalation_level: Escalation tiers the actor has reached.
        degraded: True when the store could not be consulted (fail-open).
    """

    allowed: bool
    blocked: bool
    remaining: int
    reset_time: datetime
    retry_after_seconds: int
    escalation_level: int = 0
    degraded: bool = False

    def message(self) -> str | None:
        """User-facing wait message for blocked results."""
        if not self.blocked:
            return None
        return f"Too many attempts. Try again in {self.retry_after_seconds} seconds."


def _require(value: str, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationAppError(
            code="invalid_rate_limit_key",
            message=f"{field} must be a non-empty string",
            details={"field": field},
        )
    return value.strip()


class RateLimitEngine:
    """Orchestrates policy lookup, escalation and atomic record updates."""

    def __init__(
        self,
        store: AbstractRecordStore,
        resolver: PolicyResolver | None = None,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._resolver = resolver or PolicyResolver()
        self._clock = clock

    @property
    def store(self) -> AbstractRecordStore:
        return self._store

    @property
    def resolver(self) -> PolicyResolver:
        return self._resolver

    def _blocked_result(
        self, record: RateLimitRecord, now: datetime
    ) -> RateLimitResult:
        assert record.blocked_until is not None
        wait = math.ceil((record.blocked_until - now).total_seconds())
        return RateLimitResult(
            allowed=False,
            blocked=True,
            remaining=0,
            reset_time=record.blocked_until,
            retry_after_seconds=wait,
            escalation_level=record.escalation_level,
        )

    def _fail_open(
        self,
        exc: Exception,
        *,
        operation: str,
        identifier: str,
        action: str,
        config: RateLimitConfig,
        now: datetime,
    ) -> RateLimitResult:
        logger.error(
            "rate_limit.store_failure",
            extra={
                "operation": operation,
                "action": action,
                **identifier_fields(identifier),
                "error_type": type(exc).__name__,
                "error_code": getattr(exc, "code", None),
            },
        )
        return RateLimitResult(
            allowed=True,
            blocked=False,
            remaining=max(0, config.max_attempts - 1),
            reset_time=now + timedelta(minutes=config.window_minutes),
            retry_after_seconds=0,
            escalation_level=0,
            degraded=True,
        )

    def _decide(
        self,
        record: RateLimitRecord | None,
        identifier: str,
        action: str,
        config: RateLimitConfig,
        now: datetime,
    ) -> tuple[RateLimitRecord | None, tuple[RateLimitResult, bool]]:
        """Pure decision step run inside the store's atomic update.

        Returns the record to persist (None leaves the store untouched) and
        the result paired with whether this attempt tripped a new block.
        """

        if record is not None and record.is_blocked(now):
            return None, (self._blocked_result(record, now), False)

        window_floor = now - timedelta(minutes=config.window_minutes)
        total_violations = record.total_violations if record else 0
        policy = compute_effective_policy(config, total_violations)

        if record is None:
            updated = RateLimitRecord(
                identifier=identifier,
                action=action,
                attempts=1,
                window_start=now,
                window_end=now + timedelta(minutes=config.window_minutes),
                updated_at=now,
            )
        elif record.blocked_until is not None or not record.window_open(window_floor):
            # Window expired, or a served block: the actor starts over
            updated = record.start_window(now, config.window_minutes)
        else:
            updated = replace(record, attempts=record.attempts + 1, updated_at=now)

        if updated.attempts > policy.max_attempts:
            block_until = now + timedelta(minutes=policy.block_duration_minutes)
            violations = updated.total_violations + 1
            level = max(
                updated.escalation_level, escalation_level_for(config, violations)
            )
            updated = replace(
                updated,
                blocked_until=block_until,
                total_violations=violations,
                escalation_level=level,
                last_violation_at=now,
            )
            tripped = RateLimitResult(
                allowed=False,
                blocked=True,
                remaining=0,
                reset_time=block_until,
                retry_after_seconds=policy.block_duration_minutes * 60,
                escalation_level=level,
            )
            return updated, (tripped, True)

        allowed = RateLimitResult(
            allowed=True,
            blocked=False,
            remaining=policy.max_attempts - updated.attempts,
            reset_time=updated.window_start + timedelta(minutes=policy.window_minutes),
            retry_after_seconds=0,
            escalation_level=updated.escalation_level,
        )
        return updated, (allowed, False)

    def check(self, identifier: str, action: str) -> RateLimitResult:
        """Count one attempt for (identifier, action) and decide on it.

        Args:
            identifier: Actor key (email or user id); case-insensitive.
            action: Logical operation name (e.g. ``signin``).

        Returns:
            RateLimitResult. Fails open when the store cannot be consulted.

        Raises:
            ValidationAppError: If identifier or action is empty.
            ConfigurationAppError: If the policy table is broken.
        """

        identifier = normalize_identifier(_require(identifier, "identifier"))
        action = _require(action, "action")
        config = self._resolver.resolve(action)
        now = self._clock()

        try:
            result, tripped = self._store.atomic(
                identifier,
                action,
                lambda record: self._decide(record, identifier, action, config, now),
            )
        except ConfigurationAppError:
            raise
        except Exception as exc:  # noqa: BLE001 - any store failure fails open
            return self._fail_open(
                exc,
                operation="check",
                identifier=identifier,
                action=action,
                config=config,
                now=now,
            )

        log_extra = {
            "action": action,
            **identifier_fields(identifier),
            "remaining": result.remaining,
            "escalation_level": result.escalation_level,
        }
        if result.allowed:
            logger.debug("rate_limit.allowed", extra=log_extra)
        elif tripped:
            logger.warning(
                "rate_limit.violation",
                extra={**log_extra, "retry_after_s": result.retry_after_seconds},
            )
        else:
            logger.info(
                "rate_limit.blocked",
                extra={**log_extra, "retry_after_s": result.retry_after_seconds},
            )
        return result

    def status(self, identifier: str, action: str) -> RateLimitResult:
        """Read-only projection of the current state for display purposes.

        Reports what the actor has left without counting an attempt.
        """

        identifier = normalize_identifier(_require(identifier, "identifier"))
        action = _require(action, "action")
        config = self._resolver.resolve(action)
        now = self._clock()
        window_floor = now - timedelta(minutes=config.window_minutes)

        try:
            record = self._store.find(identifier, action, window_floor)
        except ConfigurationAppError:
            raise
        except Exception as exc:  # noqa: BLE001 - any store failure fails open
            return self._fail_open(
                exc,
                operation="status",
                identifier=identifier,
                action=action,
                config=config,
                now=now,
            )

        if record is not None and record.is_blocked(now):
            return self._blocked_result(record, now)

        policy = compute_effective_policy(
            config, record.total_violations if record else 0
        )
        if (
            record is None
            or record.blocked_until is not None
            or not record.window_open(window_floor)
        ):
            return RateLimitResult(
                allowed=True,
                blocked=False,
                remaining=policy.max_attempts,
                reset_time=now + timedelta(minutes=policy.window_minutes),
                retry_after_seconds=0,
                escalation_level=record.escalation_level if record else 0,
            )

        return RateLimitResult(
            allowed=record.attempts < policy.max_attempts,
            blocked=False,
            remaining=max(0, policy.max_attempts - record.attempts),
            reset_time=record.window_start + timedelta(minutes=policy.window_minutes),
            retry_after_seconds=0,
            escalation_level=record.escalation_level,
        )

    def reset(self, identifier: str, action: str) -> None:
        """Forget everything about (identifier, action), lifetime counters included."""

        identifier = normalize_identifier(_require(identifier, "identifier"))
        action = _require(action, "action")
        try:
            self._store.delete(identifier, action)
        except StoreAppError as exc:
            logger.error(
                "rate_limit.reset_failed",
                extra={
                    "action": action,
                    **identifier_fields(identifier),
                    "error_code": exc.code,
                },
            )
            return

        logger.info(
            "rate_limit.reset",
            extra={
                "action": action,
                **identifier_fields(identifier),
            },
        )

    def reset_many(self, identifier: str, actions: Iterable[str]) -> None:
        for action in actions:
            self.reset(identifier, action)

    def cleanup(self, retention: timedelta) -> int:
        """Delete records idle for longer than ``retention``."""
        return self._store.delete_older_than(self._clock() - retention)


def rate_limited(
    engine: RateLimitEngine,
    action: str,
    get_identifier: Callable[..., str],
) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """Decorator guarding a callable with a rate limit check.

    Args:
        engine: Engine performing the check.
        action: Action name the callable is limited under.
        get_identifier: Extracts the actor key from the call arguments.

    Raises:
        RateLimitExceededError: When the check does not allow the call.

    Example:
        @rate_limited(engine, "password_reset", lambda email: email)
        def send_reset_email(email: str) -> None:
            ...
    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            result = engine.check(get_identifier(*args, **kwargs), action)
            if not result.allowed:
                raise RateLimitExceededError(
                    code="rate_limit_exceeded",
                    message=(
                        f"Rate limit exceeded for {action}. "
                        f"Try again in {result.retry_after_seconds} seconds."
                    ),
                    details={
                        "action": action,
                        "retry_after": result.retry_after_seconds,
                    },
                )
            return func(*args, **kwargs)

        return wrapper

    return decorator

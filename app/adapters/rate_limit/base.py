"""Rate limit record store interface.

The engine depends on this abstraction (not a concrete backend) so state can
live in process memory for a single worker or in a shared store (e.g. Redis)
when the service is scaled horizontally.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, TypeVar

T = TypeVar("T")


def normalize_identifier(identifier: str) -> str:
    """Case-normalize an actor key (emails and user ids alike)."""
    return identifier.strip().lower()


@dataclass
class RateLimitRecord:
    """Attempt counters for one (identifier, action) pair.

    Attributes:
        identifier: Normalized actor key (email or user id).
        action: Logical operation name (e.g. ``signin``).
        attempts: Checks counted in the current window.
        window_start: Start of the current window (UTC).
        window_end: ``window_start + window_minutes``.
        blocked_until: Block expiry, or None when not blocked.
        escalation_level: Escalation tiers reached; carried across windows.
        total_violations: Lifetime violation count; carried across windows.
        last_violation_at: When the latest violation happened.
        updated_at: Last write time, used by cleanup.
    """

    identifier: str
    action: str
    attempts: int
    window_start: datetime
    window_end: datetime
    blocked_until: datetime | None = None
    escalation_level: int = 0
    total_violations: int = 0
    last_violation_at: datetime | None = None
    updated_at: datetime | None = None

    def is_blocked(self, now: datetime) -> bool:
        return self.blocked_until is not None and self.blocked_until > now

    def window_open(self, window_floor: datetime) -> bool:
        return self.window_start >= window_floor

    def start_window(self, now: datetime, window_minutes: int) -> "RateLimitRecord":
        """Supersede this record with a fresh window, keeping lifetime counters.

        Only called once any previous block has expired.
        """
        return replace(
            self,
            attempts=1,
            window_start=now,
            window_end=now + timedelta(minutes=window_minutes),
            blocked_until=None,
            updated_at=now,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RateLimitRecord":
        def _dt(value: str | None) -> datetime | None:
            return datetime.fromisoformat(value) if value else None

        return cls(
            identifier=data["identifier"],
            action=data["action"],
            attempts=int(data["attempts"]),
            window_start=datetime.fromisoformat(data["window_start"]),
            window_end=datetime.fromisoformat(data["window_end"]),
            blocked_until=_dt(data.get("blocked_until")),
            escalation_level=int(data.get("escalation_level", 0)),
            total_violations=int(data.get("total_violations", 0)),
            last_violation_at=_dt(data.get("last_violation_at")),
            updated_at=_dt(data.get("updated_at")),
        )


# mutate(current) -> (record to persist or None to leave untouched, value to return)
Mutator = Callable[[RateLimitRecord | None], tuple[RateLimitRecord | None, T]]


class AbstractRecordStore(ABC):
    """Persistence contract for rate limit records.

    Implementations must be safe to share between threads and make
    ``atomic`` indivisible per (identifier, action) key. Backend failures are
    raised as ``StoreAppError``.
    """

    @abstractmethod
    def find(
        self, identifier: str, action: str, window_start: datetime
    ) -> RateLimitRecord | None:
        """Return the record whose window started at/after ``window_start``.

        A record outside that window is still returned while it is blocked,
        so a block that outlives its window is still honoured.
        """
        raise NotImplementedError

    @abstractmethod
    def upsert(self, record: RateLimitRecord) -> RateLimitRecord:
        """Create or replace the record for its (identifier, action)."""
        raise NotImplementedError

    @abstractmethod
    def delete(self, identifier: str, action: str) -> None:
        """Delete the record for (identifier, action) if present."""
        raise NotImplementedError

    @abstractmethod
    def delete_older_than(self, cutoff: datetime) -> int:
        """Delete records last updated before ``cutoff`` and not blocked past it.

        Returns:
            Number of deleted records.
        """
        raise NotImplementedError

    @abstractmethod
    def atomic(self, identifier: str, action: str, mutate: Mutator[T]) -> T:
        """Run a read-modify-write on one key as a single indivisible step.

        ``mutate`` receives the stored record (any window) or None and returns
        ``(new_record, value)``. ``new_record`` is persisted unless it is None.
        ``mutate`` may run more than once on backends using optimistic
        concurrency, so it must be free of side effects.

        Returns:
            The ``value`` produced by the final successful ``mutate`` run.
        """
        raise NotImplementedError

    @staticmethod
    def _visible(record: RateLimitRecord | None, window_start: datetime) -> bool:
        if record is None:
            return False
        return record.window_open(window_start) or record.is_blocked(window_start)

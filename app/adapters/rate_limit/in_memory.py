"""In-memory rate limit record store.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: striped locks serialize read-modify-write cycles per
  (identifier, action) key while most unrelated keys proceed in parallel.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime

from app.adapters.rate_limit.base import AbstractRecordStore, Mutator, RateLimitRecord, T

_Key = tuple[str, str]


class InMemoryRecordStore(AbstractRecordStore):
    """Record store keeping one record per (identifier, action) in a dict.

    Important:
        State is lost on restart and not shared between processes. Use the
        Redis store when the service runs with more than one worker.
    """

    def __init__(self, *, lock_stripes: int = 64) -> None:
        if lock_stripes < 1:
            raise ValueError("lock_stripes must be >= 1")
        self._records: dict[_Key, RateLimitRecord] = {}
        self._stripes = [threading.RLock() for _ in range(lock_stripes)]

    def __len__(self) -> int:
        return len(self._records)

    def _lock_for(self, key: _Key) -> threading.RLock:
        return self._stripes[hash(key) % len(self._stripes)]

    def find(
        self, identifier: str, action: str, window_start: datetime
    ) -> RateLimitRecord | None:
        key = (identifier, action)
        with self._lock_for(key):
            record = self._records.get(key)
            if not self._visible(record, window_start):
                return None
            # Hand out copies so callers cannot mutate stored state in place
            return replace(record)

    def upsert(self, record: RateLimitRecord) -> RateLimitRecord:
        key = (record.identifier, record.action)
        with self._lock_for(key):
            self._records[key] = replace(record)
            return replace(record)

    def delete(self, identifier: str, action: str) -> None:
        key = (identifier, action)
        with self._lock_for(key):
            self._records.pop(key, None)

    def delete_older_than(self, cutoff: datetime) -> int:
        # Snapshot of keys; each key is re-checked under its own lock
        candidates = list(self._records)

        deleted = 0
        for key in candidates:
            with self._lock_for(key):
                record = self._records.get(key)
                if record is None or record.is_blocked(cutoff):
                    continue
                if record.updated_at is not None and record.updated_at >= cutoff:
                    continue
                del self._records[key]
                deleted += 1
        return deleted

    def atomic(self, identifier: str, action: str, mutate: Mutator[T]) -> T:
        key = (identifier, action)
        with self._lock_for(key):
            current = self._records.get(key)
            new_record, value = mutate(replace(current) if current else None)
            if new_record is not None:
                self._records[key] = replace(new_record)
            return value

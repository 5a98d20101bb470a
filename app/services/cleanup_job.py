"""Periodic deletion of idle rate limit records.

Cleanup only bounds storage growth. Records are deleted once they have not
been written for the retention period (and carry no active block), so a
failed or skipped run never changes a rate limit decision. Failures are
logged and retried on the next tick.
"""

from __future__ import annotations

import logging
import threading
from datetime import timedelta

from app.adapters.rate_limit.base import AbstractRecordStore
from app.services.rate_limit_engine import Clock, utc_now

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = timedelta(hours=24)
DEFAULT_INTERVAL_SECONDS = 6 * 60 * 60


class CleanupJob:
    """Background thread calling ``store.delete_older_than`` on a fixed interval."""

    def __init__(
        self,
        store: AbstractRecordStore,
        *,
        retention: timedelta = DEFAULT_RETENTION,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        clock: Clock = utc_now,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if retention <= timedelta(0):
            raise ValueError("retention must be positive")

        self._store = store
        self._retention = retention
        self._interval = interval_seconds
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        """Run a single cleanup pass.

        Returns:
            Number of deleted records, or 0 when the pass failed.
        """

        cutoff = self._clock() - self._retention
        self.runs += 1
        try:
            deleted = self._store.delete_older_than(cutoff)
        except Exception as exc:  # noqa: BLE001 - retried on next tick
            self.failures += 1
            logger.error(
                "cleanup.failed",
                extra={
                    "error_type": type(exc).__name__,
                    "error_code": getattr(exc, "code", None),
                    "cutoff": cutoff.isoformat(),
                },
            )
            return 0

        logger.info(
            "cleanup.completed",
            extra={
                "deleted": deleted,
                "cutoff": cutoff.isoformat(),
                "retention_s": int(self._retention.total_seconds()),
            },
        )
        return deleted

    def _loop(self) -> None:
        # Event.wait returns True once stop() is called
        while not self._stop_event.wait(self._interval):
            self.run_once()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, name="rate-limit-cleanup", daemon=True
        )
        self._thread.start()
        logger.info(
            "cleanup.started",
            extra={
                "interval_s": self._interval,
                "retention_s": int(self._retention.total_seconds()),
            },
        )

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("cleanup.stopped", extra={"runs": self.runs, "failures": self.failures})

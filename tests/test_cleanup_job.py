"""Tests for the periodic record cleanup job."""

import logging
import time
from datetime import timedelta
from unittest.mock import Mock

import pytest

from app.adapters.rate_limit.base import RateLimitRecord
from app.core.errors import StoreAppError
from app.services.cleanup_job import CleanupJob


def _idle_record(clock, identifier: str) -> RateLimitRecord:
    now = clock()
    return RateLimitRecord(
        identifier=identifier,
        action="signin",
        attempts=1,
        window_start=now,
        window_end=now + timedelta(minutes=60),
        updated_at=now,
    )


def test_run_once_deletes_idle_records(store, clock) -> None:
    store.upsert(_idle_record(clock, "old@b.com"))
    clock.advance(hours=23)
    store.upsert(_idle_record(clock, "recent@b.com"))
    clock.advance(hours=2)

    job = CleanupJob(store, retention=timedelta(hours=24), clock=clock)

    assert job.run_once() == 1
    assert len(store) == 1
    assert job.runs == 1
    assert job.failures == 0


def test_run_once_passes_retention_cutoff(clock) -> None:
    store = Mock()
    store.delete_older_than.return_value = 3
    job = CleanupJob(store, retention=timedelta(hours=12), clock=clock)

    assert job.run_once() == 3
    store.delete_older_than.assert_called_once_with(clock() - timedelta(hours=12))


def test_failures_are_logged_and_swallowed(clock, caplog) -> None:
    store = Mock()
    store.delete_older_than.side_effect = StoreAppError(
        code="store_unavailable", message="down"
    )
    job = CleanupJob(store, clock=clock)

    with caplog.at_level(logging.ERROR, logger="app.services.cleanup_job"):
        assert job.run_once() == 0

    assert job.failures == 1
    assert any(r.getMessage() == "cleanup.failed" for r in caplog.records)


def test_start_and_stop_background_thread(store) -> None:
    job = CleanupJob(store, interval_seconds=3600)

    job.start()
    assert job.running is True

    job.stop(timeout=2.0)
    assert job.running is False


def test_loop_runs_on_interval(store) -> None:
    store = Mock(wraps=store)
    job = CleanupJob(store, interval_seconds=0.01)

    job.start()
    try:
        for _ in range(200):
            if job.runs:
                break
            time.sleep(0.01)
    finally:
        job.stop(timeout=2.0)

    assert job.runs >= 1
    assert store.delete_older_than.called


@pytest.mark.parametrize(
    "kwargs",
    [
        {"interval_seconds": 0},
        {"retention": timedelta(0)},
    ],
)
def test_invalid_arguments(store, kwargs: dict) -> None:
    with pytest.raises(ValueError):
        CleanupJob(store, **kwargs)

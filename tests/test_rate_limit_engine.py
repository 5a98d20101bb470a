"""Tests for the progressive rate limiting engine."""

import threading
from datetime import timedelta
from unittest.mock import Mock

import pytest

from app.adapters.rate_limit.in_memory import InMemoryRecordStore
from app.core.errors import (
    ConfigurationAppError,
    RateLimitExceededError,
    StoreAppError,
    ValidationAppError,
)
from app.services.policies import EscalationTier, PolicyResolver, RateLimitConfig
from app.services.rate_limit_engine import RateLimitEngine, rate_limited


def _stored(store: InMemoryRecordStore, identifier: str, action: str):
    return store.atomic(identifier, action, lambda record: (None, record))


class TestScenarios:
    def test_scenario_a_sixth_attempt_is_blocked(self, engine: RateLimitEngine) -> None:
        results = [engine.check("a@b.com", "signin") for _ in range(6)]

        assert [r.allowed for r in results[:5]] == [True] * 5
        assert [r.remaining for r in results[:5]] == [4, 3, 2, 1, 0]

        blocked = results[5]
        assert blocked.allowed is False
        assert blocked.blocked is True
        assert blocked.remaining == 0
        assert blocked.retry_after_seconds == 900

    def test_scenario_b_fresh_window_after_block(self, engine: RateLimitEngine, clock) -> None:
        for _ in range(6):
            engine.check("a@b.com", "signin")

        clock.advance(minutes=16)
        result = engine.check("a@b.com", "signin")

        assert result.allowed is True
        assert result.blocked is False
        assert result.remaining == 4

    def test_scenario_c_tenth_violation_escalates(self, store, clock) -> None:
        policy = RateLimitConfig(5, 60, 15, (EscalationTier(10, 60),))
        engine = RateLimitEngine(
            store, PolicyResolver({"signin": policy, "default": policy}), clock=clock
        )

        retry_afters = []
        for _ in range(10):
            for _ in range(5):
                assert engine.check("a@b.com", "signin").allowed is True
            blocked = engine.check("a@b.com", "signin")
            assert blocked.blocked is True
            retry_afters.append(blocked.retry_after_seconds)
            # Serve the block and move into a new window
            clock.advance(minutes=61)

        assert retry_afters[:9] == [900] * 9
        assert retry_afters[9] == 3600
        assert _stored(store, "a@b.com", "signin").total_violations == 10


class TestBlocking:
    def test_checks_while_blocked_do_not_increment(self, engine, store, clock) -> None:
        for _ in range(6):
            engine.check("a@b.com", "signin")
        record_before = _stored(store, "a@b.com", "signin")

        clock.advance(minutes=5)
        result = engine.check("a@b.com", "signin")

        assert result.blocked is True
        assert result.retry_after_seconds == 600
        record_after = _stored(store, "a@b.com", "signin")
        assert record_after.attempts == record_before.attempts
        assert record_after.blocked_until == record_before.blocked_until
        assert record_after.total_violations == 1

    def test_block_outliving_the_window_is_honoured(self, store, clock) -> None:
        policy = RateLimitConfig(1, 10, 120)
        engine = RateLimitEngine(
            store, PolicyResolver({"default": policy}), clock=clock
        )
        engine.check("user-1", "otp_resend")
        assert engine.check("user-1", "otp_resend").blocked is True

        clock.advance(minutes=30)

        assert engine.check("user-1", "otp_resend").blocked is True

    def test_attempts_non_decreasing_within_window(self, engine, store, clock) -> None:
        seen = []
        for _ in range(5):
            engine.check("a@b.com", "signin")
            seen.append(_stored(store, "a@b.com", "signin").attempts)
            clock.advance(minutes=1)

        assert seen == [1, 2, 3, 4, 5]

    def test_new_window_starts_with_one_attempt_and_keeps_violations(
        self, engine, store, clock
    ) -> None:
        for _ in range(6):
            engine.check("a@b.com", "signin")

        clock.advance(minutes=61)
        engine.check("a@b.com", "signin")

        record = _stored(store, "a@b.com", "signin")
        assert record.attempts == 1
        assert record.total_violations == 1
        assert record.blocked_until is None

    def test_identifier_is_case_normalized(self, engine) -> None:
        for _ in range(5):
            engine.check("A@B.com", "signin")

        assert engine.check("  a@b.COM ", "signin").blocked is True

    def test_actions_are_independent(self, engine) -> None:
        for _ in range(6):
            engine.check("a@b.com", "signin")

        assert engine.check("a@b.com", "profile_update").allowed is True


class TestValidation:
    @pytest.mark.parametrize(("identifier", "action"), [("", "signin"), ("a@b.com", ""), ("   ", "signin")])
    def test_empty_arguments_raise_before_touching_store(self, identifier, action) -> None:
        store = Mock()
        engine = RateLimitEngine(store)

        with pytest.raises(ValidationAppError):
            engine.check(identifier, action)

        store.atomic.assert_not_called()


class TestResetAndStatus:
    def test_reset_behaves_like_first_check(self, engine) -> None:
        for _ in range(6):
            engine.check("a@b.com", "signin")

        engine.reset("a@b.com", "signin")
        result = engine.check("a@b.com", "signin")

        assert result.allowed is True
        assert result.remaining == 4
        assert result.escalation_level == 0

    def test_reset_many_clears_each_action(self, engine) -> None:
        for action in ("signin", "otp_verify"):
            for _ in range(40):
                engine.check("a@b.com", action)

        engine.reset_many("a@b.com", ["signin", "otp_verify"])

        assert engine.check("a@b.com", "signin").allowed is True
        assert engine.check("a@b.com", "otp_verify").allowed is True

    def test_reset_swallows_store_errors(self) -> None:
        store = Mock()
        store.delete.side_effect = StoreAppError(code="store_unavailable", message="down")
        engine = RateLimitEngine(store)

        engine.reset("a@b.com", "signin")

    def test_status_does_not_mutate(self, engine, store) -> None:
        engine.check("a@b.com", "signin")
        engine.check("a@b.com", "signin")

        first = engine.status("a@b.com", "signin")
        second = engine.status("a@b.com", "signin")

        assert first == second
        assert first.remaining == 3
        assert _stored(store, "a@b.com", "signin").attempts == 2

    def test_status_for_unknown_actor(self, engine) -> None:
        result = engine.status("new@b.com", "signin")

        assert result.allowed is True
        assert result.remaining == 5

    def test_status_reports_block(self, engine, clock) -> None:
        for _ in range(6):
            engine.check("a@b.com", "signin")
        clock.advance(minutes=10)

        result = engine.status("a@b.com", "signin")

        assert result.blocked is True
        assert result.retry_after_seconds == 300
        assert result.message() == "Too many attempts. Try again in 300 seconds."


class TestFailOpen:
    def test_store_failure_on_check_fails_open(self, signin_policy) -> None:
        store = Mock()
        store.atomic.side_effect = StoreAppError(code="store_unavailable", message="down")
        engine = RateLimitEngine(
            store, PolicyResolver({"signin": signin_policy, "default": signin_policy})
        )

        result = engine.check("a@b.com", "signin")

        assert result.allowed is True
        assert result.blocked is False
        assert result.remaining == signin_policy.max_attempts - 1
        assert result.degraded is True

    def test_write_failure_fails_open(self, signin_policy) -> None:
        class WriteFailingStore(InMemoryRecordStore):
            def atomic(self, identifier, action, mutate):
                mutate(None)
                raise TimeoutError("write timed out")

        engine = RateLimitEngine(
            WriteFailingStore(),
            PolicyResolver({"signin": signin_policy, "default": signin_policy}),
        )

        result = engine.check("a@b.com", "signin")

        assert result.allowed is True
        assert result.degraded is True

    def test_store_failure_on_status_fails_open(self) -> None:
        store = Mock()
        store.find.side_effect = ConnectionError("unreachable")
        engine = RateLimitEngine(store)

        result = engine.status("a@b.com", "signin")

        assert result.allowed is True
        assert result.degraded is True

    def test_configuration_error_propagates(self) -> None:
        resolver = Mock()
        resolver.resolve.side_effect = ConfigurationAppError(
            code="missing_default_policy", message="broken"
        )
        engine = RateLimitEngine(InMemoryRecordStore(), resolver)

        with pytest.raises(ConfigurationAppError):
            engine.check("a@b.com", "signin")


def test_concurrent_checks_never_overshoot(clock) -> None:
    policy = RateLimitConfig(50, 60, 15)
    engine = RateLimitEngine(
        InMemoryRecordStore(), PolicyResolver({"default": policy}), clock=clock
    )
    results = []
    lock = threading.Lock()

    def worker() -> None:
        for _ in range(20):
            result = engine.check("a@b.com", "signin")
            with lock:
                results.append(result)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    allowed = [r for r in results if r.allowed]
    assert len(allowed) == 50
    assert sorted(r.remaining for r in allowed) == list(range(50))


def test_cleanup_uses_engine_clock(engine, store, clock) -> None:
    engine.check("a@b.com", "signin")
    clock.advance(hours=25)

    assert engine.cleanup(timedelta(hours=24)) == 1
    assert len(store) == 0


class TestRateLimitedDecorator:
    def test_allows_until_blocked(self, engine) -> None:
        calls = []

        @rate_limited(engine, "signin", lambda email: email)
        def sign_in(email: str) -> str:
            calls.append(email)
            return "ok"

        for _ in range(5):
            assert sign_in("a@b.com") == "ok"

        with pytest.raises(RateLimitExceededError) as exc_info:
            sign_in("a@b.com")

        assert len(calls) == 5
        assert exc_info.value.retry_after_seconds == 900
        assert "Try again in 900 seconds" in exc_info.value.message

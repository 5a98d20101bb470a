"""Unit tests for the action policy table and resolver."""

import json

import pytest

from app.core.errors import ConfigurationAppError
from app.services.policies import (
    DEFAULT_POLICIES,
    EscalationTier,
    PolicyResolver,
    RateLimitConfig,
    load_policy_file,
)


class TestRateLimitConfig:
    def test_tiers_are_sorted_by_threshold(self) -> None:
        config = RateLimitConfig(
            5,
            60,
            15,
            (EscalationTier(15, 240), EscalationTier(10, 60)),
        )

        assert [t.attempts_threshold for t in config.escalation_tiers] == [10, 15]

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_attempts": 0, "window_minutes": 60, "block_duration_minutes": 15},
            {"max_attempts": 5, "window_minutes": 0, "block_duration_minutes": 15},
            {"max_attempts": 5, "window_minutes": 60, "block_duration_minutes": 0},
        ],
    )
    def test_invalid_values_raise_configuration_error(self, kwargs: dict) -> None:
        with pytest.raises(ConfigurationAppError):
            RateLimitConfig(**kwargs)

    def test_invalid_tier_raises_configuration_error(self) -> None:
        with pytest.raises(ConfigurationAppError):
            RateLimitConfig(5, 60, 15, (EscalationTier(0, 60),))


class TestPolicyResolver:
    def test_resolves_known_action(self) -> None:
        resolver = PolicyResolver()

        config = resolver.resolve("otp_verify")

        assert config.max_attempts == 5
        assert config.window_minutes == 10
        assert config.escalation_tiers == (EscalationTier(10, 60),)

    def test_unknown_action_falls_back_to_default(self) -> None:
        resolver = PolicyResolver()

        assert resolver.resolve("does_not_exist") == DEFAULT_POLICIES["default"]

    def test_table_without_default_is_rejected(self) -> None:
        with pytest.raises(ConfigurationAppError) as exc_info:
            PolicyResolver({"signin": RateLimitConfig(5, 60, 15)})

        assert exc_info.value.code == "missing_default_policy"

    def test_builtin_table_covers_sensitive_flows(self) -> None:
        for action in ("signup", "signin", "otp_verify", "otp_resend", "password_reset",
                       "profile_update", "file_upload", "default"):
            assert action in DEFAULT_POLICIES


class TestPolicyFile:
    def test_file_overrides_and_extends_builtins(self, tmp_path) -> None:
        path = tmp_path / "policies.json"
        path.write_text(
            json.dumps(
                {
                    "signin": {
                        "max_attempts": 3,
                        "window_minutes": 30,
                        "block_duration_minutes": 10,
                        "escalation_tiers": [
                            {"attempts_threshold": 2, "block_duration_minutes": 120}
                        ],
                    },
                    "invite_send": {
                        "max_attempts": 7,
                        "window_minutes": 60,
                        "block_duration_minutes": 5,
                    },
                }
            )
        )

        resolver = PolicyResolver.from_file(path)

        assert resolver.resolve("signin").max_attempts == 3
        assert resolver.resolve("signin").escalation_tiers == (EscalationTier(2, 120),)
        assert resolver.resolve("invite_send").max_attempts == 7
        assert resolver.resolve("signup") == DEFAULT_POLICIES["signup"]

    def test_no_file_uses_builtins(self) -> None:
        resolver = PolicyResolver.from_file(None)

        assert resolver.policies() == DEFAULT_POLICIES

    def test_invalid_file_raises_configuration_error(self, tmp_path) -> None:
        path = tmp_path / "policies.json"
        path.write_text(json.dumps({"signin": {"max_attempts": -1}}))

        with pytest.raises(ConfigurationAppError) as exc_info:
            load_policy_file(path)

        assert exc_info.value.code == "invalid_policy_file"

    def test_missing_file_raises_configuration_error(self, tmp_path) -> None:
        with pytest.raises(ConfigurationAppError):
            load_policy_file(tmp_path / "missing.json")

"""Per-action rate limit policies.

Each sensitive flow (signup, signin, OTP, password reset, profile mutation,
file upload) is rate limited under a named action. ``PolicyResolver`` maps an
action name to its ``RateLimitConfig`` and falls back to the mandatory
``default`` policy for unknown actions.

The built-in table can be overridden or extended with a JSON file:

    {
      "signin": {
        "max_attempts": 10,
        "window_minutes": 60,
        "block_duration_minutes": 15,
        "escalation_tiers": [{"attempts_threshold": 20, "block_duration_minutes": 60}]
      }
    }
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from pydantic import BaseModel, Field, RootModel, ValidationError

from app.core.errors import ConfigurationAppError

logger = logging.getLogger(__name__)

DEFAULT_ACTION = "default"


@dataclass(frozen=True)
class EscalationTier:
    """Stricter block duration applied once enough violations accumulate."""

    attempts_threshold: int
    block_duration_minutes: int


@dataclass(frozen=True)
class RateLimitConfig:
    """Immutable rate limit policy for one action.

    Attributes:
        max_attempts: Checks allowed per window.
        window_minutes: Length of the counting window.
        block_duration_minutes: Base block applied on a violation.
        escalation_tiers: Tiers sorted by ascending ``attempts_threshold``.
    """

    max_attempts: int
    window_minutes: int
    block_duration_minutes: int
    escalation_tiers: tuple[EscalationTier, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        for name in ("max_attempts", "window_minutes", "block_duration_minutes"):
            if getattr(self, name) < 1:
                raise ConfigurationAppError(
                    code="invalid_policy",
                    message=f"{name} must be >= 1",
                    details={"field": name},
                )
        for tier in self.escalation_tiers:
            if tier.attempts_threshold < 1 or tier.block_duration_minutes < 1:
                raise ConfigurationAppError(
                    code="invalid_policy",
                    message="escalation tier values must be >= 1",
                    details={"field": "escalation_tiers"},
                )
        # Frozen dataclass: normalize tier order through object.__setattr__
        ordered = tuple(
            sorted(self.escalation_tiers, key=lambda tier: tier.attempts_threshold)
        )
        object.__setattr__(self, "escalation_tiers", ordered)

    def to_dict(self) -> dict:
        return {
            "max_attempts": self.max_attempts,
            "window_minutes": self.window_minutes,
            "block_duration_minutes": self.block_duration_minutes,
            "escalation_tiers": [
                {
                    "attempts_threshold": tier.attempts_threshold,
                    "block_duration_minutes": tier.block_duration_minutes,
                }
                for tier in self.escalation_tiers
            ],
        }


def _tiers(*pairs: tuple[int, int]) -> tuple[EscalationTier, ...]:
    return tuple(EscalationTier(threshold, minutes) for threshold, minutes in pairs)


DEFAULT_POLICIES: dict[str, RateLimitConfig] = {
    # Authentication, with progressive blocking
    "signup": RateLimitConfig(5, 60, 15, _tiers((10, 60), (15, 240))),
    "signin": RateLimitConfig(10, 60, 15, _tiers((20, 60), (30, 180))),
    "otp_verify": RateLimitConfig(5, 10, 15, _tiers((10, 60))),
    "otp_resend": RateLimitConfig(3, 10, 15),
    "password_reset": RateLimitConfig(3, 60, 30),
    # Profile
    "profile_update": RateLimitConfig(20, 60, 5),
    "profile_load": RateLimitConfig(100, 60, 1),
    "file_upload": RateLimitConfig(10, 60, 10),
    # Backend calls
    "api_call": RateLimitConfig(100, 60, 5),
    "database_query": RateLimitConfig(200, 60, 2),
    "edge_function": RateLimitConfig(50, 60, 5),
    DEFAULT_ACTION: RateLimitConfig(30, 60, 5),
}


class EscalationTierModel(BaseModel):
    attempts_threshold: int = Field(..., ge=1)
    block_duration_minutes: int = Field(..., ge=1)


class PolicyModel(BaseModel):
    """Schema of a single policy entry in the policies JSON file."""

    max_attempts: int = Field(..., ge=1)
    window_minutes: int = Field(..., ge=1)
    block_duration_minutes: int = Field(..., ge=1)
    escalation_tiers: list[EscalationTierModel] = Field(default_factory=list)

    def to_config(self) -> RateLimitConfig:
        return RateLimitConfig(
            max_attempts=self.max_attempts,
            window_minutes=self.window_minutes,
            block_duration_minutes=self.block_duration_minutes,
            escalation_tiers=tuple(
                EscalationTier(t.attempts_threshold, t.block_duration_minutes)
                for t in self.escalation_tiers
            ),
        )


class PolicyFileModel(RootModel[dict[str, PolicyModel]]):
    """Schema of the policies JSON file: action name -> policy."""


def load_policy_file(path: str | Path) -> dict[str, RateLimitConfig]:
    """Load and validate policies from a JSON file.

    Args:
        path: Path to the JSON policy file.

    Returns:
        Mapping of action name to ``RateLimitConfig``.

    Raises:
        ConfigurationAppError: If the file is missing, not JSON, or invalid.
    """

    file_path = Path(path)
    try:
        raw = json.loads(file_path.read_text(encoding="utf-8"))
        parsed = PolicyFileModel.model_validate(raw)
    except (OSError, json.JSONDecodeError, ValidationError) as exc:
        raise ConfigurationAppError(
            code="invalid_policy_file",
            message=f"Could not load rate limit policies from {file_path}",
            details={"error_type": type(exc).__name__},
        ) from exc

    return {action: policy.to_config() for action, policy in parsed.root.items()}


class PolicyResolver:
    """Static lookup from action name to ``RateLimitConfig``."""

    def __init__(self, policies: Mapping[str, RateLimitConfig] | None = None) -> None:
        table = dict(DEFAULT_POLICIES if policies is None else policies)
        if DEFAULT_ACTION not in table:
            raise ConfigurationAppError(
                code="missing_default_policy",
                message="Rate limit policy table must define a 'default' entry",
            )
        self._policies = table

    @classmethod
    def from_file(cls, path: str | Path | None) -> "PolicyResolver":
        """Build a resolver from the built-ins merged with an optional file."""

        policies = dict(DEFAULT_POLICIES)
        if path:
            overrides = load_policy_file(path)
            policies.update(overrides)
            logger.info(
                "rate_limit.policies_loaded",
                extra={"policy_file": str(path), "overridden": sorted(overrides)},
            )
        return cls(policies)

    def resolve(self, action: str) -> RateLimitConfig:
        return self._policies.get(action, self._policies[DEFAULT_ACTION])

    def policies(self) -> dict[str, RateLimitConfig]:
        return dict(self._policies)

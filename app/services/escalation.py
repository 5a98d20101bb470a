"""Progressive escalation of rate limit policies.

An actor's lifetime violation count (carried across windows) selects an
escalation tier. Tiers are scanned in ascending threshold order and the
highest satisfied threshold wins, so equal thresholds resolve to the tier
listed last. Escalation only ever lengthens the block; it never grants more
attempts or a shorter window than the base policy.
"""

from __future__ import annotations

from dataclasses import dataclass

from app.services.policies import EscalationTier, RateLimitConfig


@dataclass(frozen=True)
class EffectivePolicy:
    """Policy in force for the attempt about to be made."""

    max_attempts: int
    window_minutes: int
    block_duration_minutes: int


def _applicable_tier(
    tiers: tuple[EscalationTier, ...], violations: int
) -> EscalationTier | None:
    selected: EscalationTier | None = None
    for tier in tiers:
        if tier.attempts_threshold <= violations:
            selected = tier
        else:
            break
    return selected


def compute_effective_policy(
    base: RateLimitConfig, total_violations: int
) -> EffectivePolicy:
    """Turn an actor's violation history into the policy for the next attempt.

    The tier that applies is the last one whose threshold is
    ``<= total_violations + 1``: the violation this attempt would cause.

    Args:
        base: Action policy from the resolver.
        total_violations: Violations the actor accumulated so far.

    Returns:
        EffectivePolicy, never weaker than ``base``.
    """

    violations = max(0, total_violations) + 1
    tier = _applicable_tier(base.escalation_tiers, violations)
    block = base.block_duration_minutes
    if tier is not None:
        # A later tier configured with a shorter block must not undercut an
        # earlier one the actor already passed.
        reached = (
            t.block_duration_minutes
            for t in base.escalation_tiers
            if t.attempts_threshold <= violations
        )
        block = max(block, tier.block_duration_minutes, *reached)

    return EffectivePolicy(
        max_attempts=base.max_attempts,
        window_minutes=base.window_minutes,
        block_duration_minutes=block,
    )


def escalation_level_for(base: RateLimitConfig, total_violations: int) -> int:
    """Number of escalation tiers the actor has reached (0 = base policy)."""

    return sum(
        1 for tier in base.escalation_tiers if tier.attempts_threshold <= total_violations
    )

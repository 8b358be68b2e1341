"""
Tunable business rules.

Plan limits, code lifetimes and throttle windows are product decisions
that change without code changes. The API layer builds a CoachingPolicy
from Settings; tests build one directly.
"""

from dataclasses import dataclass, field
from datetime import timedelta

from .models import SubscriptionTier


DEFAULT_TIER_LIMITS = {
    SubscriptionTier.STARTER: 10,
    SubscriptionTier.GROWTH: 30,
    SubscriptionTier.PRO: 100,
}


@dataclass(frozen=True)
class CoachingPolicy:
    tier_limits: dict[SubscriptionTier, int] = field(
        default_factory=lambda: dict(DEFAULT_TIER_LIMITS)
    )
    max_extra_clients: int = 5
    invite_code_ttl: timedelta = timedelta(hours=48)
    invite_code_max_attempts: int = 5
    lead_throttle_window: timedelta = timedelta(hours=24)
    reminder_message_max_length: int = 500
    lead_inbox_email: str = ""

    def __post_init__(self) -> None:
        missing = [tier.value for tier in SubscriptionTier if tier not in self.tier_limits]
        if missing:
            raise ValueError(f"Missing tier limits for: {', '.join(missing)}")
        if any(limit < 0 for limit in self.tier_limits.values()):
            raise ValueError("Tier limits cannot be negative")
        if self.max_extra_clients < 0:
            raise ValueError("max_extra_clients cannot be negative")
        if self.invite_code_ttl <= timedelta(0):
            raise ValueError("invite_code_ttl must be positive")
        if self.invite_code_max_attempts < 1:
            raise ValueError("invite_code_max_attempts must be at least 1")

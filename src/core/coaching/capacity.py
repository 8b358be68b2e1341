"""
Client capacity accounting for coaches.

Pure functions over a coach's plan and a count of active connections.
The only I/O is the count, which the caller passes in or the ledger reads
through the store.
"""

import logging
from typing import Mapping

from .errors import CapacityExceededError
from .models import Coach, CapacitySnapshot, ConnectionStatus, SubscriptionTier
from .policy import CoachingPolicy
from .ports import CoachingStore

logger = logging.getLogger(__name__)


def tier_base_limit(tier: SubscriptionTier, limits: Mapping[SubscriptionTier, int]) -> int:
    """Seats included in a plan before any overflow purchase."""
    return limits[tier]


def total_capacity(coach: Coach, limits: Mapping[SubscriptionTier, int]) -> int:
    return tier_base_limit(coach.subscription_tier, limits) + coach.extra_client_count


def build_snapshot(
    coach: Coach,
    active_count: int,
    limits: Mapping[SubscriptionTier, int],
) -> CapacitySnapshot:
    return CapacitySnapshot(
        tier=coach.subscription_tier,
        base_limit=tier_base_limit(coach.subscription_tier, limits),
        extra_client_count=coach.extra_client_count,
        active_count=active_count,
    )


class CapacityLedger:
    """Reads active counts from the store and applies the plan limits."""

    def __init__(self, store: CoachingStore, policy: CoachingPolicy) -> None:
        self._store = store
        self._policy = policy

    def active_client_count(self, coach_id) -> int:
        return self._store.count_connections(coach_id, ConnectionStatus.ACTIVE)

    def snapshot(self, coach: Coach) -> CapacitySnapshot:
        return build_snapshot(
            coach,
            self.active_client_count(coach.id),
            self._policy.tier_limits,
        )

    def ensure_seat_available(self, coach: Coach) -> CapacitySnapshot:
        """
        Raise CapacityExceededError if the coach cannot take another client.

        Uses the raw active count, so a coach already over capacity after a
        seat reduction is rejected too.
        """
        snapshot = self.snapshot(coach)
        if snapshot.is_full:
            logger.warning(
                "Coach at client capacity",
                extra={
                    "coach_id": str(coach.id),
                    "active_count": snapshot.active_count,
                    "total_capacity": snapshot.total_capacity,
                }
            )
            raise CapacityExceededError(snapshot.active_count, snapshot.total_capacity)
        return snapshot

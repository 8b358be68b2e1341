"""
Domain models for coach-client connections and data sharing.

These models represent the core business concepts. They have no dependencies
on external frameworks, databases, or APIs. Status fields are closed enums;
the allowed transitions between them live next to the enums so every caller
works from the same table.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4


def utc_now() -> datetime:
    """Timezone-aware current time. All stored timestamps are UTC."""
    return datetime.now(timezone.utc)


class SubscriptionTier(Enum):
    """Coach plan level. Determines the base client capacity."""
    STARTER = "starter"
    GROWTH = "growth"
    PRO = "pro"


class ConnectionStatus(Enum):
    """
    Where a coach-client relationship is in its lifecycle.

    pending_request -> pending_code -> active -> disconnected
    Any open state can also move to declined.
    """
    PENDING_REQUEST = "pending_request"
    PENDING_CODE = "pending_code"
    ACTIVE = "active"
    DECLINED = "declined"
    DISCONNECTED = "disconnected"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    def can_transition_to(self, target: "ConnectionStatus") -> bool:
        return target in ALLOWED_TRANSITIONS[self]


OPEN_STATUSES = frozenset({
    ConnectionStatus.PENDING_REQUEST,
    ConnectionStatus.PENDING_CODE,
    ConnectionStatus.ACTIVE,
})

TERMINAL_STATUSES = frozenset({
    ConnectionStatus.DECLINED,
    ConnectionStatus.DISCONNECTED,
})

ALLOWED_TRANSITIONS: dict[ConnectionStatus, frozenset[ConnectionStatus]] = {
    ConnectionStatus.PENDING_REQUEST: frozenset({
        ConnectionStatus.PENDING_CODE,
        ConnectionStatus.DECLINED,
    }),
    # pending_code -> pending_code is a re-approval that re-issues the code
    ConnectionStatus.PENDING_CODE: frozenset({
        ConnectionStatus.PENDING_CODE,
        ConnectionStatus.ACTIVE,
        ConnectionStatus.DECLINED,
    }),
    ConnectionStatus.ACTIVE: frozenset({
        ConnectionStatus.DISCONNECTED,
        ConnectionStatus.DECLINED,
    }),
    ConnectionStatus.DECLINED: frozenset(),
    ConnectionStatus.DISCONNECTED: frozenset(),
}


class InitiatedBy(Enum):
    """Which side opened the connection."""
    CLIENT = "client"
    COACH = "coach"


class ReminderKind(Enum):
    WEIGH_IN = "weigh_in"
    LOG_MEALS = "log_meals"


class ReminderStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class LeadGoal(Enum):
    LOSE = "lose"
    MAINTAIN = "maintain"
    GAIN = "gain"


class WeightRange(Enum):
    """How much the prospective client wants to change, in pounds."""
    TEN_TO_TWENTY = "10-20"
    TWENTY_TO_FORTY = "20-40"
    FORTY_TO_SIXTY = "40-60"
    SIXTY_PLUS = "60+"


class ContactMethod(Enum):
    EMAIL = "email"
    TEXT = "text"
    CALL = "call"


class BestTime(Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"


class LeadStatus(Enum):
    NEW = "new"
    CONTACTED = "contacted"
    CONVERTED = "converted"


@dataclass(frozen=True)
class Identity:
    """What the profile directory knows about a user."""
    user_id: str
    email: str
    name: str = ""


@dataclass
class Coach:
    """
    A paying coach account.

    Owned by exactly one profile. Capacity comes from the tier plus any
    purchased overflow seats.
    """
    owner_profile_id: str
    id: UUID = field(default_factory=uuid4)
    subscription_tier: SubscriptionTier = SubscriptionTier.STARTER
    extra_client_count: int = 0
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if not self.owner_profile_id:
            raise ValueError("Coach must have an owner profile")
        if self.extra_client_count < 0:
            raise ValueError("extra_client_count cannot be negative")


@dataclass
class Connection:
    """
    A coach-client pair and where it is in the lifecycle.

    Rows are never deleted. Declining or disconnecting only changes status,
    so the history of who was connected to whom is preserved.
    """
    coach_id: UUID
    client_id: str
    id: UUID = field(default_factory=uuid4)
    status: ConnectionStatus = ConnectionStatus.PENDING_REQUEST
    initiated_by: InitiatedBy = InitiatedBy.CLIENT
    created_at: datetime = field(default_factory=utc_now)
    connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE


@dataclass
class InviteCode:
    """
    One-time code that promotes a pending connection to active.

    A code is live while it is unconsumed, unrevoked and unexpired.
    """
    connection_id: UUID
    code: str
    issued_at: datetime
    expires_at: datetime
    id: UUID = field(default_factory=uuid4)
    consumed_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    failed_attempts: int = 0

    def __post_init__(self) -> None:
        if self.code != self.code.upper():
            raise ValueError("Invite codes are stored upper-case")
        if self.expires_at <= self.issued_at:
            raise ValueError("Invite code must expire after it is issued")

    @property
    def is_consumed(self) -> bool:
        return self.consumed_at is not None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def is_live(self, now: datetime) -> bool:
        return not (self.is_consumed or self.is_revoked or self.is_expired(now))

    @property
    def ttl(self) -> timedelta:
        return self.expires_at - self.issued_at


@dataclass
class SharingSettings:
    """Per-client visibility toggles. Private unless the client opts in."""
    client_id: str
    share_meals_auto: bool = False
    share_weight_auto: bool = False
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class ReminderRequest:
    """A nudge from a coach asking the client to weigh in or log meals."""
    coach_id: UUID
    client_id: str
    kind: ReminderKind
    id: UUID = field(default_factory=uuid4)
    status: ReminderStatus = ReminderStatus.PENDING
    message: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


@dataclass
class CoachingLead:
    """
    A self-service "match me with a coach" submission.

    Not tied to any coach; someone on the coaching team picks it up.
    """
    user_id: str
    goal: LeadGoal
    weight_range: WeightRange
    contact_preference: frozenset[ContactMethod]
    best_time: BestTime
    id: UUID = field(default_factory=uuid4)
    message: Optional[str] = None
    status: LeadStatus = LeadStatus.NEW
    created_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if not self.contact_preference:
            raise ValueError("At least one contact preference is required")


@dataclass(frozen=True)
class MealRecord:
    """A logged meal, as read from the meal store."""
    id: UUID
    user_id: str
    logged_at: datetime
    name: str
    calories: float
    protein_g: float = 0.0
    carbs_g: float = 0.0
    fat_g: float = 0.0


@dataclass(frozen=True)
class WeightEntry:
    """A body-weight entry, as read from the weight store."""
    id: UUID
    user_id: str
    recorded_at: datetime
    weight: float
    unit: str = "lbs"


@dataclass(frozen=True)
class CapacitySnapshot:
    """
    A coach's seat accounting at a point in time.

    active_count is the true count and can exceed total_capacity when
    overflow seats were removed after clients connected.
    """
    tier: SubscriptionTier
    base_limit: int
    extra_client_count: int
    active_count: int

    @property
    def total_capacity(self) -> int:
        return self.base_limit + self.extra_client_count

    @property
    def remaining_seats(self) -> int:
        return max(self.total_capacity - self.active_count, 0)

    @property
    def is_full(self) -> bool:
        return self.active_count >= self.total_capacity

    @property
    def is_over_capacity(self) -> bool:
        return self.active_count > self.total_capacity

    @property
    def requires_overflow(self) -> bool:
        """True once the tier's own seats are used up."""
        return self.active_count >= self.base_limit

    @property
    def utilization(self) -> float:
        """Fraction of seats in use, clamped to [0, 1] for display."""
        if self.total_capacity <= 0:
            return 1.0 if self.active_count > 0 else 0.0
        return min(max(self.active_count / self.total_capacity, 0.0), 1.0)

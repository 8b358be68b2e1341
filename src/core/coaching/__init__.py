"""
Coach-client connections and data sharing.

Contains the connection lifecycle, invite codes, capacity accounting,
the sharing gate, reminders and lead intake.
"""

from .capacity import CapacityLedger, total_capacity, tier_base_limit
from .codes import InviteCodeIssuer
from .errors import (
    CapacityExceededError,
    CoachingError,
    CodeExpiredError,
    CodeVerificationError,
    ConflictError,
    InvalidCodeError,
    InvalidTransitionError,
    NotFoundError,
    RateLimitedError,
    TransientError,
    ValidationError,
)
from .leads import LeadIntake
from .lifecycle import Approval, CodeDelivery, ConnectionManager
from .models import (
    CapacitySnapshot,
    Coach,
    CoachingLead,
    Connection,
    ConnectionStatus,
    Identity,
    InviteCode,
    ReminderKind,
    ReminderRequest,
    SharingSettings,
    SubscriptionTier,
)
from .policy import CoachingPolicy
from .reminders import ReminderChannel
from .sharing import SharingGate

__all__ = [
    "Approval",
    "CapacityExceededError",
    "CapacityLedger",
    "CapacitySnapshot",
    "Coach",
    "CoachingError",
    "CoachingLead",
    "CoachingPolicy",
    "CodeDelivery",
    "CodeExpiredError",
    "CodeVerificationError",
    "ConflictError",
    "Connection",
    "ConnectionManager",
    "ConnectionStatus",
    "Identity",
    "InvalidCodeError",
    "InvalidTransitionError",
    "InviteCode",
    "InviteCodeIssuer",
    "LeadIntake",
    "NotFoundError",
    "RateLimitedError",
    "ReminderChannel",
    "ReminderKind",
    "ReminderRequest",
    "SharingGate",
    "SharingSettings",
    "SubscriptionTier",
    "TransientError",
    "ValidationError",
    "tier_base_limit",
    "total_capacity",
]

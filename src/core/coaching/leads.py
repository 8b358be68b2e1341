"""
Coaching lead intake.

A lead is a user's "match me with a coach" form. No coach is involved
yet, so this is separate from the connection lifecycle. Submissions are
throttled per user with a range query over created_at rather than a
stored next-eligible time.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional
from uuid import UUID

from .errors import NotFoundError, RateLimitedError, ValidationError
from .models import (
    BestTime,
    CoachingLead,
    ContactMethod,
    LeadGoal,
    LeadStatus,
    WeightRange,
    utc_now,
)
from .policy import CoachingPolicy
from .ports import Clock, CoachingStore, IdentityDirectory, MessagingClient

logger = logging.getLogger(__name__)


GOAL_LABELS = {
    LeadGoal.LOSE: "Lose weight",
    LeadGoal.MAINTAIN: "Maintain weight",
    LeadGoal.GAIN: "Gain weight",
}

WEIGHT_RANGE_LABELS = {
    WeightRange.TEN_TO_TWENTY: "10-20 lbs",
    WeightRange.TWENTY_TO_FORTY: "20-40 lbs",
    WeightRange.FORTY_TO_SIXTY: "40-60 lbs",
    WeightRange.SIXTY_PLUS: "60+ lbs",
}


@dataclass(frozen=True)
class LeadNotification:
    lead_id: UUID
    to: str
    subject: str
    body: str


class LeadIntake:
    """Accepts, lists and updates coaching leads."""

    def __init__(
        self,
        store: CoachingStore,
        directory: IdentityDirectory,
        messenger: MessagingClient,
        policy: Optional[CoachingPolicy] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._directory = directory
        self._messenger = messenger
        self._policy = policy or CoachingPolicy()
        self._clock = clock

    def has_recent_lead(self, user_id: str) -> bool:
        since = self._clock() - self._policy.lead_throttle_window
        return self._store.count_leads_since(user_id, since) > 0

    def submit_lead(
        self,
        user_id: str,
        goal: LeadGoal,
        weight_range: WeightRange,
        contact_preference: Iterable[ContactMethod],
        best_time: BestTime,
        message: Optional[str] = None,
        notify: bool = True,
    ) -> CoachingLead:
        """
        Store a new lead unless the user already submitted one recently.

        With notify=True the coaching inbox is emailed right away; the API
        passes notify=False, builds the notification and schedules
        send_notification() itself.
        """
        preferences = frozenset(contact_preference)
        if not preferences:
            raise ValidationError("At least one contact preference is required")

        if self.has_recent_lead(user_id):
            self._throttled(user_id)

        lead = CoachingLead(
            user_id=user_id,
            goal=goal,
            weight_range=weight_range,
            contact_preference=preferences,
            best_time=best_time,
            message=(message or "").strip() or None,
            created_at=self._clock(),
        )
        since = lead.created_at - self._policy.lead_throttle_window
        if not self._store.insert_lead(lead, throttle_since=since):
            # A concurrent submission got in after the check above
            self._throttled(user_id)

        logger.info("Coaching lead submitted", extra={"lead_id": str(lead.id)})

        if notify:
            self.notify_new_lead(lead)
        return lead

    def _throttled(self, user_id: str) -> None:
        logger.warning("Lead submission throttled", extra={"user_id": user_id})
        raise RateLimitedError("You already submitted a request recently. Please try again later.")

    def notify_new_lead(self, lead: CoachingLead) -> bool:
        """Email the coaching inbox. Best-effort: the lead is already saved."""
        notification = self.build_notification(lead)
        if notification is None:
            return False
        return self.send_notification(notification)

    def build_notification(self, lead: CoachingLead) -> Optional[LeadNotification]:
        """The inbox email for a lead, or None when no inbox is configured."""
        if not self._policy.lead_inbox_email:
            logger.debug("No lead inbox configured, skipping notification")
            return None

        identity = self._directory.resolve_identity(lead.user_id)
        name = identity.name if identity and identity.name else "Unknown"
        return LeadNotification(
            lead_id=lead.id,
            to=self._policy.lead_inbox_email,
            subject=f"New Coaching Request - {name}",
            body=format_lead_email(lead, name, identity.email if identity else ""),
        )

    def send_notification(self, notification: LeadNotification) -> bool:
        try:
            sent = self._messenger.send_notification(
                notification.to,
                notification.subject,
                notification.body,
            )
        except Exception as e:
            logger.error(
                "Lead notification raised",
                extra={"lead_id": str(notification.lead_id), "error": str(e)}
            )
            return False

        if not sent:
            logger.error("Lead notification failed", extra={"lead_id": str(notification.lead_id)})
        return sent

    def list_leads(self, status: Optional[LeadStatus] = None) -> list[CoachingLead]:
        return self._store.list_leads(status)

    def update_lead_status(self, lead_id: UUID, status: LeadStatus) -> CoachingLead:
        if not self._store.update_lead_status(lead_id, status):
            raise NotFoundError("Lead not found")

        logger.info(
            "Lead status updated",
            extra={"lead_id": str(lead_id), "status": status.value}
        )
        return self._store.get_lead(lead_id)


def format_lead_email(lead: CoachingLead, name: str, email: str) -> str:
    contact = ", ".join(
        sorted(method.value.capitalize() for method in lead.contact_preference)
    )
    return "\n".join([
        f"New Coaching Request - {name}",
        "",
        f"Name: {name}",
        f"Email: {email or 'Not provided'}",
        f"Goal: {GOAL_LABELS[lead.goal]}",
        f"Amount: {WEIGHT_RANGE_LABELS[lead.weight_range]}",
        f"Contact: {contact}",
        f"Best time: {lead.best_time.value.capitalize()}",
        f"Message: {lead.message or 'No message provided'}",
    ])

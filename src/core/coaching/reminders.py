"""
Coach-to-client reminders.

A reminder is a one-way nudge ("please weigh in"). It needs an active
connection to be sent and is completed by the client's logging flow,
not by the coach. Reminders never affect what the sharing gate allows.
"""

import logging
from typing import Optional
from uuid import UUID

from .errors import NotFoundError, ValidationError
from .models import (
    ConnectionStatus,
    ReminderKind,
    ReminderRequest,
    ReminderStatus,
    utc_now,
)
from .policy import CoachingPolicy
from .ports import Clock, CoachingStore

logger = logging.getLogger(__name__)


class ReminderChannel:

    def __init__(
        self,
        store: CoachingStore,
        policy: Optional[CoachingPolicy] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._policy = policy or CoachingPolicy()
        self._clock = clock

    def send_reminder(
        self,
        coach_id: UUID,
        client_id: str,
        kind: ReminderKind,
        message: Optional[str] = None,
    ) -> ReminderRequest:
        connection = self._store.find_open_connection(coach_id, client_id)
        if connection is None or connection.status != ConnectionStatus.ACTIVE:
            raise NotFoundError("No active connection with this client")

        message = (message or "").strip() or None
        if message and len(message) > self._policy.reminder_message_max_length:
            raise ValidationError(
                f"Message must be at most {self._policy.reminder_message_max_length} characters"
            )

        reminder = ReminderRequest(
            coach_id=coach_id,
            client_id=client_id,
            kind=kind,
            message=message,
            created_at=self._clock(),
        )
        self._store.insert_reminder(reminder)

        logger.info(
            "Reminder sent",
            extra={
                "reminder_id": str(reminder.id),
                "coach_id": str(coach_id),
                "kind": kind.value,
            }
        )
        return reminder

    def complete_reminder(self, reminder_id: UUID, client_id: str) -> ReminderRequest:
        """
        Mark a reminder done. Called by the meal/weight logging flow.

        Only the reminder's own client can complete it. Completing an
        already completed reminder returns it unchanged.
        """
        reminder = self._store.get_reminder(reminder_id)
        if reminder is None or reminder.client_id != client_id:
            raise NotFoundError("Reminder not found")
        if reminder.status == ReminderStatus.COMPLETED:
            return reminder

        if self._store.complete_reminder(reminder_id, self._clock()):
            logger.info(
                "Reminder completed",
                extra={"reminder_id": str(reminder_id), "kind": reminder.kind.value}
            )
        return self._store.get_reminder(reminder_id)

    def complete_pending(self, client_id: str, kind: ReminderKind) -> int:
        """Complete every pending reminder of this kind. Returns how many changed."""
        completed = 0
        now = self._clock()
        for reminder in self._store.list_reminders(client_id, status=ReminderStatus.PENDING):
            if reminder.kind == kind and self._store.complete_reminder(reminder.id, now):
                completed += 1

        if completed:
            logger.info(
                "Pending reminders completed",
                extra={"kind": kind.value, "count": completed}
            )
        return completed

    def list_pending_reminders(self, client_id: str) -> list[ReminderRequest]:
        return self._store.list_reminders(client_id, status=ReminderStatus.PENDING)

    def list_sent_reminders(self, coach_id: UUID, client_id: str) -> list[ReminderRequest]:
        return self._store.list_reminders(client_id, coach_id=coach_id)

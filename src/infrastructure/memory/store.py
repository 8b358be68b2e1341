"""
In-memory implementations of the coaching ports.

Used when snowflake_mock_mode is on and by the test suite. Data lives in
plain dicts guarded by one lock, which gives the same compare-and-swap
guarantees the Snowflake repository gets from conditional UPDATEs.

Rows are copied in and out so callers can't mutate stored state without
going through the store.
"""

import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Iterable, Optional
from uuid import UUID

from src.core.coaching.models import (
    Coach,
    CoachingLead,
    Connection,
    ConnectionStatus,
    Identity,
    InviteCode,
    LeadStatus,
    MealRecord,
    OPEN_STATUSES,
    ReminderRequest,
    ReminderStatus,
    SharingSettings,
    WeightEntry,
)

logger = logging.getLogger(__name__)


class InMemoryCoachingStore:
    """CoachingStore backed by dictionaries."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._coaches: dict[UUID, Coach] = {}
        self._connections: dict[UUID, Connection] = {}
        self._codes: dict[UUID, InviteCode] = {}
        self._sharing: dict[str, SharingSettings] = {}
        self._reminders: dict[UUID, ReminderRequest] = {}
        self._leads: dict[UUID, CoachingLead] = {}

        logger.info("Initialized in-memory coaching store")

    # -----------------------------------------------------------------------
    # Coaches
    # -----------------------------------------------------------------------

    def get_coach(self, coach_id: UUID) -> Optional[Coach]:
        with self._lock:
            coach = self._coaches.get(coach_id)
            return replace(coach) if coach else None

    def get_coach_by_owner(self, owner_profile_id: str) -> Optional[Coach]:
        with self._lock:
            for coach in self._coaches.values():
                if coach.owner_profile_id == owner_profile_id:
                    return replace(coach)
            return None

    def insert_coach(self, coach: Coach) -> bool:
        with self._lock:
            if any(c.owner_profile_id == coach.owner_profile_id for c in self._coaches.values()):
                return False
            self._coaches[coach.id] = replace(coach)
            return True

    def update_coach(self, coach: Coach) -> None:
        with self._lock:
            if coach.id in self._coaches:
                self._coaches[coach.id] = replace(coach)

    # -----------------------------------------------------------------------
    # Connections
    # -----------------------------------------------------------------------

    def insert_connection(self, connection: Connection) -> bool:
        with self._lock:
            if self._find_open(connection.coach_id, connection.client_id) is not None:
                return False
            self._connections[connection.id] = replace(connection)
            return True

    def get_connection(self, connection_id: UUID) -> Optional[Connection]:
        with self._lock:
            connection = self._connections.get(connection_id)
            return replace(connection) if connection else None

    def find_open_connection(self, coach_id: UUID, client_id: str) -> Optional[Connection]:
        with self._lock:
            connection = self._find_open(coach_id, client_id)
            return replace(connection) if connection else None

    def list_connections_for_coach(
        self,
        coach_id: UUID,
        statuses: Optional[Iterable[ConnectionStatus]] = None,
    ) -> list[Connection]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            rows = [
                replace(c) for c in self._connections.values()
                if c.coach_id == coach_id and (wanted is None or c.status in wanted)
            ]
        return sorted(rows, key=lambda c: c.created_at, reverse=True)

    def list_connections_for_client(
        self,
        client_id: str,
        statuses: Optional[Iterable[ConnectionStatus]] = None,
    ) -> list[Connection]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            rows = [
                replace(c) for c in self._connections.values()
                if c.client_id == client_id and (wanted is None or c.status in wanted)
            ]
        return sorted(rows, key=lambda c: c.created_at, reverse=True)

    def count_connections(self, coach_id: UUID, status: ConnectionStatus) -> int:
        with self._lock:
            return sum(
                1 for c in self._connections.values()
                if c.coach_id == coach_id and c.status == status
            )

    def transition_connection(
        self,
        connection_id: UUID,
        expected: ConnectionStatus,
        target: ConnectionStatus,
        *,
        at: datetime,
    ) -> bool:
        with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None or connection.status != expected:
                return False
            self._apply_transition(connection, target, at)
            return True

    # -----------------------------------------------------------------------
    # Invite codes
    # -----------------------------------------------------------------------

    def issue_invite_code(self, code: InviteCode) -> None:
        with self._lock:
            for existing in self._codes.values():
                if (
                    existing.connection_id == code.connection_id
                    and existing.consumed_at is None
                    and existing.revoked_at is None
                ):
                    existing.revoked_at = code.issued_at
            self._codes[code.id] = replace(code)

    def get_current_invite_code(self, connection_id: UUID) -> Optional[InviteCode]:
        with self._lock:
            candidates = [
                c for c in self._codes.values()
                if c.connection_id == connection_id
                and c.consumed_at is None
                and c.revoked_at is None
            ]
            if not candidates:
                return None
            return replace(max(candidates, key=lambda c: c.issued_at))

    def record_failed_attempt(self, code_id: UUID, max_attempts: int, at: datetime) -> int:
        with self._lock:
            code = self._codes.get(code_id)
            if code is None:
                return 0
            code.failed_attempts += 1
            if code.failed_attempts >= max_attempts and code.revoked_at is None:
                code.revoked_at = at
            return code.failed_attempts

    def activate_with_code(
        self,
        code_id: UUID,
        connection_id: UUID,
        at: datetime,
        max_active: Optional[int] = None,
    ) -> bool:
        with self._lock:
            code = self._codes.get(code_id)
            connection = self._connections.get(connection_id)
            if (
                code is None
                or connection is None
                or code.connection_id != connection_id
                or code.consumed_at is not None
                or code.revoked_at is not None
                or connection.status != ConnectionStatus.PENDING_CODE
            ):
                return False
            if max_active is not None:
                active = sum(
                    1 for c in self._connections.values()
                    if c.coach_id == connection.coach_id
                    and c.status == ConnectionStatus.ACTIVE
                )
                if active >= max_active:
                    return False
            code.consumed_at = at
            self._apply_transition(connection, ConnectionStatus.ACTIVE, at)
            return True

    # -----------------------------------------------------------------------
    # Sharing settings
    # -----------------------------------------------------------------------

    def get_sharing_settings(self, client_id: str) -> Optional[SharingSettings]:
        with self._lock:
            settings = self._sharing.get(client_id)
            return replace(settings) if settings else None

    def ensure_sharing_settings(self, client_id: str, at: datetime) -> SharingSettings:
        with self._lock:
            settings = self._sharing.get(client_id)
            if settings is None:
                settings = SharingSettings(client_id=client_id, updated_at=at)
                self._sharing[client_id] = settings
            return replace(settings)

    def save_sharing_settings(self, settings: SharingSettings) -> None:
        with self._lock:
            self._sharing[settings.client_id] = replace(settings)

    # -----------------------------------------------------------------------
    # Reminders
    # -----------------------------------------------------------------------

    def insert_reminder(self, reminder: ReminderRequest) -> None:
        with self._lock:
            self._reminders[reminder.id] = replace(reminder)

    def get_reminder(self, reminder_id: UUID) -> Optional[ReminderRequest]:
        with self._lock:
            reminder = self._reminders.get(reminder_id)
            return replace(reminder) if reminder else None

    def complete_reminder(self, reminder_id: UUID, at: datetime) -> bool:
        with self._lock:
            reminder = self._reminders.get(reminder_id)
            if reminder is None or reminder.status != ReminderStatus.PENDING:
                return False
            reminder.status = ReminderStatus.COMPLETED
            reminder.completed_at = at
            return True

    def list_reminders(
        self,
        client_id: str,
        coach_id: Optional[UUID] = None,
        status: Optional[ReminderStatus] = None,
    ) -> list[ReminderRequest]:
        with self._lock:
            rows = [
                replace(r) for r in self._reminders.values()
                if r.client_id == client_id
                and (coach_id is None or r.coach_id == coach_id)
                and (status is None or r.status == status)
            ]
        return sorted(rows, key=lambda r: r.created_at, reverse=True)

    # -----------------------------------------------------------------------
    # Leads
    # -----------------------------------------------------------------------

    def insert_lead(self, lead: CoachingLead, throttle_since: Optional[datetime] = None) -> bool:
        with self._lock:
            if throttle_since is not None and any(
                existing.user_id == lead.user_id and existing.created_at >= throttle_since
                for existing in self._leads.values()
            ):
                return False
            self._leads[lead.id] = replace(lead)
            return True

    def get_lead(self, lead_id: UUID) -> Optional[CoachingLead]:
        with self._lock:
            lead = self._leads.get(lead_id)
            return replace(lead) if lead else None

    def count_leads_since(self, user_id: str, since: datetime) -> int:
        with self._lock:
            return sum(
                1 for lead in self._leads.values()
                if lead.user_id == user_id and lead.created_at >= since
            )

    def list_leads(self, status: Optional[LeadStatus] = None) -> list[CoachingLead]:
        with self._lock:
            rows = [
                replace(lead) for lead in self._leads.values()
                if status is None or lead.status == status
            ]
        return sorted(rows, key=lambda lead: lead.created_at, reverse=True)

    def update_lead_status(self, lead_id: UUID, status: LeadStatus) -> bool:
        with self._lock:
            lead = self._leads.get(lead_id)
            if lead is None:
                return False
            lead.status = status
            return True

    # -----------------------------------------------------------------------
    # Private Methods (call with the lock held)
    # -----------------------------------------------------------------------

    def _find_open(self, coach_id: UUID, client_id: str) -> Optional[Connection]:
        for connection in self._connections.values():
            if (
                connection.coach_id == coach_id
                and connection.client_id == client_id
                and connection.status in OPEN_STATUSES
            ):
                return connection
        return None

    @staticmethod
    def _apply_transition(connection: Connection, target: ConnectionStatus, at: datetime) -> None:
        leaving_active = connection.status == ConnectionStatus.ACTIVE
        connection.status = target
        if target == ConnectionStatus.ACTIVE:
            connection.connected_at = at
        elif target == ConnectionStatus.DISCONNECTED or leaving_active:
            connection.disconnected_at = at


class InMemoryIdentityDirectory:
    """Profile directory for local development and tests."""

    def __init__(self, identities: Optional[Iterable[Identity]] = None) -> None:
        self._by_id: dict[str, Identity] = {}
        for identity in identities or []:
            self.add(identity)

    def add(self, identity: Identity) -> None:
        self._by_id[identity.user_id] = identity

    def resolve_identity(self, user_id: str) -> Optional[Identity]:
        return self._by_id.get(user_id)

    def find_user_id_by_email(self, email: str) -> Optional[str]:
        wanted = (email or "").strip().lower()
        for identity in self._by_id.values():
            if identity.email.lower() == wanted:
                return identity.user_id
        return None


class InMemoryRecordReader:
    """Meal and weight records for local development and tests."""

    def __init__(self) -> None:
        self._meals: list[MealRecord] = []
        self._weights: list[WeightEntry] = []

    def add_meal(self, meal: MealRecord) -> None:
        self._meals.append(meal)

    def add_weight(self, entry: WeightEntry) -> None:
        self._weights.append(entry)

    def list_meals(self, client_id: str, start: datetime, end: datetime) -> list[MealRecord]:
        return [
            m for m in self._meals
            if m.user_id == client_id and start <= m.logged_at <= end
        ]

    def list_weights(self, client_id: str, start: datetime, end: datetime) -> list[WeightEntry]:
        return [
            w for w in self._weights
            if w.user_id == client_id and start <= w.recorded_at <= end
        ]

    def last_meal_at(self, client_id: str) -> Optional[datetime]:
        times = [m.logged_at for m in self._meals if m.user_id == client_id]
        return max(times) if times else None

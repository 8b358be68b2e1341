"""
Interfaces the coaching core depends on.

Using Protocols here means the services don't know or care whether data
lives in Snowflake, in memory for local development, or in a test fake.
Adapters in src/infrastructure implement these.
"""

from datetime import datetime
from typing import Callable, Iterable, Optional, Protocol
from uuid import UUID

from .models import (
    Coach,
    CoachingLead,
    Connection,
    ConnectionStatus,
    Identity,
    InviteCode,
    LeadStatus,
    MealRecord,
    ReminderRequest,
    ReminderStatus,
    SharingSettings,
    WeightEntry,
)

Clock = Callable[[], datetime]


class CoachingStore(Protocol):
    """
    Persistence for every entity this service owns.

    Mutations that race with other callers are conditional: they name the
    state they expect and return False when the row has moved on. Callers
    treat False as "someone else got there first".
    """

    # Coaches
    def get_coach(self, coach_id: UUID) -> Optional[Coach]: ...
    def get_coach_by_owner(self, owner_profile_id: str) -> Optional[Coach]: ...
    def insert_coach(self, coach: Coach) -> bool:
        """Insert unless the owner already has a coach. False on duplicate."""
        ...
    def update_coach(self, coach: Coach) -> None: ...

    # Connections
    def insert_connection(self, connection: Connection) -> bool:
        """Insert unless an open connection exists for the pair. False on duplicate."""
        ...
    def get_connection(self, connection_id: UUID) -> Optional[Connection]: ...
    def find_open_connection(self, coach_id: UUID, client_id: str) -> Optional[Connection]: ...
    def list_connections_for_coach(
        self,
        coach_id: UUID,
        statuses: Optional[Iterable[ConnectionStatus]] = None,
    ) -> list[Connection]: ...
    def list_connections_for_client(
        self,
        client_id: str,
        statuses: Optional[Iterable[ConnectionStatus]] = None,
    ) -> list[Connection]: ...
    def count_connections(self, coach_id: UUID, status: ConnectionStatus) -> int: ...
    def transition_connection(
        self,
        connection_id: UUID,
        expected: ConnectionStatus,
        target: ConnectionStatus,
        *,
        at: datetime,
    ) -> bool:
        """
        Compare-and-swap on status.

        Sets connected_at when target is active. Sets disconnected_at when
        target is disconnected or the connection leaves active.
        """
        ...

    # Invite codes
    def issue_invite_code(self, code: InviteCode) -> None:
        """Revoke any live code for the connection, then store this one."""
        ...
    def get_current_invite_code(self, connection_id: UUID) -> Optional[InviteCode]:
        """Latest unconsumed, unrevoked code. May be expired."""
        ...
    def record_failed_attempt(self, code_id: UUID, max_attempts: int, at: datetime) -> int:
        """Bump the failure count, revoking the code at the ceiling. Returns the new count."""
        ...
    def activate_with_code(
        self,
        code_id: UUID,
        connection_id: UUID,
        at: datetime,
        max_active: Optional[int] = None,
    ) -> bool:
        """
        Consume the code and move the connection pending_code -> active.

        Both happen or neither does. With max_active, neither happens if
        the coach already has that many active connections.
        """
        ...

    # Sharing settings
    def get_sharing_settings(self, client_id: str) -> Optional[SharingSettings]: ...
    def ensure_sharing_settings(self, client_id: str, at: datetime) -> SharingSettings: ...
    def save_sharing_settings(self, settings: SharingSettings) -> None: ...

    # Reminders
    def insert_reminder(self, reminder: ReminderRequest) -> None: ...
    def get_reminder(self, reminder_id: UUID) -> Optional[ReminderRequest]: ...
    def complete_reminder(self, reminder_id: UUID, at: datetime) -> bool: ...
    def list_reminders(
        self,
        client_id: str,
        coach_id: Optional[UUID] = None,
        status: Optional[ReminderStatus] = None,
    ) -> list[ReminderRequest]: ...

    # Leads
    def insert_lead(self, lead: CoachingLead, throttle_since: Optional[datetime] = None) -> bool:
        """
        Store the lead.

        With throttle_since, nothing is stored and False is returned when
        the user already has a lead created at or after that time.
        """
        ...
    def get_lead(self, lead_id: UUID) -> Optional[CoachingLead]: ...
    def count_leads_since(self, user_id: str, since: datetime) -> int: ...
    def list_leads(self, status: Optional[LeadStatus] = None) -> list[CoachingLead]: ...
    def update_lead_status(self, lead_id: UUID, status: LeadStatus) -> bool: ...


class IdentityDirectory(Protocol):
    """Looks up users in the profile directory."""

    def resolve_identity(self, user_id: str) -> Optional[Identity]: ...
    def find_user_id_by_email(self, email: str) -> Optional[str]: ...


class MessagingClient(Protocol):
    """
    Transactional email.

    Both methods report failure by returning False rather than raising,
    because every caller treats delivery as best-effort.
    """

    def send_code(self, email: str, code: str, coach_name: str = "") -> bool: ...
    def send_notification(self, email: str, subject: str, body: str) -> bool: ...


class ClientRecordReader(Protocol):
    """Read access to a client's logged meals and weights."""

    def list_meals(self, client_id: str, start: datetime, end: datetime) -> list[MealRecord]: ...
    def list_weights(self, client_id: str, start: datetime, end: datetime) -> list[WeightEntry]: ...
    def last_meal_at(self, client_id: str) -> Optional[datetime]: ...

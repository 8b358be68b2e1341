"""
Connection lifecycle: request, approve, verify, decline, disconnect.

This module owns the connection state machine. Every status change is a
compare-and-swap against the store, so two callers racing on the same
connection cannot both win. Messaging happens after the transition and
never undoes it.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional
from uuid import UUID

from .capacity import CapacityLedger
from .codes import InviteCodeIssuer
from .errors import (
    ConflictError,
    InvalidCodeError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .models import (
    CapacitySnapshot,
    Coach,
    Connection,
    ConnectionStatus,
    InitiatedBy,
    InviteCode,
    OPEN_STATUSES,
    SubscriptionTier,
    utc_now,
)
from .policy import CoachingPolicy
from .ports import Clock, CoachingStore, IdentityDirectory, MessagingClient

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


@dataclass(frozen=True)
class CodeDelivery:
    """Everything needed to email an invite code to a client."""
    connection_id: UUID
    email: str
    code: str
    coach_name: str = ""


@dataclass(frozen=True)
class Approval:
    """Result of approving a request: the updated row and the code to deliver."""
    connection: Connection
    invite: InviteCode
    delivery: CodeDelivery


class ConnectionManager:
    """
    Drives connections from request to active and back out again.

    Coach-side actions accept an optional coach_id. When given, the
    connection must belong to that coach; a mismatch is reported as
    NotFound so callers cannot probe other coaches' rows.
    """

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
        self._issuer = InviteCodeIssuer(store, self._policy)
        self._ledger = CapacityLedger(store, self._policy)

    # -----------------------------------------------------------------------
    # Coach accounts
    # -----------------------------------------------------------------------

    def register_coach(
        self,
        owner_profile_id: str,
        tier: SubscriptionTier = SubscriptionTier.STARTER,
    ) -> Coach:
        if self._directory.resolve_identity(owner_profile_id) is None:
            raise NotFoundError("Profile not found")

        now = self._clock()
        coach = Coach(
            owner_profile_id=owner_profile_id,
            subscription_tier=tier,
            created_at=now,
            updated_at=now,
        )
        if not self._store.insert_coach(coach):
            raise ConflictError("This profile already has a coach account")

        logger.info(
            "Coach registered",
            extra={"coach_id": str(coach.id), "tier": tier.value}
        )
        return coach

    def get_coach(self, coach_id: UUID) -> Coach:
        coach = self._store.get_coach(coach_id)
        if coach is None:
            raise NotFoundError("Coach not found")
        return coach

    def get_coach_for_owner(self, owner_profile_id: str) -> Coach:
        coach = self._store.get_coach_by_owner(owner_profile_id)
        if coach is None:
            raise NotFoundError("Coach not found")
        return coach

    def change_tier(self, coach_id: UUID, tier: SubscriptionTier) -> Coach:
        coach = self.get_coach(coach_id)
        previous = coach.subscription_tier
        coach.subscription_tier = tier
        coach.updated_at = self._clock()
        self._store.update_coach(coach)

        logger.info(
            "Coach tier changed",
            extra={"coach_id": str(coach_id), "from": previous.value, "to": tier.value}
        )
        return coach

    def set_extra_clients(self, coach_id: UUID, count: int) -> Coach:
        """
        Set the number of purchased overflow seats.

        Lowering it below the current active count is allowed; the ledger
        then reports the coach as over capacity.
        """
        if not 0 <= count <= self._policy.max_extra_clients:
            raise ValidationError(
                f"Extra clients must be between 0 and {self._policy.max_extra_clients}"
            )
        coach = self.get_coach(coach_id)
        coach.extra_client_count = count
        coach.updated_at = self._clock()
        self._store.update_coach(coach)

        logger.info(
            "Coach overflow seats changed",
            extra={"coach_id": str(coach_id), "extra_client_count": count}
        )
        return coach

    def capacity(self, coach_id: UUID) -> CapacitySnapshot:
        return self._ledger.snapshot(self.get_coach(coach_id))

    # -----------------------------------------------------------------------
    # Opening a connection
    # -----------------------------------------------------------------------

    def create_request(self, client_id: str, coach_email: str) -> Connection:
        """Client asks to connect with the coach registered under coach_email."""
        coach = self._find_coach_by_email(coach_email)
        self._ensure_can_open(coach, client_id)

        connection = Connection(
            coach_id=coach.id,
            client_id=client_id,
            status=ConnectionStatus.PENDING_REQUEST,
            initiated_by=InitiatedBy.CLIENT,
            created_at=self._clock(),
        )
        self._insert(connection)

        logger.info(
            "Connection requested",
            extra={"connection_id": str(connection.id), "coach_id": str(coach.id)}
        )
        return connection

    def invite_client(
        self,
        coach_id: UUID,
        client_email: str,
        notify: bool = True,
    ) -> Approval:
        """
        Coach invites a client by email.

        Skips the request step: the connection is created and approved in
        one go, so the client only has to enter the code.
        """
        coach = self.get_coach(coach_id)
        client_id = self._directory.find_user_id_by_email(normalize_email(client_email))
        if client_id is None:
            raise NotFoundError("No user found with that email address")

        self._ensure_can_open(coach, client_id)
        self._ledger.ensure_seat_available(coach)

        connection = Connection(
            coach_id=coach.id,
            client_id=client_id,
            status=ConnectionStatus.PENDING_REQUEST,
            initiated_by=InitiatedBy.COACH,
            created_at=self._clock(),
        )
        self._insert(connection)

        logger.info(
            "Client invited",
            extra={"connection_id": str(connection.id), "coach_id": str(coach.id)}
        )
        return self.approve(connection.id, coach_id=coach.id, notify=notify)

    # -----------------------------------------------------------------------
    # Coach decisions
    # -----------------------------------------------------------------------

    def approve(
        self,
        connection_id: UUID,
        coach_id: Optional[UUID] = None,
        notify: bool = True,
    ) -> Approval:
        """
        Approve a pending request and issue an invite code.

        Also used to re-issue a code for a connection already waiting on
        one (e.g. after the first code expired); the old code is revoked.
        With notify=False the caller is responsible for deliver_code().
        """
        connection = self._get_for_coach(connection_id, coach_id)
        if connection.status not in (
            ConnectionStatus.PENDING_REQUEST,
            ConnectionStatus.PENDING_CODE,
        ):
            raise InvalidTransitionError("approve", connection.status.value)

        coach = self.get_coach(connection.coach_id)
        self._ledger.ensure_seat_available(coach)

        client = self._directory.resolve_identity(connection.client_id)
        if client is None or not client.email:
            raise NotFoundError("Client identity not found")

        now = self._clock()
        self._transition(
            connection,
            ConnectionStatus.PENDING_CODE,
            action="approve",
        )
        invite = self._issuer.issue(connection.id, now)

        coach_identity = self._directory.resolve_identity(coach.owner_profile_id)
        delivery = CodeDelivery(
            connection_id=connection.id,
            email=client.email,
            code=invite.code,
            coach_name=coach_identity.name if coach_identity else "",
        )

        logger.info(
            "Connection approved",
            extra={"connection_id": str(connection.id), "coach_id": str(coach.id)}
        )

        if notify:
            self.deliver_code(delivery)

        return Approval(
            connection=self._reload(connection.id),
            invite=invite,
            delivery=delivery,
        )

    def deliver_code(self, delivery: CodeDelivery) -> bool:
        """
        Send an invite code by email.

        Failures are logged and swallowed. The connection stays in
        pending_code and the coach can share the code another way.
        """
        try:
            sent = self._messenger.send_code(delivery.email, delivery.code, delivery.coach_name)
        except Exception as e:
            logger.error(
                "Invite code delivery raised",
                extra={"connection_id": str(delivery.connection_id), "error": str(e)}
            )
            return False

        if not sent:
            logger.error(
                "Invite code delivery failed",
                extra={"connection_id": str(delivery.connection_id)}
            )
        return sent

    def decline(self, connection_id: UUID, coach_id: Optional[UUID] = None) -> Connection:
        """Decline an open connection. Declining twice is a no-op."""
        connection = self._get_for_coach(connection_id, coach_id)
        if connection.status == ConnectionStatus.DECLINED:
            return connection
        if connection.status.is_terminal:
            raise InvalidTransitionError("decline", connection.status.value)

        swapped = self._store.transition_connection(
            connection.id,
            connection.status,
            ConnectionStatus.DECLINED,
            at=self._clock(),
        )
        if not swapped:
            current = self._reload(connection.id)
            if current.status == ConnectionStatus.DECLINED:
                return current
            raise InvalidTransitionError("decline", current.status.value)

        logger.info(
            "Connection declined",
            extra={"connection_id": str(connection.id), "from": connection.status.value}
        )
        return self._reload(connection.id)

    # -----------------------------------------------------------------------
    # Client verification
    # -----------------------------------------------------------------------

    def verify_code(
        self,
        connection_id: UUID,
        code: str,
        client_id: Optional[str] = None,
    ) -> Connection:
        """
        Activate a connection with its invite code.

        Every failure before the code check surfaces as InvalidCodeError so
        the response does not reveal whether the connection exists.
        """
        connection = self._store.get_connection(connection_id)
        if (
            connection is None
            or connection.status != ConnectionStatus.PENDING_CODE
            or (client_id is not None and connection.client_id != client_id)
        ):
            raise InvalidCodeError("Invalid or expired code")

        invite = self._issuer.check(connection.id, code, self._clock())
        return self._activate(connection, invite)

    def verify_client_code(self, client_id: str, code: str) -> Connection:
        """Activate whichever of the client's pending connections the code belongs to."""
        pending = self._store.list_connections_for_client(
            client_id,
            [ConnectionStatus.PENDING_CODE],
        )
        if not pending:
            raise InvalidCodeError("Invalid or expired code")

        invite = self._issuer.check_any([c.id for c in pending], code, self._clock())
        connection = next(c for c in pending if c.id == invite.connection_id)
        return self._activate(connection, invite)

    def _activate(self, connection: Connection, invite: InviteCode) -> Connection:
        """
        Consume the code and make the connection active.

        Seats are taken here, not at approval, so the limit is checked
        again: a coach can have more codes out than free seats. A code
        refused for capacity is not consumed and works once a seat frees up.
        """
        coach = self.get_coach(connection.coach_id)
        snapshot = self._ledger.ensure_seat_available(coach)

        now = self._clock()
        activated = self._store.activate_with_code(
            invite.id,
            connection.id,
            now,
            max_active=snapshot.total_capacity,
        )
        if not activated:
            # Another verification may have taken the last seat meanwhile
            self._ledger.ensure_seat_available(coach)
            # Otherwise the code was consumed or the connection moved on
            logger.warning(
                "Invite code activation lost a race",
                extra={"connection_id": str(connection.id), "code_id": str(invite.id)}
            )
            raise InvalidCodeError("Invalid or expired code")

        self._store.ensure_sharing_settings(connection.client_id, now)

        logger.info(
            "Connection activated",
            extra={"connection_id": str(connection.id), "coach_id": str(connection.coach_id)}
        )
        return self._reload(connection.id)

    # -----------------------------------------------------------------------
    # Tear down
    # -----------------------------------------------------------------------

    def disconnect(self, connection_id: UUID, actor_id: str) -> Connection:
        """
        End an active connection. Either the client or the coach may do this.

        Sharing toggles are left as they are; the gate stops honouring them
        because the connection is no longer active.
        """
        connection = self._store.get_connection(connection_id)
        if connection is None or not self._is_party(connection, actor_id):
            raise NotFoundError("Connection not found")
        if connection.status != ConnectionStatus.ACTIVE:
            raise InvalidTransitionError("disconnect", connection.status.value)

        self._transition(connection, ConnectionStatus.DISCONNECTED, action="disconnect")

        logger.info(
            "Connection disconnected",
            extra={
                "connection_id": str(connection.id),
                "by": "client" if actor_id == connection.client_id else "coach",
            }
        )
        return self._reload(connection.id)

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    def get_connection(self, connection_id: UUID, actor_id: Optional[str] = None) -> Connection:
        connection = self._store.get_connection(connection_id)
        if connection is None or (actor_id is not None and not self._is_party(connection, actor_id)):
            raise NotFoundError("Connection not found")
        return connection

    def list_clients(
        self,
        coach_id: UUID,
        statuses: Optional[Iterable[ConnectionStatus]] = None,
    ) -> list[Connection]:
        return self._store.list_connections_for_coach(coach_id, statuses)

    def list_pending_requests(self, coach_id: UUID) -> list[Connection]:
        return self._store.list_connections_for_coach(
            coach_id,
            [ConnectionStatus.PENDING_REQUEST],
        )

    def get_client_connection(self, client_id: str) -> Optional[Connection]:
        """The client's most recent open connection, if any."""
        open_connections = self._store.list_connections_for_client(client_id, OPEN_STATUSES)
        if not open_connections:
            return None
        return max(open_connections, key=lambda c: c.created_at)

    # -----------------------------------------------------------------------
    # Private Methods
    # -----------------------------------------------------------------------

    def _find_coach_by_email(self, email: str) -> Coach:
        user_id = self._directory.find_user_id_by_email(normalize_email(email))
        coach = self._store.get_coach_by_owner(user_id) if user_id else None
        if coach is None:
            logger.info("Connection request for unknown coach email")
            raise NotFoundError("No coach found with that email address")
        return coach

    def _ensure_can_open(self, coach: Coach, client_id: str) -> None:
        if coach.owner_profile_id == client_id:
            raise ConflictError("A coach cannot connect to their own account")
        if self._store.find_open_connection(coach.id, client_id) is not None:
            logger.warning(
                "Duplicate connection attempt",
                extra={"coach_id": str(coach.id)}
            )
            raise ConflictError("A connection already exists with this coach")

    def _insert(self, connection: Connection) -> None:
        if not self._store.insert_connection(connection):
            # Another request for the same pair landed between check and insert
            raise ConflictError("A connection already exists with this coach")

    def _get_for_coach(self, connection_id: UUID, coach_id: Optional[UUID]) -> Connection:
        connection = self._store.get_connection(connection_id)
        if connection is None or (coach_id is not None and connection.coach_id != coach_id):
            raise NotFoundError("Connection not found")
        return connection

    def _is_party(self, connection: Connection, actor_id: str) -> bool:
        if actor_id == connection.client_id:
            return True
        coach = self._store.get_coach(connection.coach_id)
        return coach is not None and coach.owner_profile_id == actor_id

    def _transition(
        self,
        connection: Connection,
        target: ConnectionStatus,
        action: str,
    ) -> None:
        if not connection.status.can_transition_to(target):
            raise InvalidTransitionError(action, connection.status.value)

        swapped = self._store.transition_connection(
            connection.id,
            connection.status,
            target,
            at=self._clock(),
        )
        if not swapped:
            current = self._reload(connection.id)
            logger.warning(
                "Connection transition lost a race",
                extra={
                    "connection_id": str(connection.id),
                    "expected": connection.status.value,
                    "actual": current.status.value,
                    "target": target.value,
                }
            )
            raise InvalidTransitionError(action, current.status.value)

    def _reload(self, connection_id: UUID) -> Connection:
        connection = self._store.get_connection(connection_id)
        if connection is None:
            raise NotFoundError("Connection not found")
        return connection

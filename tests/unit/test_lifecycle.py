"""
Tests for the connection lifecycle.

Covers the request -> approve -> verify -> active flow, declines,
disconnects, capacity enforcement at approval and verification, invite
code expiry and single use, and what happens when two requests race for
the same row.
"""

import threading
from datetime import timedelta
from uuid import uuid4

import pytest

from src.core.coaching.errors import (
    CapacityExceededError,
    CodeExpiredError,
    ConflictError,
    InvalidCodeError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from src.core.coaching.lifecycle import ConnectionManager, normalize_email
from src.core.coaching.models import (
    Connection,
    ConnectionStatus,
    Identity,
    InitiatedBy,
    SubscriptionTier,
)
from src.infrastructure.memory import InMemoryCoachingStore
from src.infrastructure.messaging import MockMessagingClient

from tests.support import CLIENT_USER, COACH_USER, OTHER_CLIENT


def _fill_seats(store, coach, count: int) -> None:
    for i in range(count):
        store.insert_connection(Connection(
            coach_id=coach.id,
            client_id=f"filler-{i}",
            status=ConnectionStatus.ACTIVE,
        ))


def _wrong(code: str) -> str:
    return "".join("B" if ch == "A" else "A" for ch in code)


# ---------------------------------------------------------------------------
# Coach accounts
# ---------------------------------------------------------------------------

class TestCoachAccounts:

    def test_register_coach(self, manager):
        coach = manager.register_coach(COACH_USER.user_id, tier=SubscriptionTier.GROWTH)
        assert manager.get_coach_for_owner(COACH_USER.user_id).id == coach.id
        assert manager.capacity(coach.id).total_capacity == 30

    def test_register_twice_conflicts(self, manager, coach):
        with pytest.raises(ConflictError):
            manager.register_coach(COACH_USER.user_id)

    def test_register_unknown_profile(self, manager):
        with pytest.raises(NotFoundError):
            manager.register_coach("nobody")

    def test_change_tier(self, manager, coach):
        manager.change_tier(coach.id, SubscriptionTier.PRO)
        assert manager.capacity(coach.id).total_capacity == 100

    def test_extra_clients_capped(self, manager, coach):
        manager.set_extra_clients(coach.id, 5)
        assert manager.capacity(coach.id).total_capacity == 15

        with pytest.raises(ValidationError):
            manager.set_extra_clients(coach.id, 6)
        with pytest.raises(ValidationError):
            manager.set_extra_clients(coach.id, -1)

    def test_removing_seats_leaves_clients_connected(self, manager, store, coach):
        """Lowering overflow below the active count makes the coach over capacity."""
        manager.set_extra_clients(coach.id, 2)
        _fill_seats(store, coach, 12)

        manager.set_extra_clients(coach.id, 0)

        snapshot = manager.capacity(coach.id)
        assert snapshot.active_count == 12
        assert snapshot.is_over_capacity
        assert snapshot.remaining_seats == 0


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestRequestApproveVerify:
    """Scenario: client requests, coach approves, client enters the code."""

    def test_full_flow(self, manager, store, messenger, coach, clock):
        connection = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)
        assert connection.status == ConnectionStatus.PENDING_REQUEST
        assert connection.initiated_by == InitiatedBy.CLIENT

        approval = manager.approve(connection.id, coach_id=coach.id)
        assert approval.connection.status == ConnectionStatus.PENDING_CODE
        assert approval.invite.expires_at == clock.now + timedelta(hours=48)

        # Code emailed to the client's profile address
        assert len(messenger.outbox) == 1
        assert messenger.outbox[0].to == CLIENT_USER.email
        assert approval.invite.code in messenger.outbox[0].body
        assert COACH_USER.name in messenger.outbox[0].body

        clock.advance(hours=1)
        active = manager.verify_code(
            connection.id,
            approval.invite.code,
            client_id=CLIENT_USER.user_id,
        )
        assert active.status == ConnectionStatus.ACTIVE
        assert active.connected_at == clock.now

        settings = store.get_sharing_settings(CLIENT_USER.user_id)
        assert settings.share_meals_auto is False
        assert settings.share_weight_auto is False

    def test_coach_email_lookup_ignores_case(self, manager, coach):
        connection = manager.create_request(CLIENT_USER.user_id, "  Coach@Example.COM ")
        assert connection.coach_id == coach.id

    def test_normalize_email(self):
        assert normalize_email("  A@B.Com ") == "a@b.com"

    def test_code_is_single_use(self, manager, coach):
        connection = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)
        approval = manager.approve(connection.id, coach_id=coach.id)
        manager.verify_code(connection.id, approval.invite.code)

        with pytest.raises(InvalidCodeError):
            manager.verify_code(connection.id, approval.invite.code)

    def test_code_accepted_in_lowercase(self, manager, coach):
        connection = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)
        approval = manager.approve(connection.id, coach_id=coach.id)

        active = manager.verify_code(connection.id, approval.invite.code.lower())
        assert active.status == ConnectionStatus.ACTIVE

    def test_verify_without_connection_id(self, manager, coach):
        connection = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)
        approval = manager.approve(connection.id, coach_id=coach.id)

        active = manager.verify_client_code(CLIENT_USER.user_id, approval.invite.code)
        assert active.id == connection.id

    def test_verify_without_pending_connections(self, manager):
        with pytest.raises(InvalidCodeError):
            manager.verify_client_code(CLIENT_USER.user_id, "ABCDEF")

    def test_get_client_connection(self, manager, coach):
        assert manager.get_client_connection(CLIENT_USER.user_id) is None
        connection = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)
        assert manager.get_client_connection(CLIENT_USER.user_id).id == connection.id

    def test_pending_requests_listed_for_coach(self, manager, coach):
        connection = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)
        manager.create_request(OTHER_CLIENT.user_id, COACH_USER.email)
        manager.approve(connection.id, coach_id=coach.id)

        pending = manager.list_pending_requests(coach.id)
        assert [c.client_id for c in pending] == [OTHER_CLIENT.user_id]
        assert len(manager.list_clients(coach.id)) == 2
        assert len(manager.list_clients(coach.id, [ConnectionStatus.PENDING_CODE])) == 1


# ---------------------------------------------------------------------------
# Opening a connection
# ---------------------------------------------------------------------------

class TestCreateRequest:

    def test_unknown_coach_email(self, manager, coach):
        with pytest.raises(NotFoundError):
            manager.create_request(CLIENT_USER.user_id, "nobody@example.com")

    def test_email_of_non_coach(self, manager, coach):
        """A real profile that isn't a coach is still 'no coach found'."""
        with pytest.raises(NotFoundError):
            manager.create_request(CLIENT_USER.user_id, OTHER_CLIENT.email)

    def test_duplicate_open_request_conflicts(self, manager, coach):
        manager.create_request(CLIENT_USER.user_id, COACH_USER.email)
        with pytest.raises(ConflictError):
            manager.create_request(CLIENT_USER.user_id, COACH_USER.email)

    def test_coach_cannot_connect_to_self(self, manager, coach):
        with pytest.raises(ConflictError):
            manager.create_request(COACH_USER.user_id, COACH_USER.email)

    def test_new_request_after_decline(self, manager, coach):
        """Scenario: a declined pair can start over with a new row."""
        first = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)
        manager.decline(first.id, coach_id=coach.id)

        second = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)
        assert second.id != first.id
        assert second.status == ConnectionStatus.PENDING_REQUEST
        assert manager.get_connection(first.id).status == ConnectionStatus.DECLINED

    def test_new_request_after_disconnect(self, manager, coach, active_connection):
        manager.disconnect(active_connection.id, CLIENT_USER.user_id)
        again = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)
        assert again.status == ConnectionStatus.PENDING_REQUEST


class TestInviteClient:

    def test_invite_skips_request_step(self, manager, messenger, coach):
        approval = manager.invite_client(coach.id, CLIENT_USER.email)

        assert approval.connection.status == ConnectionStatus.PENDING_CODE
        assert approval.connection.initiated_by == InitiatedBy.COACH
        assert messenger.outbox[0].to == CLIENT_USER.email

    def test_invite_without_notify_sends_nothing(self, manager, messenger, coach):
        approval = manager.invite_client(coach.id, CLIENT_USER.email, notify=False)
        assert messenger.outbox == []

        assert manager.deliver_code(approval.delivery) is True
        assert messenger.outbox[0].to == CLIENT_USER.email

    def test_invite_unknown_email(self, manager, coach):
        with pytest.raises(NotFoundError):
            manager.invite_client(coach.id, "nobody@example.com")

    def test_invite_at_capacity_creates_nothing(self, manager, store, coach):
        _fill_seats(store, coach, 10)

        with pytest.raises(CapacityExceededError):
            manager.invite_client(coach.id, CLIENT_USER.email)
        assert store.find_open_connection(coach.id, CLIENT_USER.user_id) is None


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------

class TestApprove:

    def test_approve_at_capacity(self, manager, store, coach, messenger):
        _fill_seats(store, coach, 10)
        connection = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)

        with pytest.raises(CapacityExceededError):
            manager.approve(connection.id, coach_id=coach.id)

        assert manager.get_connection(connection.id).status == ConnectionStatus.PENDING_REQUEST
        assert store.get_current_invite_code(connection.id) is None
        assert messenger.outbox == []

    def test_overflow_seat_allows_approval(self, manager, store, coach):
        manager.set_extra_clients(coach.id, 1)
        _fill_seats(store, coach, 10)
        connection = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)

        approval = manager.approve(connection.id, coach_id=coach.id)
        assert approval.connection.status == ConnectionStatus.PENDING_CODE

    def test_missing_client_identity_is_not_found(self, manager, coach):
        """No placeholder email: without a profile there's nowhere to send the code."""
        connection = manager.create_request("ghost-user", COACH_USER.email)

        with pytest.raises(NotFoundError):
            manager.approve(connection.id, coach_id=coach.id)
        assert manager.get_connection(connection.id).status == ConnectionStatus.PENDING_REQUEST

    def test_other_coach_cannot_approve(self, manager, directory, coach):
        directory.add(Identity(user_id="coach-2", email="coach2@example.com"))
        other = manager.register_coach("coach-2")
        connection = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)

        with pytest.raises(NotFoundError):
            manager.approve(connection.id, coach_id=other.id)

    def test_reapprove_reissues_code(self, manager, store, coach, clock):
        connection = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)
        first = manager.approve(connection.id, coach_id=coach.id)

        clock.advance(hours=49)
        second = manager.approve(connection.id, coach_id=coach.id)

        assert second.invite.id != first.invite.id
        assert store.get_current_invite_code(connection.id).id == second.invite.id
        active = manager.verify_code(connection.id, second.invite.code)
        assert active.status == ConnectionStatus.ACTIVE

    def test_cannot_approve_declined(self, manager, coach):
        connection = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)
        manager.decline(connection.id, coach_id=coach.id)

        with pytest.raises(InvalidTransitionError):
            manager.approve(connection.id, coach_id=coach.id)

    def test_cannot_approve_active(self, manager, coach, active_connection):
        with pytest.raises(InvalidTransitionError):
            manager.approve(active_connection.id, coach_id=coach.id)

    def test_delivery_failure_keeps_approval(self, store, directory, policy, clock):
        """A mail outage doesn't undo the approval; the code is still valid."""
        messenger = MockMessagingClient(fail=True)
        manager = ConnectionManager(store, directory, messenger, policy=policy, clock=clock)
        coach = manager.register_coach(COACH_USER.user_id)
        connection = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)

        approval = manager.approve(connection.id, coach_id=coach.id)

        assert approval.connection.status == ConnectionStatus.PENDING_CODE
        assert manager.verify_code(connection.id, approval.invite.code).is_active

    def test_delivery_exception_is_swallowed(self, store, directory, policy, clock):
        class ExplodingMessenger:
            def send_code(self, email, code, coach_name=""):
                raise RuntimeError("relay down")

            def send_notification(self, email, subject, body):
                raise RuntimeError("relay down")

        manager = ConnectionManager(store, directory, ExplodingMessenger(), policy=policy, clock=clock)
        coach = manager.register_coach(COACH_USER.user_id)
        connection = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)

        approval = manager.approve(connection.id, coach_id=coach.id)
        assert approval.connection.status == ConnectionStatus.PENDING_CODE


# ---------------------------------------------------------------------------
# Verification failures
# ---------------------------------------------------------------------------

class TestCapacityAtVerification:
    """Approval hands out codes, but a seat is only taken when a code is used."""

    @pytest.fixture
    def two_approved(self, manager, store, coach):
        """CLIENT_USER and OTHER_CLIENT both approved with one free seat left."""
        _fill_seats(store, coach, 9)
        approved = []
        for identity in (CLIENT_USER, OTHER_CLIENT):
            connection = manager.create_request(identity.user_id, COACH_USER.email)
            approved.append(manager.approve(connection.id, coach_id=coach.id))
        return approved

    def test_last_seat_goes_to_first_verifier(self, manager, store, coach, two_approved):
        first, second = two_approved
        manager.verify_code(first.connection.id, first.invite.code)

        with pytest.raises(CapacityExceededError):
            manager.verify_code(second.connection.id, second.invite.code)

        assert manager.get_connection(second.connection.id).status == ConnectionStatus.PENDING_CODE
        assert manager.capacity(coach.id).active_count == 10
        current = store.get_current_invite_code(second.connection.id)
        assert current.id == second.invite.id
        assert current.consumed_at is None

    def test_refused_code_works_once_a_seat_frees_up(self, manager, coach, two_approved):
        first, second = two_approved
        manager.verify_code(first.connection.id, first.invite.code)
        with pytest.raises(CapacityExceededError):
            manager.verify_client_code(OTHER_CLIENT.user_id, second.invite.code)

        manager.disconnect(first.connection.id, CLIENT_USER.user_id)

        activated = manager.verify_client_code(OTHER_CLIENT.user_id, second.invite.code)
        assert activated.status == ConnectionStatus.ACTIVE
        assert manager.capacity(coach.id).active_count == 10

    def test_seats_removed_after_approval(self, manager, store, coach):
        manager.set_extra_clients(coach.id, 1)
        _fill_seats(store, coach, 10)
        connection = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)
        approval = manager.approve(connection.id, coach_id=coach.id)

        manager.set_extra_clients(coach.id, 0)

        with pytest.raises(CapacityExceededError):
            manager.verify_code(connection.id, approval.invite.code)
        assert manager.capacity(coach.id).active_count == 10

    def test_more_approvals_than_seats(self, manager, store, coach, directory):
        """Twelve approved clients on a ten-seat plan end with ten active."""
        approvals = []
        for i in range(12):
            directory.add(Identity(user_id=f"client-{i}", email=f"client-{i}@example.com"))
            connection = manager.create_request(f"client-{i}", COACH_USER.email)
            approvals.append(manager.approve(connection.id, coach_id=coach.id))

        refused = 0
        for approval in approvals:
            try:
                manager.verify_code(approval.connection.id, approval.invite.code)
            except CapacityExceededError:
                refused += 1

        assert refused == 2
        assert manager.capacity(coach.id).active_count == 10

    def test_concurrent_verifies_share_the_last_seat(self, manager, coach, two_approved):
        barrier = threading.Barrier(2)
        outcomes = []

        def attempt(approval):
            barrier.wait()
            try:
                manager.verify_code(approval.connection.id, approval.invite.code)
                outcomes.append("active")
            except CapacityExceededError:
                outcomes.append("full")

        threads = [threading.Thread(target=attempt, args=(a,)) for a in two_approved]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ["active", "full"]
        assert manager.capacity(coach.id).active_count == 10


class TestVerifyFailures:

    @pytest.fixture
    def pending(self, manager, coach):
        connection = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)
        return manager.approve(connection.id, coach_id=coach.id)

    def test_expired_code(self, manager, clock, pending):
        clock.advance(hours=48, seconds=1)
        with pytest.raises(CodeExpiredError):
            manager.verify_code(pending.connection.id, pending.invite.code)
        assert manager.get_connection(pending.connection.id).status == ConnectionStatus.PENDING_CODE

    def test_code_valid_until_expiry(self, manager, clock, pending):
        clock.advance(hours=48)
        assert manager.verify_code(pending.connection.id, pending.invite.code).is_active

    def test_wrong_code(self, manager, pending):
        with pytest.raises(InvalidCodeError):
            manager.verify_code(pending.connection.id, _wrong(pending.invite.code))

    def test_wrong_client(self, manager, pending):
        with pytest.raises(InvalidCodeError):
            manager.verify_code(
                pending.connection.id,
                pending.invite.code,
                client_id=OTHER_CLIENT.user_id,
            )

    def test_too_many_wrong_guesses_revoke_code(self, manager, policy, pending):
        for _ in range(policy.invite_code_max_attempts):
            with pytest.raises(InvalidCodeError):
                manager.verify_code(pending.connection.id, _wrong(pending.invite.code))

        with pytest.raises(InvalidCodeError):
            manager.verify_code(pending.connection.id, pending.invite.code)

    def test_declined_connection_rejects_code(self, manager, coach, pending):
        manager.decline(pending.connection.id, coach_id=coach.id)
        with pytest.raises(InvalidCodeError):
            manager.verify_code(pending.connection.id, pending.invite.code)


# ---------------------------------------------------------------------------
# Decline and disconnect
# ---------------------------------------------------------------------------

class TestDecline:

    def test_decline_is_idempotent(self, manager, coach):
        connection = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)
        first = manager.decline(connection.id, coach_id=coach.id)
        second = manager.decline(connection.id, coach_id=coach.id)
        assert first.status == second.status == ConnectionStatus.DECLINED

    def test_decline_pending_code(self, manager, coach):
        connection = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)
        manager.approve(connection.id, coach_id=coach.id)
        assert manager.decline(connection.id, coach_id=coach.id).status == ConnectionStatus.DECLINED

    def test_cannot_decline_disconnected(self, manager, coach, active_connection):
        manager.disconnect(active_connection.id, CLIENT_USER.user_id)
        with pytest.raises(InvalidTransitionError):
            manager.decline(active_connection.id, coach_id=coach.id)

    def test_declining_active_connection_stamps_end_time(self, manager, coach, active_connection, clock):
        clock.advance(days=2)
        ended = manager.decline(active_connection.id, coach_id=coach.id)

        assert ended.status == ConnectionStatus.DECLINED
        assert ended.connected_at == active_connection.connected_at
        assert ended.disconnected_at == clock.now
        assert manager.capacity(coach.id).active_count == 0

    def test_declining_pending_leaves_end_time_empty(self, manager, coach):
        connection = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)
        assert manager.decline(connection.id, coach_id=coach.id).disconnected_at is None

    def test_decline_unknown_connection(self, manager, coach):
        with pytest.raises(NotFoundError):
            manager.decline(uuid4(), coach_id=coach.id)


class TestDisconnect:

    def test_client_can_disconnect(self, manager, active_connection, clock):
        clock.advance(days=3)
        ended = manager.disconnect(active_connection.id, CLIENT_USER.user_id)
        assert ended.status == ConnectionStatus.DISCONNECTED
        assert ended.disconnected_at == clock.now

    def test_coach_can_disconnect(self, manager, active_connection):
        ended = manager.disconnect(active_connection.id, COACH_USER.user_id)
        assert ended.status == ConnectionStatus.DISCONNECTED

    def test_stranger_cannot_disconnect(self, manager, active_connection):
        with pytest.raises(NotFoundError):
            manager.disconnect(active_connection.id, OTHER_CLIENT.user_id)

    def test_only_active_connections(self, manager, coach):
        connection = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)
        with pytest.raises(InvalidTransitionError):
            manager.disconnect(connection.id, CLIENT_USER.user_id)

    def test_disconnect_frees_a_seat(self, manager, coach, active_connection):
        assert manager.capacity(coach.id).active_count == 1
        manager.disconnect(active_connection.id, CLIENT_USER.user_id)
        assert manager.capacity(coach.id).active_count == 0


# ---------------------------------------------------------------------------
# Races
# ---------------------------------------------------------------------------

class DeclineFirstStore(InMemoryCoachingStore):
    """Declines the row just before any other transition lands."""

    def transition_connection(self, connection_id, expected, target, *, at):
        if target != ConnectionStatus.DECLINED:
            super().transition_connection(
                connection_id, expected, ConnectionStatus.DECLINED, at=at
            )
        return super().transition_connection(connection_id, expected, target, at=at)


class TestRaces:

    def test_approve_loses_to_concurrent_decline(self, directory, messenger, policy, clock):
        store = DeclineFirstStore()
        manager = ConnectionManager(store, directory, messenger, policy=policy, clock=clock)
        coach = manager.register_coach(COACH_USER.user_id)
        connection = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)

        with pytest.raises(InvalidTransitionError) as exc_info:
            manager.approve(connection.id, coach_id=coach.id)

        assert exc_info.value.current == ConnectionStatus.DECLINED.value
        assert store.get_current_invite_code(connection.id) is None
        assert messenger.outbox == []

    def test_concurrent_verifies_activate_once(self, manager, coach):
        """The same code submitted from several threads activates exactly once."""
        connection = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)
        approval = manager.approve(connection.id, coach_id=coach.id)

        barrier = threading.Barrier(8)
        results = []

        def attempt():
            barrier.wait()
            try:
                manager.verify_code(connection.id, approval.invite.code)
                results.append("ok")
            except InvalidCodeError:
                results.append("rejected")

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count("ok") == 1
        assert results.count("rejected") == 7

    def test_concurrent_requests_open_one_connection(self, manager, store, coach):
        barrier = threading.Barrier(6)
        outcomes = []

        def attempt():
            barrier.wait()
            try:
                manager.create_request(CLIENT_USER.user_id, COACH_USER.email)
                outcomes.append("created")
            except ConflictError:
                outcomes.append("conflict")

        threads = [threading.Thread(target=attempt) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("created") == 1
        assert len(store.list_connections_for_client(CLIENT_USER.user_id)) == 1

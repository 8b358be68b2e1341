"""
Shared fixtures.

Everything here is in-memory: a store, a profile directory, a record
reader, a messenger that keeps an outbox, and a clock the test moves by
hand. Services are wired the same way the API wires them.
"""

import pytest

from src.core.coaching.leads import LeadIntake
from src.core.coaching.lifecycle import ConnectionManager
from src.core.coaching.models import SubscriptionTier
from src.core.coaching.policy import CoachingPolicy
from src.core.coaching.reminders import ReminderChannel
from src.core.coaching.sharing import SharingGate
from src.infrastructure.memory import (
    InMemoryCoachingStore,
    InMemoryIdentityDirectory,
    InMemoryRecordReader,
)
from src.infrastructure.messaging import MockMessagingClient

from tests.support import CLIENT_USER, COACH_USER, OTHER_CLIENT, FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def policy() -> CoachingPolicy:
    return CoachingPolicy(lead_inbox_email="coaching@example.com")


@pytest.fixture
def store() -> InMemoryCoachingStore:
    return InMemoryCoachingStore()


@pytest.fixture
def directory() -> InMemoryIdentityDirectory:
    return InMemoryIdentityDirectory([COACH_USER, CLIENT_USER, OTHER_CLIENT])


@pytest.fixture
def records() -> InMemoryRecordReader:
    return InMemoryRecordReader()


@pytest.fixture
def messenger() -> MockMessagingClient:
    return MockMessagingClient()


@pytest.fixture
def manager(store, directory, messenger, policy, clock) -> ConnectionManager:
    return ConnectionManager(store, directory, messenger, policy=policy, clock=clock)


@pytest.fixture
def gate(store, records, clock) -> SharingGate:
    return SharingGate(store, records, clock=clock)


@pytest.fixture
def reminders(store, policy, clock) -> ReminderChannel:
    return ReminderChannel(store, policy=policy, clock=clock)


@pytest.fixture
def intake(store, directory, messenger, policy, clock) -> LeadIntake:
    return LeadIntake(store, directory, messenger, policy=policy, clock=clock)


@pytest.fixture
def coach(manager):
    """A registered starter-plan coach."""
    return manager.register_coach(COACH_USER.user_id, tier=SubscriptionTier.STARTER)


@pytest.fixture
def active_connection(manager, coach, messenger):
    """CLIENT_USER connected to `coach` through the normal request flow."""
    connection = manager.create_request(CLIENT_USER.user_id, COACH_USER.email)
    approval = manager.approve(connection.id, coach_id=coach.id)
    return manager.verify_code(connection.id, approval.invite.code, client_id=CLIENT_USER.user_id)

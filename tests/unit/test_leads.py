"""
Tests for coaching lead intake and its 24-hour throttle.
"""

import threading
from dataclasses import replace
from datetime import timedelta
from uuid import uuid4

import pytest

from src.core.coaching.errors import NotFoundError, RateLimitedError, ValidationError
from src.core.coaching.leads import LeadIntake, format_lead_email
from src.core.coaching.models import (
    BestTime,
    ContactMethod,
    LeadGoal,
    LeadStatus,
    WeightRange,
)
from src.core.coaching.policy import CoachingPolicy
from src.infrastructure.messaging import MockMessagingClient

from tests.support import CLIENT_USER


def _submit(intake, **overrides):
    values = dict(
        goal=LeadGoal.LOSE,
        weight_range=WeightRange.TWENTY_TO_FORTY,
        contact_preference=[ContactMethod.EMAIL, ContactMethod.TEXT],
        best_time=BestTime.EVENING,
        message="Looking for accountability",
    )
    values.update(overrides)
    return intake.submit_lead(CLIENT_USER.user_id, **values)


class TestThrottle:
    """Scenario: one lead per user per 24 hours."""

    def test_second_lead_within_window_rejected(self, intake, clock):
        _submit(intake)

        clock.advance(hours=12)
        with pytest.raises(RateLimitedError):
            _submit(intake)

        clock.advance(hours=13)
        lead = _submit(intake)
        assert lead.status == LeadStatus.NEW

    def test_has_recent_lead(self, intake, clock):
        assert not intake.has_recent_lead(CLIENT_USER.user_id)
        _submit(intake)
        assert intake.has_recent_lead(CLIENT_USER.user_id)
        clock.advance(hours=24, seconds=1)
        assert not intake.has_recent_lead(CLIENT_USER.user_id)

    def test_throttle_is_per_user(self, intake):
        _submit(intake)
        other = intake.submit_lead(
            "someone-else",
            goal=LeadGoal.GAIN,
            weight_range=WeightRange.TEN_TO_TWENTY,
            contact_preference=[ContactMethod.CALL],
            best_time=BestTime.MORNING,
        )
        assert other.user_id == "someone-else"


    def test_concurrent_submissions_store_one_lead(self, intake, store):
        barrier = threading.Barrier(6)
        outcomes = []

        def attempt():
            barrier.wait()
            try:
                _submit(intake, notify=False)
                outcomes.append("stored")
            except RateLimitedError:
                outcomes.append("throttled")

        threads = [threading.Thread(target=attempt) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("stored") == 1
        assert len(store.list_leads()) == 1

    def test_insert_refused_inside_window(self, intake, store, clock):
        """The store re-checks the window itself, so a lead that slips past
        has_recent_lead is still refused."""
        first = _submit(intake, notify=False)
        late = replace(first, id=uuid4(), created_at=clock.advance(hours=1))

        assert not store.insert_lead(late, throttle_since=late.created_at - timedelta(hours=24))
        assert store.insert_lead(late)
        assert len(store.list_leads()) == 2


class TestSubmitLead:

    def test_requires_contact_preference(self, intake):
        with pytest.raises(ValidationError):
            _submit(intake, contact_preference=[])

    def test_blank_message_stored_as_none(self, intake):
        assert _submit(intake, message="   ").message is None

    def test_notifies_inbox(self, intake, messenger):
        _submit(intake)

        assert len(messenger.outbox) == 1
        sent = messenger.outbox[0]
        assert sent.to == "coaching@example.com"
        assert sent.subject == f"New Coaching Request - {CLIENT_USER.name}"
        assert "Goal: Lose weight" in sent.body
        assert "Amount: 20-40 lbs" in sent.body
        assert "Contact: Email, Text" in sent.body
        assert "Best time: Evening" in sent.body
        assert CLIENT_USER.email in sent.body

    def test_no_inbox_no_email(self, store, directory, messenger, clock):
        intake = LeadIntake(store, directory, messenger, policy=CoachingPolicy(), clock=clock)
        _submit(intake)
        assert messenger.outbox == []

    def test_notification_failure_keeps_lead(self, store, directory, policy, clock):
        messenger = MockMessagingClient(fail=True)
        intake = LeadIntake(store, directory, messenger, policy=policy, clock=clock)

        lead = _submit(intake)
        assert store.get_lead(lead.id) is not None

    def test_deferred_notification(self, intake, messenger):
        lead = _submit(intake, notify=False)
        assert messenger.outbox == []

        notification = intake.build_notification(lead)
        assert intake.send_notification(notification) is True
        assert messenger.outbox[0].subject == notification.subject


class TestLeadTriage:

    def test_update_status(self, intake):
        lead = _submit(intake)
        updated = intake.update_lead_status(lead.id, LeadStatus.CONTACTED)
        assert updated.status == LeadStatus.CONTACTED
        assert [found.id for found in intake.list_leads(LeadStatus.CONTACTED)] == [lead.id]
        assert intake.list_leads(LeadStatus.NEW) == []

    def test_update_unknown_lead(self, intake):
        with pytest.raises(NotFoundError):
            intake.update_lead_status(uuid4(), LeadStatus.CONVERTED)


class TestFormatLeadEmail:

    def test_missing_details(self, intake):
        lead = _submit(intake, message=None, notify=False)
        body = format_lead_email(lead, "Unknown", "")
        assert "Email: Not provided" in body
        assert "Message: No message provided" in body

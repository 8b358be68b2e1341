"""Test doubles and fixed data shared across the suite."""

from datetime import datetime, timedelta, timezone

from src.core.coaching.models import Identity


START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

COACH_USER = Identity(user_id="coach-user", email="coach@example.com", name="Casey Coach")
CLIENT_USER = Identity(user_id="client-user", email="client@example.com", name="Robin Client")
OTHER_CLIENT = Identity(user_id="other-client", email="other@example.com", name="Sam Other")


class FakeClock:
    """A clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

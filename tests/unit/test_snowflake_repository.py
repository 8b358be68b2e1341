"""
Tests for the Snowflake repositories.

Runs against a recording stand-in for the DB-API connection. Each
execute() takes the next scripted result, so tests can say "this UPDATE
touched no rows" and check the repository reacts correctly, and then
inspect the SQL and parameters it sent.
"""

import json
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from src.core.coaching.errors import TransientError
from src.core.coaching.models import (
    BestTime,
    Coach,
    CoachingLead,
    Connection,
    ConnectionStatus,
    ContactMethod,
    InviteCode,
    LeadGoal,
    WeightRange,
)
from src.infrastructure.snowflake.repositories import (
    SnowflakeCoachingStore,
    SnowflakeProfileDirectory,
    SnowflakeRecordReader,
)
from src.infrastructure.snowflake.repositories.base import as_utc


NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class Result:
    def __init__(self, rows=None, rowcount=1, error=None):
        self.rows = rows or []
        self.rowcount = rowcount
        self.error = error


class FakeCursor:

    def __init__(self, conn: "FakeConnection") -> None:
        self._conn = conn
        self._rows = []
        self.rowcount = -1
        self.closed = False

    def execute(self, sql, params=None):
        self._conn.executed.append((" ".join(sql.split()), params))
        result = self._conn.results.pop(0) if self._conn.results else Result()
        if result.error:
            raise result.error
        self._rows = list(result.rows)
        self.rowcount = result.rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)

    def close(self):
        self.closed = True


class FakeConnection:

    def __init__(self, *results: Result) -> None:
        self.results = list(results)
        self.executed = []
        self.commits = 0
        self.rollbacks = 0
        self.cursors = []

    def cursor(self):
        cursor = FakeCursor(self)
        self.cursors.append(cursor)
        return cursor

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


def _connection_row(connection_id, coach_id, status="pending_request"):
    naive = NOW.replace(tzinfo=None)
    return (str(connection_id), str(coach_id), "client-1", status, "client", naive, None, None)


class TestConnections:

    def test_insert_reports_win(self):
        conn = FakeConnection(Result(rowcount=1))
        store = SnowflakeCoachingStore(conn)

        assert store.insert_connection(Connection(coach_id=uuid4(), client_id="c1"))

        sql, params = conn.executed[0]
        assert sql.startswith("MERGE INTO connections AS target")
        assert "WHEN NOT MATCHED THEN INSERT" in sql
        assert "WHEN MATCHED" not in sql.replace("WHEN NOT MATCHED", "")
        assert "target.status IN (%s, %s, %s)" in sql
        assert params[-3:] == ("active", "pending_code", "pending_request")
        assert conn.commits == 1

    def test_insert_reports_existing_open_connection(self):
        conn = FakeConnection(Result(rowcount=0))
        assert not SnowflakeCoachingStore(conn).insert_connection(
            Connection(coach_id=uuid4(), client_id="c1")
        )

    def test_transition_is_compare_and_swap(self):
        conn = FakeConnection(Result(rowcount=1))
        connection_id = uuid4()

        swapped = SnowflakeCoachingStore(conn).transition_connection(
            connection_id,
            ConnectionStatus.ACTIVE,
            ConnectionStatus.DISCONNECTED,
            at=NOW,
        )

        sql, params = conn.executed[0]
        assert swapped
        assert sql.startswith("UPDATE connections SET status = %s, disconnected_at = %s")
        assert sql.endswith("WHERE id = %s AND status = %s")
        assert params == ("disconnected", NOW, str(connection_id), "active")

    def test_lost_transition(self):
        conn = FakeConnection(Result(rowcount=0))
        assert not SnowflakeCoachingStore(conn).transition_connection(
            uuid4(),
            ConnectionStatus.PENDING_REQUEST,
            ConnectionStatus.DECLINED,
            at=NOW,
        )
        sql, params = conn.executed[0]
        assert "disconnected_at" not in sql
        assert params[0] == "declined"

    def test_declining_active_sets_disconnected_at(self):
        conn = FakeConnection(Result(rowcount=1))
        connection_id = uuid4()

        SnowflakeCoachingStore(conn).transition_connection(
            connection_id,
            ConnectionStatus.ACTIVE,
            ConnectionStatus.DECLINED,
            at=NOW,
        )

        sql, params = conn.executed[0]
        assert sql.startswith("UPDATE connections SET status = %s, disconnected_at = %s")
        assert params == ("declined", NOW, str(connection_id), "active")

    def test_row_mapping_makes_times_utc(self):
        connection_id, coach_id = uuid4(), uuid4()
        conn = FakeConnection(Result(rows=[_connection_row(connection_id, coach_id)]))

        connection = SnowflakeCoachingStore(conn).get_connection(connection_id)

        assert connection.id == connection_id
        assert connection.coach_id == coach_id
        assert connection.status == ConnectionStatus.PENDING_REQUEST
        assert connection.created_at == NOW
        assert connection.created_at.tzinfo is not None

    def test_empty_status_filter_matches_nothing(self):
        conn = FakeConnection(Result(rows=[]))
        SnowflakeCoachingStore(conn).list_connections_for_coach(uuid4(), [])
        assert "AND 1 = 0" in conn.executed[0][0]

    def test_status_filter(self):
        conn = FakeConnection(Result(rows=[]))
        SnowflakeCoachingStore(conn).list_connections_for_client(
            "client-1",
            [ConnectionStatus.PENDING_CODE],
        )
        sql, params = conn.executed[0]
        assert "AND status IN (%s)" in sql
        assert params == ("client-1", "pending_code")


class TestCoaches:

    def test_insert_coach_once_per_profile(self):
        conn = FakeConnection(Result(rowcount=0))
        assert not SnowflakeCoachingStore(conn).insert_coach(Coach(owner_profile_id="p1"))

        sql, params = conn.executed[0]
        assert sql.startswith("MERGE INTO coaches AS target")
        assert "ON target.owner_profile_id = source.owner_profile_id" in sql
        assert "WHEN NOT MATCHED THEN INSERT" in sql
        assert params[1] == "p1"

    def test_insert_coach_reports_win(self):
        conn = FakeConnection(Result(rowcount=1))
        assert SnowflakeCoachingStore(conn).insert_coach(Coach(owner_profile_id="p1"))
        assert conn.commits == 1


class TestInviteCodes:

    def test_issue_revokes_then_inserts_in_one_transaction(self):
        conn = FakeConnection()
        code = InviteCode(
            connection_id=uuid4(),
            code="AB12CD",
            issued_at=NOW,
            expires_at=NOW + timedelta(hours=48),
        )

        SnowflakeCoachingStore(conn).issue_invite_code(code)

        statements = [sql for sql, _ in conn.executed]
        assert statements[0] == "BEGIN"
        assert statements[1].startswith("UPDATE invite_codes SET revoked_at")
        assert statements[2].startswith("INSERT INTO invite_codes")
        assert conn.commits == 1

    def test_activation_commits_when_both_updates_land(self):
        conn = FakeConnection(Result(), Result(rowcount=1), Result(rowcount=1))
        assert SnowflakeCoachingStore(conn).activate_with_code(uuid4(), uuid4(), NOW)
        assert conn.commits == 1
        assert conn.rollbacks == 0

    def test_activation_rolls_back_when_code_already_used(self):
        conn = FakeConnection(Result(), Result(rowcount=0))
        assert not SnowflakeCoachingStore(conn).activate_with_code(uuid4(), uuid4(), NOW)
        assert conn.rollbacks == 1
        assert len(conn.executed) == 2

    def test_activation_rolls_back_when_connection_moved_on(self):
        conn = FakeConnection(Result(), Result(rowcount=1), Result(rowcount=0))
        assert not SnowflakeCoachingStore(conn).activate_with_code(uuid4(), uuid4(), NOW)
        assert conn.rollbacks == 1
        assert conn.commits == 0

    def test_activation_without_seat_limit(self):
        conn = FakeConnection(Result(), Result(rowcount=1), Result(rowcount=1))
        SnowflakeCoachingStore(conn).activate_with_code(uuid4(), uuid4(), NOW)

        sql, params = conn.executed[2]
        assert "COUNT(*)" not in sql
        assert len(params) == 4

    def test_activation_checks_seats_in_the_update(self):
        conn = FakeConnection(Result(), Result(rowcount=1), Result(rowcount=1))
        connection_id = uuid4()

        assert SnowflakeCoachingStore(conn).activate_with_code(
            uuid4(), connection_id, NOW, max_active=10
        )

        sql, params = conn.executed[2]
        assert sql.startswith("UPDATE connections SET status = %s, connected_at = %s")
        assert "SELECT COUNT(*) FROM connections" in sql
        assert sql.endswith(") < %s")
        assert params == (
            "active", NOW, str(connection_id), "pending_code",
            str(connection_id), "active", 10,
        )

    def test_activation_rolls_back_when_coach_is_full(self):
        conn = FakeConnection(Result(), Result(rowcount=1), Result(rowcount=0))
        assert not SnowflakeCoachingStore(conn).activate_with_code(
            uuid4(), uuid4(), NOW, max_active=10
        )
        assert conn.rollbacks == 1
        assert conn.commits == 0

    def test_failed_attempt_returns_new_count(self):
        conn = FakeConnection(Result(), Result(rows=[(3,)]))
        assert SnowflakeCoachingStore(conn).record_failed_attempt(uuid4(), 5, NOW) == 3
        assert "CASE" in conn.executed[0][0]


class TestLeads:

    def test_contact_preference_round_trips_through_json(self):
        lead = CoachingLead(
            user_id="u1",
            goal=LeadGoal.MAINTAIN,
            weight_range=WeightRange.SIXTY_PLUS,
            contact_preference=frozenset({ContactMethod.TEXT, ContactMethod.CALL}),
            best_time=BestTime.AFTERNOON,
            created_at=NOW,
        )
        conn = FakeConnection()
        store = SnowflakeCoachingStore(conn)
        store.insert_lead(lead)

        _, params = conn.executed[0]
        assert json.loads(params[4]) == ["call", "text"]

        row = (
            str(lead.id), "u1", "maintain", "60+", '[\n  "call",\n  "text"\n]',
            "afternoon", None, "new", NOW,
        )
        conn.results.append(Result(rows=[row]))
        loaded = store.get_lead(lead.id)
        assert loaded.contact_preference == lead.contact_preference
        assert loaded.weight_range == WeightRange.SIXTY_PLUS


    def test_throttled_insert_is_a_merge(self):
        lead = CoachingLead(
            user_id="u1",
            goal=LeadGoal.LOSE,
            weight_range=WeightRange.TEN_TO_TWENTY,
            contact_preference=frozenset({ContactMethod.EMAIL}),
            best_time=BestTime.MORNING,
            created_at=NOW,
        )
        since = NOW - timedelta(hours=24)
        conn = FakeConnection(Result(rowcount=0))

        assert not SnowflakeCoachingStore(conn).insert_lead(lead, throttle_since=since)

        sql, params = conn.executed[0]
        assert sql.startswith("MERGE INTO coaching_leads AS target")
        assert "PARSE_JSON(%s) AS contact_preference" in sql
        assert "AND target.created_at >= %s" in sql
        assert params[-1] == since
        assert params[1] == "u1"


class TestErrorHandling:

    def test_driver_errors_become_transient(self):
        conn = FakeConnection(Result(error=RuntimeError("warehouse suspended")))

        with pytest.raises(TransientError):
            SnowflakeCoachingStore(conn).get_coach(uuid4())

        assert conn.rollbacks == 1
        assert all(cursor.closed for cursor in conn.cursors)

    def test_cursor_closed_on_success(self):
        conn = FakeConnection(Result(rows=[(0,)]))
        SnowflakeCoachingStore(conn).count_connections(uuid4(), ConnectionStatus.ACTIVE)
        assert conn.cursors[0].closed


class TestReadOnlyAdapters:

    def test_profile_lookup_by_email_is_case_insensitive(self):
        conn = FakeConnection(Result(rows=[("user-1",)]))
        assert SnowflakeProfileDirectory(conn).find_user_id_by_email(" Coach@Example.com ") == "user-1"
        assert conn.executed[0][1] == ("coach@example.com",)

    def test_profile_without_email_is_unresolved(self):
        conn = FakeConnection(Result(rows=[("user-1", None, "Name")]))
        assert SnowflakeProfileDirectory(conn).resolve_identity("user-1") is None

    def test_meals_mapped(self):
        meal_id = uuid4()
        conn = FakeConnection(Result(rows=[
            (str(meal_id), "c1", NOW.replace(tzinfo=None), "Eggs", 210, 18, None, 14),
        ]))
        meals = SnowflakeRecordReader(conn).list_meals("c1", NOW - timedelta(days=1), NOW)
        assert meals[0].id == meal_id
        assert meals[0].carbs_g == 0.0
        assert meals[0].logged_at == NOW

    def test_last_meal_none_when_no_meals(self):
        conn = FakeConnection(Result(rows=[(None,)]))
        assert SnowflakeRecordReader(conn).last_meal_at("c1") is None


class TestAsUtc:

    def test_converts_offsets(self):
        eastern = timezone(timedelta(hours=-5))
        assert as_utc(datetime(2026, 3, 2, 4, 0, tzinfo=eastern)) == NOW

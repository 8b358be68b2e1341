"""
Snowflake repository for coaches, connections, codes, settings, reminders
and leads.

Implements the CoachingStore port. The rules the core relies on are
enforced here in SQL:
1. MERGE ... WHEN NOT MATCHED THEN INSERT keeps at most one open
   connection per pair, one coach per profile and one lead per throttle
   window. Snowflake serialises MERGE statements on a table, so two
   sessions cannot both see "no match" and both insert.
2. Conditional updates (UPDATE ... WHERE status = %s) give compare-and-swap
   transitions; the affected row count says whether we won.
3. Code consumption and activation share one transaction.

The application code never writes SQL directly; it asks the repository
for what it needs in domain terms.
"""

import json
import logging
from datetime import datetime
from typing import Iterable, Optional
from uuid import UUID

from src.core.coaching.models import (
    BestTime,
    Coach,
    CoachingLead,
    Connection,
    ConnectionStatus,
    ContactMethod,
    InitiatedBy,
    InviteCode,
    LeadGoal,
    LeadStatus,
    OPEN_STATUSES,
    ReminderKind,
    ReminderRequest,
    ReminderStatus,
    SharingSettings,
    SubscriptionTier,
    WeightRange,
)

from .base import SnowflakeConnection, as_utc, cursor_scope

logger = logging.getLogger(__name__)


COACH_COLUMNS = "id, owner_profile_id, subscription_tier, extra_client_count, created_at, updated_at"

CONNECTION_COLUMNS = (
    "id, coach_id, client_id, status, initiated_by, created_at, connected_at, disconnected_at"
)

CODE_COLUMNS = (
    "id, connection_id, code, issued_at, expires_at, consumed_at, revoked_at, failed_attempts"
)

SHARING_COLUMNS = "client_id, share_meals_auto, share_weight_auto, updated_at"

REMINDER_COLUMNS = "id, coach_id, client_id, kind, status, message, created_at, completed_at"

LEAD_COLUMNS = (
    "id, user_id, goal, weight_range, contact_preference, best_time, message, status, created_at"
)

_OPEN_STATUS_VALUES = tuple(sorted(s.value for s in OPEN_STATUSES))


def _status_filter(statuses: Optional[Iterable[ConnectionStatus]]) -> tuple[str, list]:
    """SQL fragment and params restricting connections to the given statuses."""
    if statuses is None:
        return "", []
    values = [s.value for s in statuses]
    if not values:
        return " AND 1 = 0", []
    placeholders = ", ".join(["%s"] * len(values))
    return f" AND status IN ({placeholders})", values


class SnowflakeCoachingStore:
    """
    Repository for all connection-authority persistence.

    Each method corresponds to one store operation the core needs. Rows
    are translated to domain models on the way out.
    """

    def __init__(self, connection: SnowflakeConnection) -> None:
        self._conn = connection

    # -----------------------------------------------------------------------
    # Coaches
    # -----------------------------------------------------------------------

    def get_coach(self, coach_id: UUID) -> Optional[Coach]:
        with cursor_scope(self._conn, "get_coach") as cursor:
            cursor.execute(
                f"SELECT {COACH_COLUMNS} FROM coaches WHERE id = %s",
                (str(coach_id),),
            )
            row = cursor.fetchone()
            return self._build_coach(row) if row else None

    def get_coach_by_owner(self, owner_profile_id: str) -> Optional[Coach]:
        with cursor_scope(self._conn, "get_coach_by_owner") as cursor:
            cursor.execute(
                f"SELECT {COACH_COLUMNS} FROM coaches WHERE owner_profile_id = %s",
                (owner_profile_id,),
            )
            row = cursor.fetchone()
            return self._build_coach(row) if row else None

    def insert_coach(self, coach: Coach) -> bool:
        with cursor_scope(self._conn, "insert_coach") as cursor:
            cursor.execute(f"""
                MERGE INTO coaches AS target
                USING (
                    SELECT %s AS id, %s AS owner_profile_id, %s AS subscription_tier,
                           %s AS extra_client_count, %s AS created_at, %s AS updated_at
                ) AS source
                ON target.owner_profile_id = source.owner_profile_id
                WHEN NOT MATCHED THEN INSERT ({COACH_COLUMNS})
                VALUES (
                    source.id, source.owner_profile_id, source.subscription_tier,
                    source.extra_client_count, source.created_at, source.updated_at
                )
            """, (
                str(coach.id),
                coach.owner_profile_id,
                coach.subscription_tier.value,
                coach.extra_client_count,
                coach.created_at,
                coach.updated_at,
            ))
            inserted = cursor.rowcount == 1
            self._conn.commit()
            return inserted

    def update_coach(self, coach: Coach) -> None:
        with cursor_scope(self._conn, "update_coach") as cursor:
            cursor.execute("""
                UPDATE coaches
                SET subscription_tier = %s,
                    extra_client_count = %s,
                    updated_at = %s
                WHERE id = %s
            """, (
                coach.subscription_tier.value,
                coach.extra_client_count,
                coach.updated_at,
                str(coach.id),
            ))
            self._conn.commit()

    # -----------------------------------------------------------------------
    # Connections
    # -----------------------------------------------------------------------

    def insert_connection(self, connection: Connection) -> bool:
        with cursor_scope(self._conn, "insert_connection") as cursor:
            cursor.execute(f"""
                MERGE INTO connections AS target
                USING (
                    SELECT %s AS id, %s AS coach_id, %s AS client_id, %s AS status,
                           %s AS initiated_by, %s AS created_at, %s AS connected_at,
                           %s AS disconnected_at
                ) AS source
                ON target.coach_id = source.coach_id
                   AND target.client_id = source.client_id
                   AND target.status IN (%s, %s, %s)
                WHEN NOT MATCHED THEN INSERT ({CONNECTION_COLUMNS})
                VALUES (
                    source.id, source.coach_id, source.client_id, source.status,
                    source.initiated_by, source.created_at, source.connected_at,
                    source.disconnected_at
                )
            """, (
                str(connection.id),
                str(connection.coach_id),
                connection.client_id,
                connection.status.value,
                connection.initiated_by.value,
                connection.created_at,
                connection.connected_at,
                connection.disconnected_at,
                *_OPEN_STATUS_VALUES,
            ))
            inserted = cursor.rowcount == 1
            self._conn.commit()

            if not inserted:
                logger.info(
                    "Connection insert skipped, open connection exists",
                    extra={"coach_id": str(connection.coach_id)}
                )
            return inserted

    def get_connection(self, connection_id: UUID) -> Optional[Connection]:
        with cursor_scope(self._conn, "get_connection") as cursor:
            cursor.execute(
                f"SELECT {CONNECTION_COLUMNS} FROM connections WHERE id = %s",
                (str(connection_id),),
            )
            row = cursor.fetchone()
            return self._build_connection(row) if row else None

    def find_open_connection(self, coach_id: UUID, client_id: str) -> Optional[Connection]:
        with cursor_scope(self._conn, "find_open_connection") as cursor:
            cursor.execute(f"""
                SELECT {CONNECTION_COLUMNS}
                FROM connections
                WHERE coach_id = %s
                  AND client_id = %s
                  AND status IN (%s, %s, %s)
                ORDER BY created_at DESC
                LIMIT 1
            """, (str(coach_id), client_id, *_OPEN_STATUS_VALUES))
            row = cursor.fetchone()
            return self._build_connection(row) if row else None

    def list_connections_for_coach(
        self,
        coach_id: UUID,
        statuses: Optional[Iterable[ConnectionStatus]] = None,
    ) -> list[Connection]:
        fragment, params = _status_filter(statuses)
        with cursor_scope(self._conn, "list_connections_for_coach") as cursor:
            cursor.execute(
                f"SELECT {CONNECTION_COLUMNS} FROM connections "
                f"WHERE coach_id = %s{fragment} ORDER BY created_at DESC",
                (str(coach_id), *params),
            )
            return [self._build_connection(row) for row in cursor.fetchall()]

    def list_connections_for_client(
        self,
        client_id: str,
        statuses: Optional[Iterable[ConnectionStatus]] = None,
    ) -> list[Connection]:
        fragment, params = _status_filter(statuses)
        with cursor_scope(self._conn, "list_connections_for_client") as cursor:
            cursor.execute(
                f"SELECT {CONNECTION_COLUMNS} FROM connections "
                f"WHERE client_id = %s{fragment} ORDER BY created_at DESC",
                (client_id, *params),
            )
            return [self._build_connection(row) for row in cursor.fetchall()]

    def count_connections(self, coach_id: UUID, status: ConnectionStatus) -> int:
        with cursor_scope(self._conn, "count_connections") as cursor:
            cursor.execute(
                "SELECT COUNT(*) FROM connections WHERE coach_id = %s AND status = %s",
                (str(coach_id), status.value),
            )
            row = cursor.fetchone()
            return int(row[0]) if row else 0

    def transition_connection(
        self,
        connection_id: UUID,
        expected: ConnectionStatus,
        target: ConnectionStatus,
        *,
        at: datetime,
    ) -> bool:
        assignments = ["status = %s"]
        params: list = [target.value]
        if target == ConnectionStatus.ACTIVE:
            assignments.append("connected_at = %s")
            params.append(at)
        elif target == ConnectionStatus.DISCONNECTED or expected == ConnectionStatus.ACTIVE:
            # Any exit from active is stamped, including a decline
            assignments.append("disconnected_at = %s")
            params.append(at)

        with cursor_scope(self._conn, "transition_connection") as cursor:
            cursor.execute(
                f"UPDATE connections SET {', '.join(assignments)} "
                f"WHERE id = %s AND status = %s",
                (*params, str(connection_id), expected.value),
            )
            swapped = cursor.rowcount == 1
            self._conn.commit()
            return swapped

    # -----------------------------------------------------------------------
    # Invite codes
    # -----------------------------------------------------------------------

    def issue_invite_code(self, code: InviteCode) -> None:
        with cursor_scope(self._conn, "issue_invite_code") as cursor:
            cursor.execute("BEGIN")
            cursor.execute("""
                UPDATE invite_codes
                SET revoked_at = %s
                WHERE connection_id = %s
                  AND consumed_at IS NULL
                  AND revoked_at IS NULL
            """, (code.issued_at, str(code.connection_id)))
            cursor.execute(f"""
                INSERT INTO invite_codes ({CODE_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """, (
                str(code.id),
                str(code.connection_id),
                code.code,
                code.issued_at,
                code.expires_at,
                code.consumed_at,
                code.revoked_at,
                code.failed_attempts,
            ))
            self._conn.commit()

    def get_current_invite_code(self, connection_id: UUID) -> Optional[InviteCode]:
        with cursor_scope(self._conn, "get_current_invite_code") as cursor:
            cursor.execute(f"""
                SELECT {CODE_COLUMNS}
                FROM invite_codes
                WHERE connection_id = %s
                  AND consumed_at IS NULL
                  AND revoked_at IS NULL
                ORDER BY issued_at DESC
                LIMIT 1
            """, (str(connection_id),))
            row = cursor.fetchone()
            return self._build_code(row) if row else None

    def record_failed_attempt(self, code_id: UUID, max_attempts: int, at: datetime) -> int:
        with cursor_scope(self._conn, "record_failed_attempt") as cursor:
            cursor.execute("""
                UPDATE invite_codes
                SET failed_attempts = failed_attempts + 1,
                    revoked_at = CASE
                        WHEN revoked_at IS NULL AND failed_attempts + 1 >= %s THEN %s
                        ELSE revoked_at
                    END
                WHERE id = %s
            """, (max_attempts, at, str(code_id)))
            self._conn.commit()

            cursor.execute(
                "SELECT failed_attempts FROM invite_codes WHERE id = %s",
                (str(code_id),),
            )
            row = cursor.fetchone()
            return int(row[0]) if row else 0

    def activate_with_code(
        self,
        code_id: UUID,
        connection_id: UUID,
        at: datetime,
        max_active: Optional[int] = None,
    ) -> bool:
        seat_clause = ""
        seat_params: tuple = ()
        if max_active is not None:
            # The count is read inside the same transaction as the UPDATE, so
            # two codes for the last seat cannot both land
            seat_clause = """
                  AND (
                      SELECT COUNT(*) FROM connections
                      WHERE coach_id = (SELECT coach_id FROM connections WHERE id = %s)
                        AND status = %s
                  ) < %s
            """
            seat_params = (str(connection_id), ConnectionStatus.ACTIVE.value, max_active)

        with cursor_scope(self._conn, "activate_with_code") as cursor:
            cursor.execute("BEGIN")
            cursor.execute("""
                UPDATE invite_codes
                SET consumed_at = %s
                WHERE id = %s
                  AND connection_id = %s
                  AND consumed_at IS NULL
                  AND revoked_at IS NULL
            """, (at, str(code_id), str(connection_id)))
            if cursor.rowcount != 1:
                self._conn.rollback()
                return False

            cursor.execute(f"""
                UPDATE connections
                SET status = %s,
                    connected_at = %s
                WHERE id = %s
                  AND status = %s{seat_clause}
            """, (
                ConnectionStatus.ACTIVE.value,
                at,
                str(connection_id),
                ConnectionStatus.PENDING_CODE.value,
                *seat_params,
            ))
            if cursor.rowcount != 1:
                self._conn.rollback()
                return False

            self._conn.commit()
            return True

    # -----------------------------------------------------------------------
    # Sharing settings
    # -----------------------------------------------------------------------

    def get_sharing_settings(self, client_id: str) -> Optional[SharingSettings]:
        with cursor_scope(self._conn, "get_sharing_settings") as cursor:
            cursor.execute(
                f"SELECT {SHARING_COLUMNS} FROM sharing_settings WHERE client_id = %s",
                (client_id,),
            )
            row = cursor.fetchone()
            return self._build_sharing(row) if row else None

    def ensure_sharing_settings(self, client_id: str, at: datetime) -> SharingSettings:
        with cursor_scope(self._conn, "ensure_sharing_settings") as cursor:
            cursor.execute("""
                MERGE INTO sharing_settings AS target
                USING (SELECT %s AS client_id) AS source
                ON target.client_id = source.client_id
                WHEN NOT MATCHED THEN INSERT (
                    client_id, share_meals_auto, share_weight_auto, updated_at
                ) VALUES (source.client_id, FALSE, FALSE, %s)
            """, (client_id, at))
            self._conn.commit()

            cursor.execute(
                f"SELECT {SHARING_COLUMNS} FROM sharing_settings WHERE client_id = %s",
                (client_id,),
            )
            return self._build_sharing(cursor.fetchone())

    def save_sharing_settings(self, settings: SharingSettings) -> None:
        with cursor_scope(self._conn, "save_sharing_settings") as cursor:
            cursor.execute("""
                MERGE INTO sharing_settings AS target
                USING (SELECT %s AS client_id) AS source
                ON target.client_id = source.client_id
                WHEN MATCHED THEN UPDATE SET
                    share_meals_auto = %s,
                    share_weight_auto = %s,
                    updated_at = %s
                WHEN NOT MATCHED THEN INSERT (
                    client_id, share_meals_auto, share_weight_auto, updated_at
                ) VALUES (source.client_id, %s, %s, %s)
            """, (
                settings.client_id,
                settings.share_meals_auto,
                settings.share_weight_auto,
                settings.updated_at,
                settings.share_meals_auto,
                settings.share_weight_auto,
                settings.updated_at,
            ))
            self._conn.commit()

    # -----------------------------------------------------------------------
    # Reminders
    # -----------------------------------------------------------------------

    def insert_reminder(self, reminder: ReminderRequest) -> None:
        with cursor_scope(self._conn, "insert_reminder") as cursor:
            cursor.execute(f"""
                INSERT INTO reminder_requests ({REMINDER_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """, (
                str(reminder.id),
                str(reminder.coach_id),
                reminder.client_id,
                reminder.kind.value,
                reminder.status.value,
                reminder.message,
                reminder.created_at,
                reminder.completed_at,
            ))
            self._conn.commit()

    def get_reminder(self, reminder_id: UUID) -> Optional[ReminderRequest]:
        with cursor_scope(self._conn, "get_reminder") as cursor:
            cursor.execute(
                f"SELECT {REMINDER_COLUMNS} FROM reminder_requests WHERE id = %s",
                (str(reminder_id),),
            )
            row = cursor.fetchone()
            return self._build_reminder(row) if row else None

    def complete_reminder(self, reminder_id: UUID, at: datetime) -> bool:
        with cursor_scope(self._conn, "complete_reminder") as cursor:
            cursor.execute("""
                UPDATE reminder_requests
                SET status = %s,
                    completed_at = %s
                WHERE id = %s
                  AND status = %s
            """, (
                ReminderStatus.COMPLETED.value,
                at,
                str(reminder_id),
                ReminderStatus.PENDING.value,
            ))
            completed = cursor.rowcount == 1
            self._conn.commit()
            return completed

    def list_reminders(
        self,
        client_id: str,
        coach_id: Optional[UUID] = None,
        status: Optional[ReminderStatus] = None,
    ) -> list[ReminderRequest]:
        clauses = ["client_id = %s"]
        params: list = [client_id]
        if coach_id is not None:
            clauses.append("coach_id = %s")
            params.append(str(coach_id))
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)

        with cursor_scope(self._conn, "list_reminders") as cursor:
            cursor.execute(
                f"SELECT {REMINDER_COLUMNS} FROM reminder_requests "
                f"WHERE {' AND '.join(clauses)} ORDER BY created_at DESC",
                tuple(params),
            )
            return [self._build_reminder(row) for row in cursor.fetchall()]

    # -----------------------------------------------------------------------
    # Leads
    # -----------------------------------------------------------------------

    def insert_lead(self, lead: CoachingLead, throttle_since: Optional[datetime] = None) -> bool:
        # PARSE_JSON is not allowed in a VALUES clause, so it runs in the source
        params = (
            str(lead.id),
            lead.user_id,
            lead.goal.value,
            lead.weight_range.value,
            json.dumps(sorted(m.value for m in lead.contact_preference)),
            lead.best_time.value,
            lead.message,
            lead.status.value,
            lead.created_at,
        )
        with cursor_scope(self._conn, "insert_lead") as cursor:
            if throttle_since is None:
                cursor.execute(f"""
                    INSERT INTO coaching_leads ({LEAD_COLUMNS})
                    SELECT %s, %s, %s, %s, PARSE_JSON(%s), %s, %s, %s, %s
                """, params)
            else:
                cursor.execute(f"""
                    MERGE INTO coaching_leads AS target
                    USING (
                        SELECT %s AS id, %s AS user_id, %s AS goal, %s AS weight_range,
                               PARSE_JSON(%s) AS contact_preference, %s AS best_time,
                               %s AS message, %s AS status, %s AS created_at
                    ) AS source
                    ON target.user_id = source.user_id
                       AND target.created_at >= %s
                    WHEN NOT MATCHED THEN INSERT ({LEAD_COLUMNS})
                    VALUES (
                        source.id, source.user_id, source.goal, source.weight_range,
                        source.contact_preference, source.best_time, source.message,
                        source.status, source.created_at
                    )
                """, (*params, throttle_since))
            inserted = cursor.rowcount == 1
            self._conn.commit()
            return inserted

    def get_lead(self, lead_id: UUID) -> Optional[CoachingLead]:
        with cursor_scope(self._conn, "get_lead") as cursor:
            cursor.execute(
                f"SELECT {LEAD_COLUMNS} FROM coaching_leads WHERE id = %s",
                (str(lead_id),),
            )
            row = cursor.fetchone()
            return self._build_lead(row) if row else None

    def count_leads_since(self, user_id: str, since: datetime) -> int:
        with cursor_scope(self._conn, "count_leads_since") as cursor:
            cursor.execute(
                "SELECT COUNT(*) FROM coaching_leads WHERE user_id = %s AND created_at >= %s",
                (user_id, since),
            )
            row = cursor.fetchone()
            return int(row[0]) if row else 0

    def list_leads(self, status: Optional[LeadStatus] = None) -> list[CoachingLead]:
        with cursor_scope(self._conn, "list_leads") as cursor:
            if status is None:
                cursor.execute(
                    f"SELECT {LEAD_COLUMNS} FROM coaching_leads ORDER BY created_at DESC"
                )
            else:
                cursor.execute(
                    f"SELECT {LEAD_COLUMNS} FROM coaching_leads "
                    f"WHERE status = %s ORDER BY created_at DESC",
                    (status.value,),
                )
            return [self._build_lead(row) for row in cursor.fetchall()]

    def update_lead_status(self, lead_id: UUID, status: LeadStatus) -> bool:
        with cursor_scope(self._conn, "update_lead_status") as cursor:
            cursor.execute(
                "UPDATE coaching_leads SET status = %s WHERE id = %s",
                (status.value, str(lead_id)),
            )
            updated = cursor.rowcount == 1
            self._conn.commit()
            return updated

    # -----------------------------------------------------------------------
    # Private Methods
    # -----------------------------------------------------------------------

    @staticmethod
    def _build_coach(row) -> Coach:
        return Coach(
            id=UUID(str(row[0])),
            owner_profile_id=row[1],
            subscription_tier=SubscriptionTier(row[2]),
            extra_client_count=int(row[3]),
            created_at=as_utc(row[4]),
            updated_at=as_utc(row[5]),
        )

    @staticmethod
    def _build_connection(row) -> Connection:
        return Connection(
            id=UUID(str(row[0])),
            coach_id=UUID(str(row[1])),
            client_id=row[2],
            status=ConnectionStatus(row[3]),
            initiated_by=InitiatedBy(row[4]),
            created_at=as_utc(row[5]),
            connected_at=as_utc(row[6]),
            disconnected_at=as_utc(row[7]),
        )

    @staticmethod
    def _build_code(row) -> InviteCode:
        return InviteCode(
            id=UUID(str(row[0])),
            connection_id=UUID(str(row[1])),
            code=row[2],
            issued_at=as_utc(row[3]),
            expires_at=as_utc(row[4]),
            consumed_at=as_utc(row[5]),
            revoked_at=as_utc(row[6]),
            failed_attempts=int(row[7] or 0),
        )

    @staticmethod
    def _build_sharing(row) -> SharingSettings:
        return SharingSettings(
            client_id=row[0],
            share_meals_auto=bool(row[1]),
            share_weight_auto=bool(row[2]),
            updated_at=as_utc(row[3]),
        )

    @staticmethod
    def _build_reminder(row) -> ReminderRequest:
        return ReminderRequest(
            id=UUID(str(row[0])),
            coach_id=UUID(str(row[1])),
            client_id=row[2],
            kind=ReminderKind(row[3]),
            status=ReminderStatus(row[4]),
            message=row[5],
            created_at=as_utc(row[6]),
            completed_at=as_utc(row[7]),
        )

    @staticmethod
    def _build_lead(row) -> CoachingLead:
        # Snowflake returns ARRAY columns as JSON text
        raw_preferences = row[4]
        if isinstance(raw_preferences, str):
            raw_preferences = json.loads(raw_preferences)

        return CoachingLead(
            id=UUID(str(row[0])),
            user_id=row[1],
            goal=LeadGoal(row[2]),
            weight_range=WeightRange(row[3]),
            contact_preference=frozenset(ContactMethod(p) for p in raw_preferences or []),
            best_time=BestTime(row[5]),
            message=row[6],
            status=LeadStatus(row[7]),
            created_at=as_utc(row[8]),
        )

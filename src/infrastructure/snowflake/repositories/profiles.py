"""
Read-only Snowflake adapters for data this service does not own.

- SnowflakeProfileDirectory reads the profiles table kept by the
  account system.
- SnowflakeRecordReader reads meals and weight entries written by the
  client logging feature.

Neither writes anything. The sharing gate decides whether a read happens
at all; these classes only fetch.
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from src.core.coaching.models import Identity, MealRecord, WeightEntry

from .base import SnowflakeConnection, as_utc, cursor_scope

logger = logging.getLogger(__name__)


class SnowflakeProfileDirectory:
    """IdentityDirectory over profiles(id, email, name)."""

    def __init__(self, connection: SnowflakeConnection) -> None:
        self._conn = connection

    def resolve_identity(self, user_id: str) -> Optional[Identity]:
        with cursor_scope(self._conn, "resolve_identity") as cursor:
            cursor.execute(
                "SELECT id, email, name FROM profiles WHERE id = %s",
                (user_id,),
            )
            row = cursor.fetchone()
            if not row or not row[1]:
                return None
            return Identity(user_id=row[0], email=row[1], name=row[2] or "")

    def find_user_id_by_email(self, email: str) -> Optional[str]:
        with cursor_scope(self._conn, "find_user_id_by_email") as cursor:
            cursor.execute(
                "SELECT id FROM profiles WHERE LOWER(email) = %s LIMIT 1",
                ((email or "").strip().lower(),),
            )
            row = cursor.fetchone()
            return row[0] if row else None


class SnowflakeRecordReader:
    """ClientRecordReader over the meals and weight_entries tables."""

    def __init__(self, connection: SnowflakeConnection) -> None:
        self._conn = connection

    def list_meals(self, client_id: str, start: datetime, end: datetime) -> list[MealRecord]:
        with cursor_scope(self._conn, "list_meals") as cursor:
            cursor.execute("""
                SELECT id, user_id, logged_at, name, calories, protein_g, carbs_g, fat_g
                FROM meals
                WHERE user_id = %s
                  AND logged_at >= %s
                  AND logged_at <= %s
                ORDER BY logged_at DESC
            """, (client_id, start, end))
            return [
                MealRecord(
                    id=UUID(str(row[0])),
                    user_id=row[1],
                    logged_at=as_utc(row[2]),
                    name=row[3] or "",
                    calories=float(row[4] or 0),
                    protein_g=float(row[5] or 0),
                    carbs_g=float(row[6] or 0),
                    fat_g=float(row[7] or 0),
                )
                for row in cursor.fetchall()
            ]

    def list_weights(self, client_id: str, start: datetime, end: datetime) -> list[WeightEntry]:
        with cursor_scope(self._conn, "list_weights") as cursor:
            cursor.execute("""
                SELECT id, user_id, recorded_at, weight, unit
                FROM weight_entries
                WHERE user_id = %s
                  AND recorded_at >= %s
                  AND recorded_at <= %s
                ORDER BY recorded_at DESC
            """, (client_id, start, end))
            return [
                WeightEntry(
                    id=UUID(str(row[0])),
                    user_id=row[1],
                    recorded_at=as_utc(row[2]),
                    weight=float(row[3]),
                    unit=row[4] or "lbs",
                )
                for row in cursor.fetchall()
            ]

    def last_meal_at(self, client_id: str) -> Optional[datetime]:
        with cursor_scope(self._conn, "last_meal_at") as cursor:
            cursor.execute(
                "SELECT MAX(logged_at) FROM meals WHERE user_id = %s",
                (client_id,),
            )
            row = cursor.fetchone()
            return as_utc(row[0]) if row else None

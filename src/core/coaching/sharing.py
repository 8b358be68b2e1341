"""
Sharing gate for coach reads of client data.

Every coach-facing read of a client's meals or weights goes through here.
The gate checks connection status first and the client's toggles second,
so disconnecting is enough to cut off access without touching settings.

Denied reads return empty results, never errors. From the coach's side,
"sharing is off" and "nothing logged yet" look the same.
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from .errors import ValidationError
from .models import ConnectionStatus, MealRecord, SharingSettings, WeightEntry, utc_now
from .ports import Clock, ClientRecordReader, CoachingStore

logger = logging.getLogger(__name__)


class SharingGate:
    """Authorizes and performs coach reads of client records."""

    def __init__(
        self,
        store: CoachingStore,
        records: ClientRecordReader,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._records = records
        self._clock = clock

    # -----------------------------------------------------------------------
    # Checks
    # -----------------------------------------------------------------------

    def connection_is_active(self, coach_id: UUID, client_id: str) -> bool:
        connection = self._store.find_open_connection(coach_id, client_id)
        return connection is not None and connection.status == ConnectionStatus.ACTIVE

    def can_read_meals(self, coach_id: UUID, client_id: str) -> bool:
        if not self.connection_is_active(coach_id, client_id):
            return False
        settings = self._store.get_sharing_settings(client_id)
        return settings is not None and settings.share_meals_auto

    def can_read_weight(self, coach_id: UUID, client_id: str) -> bool:
        if not self.connection_is_active(coach_id, client_id):
            return False
        settings = self._store.get_sharing_settings(client_id)
        return settings is not None and settings.share_weight_auto

    # -----------------------------------------------------------------------
    # Gated reads
    # -----------------------------------------------------------------------

    def get_client_meals(
        self,
        coach_id: UUID,
        client_id: str,
        start: datetime,
        end: datetime,
    ) -> list[MealRecord]:
        _check_range(start, end)
        if not self.can_read_meals(coach_id, client_id):
            logger.debug(
                "Meal read denied",
                extra={"coach_id": str(coach_id)}
            )
            return []
        meals = self._records.list_meals(client_id, start, end)
        return sorted(meals, key=lambda m: m.logged_at, reverse=True)

    def get_client_weights(
        self,
        coach_id: UUID,
        client_id: str,
        start: datetime,
        end: datetime,
    ) -> list[WeightEntry]:
        _check_range(start, end)
        if not self.can_read_weight(coach_id, client_id):
            logger.debug(
                "Weight read denied",
                extra={"coach_id": str(coach_id)}
            )
            return []
        entries = self._records.list_weights(client_id, start, end)
        return sorted(entries, key=lambda w: w.recorded_at, reverse=True)

    def get_client_last_activity(self, coach_id: UUID, client_id: str) -> Optional[datetime]:
        """When the client last logged a meal, or None if hidden or never."""
        if not self.can_read_meals(coach_id, client_id):
            return None
        return self._records.last_meal_at(client_id)

    # -----------------------------------------------------------------------
    # Client-owned settings
    # -----------------------------------------------------------------------

    def get_sharing_settings(self, client_id: str) -> SharingSettings:
        """The client's toggles, created private on first access."""
        return self._store.ensure_sharing_settings(client_id, self._clock())

    def update_sharing_settings(
        self,
        client_id: str,
        share_meals_auto: Optional[bool] = None,
        share_weight_auto: Optional[bool] = None,
    ) -> SharingSettings:
        settings = self.get_sharing_settings(client_id)
        if share_meals_auto is not None:
            settings.share_meals_auto = share_meals_auto
        if share_weight_auto is not None:
            settings.share_weight_auto = share_weight_auto
        settings.updated_at = self._clock()
        self._store.save_sharing_settings(settings)

        logger.info(
            "Sharing settings updated",
            extra={
                "share_meals_auto": settings.share_meals_auto,
                "share_weight_auto": settings.share_weight_auto,
            }
        )
        return settings


def _check_range(start: datetime, end: datetime) -> None:
    if end < start:
        raise ValidationError("End of range must not be before start")

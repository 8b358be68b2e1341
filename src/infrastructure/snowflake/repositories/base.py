"""
Shared plumbing for Snowflake repositories.

Repositories receive a DB-API style connection. Every operation runs
inside cursor_scope(), which closes the cursor, rolls back on failure and
turns driver errors into TransientError so the core never sees
snowflake-connector exceptions.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Generator, Optional, Protocol

from src.core.coaching.errors import CoachingError, TransientError

logger = logging.getLogger(__name__)


class SnowflakeConnection(Protocol):
    """
    Protocol for Snowflake connections.

    Using a protocol means tests can provide a fake without
    importing the actual snowflake-connector-python.
    """

    def cursor(self): ...
    def commit(self) -> None: ...
    def rollback(self) -> None: ...


@dataclass
class SnowflakeConfig:
    """Configuration for Snowflake connection."""
    account: str
    user: str
    password: Optional[str] = None
    private_key_path: Optional[str] = None
    private_key_base64: Optional[str] = None
    database: str = "COACHLINK"
    schema: str = "CONNECTIONS"
    warehouse: str = "COMPUTE_WH"
    role: Optional[str] = None


@contextmanager
def cursor_scope(conn: SnowflakeConnection, operation: str) -> Generator:
    """
    Yield a cursor for one repository operation.

    Domain errors raised inside the block pass through untouched.
    Anything else is logged, rolled back and re-raised as TransientError.
    """
    cursor = conn.cursor()
    try:
        yield cursor
    except CoachingError:
        raise
    except Exception as e:
        logger.error(
            "Snowflake operation failed",
            extra={"operation": operation, "error": str(e)}
        )
        try:
            conn.rollback()
        except Exception as rollback_error:
            logger.warning(
                "Rollback failed",
                extra={"operation": operation, "error": str(rollback_error)}
            )
        raise TransientError(f"Storage unavailable during {operation}") from e
    finally:
        cursor.close()


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Snowflake returns naive datetimes for NTZ columns; we store UTC everywhere."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

"""
Repository pattern implementations for Snowflake.

Repositories translate between domain models and database representations.
"""

from .base import SnowflakeConfig, SnowflakeConnection
from .coaching import SnowflakeCoachingStore
from .profiles import SnowflakeProfileDirectory, SnowflakeRecordReader

__all__ = [
    "SnowflakeCoachingStore",
    "SnowflakeConfig",
    "SnowflakeConnection",
    "SnowflakeProfileDirectory",
    "SnowflakeRecordReader",
]

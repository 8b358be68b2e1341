"""
In-memory adapters for local development and tests.

Enabled with SNOWFLAKE_MOCK_MODE=true.
"""

from .store import InMemoryCoachingStore, InMemoryIdentityDirectory, InMemoryRecordReader

__all__ = ["InMemoryCoachingStore", "InMemoryIdentityDirectory", "InMemoryRecordReader"]

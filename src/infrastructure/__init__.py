"""
Infrastructure layer - external service integrations.

Each subdirectory wraps an external dependency:
- snowflake: Database persistence
- messaging: Transactional email (SMTP)
- memory: In-memory stand-ins used in mock mode

These wrappers translate between external formats and our domain models.
"""

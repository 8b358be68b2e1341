"""
CoachLink - coach-client connection and data-sharing service.

This package contains the complete application:
- core: Framework-agnostic business logic
- infrastructure: Persistence and messaging integrations
- api: FastAPI routes and dependencies
- config: Application configuration
"""

__version__ = "0.1.0"

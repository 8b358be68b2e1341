"""
Transactional email integration.

SMTP for real delivery, in-memory outbox for mock mode.
"""

from .client import MockMessagingClient, SmtpConfig, SmtpMessagingClient, create_messaging_client

__all__ = ["MockMessagingClient", "SmtpConfig", "SmtpMessagingClient", "create_messaging_client"]

"""
Transactional email for invite codes and lead notifications.

Uses plain SMTP so any provider with an SMTP relay works. Mock mode keeps
sent messages in memory, enabling the full API flow without an email
account.

Both clients return False on failure instead of raising. Callers treat
email as best-effort and never roll back state because a send failed.
"""

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Optional

logger = logging.getLogger(__name__)


INVITE_SUBJECT = "Your coach connection code"

INVITE_BODY_TEMPLATE = """Hi,

{coach} approved your request to connect.

Enter this code in the app to finish connecting:

    {code}

The code expires in 48 hours. If you didn't ask to connect with a coach,
you can ignore this email.
"""


@dataclass
class SmtpConfig:
    """
    Configuration for the SMTP relay.

    Leaving username empty skips authentication, which is what most local
    relays (and test servers like MailHog) expect.
    """
    host: str
    port: int = 587
    username: str = ""
    password: str = ""
    from_email: str = "noreply@coachlink.app"
    from_name: str = "CoachLink"
    use_tls: bool = True
    timeout_seconds: float = 10.0

    def __post_init__(self) -> None:
        if not self.host:
            raise ValueError("SMTP host is required")


def build_invite_message(code: str, coach_name: str = "") -> tuple[str, str]:
    """Subject and body for an invite code email."""
    body = INVITE_BODY_TEMPLATE.format(coach=coach_name or "Your coach", code=code)
    return INVITE_SUBJECT, body


class SmtpMessagingClient:
    """MessagingClient that sends through an SMTP relay."""

    def __init__(self, config: SmtpConfig) -> None:
        self._config = config

    def send_code(self, email: str, code: str, coach_name: str = "") -> bool:
        subject, body = build_invite_message(code, coach_name)
        return self._send(email, subject, body)

    def send_notification(self, email: str, subject: str, body: str) -> bool:
        return self._send(email, subject, body)

    def _send(self, to_email: str, subject: str, body: str) -> bool:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = f"{self._config.from_name} <{self._config.from_email}>"
        message["To"] = to_email
        message.set_content(body)

        try:
            with smtplib.SMTP(
                self._config.host,
                self._config.port,
                timeout=self._config.timeout_seconds,
            ) as server:
                if self._config.use_tls:
                    server.starttls()
                if self._config.username:
                    server.login(self._config.username, self._config.password)
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(
                "Email send failed",
                extra={"subject": subject, "error": str(e)}
            )
            return False

        logger.info("Email sent", extra={"subject": subject})
        return True


@dataclass(frozen=True)
class SentMessage:
    to: str
    subject: str
    body: str


class MockMessagingClient:
    """
    In-memory outbox for local development.

    Set fail=True to simulate a provider outage.
    """

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.outbox: list[SentMessage] = []
        logger.info("Initialized mock messaging client (in-memory)")

    def send_code(self, email: str, code: str, coach_name: str = "") -> bool:
        subject, body = build_invite_message(code, coach_name)
        return self._send(email, subject, body)

    def send_notification(self, email: str, subject: str, body: str) -> bool:
        return self._send(email, subject, body)

    def _send(self, to_email: str, subject: str, body: str) -> bool:
        if self.fail:
            logger.debug("Mock messaging failure", extra={"subject": subject})
            return False
        self.outbox.append(SentMessage(to=to_email, subject=subject, body=body))
        logger.debug("Stored email in mock outbox", extra={"subject": subject})
        return True


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

def create_messaging_client(
    config: Optional[SmtpConfig] = None,
    mock_mode: bool = False,
):
    """
    Create messaging client based on configuration.

    Args:
        config: SMTP configuration (required if not mock_mode)
        mock_mode: If True, return the in-memory client

    Returns:
        MessagingClient implementation (SMTP or Mock)
    """
    if mock_mode:
        return MockMessagingClient()

    if config is None:
        raise ValueError("config is required when not in mock mode")

    return SmtpMessagingClient(config)

"""
Invite code issuing and checking.

A code is a bearer credential for linking two accounts, so it is drawn
from the secrets module, never from random. Codes are stored upper-case
and compared case-insensitively in constant time.
"""

import hmac
import logging
import secrets
import string
from datetime import datetime
from typing import Iterable
from uuid import UUID

from .errors import CodeExpiredError, InvalidCodeError
from .models import InviteCode
from .policy import CoachingPolicy
from .ports import CoachingStore

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 6


def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(submitted: str) -> str:
    return (submitted or "").strip().upper()


def codes_match(stored: str, submitted: str) -> bool:
    candidate = normalize_code(submitted)
    if len(candidate) != len(stored):
        return False
    return hmac.compare_digest(stored.encode(), candidate.encode())


class InviteCodeIssuer:
    """
    Issues codes for pending connections and checks submissions against them.

    Does not change connection status. The lifecycle manager decides what
    a successful check means.
    """

    def __init__(self, store: CoachingStore, policy: CoachingPolicy) -> None:
        self._store = store
        self._policy = policy

    def issue(self, connection_id: UUID, now: datetime) -> InviteCode:
        """Create a fresh code, revoking any live one for the same connection."""
        invite = InviteCode(
            connection_id=connection_id,
            code=generate_code(),
            issued_at=now,
            expires_at=now + self._policy.invite_code_ttl,
        )
        self._store.issue_invite_code(invite)

        logger.info(
            "Invite code issued",
            extra={
                "connection_id": str(connection_id),
                "code_id": str(invite.id),
                "expires_at": invite.expires_at.isoformat(),
            }
        )
        return invite

    def check(self, connection_id: UUID, submitted: str, now: datetime) -> InviteCode:
        """
        Return the live code for the connection if the submission matches.

        Raises InvalidCodeError when there is no usable code or it does not
        match, and CodeExpiredError when the matching code is past its expiry.
        A mismatch counts toward the attempt ceiling.
        """
        return self.check_any([connection_id], submitted, now)

    def check_any(
        self,
        connection_ids: Iterable[UUID],
        submitted: str,
        now: datetime,
    ) -> InviteCode:
        """
        Like check(), but across several pending connections.

        Used when a client types a code without saying which coach it is
        for. On a miss every unexpired candidate takes a failed attempt.
        """
        candidates = [
            invite
            for invite in (self._store.get_current_invite_code(cid) for cid in connection_ids)
            if invite is not None
        ]

        for invite in candidates:
            if not codes_match(invite.code, submitted):
                continue
            if invite.is_expired(now):
                logger.info(
                    "Expired invite code submitted",
                    extra={
                        "connection_id": str(invite.connection_id),
                        "code_id": str(invite.id),
                    }
                )
                raise CodeExpiredError("Invalid or expired code")
            return invite

        for invite in candidates:
            if not invite.is_expired(now):
                self.record_failure(invite, now)
        raise InvalidCodeError("Invalid or expired code")

    def record_failure(self, invite: InviteCode, now: datetime) -> None:
        attempts = self._store.record_failed_attempt(
            invite.id,
            self._policy.invite_code_max_attempts,
            now,
        )
        logger.warning(
            "Invite code mismatch",
            extra={
                "connection_id": str(invite.connection_id),
                "attempts": attempts,
                "max_attempts": self._policy.invite_code_max_attempts,
            }
        )
        if attempts >= self._policy.invite_code_max_attempts:
            logger.warning(
                "Invite code revoked after too many attempts",
                extra={"connection_id": str(invite.connection_id), "code_id": str(invite.id)}
            )

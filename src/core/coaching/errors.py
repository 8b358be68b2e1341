"""
Domain errors for the connection and sharing service.

Each error maps to one outcome a caller has to handle differently.
The API layer translates them to HTTP responses; nothing in core knows
about status codes.
"""


class CoachingError(Exception):
    """Base class for all domain errors raised by this service."""
    pass


class NotFoundError(CoachingError):
    """No coach, connection, settings row or identity for the given key."""
    pass


class ConflictError(CoachingError):
    """The request collides with existing state (e.g. a duplicate open connection)."""
    pass


class InvalidTransitionError(ConflictError):
    """The connection is not in a state that allows this action."""

    def __init__(self, action: str, current: str) -> None:
        super().__init__(f"Cannot {action} a connection in status '{current}'")
        self.action = action
        self.current = current


class CapacityExceededError(CoachingError):
    """The coach has no free client seats."""

    def __init__(self, active_count: int, total_capacity: int) -> None:
        super().__init__(
            f"Client capacity reached ({active_count}/{total_capacity})"
        )
        self.active_count = active_count
        self.total_capacity = total_capacity


class CodeVerificationError(CoachingError):
    """
    Base for invite code failures.

    Callers should show one generic message for every subclass so a
    guesser cannot tell a wrong code from an expired one.
    """
    pass


class InvalidCodeError(CodeVerificationError):
    pass


class CodeExpiredError(CodeVerificationError):
    pass


class RateLimitedError(CoachingError):
    """Too many submissions within the throttle window."""
    pass


class TransientError(CoachingError):
    """A backing store or service was unavailable. Safe to retry."""
    pass


class ValidationError(CoachingError):
    """Input was well-formed but not acceptable (e.g. too many overflow seats)."""
    pass

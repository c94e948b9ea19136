"""Exception definitions for story room errors."""

from __future__ import annotations


class StoryError(Exception):
    """Base class for errors raised by the story engine"""

    reason = "error"

    def __init__(self, message: str = "", reason: str | None = None) -> None:
        super().__init__(message or reason or self.reason)
        if reason is not None:
            self.reason = reason


class ValidationError(StoryError):
    """Raised when a submission or command is rejected for the caller only"""

    reason = "invalid"


class NotFoundError(StoryError):
    """Raised when a room, participant or connection is unknown"""

    reason = "not_found"


class PermissionDenied(StoryError):
    """Raised when an owner command carries the wrong token"""

    reason = "forbidden"


class CapacityError(StoryError):
    """Raised when the transcript cannot accept another word"""

    reason = "capacity"


class ConcurrencyViolation(StoryError):
    """Raised when a room invariant is observed broken"""

    reason = "invariant_broken"

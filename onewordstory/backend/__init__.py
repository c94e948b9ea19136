"""Backend package for the one word story server."""

from .config import BackendSettings, load_settings
from .errors import CapacityError, ConcurrencyViolation, NotFoundError, PermissionDenied, StoryError, ValidationError
from .registry import ParticipantRegistry
from .room import Room
from .scheduler import TurnScheduler
from .transcript import Transcript

__all__ = [
    "BackendSettings",
    "CapacityError",
    "ConcurrencyViolation",
    "load_settings",
    "NotFoundError",
    "ParticipantRegistry",
    "PermissionDenied",
    "Room",
    "StoryError",
    "Transcript",
    "TurnScheduler",
    "ValidationError",
]

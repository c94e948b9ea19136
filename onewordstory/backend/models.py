"""Domain models for story rooms, participants and transcript entries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RoomState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    CLOSED = "closed"


class ParticipantStatus(str, Enum):
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class TranscriptEntry:
    sequence_number: int
    word: str
    contributor_id: str
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence_number": self.sequence_number,
            "word": self.word,
            "contributor_id": self.contributor_id,
            "timestamp": self.timestamp,
        }


@dataclass
class Participant:
    participant_id: str
    identity: str
    display_name: str
    connection_handle: str | None
    joined_at: str = field(default_factory=utc_now_iso)
    status: ParticipantStatus = ParticipantStatus.ACTIVE

    @property
    def is_connected(self) -> bool:
        return self.status is ParticipantStatus.ACTIVE and self.connection_handle is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "display_name": self.display_name,
            "status": self.status.value,
            "joined_at": self.joined_at,
        }


@dataclass(frozen=True)
class Submission:
    participant_id: str
    proposed_word: str
    claimed_sequence_number: int | None = None


@dataclass(frozen=True)
class SubmissionResult:
    sequence_number: int
    word: str
    duplicate: bool = False


@dataclass(frozen=True)
class JoinResult:
    room_id: str
    participant_id: str
    reconnected: bool = False
    superseded_handle: str | None = None


@dataclass(frozen=True)
class CreatedRoom:
    room_id: str
    owner_token: str

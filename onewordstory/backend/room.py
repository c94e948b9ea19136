"""Story room: one transcript, one roster, one writer at a time."""

from __future__ import annotations

import asyncio
import contextlib
import time
import uuid
from typing import Any, Callable, Iterator

from loguru import logger

from onewordstory.backend.config import BackendSettings
from onewordstory.backend.errors import CapacityError, ConcurrencyViolation, NotFoundError, ValidationError
from onewordstory.backend.logging import log_room_event
from onewordstory.backend.models import (
    JoinResult,
    Participant,
    ParticipantStatus,
    RoomState,
    Submission,
    SubmissionResult,
    TranscriptEntry,
    utc_now_iso,
)
from onewordstory.backend.scheduler import TurnScheduler
from onewordstory.backend.story import StoryChunk, render_story
from onewordstory.backend.transcript import Transcript
from onewordstory.backend.words import get_word_policy

Outbound = Callable[[str, dict[str, Any]], None]
RemovedHook = Callable[["Room", Participant], None]
ClosedHook = Callable[["Room"], None]


def _noop(*_args: Any) -> None:
    return None


class Room:
    """Turn-coordination context for one story.

    Every state mutation happens while holding ``self._lock``; outbound
    events are handed to ``outbound`` which must enqueue and return without
    awaiting network I/O. Timers are asyncio tasks that re-acquire the lock
    and check the turn epoch before acting.
    """

    def __init__(
        self,
        room_id: str,
        settings: BackendSettings,
        outbound: Outbound,
        name: str = "",
        owner_token_hash: str | None = None,
        on_participant_removed: RemovedHook = _noop,
        on_closed: ClosedHook = _noop,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.room_id = room_id
        self.name = name or room_id
        self.owner_token_hash = owner_token_hash
        self.created_at = utc_now_iso()
        self.settings = settings
        self.transcript = Transcript(max_entries=settings.max_transcript_words)
        self.scheduler = TurnScheduler(
            min_participants=settings.min_participants_to_start,
            max_skips=settings.max_skips_before_removal,
            turn_timeout=settings.turn_timeout_seconds,
            word_policy=get_word_policy(settings.word_policy),
            clock=clock,
        )
        self.participants: dict[str, Participant] = {}
        self._outbound = outbound
        self._on_participant_removed = on_participant_removed
        self._on_closed = on_closed
        self._clock = clock
        self._lock = asyncio.Lock()
        self._turn_timer: asyncio.Task | None = None
        self._idle_timer: asyncio.Task | None = None
        self._grace_timers: dict[str, asyncio.Task] = {}
        self.close_reason: str | None = None

    @property
    def state(self) -> RoomState:
        return self.scheduler.state

    @property
    def is_closed(self) -> bool:
        return self.scheduler.state is RoomState.CLOSED

    def start(self) -> None:
        """Arm the idle timer for a room nobody has joined yet."""
        if not self.participants and not self.is_closed:
            self._arm_idle_timer()

    def find_by_identity(self, identity: str) -> Participant | None:
        for participant in self.participants.values():
            if participant.identity == identity:
                return participant
        return None

    def snapshot(self) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "name": self.name,
            "state": self.state.value,
            "roster": [self.participants[pid].to_dict() for pid in self.scheduler.roster if pid in self.participants],
            "current_participant_id": self.scheduler.holder,
            "turn_deadline": self.scheduler.turn_deadline,
            "tail": self.transcript.tail,
            "created_at": self.created_at,
        }

    def read_since(self, sequence_number: int = 0) -> Iterator[TranscriptEntry]:
        return self.transcript.read_since(sequence_number)

    def story(self) -> list[StoryChunk]:
        return render_story(self.transcript.words())

    async def join(
        self,
        identity: str,
        display_name: str,
        connection_handle: str,
        last_sequence: int = 0,
    ) -> JoinResult:
        async with self._lock:
            if self.is_closed:
                raise ValidationError("room is closed", reason="room_closed")

            existing = self.find_by_identity(identity)
            if existing is not None:
                return self._rebind(existing, display_name, connection_handle, last_sequence)

            participant = Participant(
                participant_id=uuid.uuid4().hex,
                identity=identity,
                display_name=display_name,
                connection_handle=connection_handle,
            )
            previous_epoch = self.scheduler.turn_epoch
            with self._fatal_guard():
                self.scheduler.add(participant.participant_id)
                self.participants[participant.participant_id] = participant
                self.scheduler.check_invariants()
            self._cancel(self._idle_timer)
            self._idle_timer = None

            log_room_event(
                "Participant joined",
                room_id=self.room_id,
                event="participant_joined",
                participant_id=participant.participant_id,
                roster_size=len(self.scheduler.roster),
            )
            self._send(connection_handle, self._joined_event(participant, reconnected=False))
            self._broadcast(
                {
                    "type": "participant_joined",
                    "participant_id": participant.participant_id,
                    "display_name": participant.display_name,
                }
            )
            self._broadcast(self._roster_event())
            self._replay(participant, last_sequence)
            self._rearm_turn_timer(previous_epoch)
            return JoinResult(room_id=self.room_id, participant_id=participant.participant_id)

    async def submit(
        self,
        participant_id: str,
        word: str,
        claimed_sequence_number: int | None = None,
    ) -> SubmissionResult:
        async with self._lock:
            if participant_id not in self.participants:
                raise NotFoundError(f"participant {participant_id} is not in room {self.room_id}")
            submission = Submission(
                participant_id=participant_id,
                proposed_word=word,
                claimed_sequence_number=claimed_sequence_number,
            )
            duplicate = self.scheduler.validate(submission, self.transcript)
            if duplicate is not None:
                logger.bind(room_id=self.room_id, participant_id=participant_id).debug(
                    f"Duplicate submission for sequence {duplicate.sequence_number} acknowledged"
                )
                return duplicate

            previous_epoch = self.scheduler.turn_epoch
            expected = self.transcript.tail + 1
            with self._fatal_guard():
                entry = self.transcript.append(word, participant_id)
                if entry.sequence_number != expected:
                    raise ConcurrencyViolation(f"appended sequence {entry.sequence_number}, expected {expected}")
                self.scheduler.accept(participant_id)
                self.scheduler.check_invariants()

            log_room_event(
                "Word accepted",
                room_id=self.room_id,
                event="turn_accepted",
                participant_id=participant_id,
                sequence_number=entry.sequence_number,
            )
            self._broadcast(
                {
                    "type": "word_accepted",
                    "sequence_number": entry.sequence_number,
                    "word": entry.word,
                    "contributor_id": entry.contributor_id,
                    "next_participant_id": self.scheduler.holder,
                    "turn_deadline": self.scheduler.turn_deadline,
                }
            )
            self._rearm_turn_timer(previous_epoch)
            return SubmissionResult(sequence_number=entry.sequence_number, word=entry.word)

    async def leave(self, participant_id: str) -> None:
        async with self._lock:
            if participant_id not in self.participants:
                raise NotFoundError(f"participant {participant_id} is not in room {self.room_id}")
            self._remove(participant_id, reason="left")

    async def mark_disconnected(self, participant_id: str, connection_handle: str | None = None) -> None:
        """Keep the participant's slot for the grace period after a connection loss."""
        async with self._lock:
            participant = self.participants.get(participant_id)
            if participant is None:
                raise NotFoundError(f"participant {participant_id} is not in room {self.room_id}")
            if connection_handle is not None and participant.connection_handle != connection_handle:
                # A newer connection already took over this participant.
                return
            participant.status = ParticipantStatus.DISCONNECTED
            participant.connection_handle = None
            self._cancel(self._grace_timers.pop(participant_id, None))
            self._grace_timers[participant_id] = asyncio.create_task(
                self._grace_timer(participant_id, self.settings.reconnect_grace_seconds)
            )
            log_room_event(
                "Participant disconnected",
                room_id=self.room_id,
                event="participant_disconnected",
                participant_id=participant_id,
                grace_seconds=self.settings.reconnect_grace_seconds,
            )
            self._broadcast(self._roster_event())

    async def close(self, reason: str = "closed") -> None:
        async with self._lock:
            self._close(reason)

    async def handle_turn_timeout(self, epoch: int) -> None:
        async with self._lock:
            if self.is_closed:
                return
            previous_epoch = self.scheduler.turn_epoch
            with self._fatal_guard():
                result = self.scheduler.skip(epoch)
                if result is None:
                    return
                self.scheduler.check_invariants()

            log_room_event(
                "Turn skipped",
                room_id=self.room_id,
                event="turn_skipped",
                participant_id=result.participant_id,
                consecutive_skips=result.consecutive_skips,
            )
            self._broadcast(
                {
                    "type": "turn_skipped",
                    "participant_id": result.participant_id,
                    "next_participant_id": self.scheduler.holder,
                    "turn_deadline": self.scheduler.turn_deadline,
                }
            )
            if result.removed:
                participant = self.participants[result.participant_id]
                participant.status = ParticipantStatus.DISCONNECTED
                self._remove(result.participant_id, reason="skipped_out")
            self._rearm_turn_timer(previous_epoch)

    async def handle_grace_expired(self, participant_id: str) -> None:
        async with self._lock:
            participant = self.participants.get(participant_id)
            if participant is None or participant.status is not ParticipantStatus.DISCONNECTED:
                return
            self._grace_timers.pop(participant_id, None)
            self._remove(participant_id, reason="grace_expired")

    async def handle_idle_timeout(self) -> None:
        async with self._lock:
            if self.participants or self.is_closed:
                return
            self._close("idle")

    def _rebind(self, participant: Participant, display_name: str, connection_handle: str, last_sequence: int) -> JoinResult:
        superseded = participant.connection_handle
        if superseded == connection_handle:
            superseded = None
        participant.connection_handle = connection_handle
        participant.status = ParticipantStatus.ACTIVE
        participant.display_name = display_name or participant.display_name
        self._cancel(self._grace_timers.pop(participant.participant_id, None))

        log_room_event(
            "Participant reconnected",
            room_id=self.room_id,
            event="participant_reconnected",
            participant_id=participant.participant_id,
            superseded=superseded is not None,
        )
        self._send(connection_handle, self._joined_event(participant, reconnected=True))
        self._broadcast(self._roster_event())
        self._replay(participant, last_sequence)
        return JoinResult(
            room_id=self.room_id,
            participant_id=participant.participant_id,
            reconnected=True,
            superseded_handle=superseded,
        )

    def _remove(self, participant_id: str, reason: str) -> None:
        previous_epoch = self.scheduler.turn_epoch
        participant = self.participants[participant_id]
        with self._fatal_guard():
            if participant_id in self.scheduler.roster:
                self.scheduler.remove(participant_id)
            self.scheduler.check_invariants()
        self._cancel(self._grace_timers.pop(participant_id, None))

        event = {"type": "participant_left", "participant_id": participant_id, "reason": reason}
        # The departing participant hears about its own removal too.
        if participant.connection_handle is not None:
            self._send(participant.connection_handle, event)
        del self.participants[participant_id]
        self._on_participant_removed(self, participant)

        if reason == "left":
            log_room_event("Participant left", room_id=self.room_id, event="participant_left", participant_id=participant_id)
        else:
            log_room_event(
                "Participant removed",
                room_id=self.room_id,
                event="participant_removed",
                level="WARNING",
                participant_id=participant_id,
                reason=reason,
            )
        self._broadcast(event)
        self._broadcast(self._roster_event())
        self._rearm_turn_timer(previous_epoch)
        if not self.participants:
            self._arm_idle_timer()

    def _close(self, reason: str) -> None:
        if self.is_closed:
            return
        self.scheduler.close()
        self.close_reason = reason
        self._cancel(self._turn_timer)
        self._cancel(self._idle_timer)
        for task in self._grace_timers.values():
            self._cancel(task)
        self._turn_timer = None
        self._idle_timer = None
        self._grace_timers.clear()

        self._broadcast({"type": "room_closed", "room_id": self.room_id, "reason": reason})
        for participant in self.participants.values():
            participant.status = ParticipantStatus.DISCONNECTED
        log_room_event(
            "Room closed",
            room_id=self.room_id,
            event="room_closed",
            reason=reason,
            words=self.transcript.tail,
        )
        self._on_closed(self)
        self.participants.clear()

    @contextlib.contextmanager
    def _fatal_guard(self) -> Iterator[None]:
        try:
            yield
        except CapacityError:
            logger.bind(room_id=self.room_id).error("Transcript capacity exhausted, closing room")
            self._close("capacity")
            raise
        except ConcurrencyViolation:
            logger.bind(room_id=self.room_id).exception("Room invariant broken, closing room")
            self._close("invariant_broken")
            raise

    def _joined_event(self, participant: Participant, reconnected: bool) -> dict[str, Any]:
        return {
            "type": "joined",
            "room_id": self.room_id,
            "participant_id": participant.participant_id,
            "reconnected": reconnected,
            "reconnect_token": participant.identity,
        }

    def _roster_event(self) -> dict[str, Any]:
        return {"type": "roster_snapshot", **self.snapshot()}

    def _replay(self, participant: Participant, last_sequence: int) -> None:
        if participant.connection_handle is None:
            return
        for entry in self.transcript.read_since(last_sequence):
            self._send(
                participant.connection_handle,
                {
                    "type": "word_accepted",
                    "sequence_number": entry.sequence_number,
                    "word": entry.word,
                    "contributor_id": entry.contributor_id,
                    "replay": True,
                },
            )

    def _broadcast(self, event: dict[str, Any]) -> None:
        for participant_id in list(self.scheduler.roster):
            participant = self.participants.get(participant_id)
            if participant is not None and participant.is_connected:
                self._send(participant.connection_handle, event)

    def _send(self, connection_handle: str | None, event: dict[str, Any]) -> None:
        if connection_handle is not None:
            self._outbound(connection_handle, event)

    def _rearm_turn_timer(self, previous_epoch: int) -> None:
        if self.scheduler.turn_epoch == previous_epoch:
            return
        self._cancel(self._turn_timer)
        self._turn_timer = None
        if self.scheduler.state is RoomState.ACTIVE and self.scheduler.turn_deadline is not None:
            delay = max(0.0, self.scheduler.turn_deadline - self._clock())
            self._turn_timer = asyncio.create_task(self._turn_timer_task(self.scheduler.turn_epoch, delay))

    def _arm_idle_timer(self) -> None:
        self._cancel(self._idle_timer)
        self._idle_timer = asyncio.create_task(self._idle_timer_task(self.settings.idle_room_timeout_seconds))

    @staticmethod
    def _cancel(task: asyncio.Task | None) -> None:
        # A timer may cancel its own successor chain but never itself mid-callback.
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _turn_timer_task(self, epoch: int, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._run_timer(self.handle_turn_timeout(epoch))

    async def _grace_timer(self, participant_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._run_timer(self.handle_grace_expired(participant_id))

    async def _idle_timer_task(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._run_timer(self.handle_idle_timeout())

    async def _run_timer(self, action: Any) -> None:
        try:
            await action
        except (CapacityError, ConcurrencyViolation):
            # Already logged and the room is closed by _fatal_guard.
            pass

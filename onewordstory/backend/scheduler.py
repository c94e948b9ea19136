"""Turn scheduler: whose turn it is, when it ends, and who gets skipped out."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from onewordstory.backend.errors import ConcurrencyViolation, NotFoundError, ValidationError
from onewordstory.backend.models import RoomState, Submission, SubmissionResult
from onewordstory.backend.transcript import Transcript
from onewordstory.backend.words import WordPolicy, single_word


@dataclass(frozen=True)
class SkipResult:
    participant_id: str
    consecutive_skips: int
    removed: bool


class TurnScheduler:
    """Turn state machine for one room.

    The scheduler holds no timers and does no I/O. Every time a new turn
    starts (or the running turn is cancelled) ``turn_epoch`` is bumped; the
    owning room compares epochs to know when to re-arm its timer and to
    discard timeouts that belong to an earlier turn.
    """

    def __init__(
        self,
        min_participants: int = 2,
        max_skips: int = 3,
        turn_timeout: float = 30.0,
        word_policy: WordPolicy = single_word,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.min_participants = min_participants
        self.max_skips = max_skips
        self.turn_timeout = turn_timeout
        self.word_policy = word_policy
        self._clock = clock
        self.state = RoomState.WAITING
        self.roster: list[str] = []
        self.current_turn_index = 0
        self.turn_deadline: float | None = None
        self.turn_epoch = 0
        self._skips: dict[str, int] = {}

    @property
    def holder(self) -> str | None:
        if self.state is not RoomState.ACTIVE or not self.roster:
            return None
        return self.roster[self.current_turn_index]

    def skips_of(self, participant_id: str) -> int:
        return self._skips.get(participant_id, 0)

    def add(self, participant_id: str) -> None:
        if self.state is RoomState.CLOSED:
            raise ValidationError("room is closed", reason="room_closed")
        if participant_id in self.roster:
            raise ConcurrencyViolation(f"participant {participant_id} is already in the roster")
        self.roster.append(participant_id)
        self._skips[participant_id] = 0
        self._refresh_state()

    def remove(self, participant_id: str) -> None:
        try:
            index = self.roster.index(participant_id)
        except ValueError:
            raise NotFoundError(f"participant {participant_id} is not in the roster") from None
        self.roster.pop(index)
        self._skips.pop(participant_id, None)

        holder_removed = index == self.current_turn_index
        if index < self.current_turn_index:
            self.current_turn_index -= 1
        self.current_turn_index = self.current_turn_index % len(self.roster) if self.roster else 0

        previous_state = self.state
        self._refresh_state()
        # The next participant in line inherits the removed holder's turn.
        if holder_removed and previous_state is RoomState.ACTIVE and self.state is RoomState.ACTIVE:
            self._start_turn()

    def validate(self, submission: Submission, transcript: Transcript) -> SubmissionResult | None:
        """Check a submission against the current turn.

        Returns a duplicate acknowledgment for an idempotent retry, ``None``
        when the submission may be appended, and raises ``ValidationError``
        otherwise. Never mutates state.
        """
        if self.state is RoomState.CLOSED:
            raise ValidationError("room is closed", reason="room_closed")

        claimed = submission.claimed_sequence_number
        if claimed is not None and claimed <= transcript.tail:
            entry = transcript.get(claimed)
            if entry is not None and entry.contributor_id == submission.participant_id:
                return SubmissionResult(sequence_number=entry.sequence_number, word=entry.word, duplicate=True)
            raise ValidationError(
                f"sequence {claimed} is already taken, next is {transcript.tail + 1}",
                reason="sequence_mismatch",
            )

        if self.state is not RoomState.ACTIVE:
            raise ValidationError("story has not started yet", reason="room_not_active")
        if submission.participant_id != self.holder:
            raise ValidationError("it is not your turn", reason="not_your_turn")
        if not self.word_policy(submission.proposed_word):
            raise ValidationError("submissions must be exactly one word", reason="invalid_word")
        if claimed is not None and claimed != transcript.tail + 1:
            raise ValidationError(
                f"sequence {claimed} is ahead of the story, next is {transcript.tail + 1}",
                reason="sequence_mismatch",
            )
        return None

    def accept(self, participant_id: str) -> None:
        if participant_id != self.holder:
            raise ConcurrencyViolation(f"accepted a word from {participant_id} while {self.holder} holds the turn")
        self._skips[participant_id] = 0
        self._advance()

    def skip(self, epoch: int) -> SkipResult | None:
        """Skip the current holder when the turn for ``epoch`` timed out.

        Returns ``None`` for a stale timeout.
        """
        if self.state is not RoomState.ACTIVE or epoch != self.turn_epoch:
            return None
        holder = self.roster[self.current_turn_index]
        skips = self._skips.get(holder, 0) + 1
        self._skips[holder] = skips
        if skips >= self.max_skips:
            self.remove(holder)
            return SkipResult(participant_id=holder, consecutive_skips=skips, removed=True)
        self._advance()
        return SkipResult(participant_id=holder, consecutive_skips=skips, removed=False)

    def close(self) -> None:
        self.state = RoomState.CLOSED
        self.turn_deadline = None
        self.turn_epoch += 1

    def check_invariants(self) -> None:
        if self.state is RoomState.ACTIVE:
            if not self.roster or not 0 <= self.current_turn_index < len(self.roster):
                raise ConcurrencyViolation(
                    f"turn index {self.current_turn_index} is invalid for roster of {len(self.roster)}"
                )
        if len(set(self.roster)) != len(self.roster):
            raise ConcurrencyViolation("roster contains duplicate participants")

    def _advance(self) -> None:
        self.current_turn_index = (self.current_turn_index + 1) % len(self.roster)
        self._start_turn()

    def _start_turn(self) -> None:
        self.turn_deadline = self._clock() + self.turn_timeout
        self.turn_epoch += 1

    def _refresh_state(self) -> None:
        if self.state is RoomState.CLOSED:
            return
        if self.state is RoomState.WAITING and len(self.roster) >= self.min_participants:
            self.state = RoomState.ACTIVE
            self.current_turn_index = self.current_turn_index % len(self.roster)
            self._start_turn()
        elif self.state is RoomState.ACTIVE and len(self.roster) < self.min_participants:
            self.state = RoomState.WAITING
            self.turn_deadline = None
            self.turn_epoch += 1

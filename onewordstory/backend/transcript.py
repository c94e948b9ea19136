"""Append-only transcript of accepted story words."""

from __future__ import annotations

from typing import Iterator

from onewordstory.backend.errors import CapacityError
from onewordstory.backend.models import TranscriptEntry, utc_now_iso


class Transcript:
    """Ordered record of accepted words, numbered from 1 without gaps.

    ``append`` is the only mutation. Callers serialize appends through the
    owning room's lock; the transcript itself assumes a single writer.
    """

    def __init__(self, max_entries: int = 100_000) -> None:
        self._entries: list[TranscriptEntry] = []
        self._max_entries = max_entries

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def tail(self) -> int:
        return len(self._entries)

    def append(self, word: str, contributor_id: str) -> TranscriptEntry:
        if len(self._entries) >= self._max_entries:
            raise CapacityError(f"transcript is full at {self._max_entries} words")
        entry = TranscriptEntry(
            sequence_number=self.tail + 1,
            word=word,
            contributor_id=contributor_id,
            timestamp=utc_now_iso(),
        )
        self._entries.append(entry)
        return entry

    def get(self, sequence_number: int) -> TranscriptEntry | None:
        if 1 <= sequence_number <= self.tail:
            return self._entries[sequence_number - 1]
        return None

    def read_since(self, sequence_number: int = 0) -> Iterator[TranscriptEntry]:
        """Iterate entries after ``sequence_number`` up to the tail at call time."""
        start = max(0, sequence_number)
        stop = self.tail
        return (self._entries[index] for index in range(start, stop))

    def words(self) -> list[str]:
        return [entry.word for entry in self._entries]

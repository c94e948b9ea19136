"""Render a transcript as readable "story so far" chunks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

STORY_CHUNK_LIMIT = 4096
FIRST_TITLE = "Story so far"
CONTINUED_TITLE = "continued"


@dataclass(frozen=True)
class StoryChunk:
    title: str
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"title": self.title, "text": self.text}


def render_story(words: Iterable[str], limit: int = STORY_CHUNK_LIMIT) -> list[StoryChunk]:
    """Join words with spaces and split into chunks of at most ``limit`` characters.

    Words are never split; a single word longer than ``limit`` gets a chunk
    of its own.
    """
    chunks: list[StoryChunk] = []
    current: list[str] = []
    length = 0
    for word in words:
        extra = len(word) if not current else len(word) + 1
        if current and length + extra > limit:
            chunks.append(StoryChunk(title=FIRST_TITLE if not chunks else CONTINUED_TITLE, text=" ".join(current)))
            current = []
            length = 0
            extra = len(word)
        current.append(word)
        length += extra
    if current:
        chunks.append(StoryChunk(title=FIRST_TITLE if not chunks else CONTINUED_TITLE, text=" ".join(current)))
    return chunks

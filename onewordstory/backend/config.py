"""Configuration helpers for backend runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace

from onewordstory.backend.words import get_word_policy


@dataclass(frozen=True)
class BackendSettings:
    host: str = "127.0.0.1"
    port: int = 8000
    server_salt: str = "dev-salt"
    turn_timeout_seconds: float = 30.0
    max_skips_before_removal: int = 3
    reconnect_grace_seconds: float = 30.0
    idle_room_timeout_seconds: float = 300.0
    min_participants_to_start: int = 2
    max_transcript_words: int = 100_000
    outbound_queue_size: int = 256
    word_policy: str = "single"
    log_level: str = "INFO"

    def with_overrides(self, **changes: object) -> BackendSettings:
        return replace(self, **changes)


def _env_positive(name: str, default: float, cast: type) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return cast(default)
    value = cast(raw)
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def load_settings() -> BackendSettings:
    defaults = BackendSettings()
    min_participants = int(
        _env_positive("ONEWORDSTORY_MIN_PARTICIPANTS_TO_START", defaults.min_participants_to_start, int)
    )
    word_policy = os.getenv("ONEWORDSTORY_WORD_POLICY", defaults.word_policy)
    get_word_policy(word_policy)
    if min_participants < 2:
        raise ValueError("ONEWORDSTORY_MIN_PARTICIPANTS_TO_START must be at least 2")
    return BackendSettings(
        host=os.getenv("ONEWORDSTORY_HOST", defaults.host),
        port=int(os.getenv("ONEWORDSTORY_PORT", str(defaults.port))),
        server_salt=os.getenv("ONEWORDSTORY_SERVER_SALT", defaults.server_salt),
        turn_timeout_seconds=_env_positive("ONEWORDSTORY_TURN_TIMEOUT_SECONDS", defaults.turn_timeout_seconds, float),
        max_skips_before_removal=int(
            _env_positive("ONEWORDSTORY_MAX_SKIPS_BEFORE_REMOVAL", defaults.max_skips_before_removal, int)
        ),
        reconnect_grace_seconds=_env_positive(
            "ONEWORDSTORY_RECONNECT_GRACE_SECONDS", defaults.reconnect_grace_seconds, float
        ),
        idle_room_timeout_seconds=_env_positive(
            "ONEWORDSTORY_IDLE_ROOM_TIMEOUT_SECONDS", defaults.idle_room_timeout_seconds, float
        ),
        min_participants_to_start=min_participants,
        max_transcript_words=int(_env_positive("ONEWORDSTORY_MAX_TRANSCRIPT_WORDS", defaults.max_transcript_words, int)),
        outbound_queue_size=int(_env_positive("ONEWORDSTORY_OUTBOUND_QUEUE_SIZE", defaults.outbound_queue_size, int)),
        word_policy=word_policy,
        log_level=os.getenv("ONEWORDSTORY_LOG_LEVEL", defaults.log_level),
    )

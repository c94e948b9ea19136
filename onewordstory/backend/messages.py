"""Inbound websocket message shapes."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class JoinMessage(BaseModel):
    type: Literal["join"]
    room_id: str = Field(min_length=1, max_length=64)
    display_name: str = Field(min_length=1, max_length=64)
    reconnect_token: str | None = Field(default=None, min_length=1, max_length=128)
    last_sequence: int = Field(default=0, ge=0)


class SubmitWordMessage(BaseModel):
    type: Literal["submit_word"]
    word: str = Field(max_length=256)
    sequence_number: int | None = Field(default=None, ge=1)


class LeaveMessage(BaseModel):
    type: Literal["leave"]


class StoryMessage(BaseModel):
    type: Literal["story"]


class CloseMessage(BaseModel):
    type: Literal["close"]
    owner_token: str = Field(min_length=1)


class PingMessage(BaseModel):
    type: Literal["ping"]


InboundMessage = Annotated[
    Union[JoinMessage, SubmitWordMessage, LeaveMessage, StoryMessage, CloseMessage, PingMessage],
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter[Any] = TypeAdapter(InboundMessage)


def parse_inbound(payload: Any) -> BaseModel:
    """Validate a decoded JSON payload; raises ``pydantic.ValidationError``."""
    return _inbound_adapter.validate_python(payload)


def error_event(reason: str, message: str = "") -> dict[str, Any]:
    return {"type": "error", "reason": reason, "message": message or reason}

"""FastAPI endpoints for story rooms and the websocket session gateway."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket
from pydantic import BaseModel, Field

from onewordstory.backend.config import BackendSettings, load_settings
from onewordstory.backend.errors import NotFoundError, PermissionDenied
from onewordstory.backend.gateway import SessionGateway
from onewordstory.backend.registry import ParticipantRegistry


class CreateRoomRequest(BaseModel):
    name: str = Field(default="", max_length=200)


class CreateRoomResponse(BaseModel):
    room_id: str
    owner_token: str


class RoomStateResponse(BaseModel):
    state: dict[str, Any]


class TranscriptResponse(BaseModel):
    room_id: str
    tail: int
    entries: list[dict[str, Any]]


class StoryResponse(BaseModel):
    room_id: str
    chunks: list[dict[str, str]]


class CloseRoomRequest(BaseModel):
    owner_token: str = Field(min_length=1)


def create_app(settings: BackendSettings | None = None, gateway: SessionGateway | None = None) -> FastAPI:
    app_settings = settings if settings is not None else load_settings()
    session_gateway = gateway if gateway is not None else SessionGateway(settings=app_settings)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        await session_gateway.shutdown()

    app = FastAPI(title="One Word Story API", version="0.1.0", lifespan=lifespan)
    app.state.settings = app_settings
    app.state.gateway = session_gateway

    def get_registry() -> ParticipantRegistry:
        return session_gateway.registry

    @app.post("/api/rooms", response_model=CreateRoomResponse)
    async def create_room(
        payload: CreateRoomRequest,
        registry: ParticipantRegistry = Depends(get_registry),
    ) -> CreateRoomResponse:
        _room, created = registry.create_room(name=payload.name)
        return CreateRoomResponse(room_id=created.room_id, owner_token=created.owner_token)

    @app.get("/api/rooms/{room_id}", response_model=RoomStateResponse)
    async def get_room(
        room_id: str,
        registry: ParticipantRegistry = Depends(get_registry),
    ) -> RoomStateResponse:
        try:
            room = registry.get_room(room_id)
        except NotFoundError:
            raise HTTPException(status_code=404, detail="Room not found") from None
        return RoomStateResponse(state=room.snapshot())

    @app.get("/api/rooms/{room_id}/transcript", response_model=TranscriptResponse)
    async def get_transcript(
        room_id: str,
        since: int = Query(default=0, ge=0),
        registry: ParticipantRegistry = Depends(get_registry),
    ) -> TranscriptResponse:
        try:
            room = registry.get_room(room_id)
        except NotFoundError:
            raise HTTPException(status_code=404, detail="Room not found") from None
        return TranscriptResponse(
            room_id=room_id,
            tail=room.transcript.tail,
            entries=[entry.to_dict() for entry in room.read_since(since)],
        )

    @app.get("/api/rooms/{room_id}/story", response_model=StoryResponse)
    async def get_story(
        room_id: str,
        registry: ParticipantRegistry = Depends(get_registry),
    ) -> StoryResponse:
        try:
            room = registry.get_room(room_id)
        except NotFoundError:
            raise HTTPException(status_code=404, detail="Room not found") from None
        return StoryResponse(room_id=room_id, chunks=[chunk.to_dict() for chunk in room.story()])

    @app.post("/api/rooms/{room_id}/close", response_model=RoomStateResponse)
    async def close_room(
        room_id: str,
        payload: CloseRoomRequest,
        registry: ParticipantRegistry = Depends(get_registry),
    ) -> RoomStateResponse:
        try:
            room = registry.get_room(room_id)
            await registry.close_room(room_id, payload.owner_token)
        except NotFoundError:
            raise HTTPException(status_code=404, detail="Room not found") from None
        except PermissionDenied:
            raise HTTPException(status_code=403, detail="Owner token invalid") from None
        return RoomStateResponse(state=room.snapshot())

    @app.websocket("/ws")
    async def story_ws(websocket: WebSocket) -> None:
        await session_gateway.serve(websocket)

    return app


app = create_app()

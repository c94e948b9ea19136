"""Session gateway: websocket connections, dispatch and per-connection fan-out."""

from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass
from typing import Any

import pydantic
from fastapi import WebSocket, WebSocketDisconnect
from loguru import logger

from onewordstory.backend.config import BackendSettings
from onewordstory.backend.errors import NotFoundError, StoryError
from onewordstory.backend.messages import (
    CloseMessage,
    JoinMessage,
    LeaveMessage,
    PingMessage,
    StoryMessage,
    SubmitWordMessage,
    error_event,
    parse_inbound,
)
from onewordstory.backend.registry import ParticipantRegistry

# Queued after the last event of a connection that should be closed once drained.
_CLOSE = None


@dataclass
class Connection:
    handle: str
    websocket: WebSocket
    queue: asyncio.Queue
    sender: asyncio.Task | None = None
    closing: bool = False


class SessionGateway:
    """Terminates websocket sessions and moves events in and out of rooms.

    Rooms call ``enqueue`` while holding their lock, so it only ever does a
    ``put_nowait``. Each connection has its own sender task draining its
    queue to the socket; a stalled client fills its own queue and is cut
    off without slowing anyone else down.
    """

    def __init__(self, settings: BackendSettings) -> None:
        self.settings = settings
        self.registry = ParticipantRegistry(settings=settings, outbound=self.enqueue)
        self._connections: dict[str, Connection] = {}
        self._background_tasks: set[asyncio.Task] = set()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def background_tasks(self) -> frozenset[asyncio.Task]:
        return frozenset(self._background_tasks)

    async def connect(self, websocket: WebSocket) -> Connection:
        await websocket.accept()
        connection = Connection(
            handle=uuid.uuid4().hex,
            websocket=websocket,
            queue=asyncio.Queue(maxsize=self.settings.outbound_queue_size),
        )
        connection.sender = asyncio.create_task(self._sender(connection))
        self._connections[connection.handle] = connection
        return connection

    async def serve(self, websocket: WebSocket) -> None:
        connection = await self.connect(websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    payload = json.loads(raw)
                except ValueError:
                    self.enqueue(connection.handle, error_event("invalid_message", "message is not valid JSON"))
                    continue
                await self.dispatch(connection.handle, payload)
        except WebSocketDisconnect:
            pass
        except RuntimeError:
            logger.bind(connection=connection.handle).debug("Receive failed after the socket was closed")
        finally:
            await self.disconnect(connection.handle)

    def enqueue(self, connection_handle: str, event: dict[str, Any]) -> None:
        connection = self._connections.get(connection_handle)
        if connection is None or connection.closing:
            return
        try:
            connection.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.bind(connection=connection_handle).warning("Outbound queue full, dropping slow connection")
            connection.closing = True
            self._spawn(self._abort(connection))

    async def dispatch(self, connection_handle: str, payload: Any) -> None:
        try:
            message = parse_inbound(payload)
        except pydantic.ValidationError as exc:
            self.enqueue(connection_handle, error_event("invalid_message", str(exc.errors()[0]["msg"])))
            return

        try:
            if isinstance(message, JoinMessage):
                await self._handle_join(connection_handle, message)
            elif isinstance(message, SubmitWordMessage):
                await self._handle_submit(connection_handle, message)
            elif isinstance(message, LeaveMessage):
                _room_id, participant_id = self.registry.resolve(connection_handle)
                await self.registry.leave(participant_id)
            elif isinstance(message, StoryMessage):
                room_id, _participant_id = self.registry.resolve(connection_handle)
                for chunk in self.registry.get_room(room_id).story():
                    self.enqueue(connection_handle, {"type": "story", **chunk.to_dict()})
            elif isinstance(message, CloseMessage):
                room_id, _participant_id = self.registry.resolve(connection_handle)
                await self.registry.close_room(room_id, message.owner_token)
            elif isinstance(message, PingMessage):
                self.enqueue(connection_handle, {"type": "pong"})
        except StoryError as exc:
            self.enqueue(connection_handle, error_event(exc.reason, str(exc)))

    async def disconnect(self, connection_handle: str) -> None:
        connection = self._connections.pop(connection_handle, None)
        if connection is None:
            return
        connection.closing = True
        if connection.sender is not None and connection.sender is not asyncio.current_task():
            connection.sender.cancel()
        try:
            await self.registry.release(connection_handle)
        except NotFoundError:
            pass

    async def shutdown(self, drain_timeout: float = 1.0) -> None:
        """Close every room, give senders a moment to flush ``room_closed``, then drop all connections."""
        await self.registry.shutdown()
        senders = []
        for connection in list(self._connections.values()):
            if not connection.closing:
                try:
                    connection.queue.put_nowait(_CLOSE)
                except asyncio.QueueFull:
                    pass
                connection.closing = True
            if connection.sender is not None:
                senders.append(connection.sender)
        if senders:
            _done, pending = await asyncio.wait(senders, timeout=drain_timeout)
            for task in pending:
                task.cancel()
        for handle in list(self._connections):
            await self.disconnect(handle)

    async def _handle_join(self, connection_handle: str, message: JoinMessage) -> None:
        result = await self.registry.join(
            room_id=message.room_id,
            identity=message.reconnect_token,
            display_name=message.display_name,
            connection_handle=connection_handle,
            last_sequence=message.last_sequence,
        )
        if result.superseded_handle is not None:
            self._retire(result.superseded_handle)

    async def _handle_submit(self, connection_handle: str, message: SubmitWordMessage) -> None:
        room_id, participant_id = self.registry.resolve(connection_handle)
        room = self.registry.get_room(room_id)
        result = await room.submit(participant_id, message.word, message.sequence_number)
        self.enqueue(
            connection_handle,
            {
                "type": "ack",
                "sequence_number": result.sequence_number,
                "word": result.word,
                "duplicate": result.duplicate,
            },
        )

    def _retire(self, connection_handle: str) -> None:
        """Tell a superseded connection why it is going away, then close it after the queue drains."""
        connection = self._connections.get(connection_handle)
        if connection is None or connection.closing:
            return
        self.enqueue(connection_handle, {"type": "superseded"})
        try:
            connection.queue.put_nowait(_CLOSE)
            connection.closing = True
        except asyncio.QueueFull:
            connection.closing = True
            self._spawn(self._abort(connection))

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def _sender(self, connection: Connection) -> None:
        while True:
            event = await connection.queue.get()
            if event is _CLOSE:
                await self._close_socket(connection, code=1000)
                return
            try:
                await connection.websocket.send_json(event)
            except (WebSocketDisconnect, RuntimeError):
                logger.bind(connection=connection.handle).debug("Send failed, connection already gone")
                return

    async def _abort(self, connection: Connection) -> None:
        await self._close_socket(connection, code=1013)
        await self.disconnect(connection.handle)

    @staticmethod
    async def _close_socket(connection: Connection, code: int) -> None:
        try:
            await connection.websocket.close(code=code)
        except RuntimeError:
            # Already closed by the client or the server.
            pass

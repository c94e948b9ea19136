"""Participant registry: rooms, memberships and the connection index."""

from __future__ import annotations

import time
import uuid
from typing import Callable

from onewordstory.backend.config import BackendSettings
from onewordstory.backend.errors import NotFoundError, PermissionDenied, ValidationError
from onewordstory.backend.logging import log_room_event
from onewordstory.backend.models import CreatedRoom, JoinResult, Participant
from onewordstory.backend.room import Outbound, Room
from onewordstory.backend.security import issue_owner_credential, issue_reconnect_token, owner_token_matches


def _random_room_id() -> str:
    return uuid.uuid4().hex[:8]


class ParticipantRegistry:
    """Owns every live room and indexes connections into them.

    The handle and identity indexes never own a participant: the room
    reports removals and closure through hooks and the matching entries
    are dropped here.
    """

    def __init__(
        self,
        settings: BackendSettings,
        outbound: Outbound,
        clock: Callable[[], float] = time.time,
        room_ids: Callable[[], str] = _random_room_id,
    ) -> None:
        self.settings = settings
        self._room_ids = room_ids
        self._outbound = outbound
        self._clock = clock
        self._rooms: dict[str, Room] = {}
        self._handles: dict[str, tuple[str, str]] = {}
        self._members: dict[str, str] = {}
        self._identities: dict[str, tuple[str, str]] = {}

    @property
    def rooms(self) -> dict[str, Room]:
        return dict(self._rooms)

    def create_room(self, name: str = "", room_id: str | None = None, with_owner: bool = True) -> tuple[Room, CreatedRoom]:
        if room_id is None:
            room_id = self._room_ids()
            while room_id in self._rooms:
                room_id = self._room_ids()
        elif room_id in self._rooms:
            raise ValidationError(f"room {room_id} already exists", reason="room_exists")
        credential = issue_owner_credential(self.settings.server_salt) if with_owner else None
        room = Room(
            room_id=room_id,
            settings=self.settings,
            outbound=self._outbound,
            name=name,
            owner_token_hash=credential.token_hash if credential is not None else None,
            on_participant_removed=self._forget_participant,
            on_closed=self._forget_room,
            clock=self._clock,
        )
        self._rooms[room_id] = room
        room.start()
        log_room_event("Room created", room_id=room_id, event="room_created", name=room.name, owned=with_owner)
        return room, CreatedRoom(room_id=room_id, owner_token=credential.token if credential is not None else "")

    def get_room(self, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            raise NotFoundError(f"room {room_id} not found")
        return room

    def resolve(self, connection_handle: str) -> tuple[str, str]:
        try:
            return self._handles[connection_handle]
        except KeyError:
            raise NotFoundError(f"connection {connection_handle} has not joined a room") from None

    def room_of(self, participant_id: str) -> Room:
        room_id = self._members.get(participant_id)
        if room_id is None:
            raise NotFoundError(f"participant {participant_id} not found")
        return self.get_room(room_id)

    async def join(
        self,
        room_id: str,
        identity: str | None,
        display_name: str,
        connection_handle: str,
        last_sequence: int = 0,
    ) -> JoinResult:
        """Admit a participant into ``room_id``, creating the room on first use.

        ``identity`` is the reconnect token a client got back in an earlier
        ``joined`` event; without one the participant is new and a fresh
        token is issued. The newest join for a token is authoritative: an
        earlier connection bound to the same participant is reported back as
        ``superseded_handle`` and dropped from the index.
        """
        bound = self._handles.get(connection_handle)
        if identity is None and bound is not None and bound[0] == room_id:
            # A repeated join on an already seated connection keeps its seat.
            identity = self._identity_of(bound)
        if identity is None:
            identity = issue_reconnect_token()
        previous = self._identities.get(identity)
        if previous is not None and previous[0] != room_id:
            await self._leave_quietly(previous[1])
            bound = self._handles.get(connection_handle)
        if bound is not None and (bound[0] != room_id or self._identity_of(bound) != identity):
            await self._leave_quietly(bound[1])

        result: JoinResult | None = None
        for _attempt in range(2):
            room = self._rooms.get(room_id)
            if room is None:
                room, _created = self.create_room(room_id=room_id, with_owner=False)
            try:
                result = await room.join(identity, display_name, connection_handle, last_sequence)
                break
            except ValidationError as exc:
                # The room closed while we waited for its lock; open a fresh one.
                if exc.reason != "room_closed" or room_id in self._rooms:
                    raise
        if result is None:
            raise ValidationError(f"room {room_id} is closed", reason="room_closed")

        if result.superseded_handle is not None:
            self._handles.pop(result.superseded_handle, None)
        self._handles[connection_handle] = (room_id, result.participant_id)
        self._members[result.participant_id] = room_id
        self._identities[identity] = (room_id, result.participant_id)
        return result

    async def leave(self, participant_id: str) -> None:
        room = self.room_of(participant_id)
        await room.leave(participant_id)

    async def mark_disconnected(self, participant_id: str, connection_handle: str | None = None) -> None:
        room = self.room_of(participant_id)
        if connection_handle is not None:
            self._handles.pop(connection_handle, None)
        await room.mark_disconnected(participant_id, connection_handle)

    async def release(self, connection_handle: str) -> None:
        """Handle a lost connection: start the grace period of whoever it carried."""
        _room_id, participant_id = self.resolve(connection_handle)
        await self.mark_disconnected(participant_id, connection_handle)

    async def close_room(self, room_id: str, owner_token: str) -> None:
        room = self.get_room(room_id)
        if not owner_token_matches(owner_token, room.owner_token_hash, self.settings.server_salt):
            raise PermissionDenied("owner token does not match", reason="forbidden")
        await room.close("closed_by_owner")

    async def shutdown(self) -> None:
        for room in list(self._rooms.values()):
            await room.close("shutdown")

    async def _leave_quietly(self, participant_id: str) -> None:
        try:
            await self.leave(participant_id)
        except NotFoundError:
            pass

    def _identity_of(self, binding: tuple[str, str]) -> str | None:
        room = self._rooms.get(binding[0])
        participant = room.participants.get(binding[1]) if room is not None else None
        return participant.identity if participant is not None else None

    def _forget_participant(self, room: Room, participant: Participant) -> None:
        self._members.pop(participant.participant_id, None)
        if self._identities.get(participant.identity) == (room.room_id, participant.participant_id):
            del self._identities[participant.identity]
        if participant.connection_handle is not None:
            if self._handles.get(participant.connection_handle) == (room.room_id, participant.participant_id):
                del self._handles[participant.connection_handle]

    def _forget_room(self, room: Room) -> None:
        for participant in list(room.participants.values()):
            self._forget_participant(room, participant)
        stale = [handle for handle, binding in self._handles.items() if binding[0] == room.room_id]
        for handle in stale:
            del self._handles[handle]
        if self._rooms.get(room.room_id) is room:
            del self._rooms[room.room_id]

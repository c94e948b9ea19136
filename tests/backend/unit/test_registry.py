from typing import Any

import pytest

from onewordstory.backend.config import BackendSettings
from onewordstory.backend.errors import NotFoundError, PermissionDenied, ValidationError
from onewordstory.backend.models import ParticipantStatus, RoomState
from onewordstory.backend.registry import ParticipantRegistry


class Outbox:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def __call__(self, handle: str, event: dict[str, Any]) -> None:
        self.events.append((handle, event))

    def types_for(self, handle: str) -> list[str]:
        return [event["type"] for target, event in self.events if target == handle]


def make_registry() -> tuple[ParticipantRegistry, Outbox]:
    outbox = Outbox()
    return ParticipantRegistry(settings=BackendSettings(), outbound=outbox), outbox


@pytest.mark.asyncio
async def test_join_creates_room_on_first_use_without_owner() -> None:
    registry, outbox = make_registry()

    result = await registry.join("campfire", "alice", "Alice", "ha")

    room = registry.get_room("campfire")
    assert room.owner_token_hash is None
    assert registry.resolve("ha") == ("campfire", result.participant_id)
    assert registry.room_of(result.participant_id) is room
    assert outbox.types_for("ha")[0] == "joined"
    await registry.shutdown()


@pytest.mark.asyncio
async def test_create_room_issues_owner_token_and_rejects_duplicate_ids() -> None:
    registry, _outbox = make_registry()

    room, created = registry.create_room(name="Campfire")

    assert created.room_id == room.room_id
    assert created.owner_token
    assert room.owner_token_hash is not None
    assert room.owner_token_hash != created.owner_token
    with pytest.raises(ValidationError) as excinfo:
        registry.create_room(room_id=room.room_id)
    assert excinfo.value.reason == "room_exists"
    await registry.shutdown()


@pytest.mark.asyncio
async def test_get_room_and_resolve_raise_for_unknown_entries() -> None:
    registry, _outbox = make_registry()

    with pytest.raises(NotFoundError):
        registry.get_room("nope")
    with pytest.raises(NotFoundError):
        registry.resolve("no-such-handle")
    with pytest.raises(NotFoundError):
        registry.room_of("ghost")


@pytest.mark.asyncio
async def test_newest_join_for_identity_supersedes_older_connection() -> None:
    registry, _outbox = make_registry()
    first = await registry.join("campfire", "alice", "Alice", "ha")

    second = await registry.join("campfire", "alice", "Alice", "ha2")

    assert second.participant_id == first.participant_id
    assert second.superseded_handle == "ha"
    with pytest.raises(NotFoundError):
        registry.resolve("ha")
    assert registry.resolve("ha2") == ("campfire", first.participant_id)
    await registry.shutdown()


@pytest.mark.asyncio
async def test_joining_another_room_leaves_the_previous_one() -> None:
    registry, outbox = make_registry()
    first = await registry.join("campfire", "alice", "Alice", "ha")

    second = await registry.join("library", "alice", "Alice", "ha")

    assert second.participant_id != first.participant_id
    assert registry.resolve("ha") == ("library", second.participant_id)
    with pytest.raises(NotFoundError):
        registry.room_of(first.participant_id)
    assert registry.get_room("campfire").participants == {}
    assert "participant_left" in outbox.types_for("ha")
    await registry.shutdown()


@pytest.mark.asyncio
async def test_release_keeps_slot_for_reconnect() -> None:
    registry, _outbox = make_registry()
    joined = await registry.join("campfire", "alice", "Alice", "ha")

    await registry.release("ha")

    room = registry.get_room("campfire")
    assert room.participants[joined.participant_id].status is ParticipantStatus.DISCONNECTED
    with pytest.raises(NotFoundError):
        registry.resolve("ha")

    again = await registry.join("campfire", "alice", "Alice", "hb")
    assert again.reconnected is True
    assert again.participant_id == joined.participant_id
    await registry.shutdown()


@pytest.mark.asyncio
async def test_leave_forgets_participant() -> None:
    registry, _outbox = make_registry()
    joined = await registry.join("campfire", "alice", "Alice", "ha")

    await registry.leave(joined.participant_id)

    with pytest.raises(NotFoundError):
        registry.room_of(joined.participant_id)
    with pytest.raises(NotFoundError):
        registry.resolve("ha")
    await registry.shutdown()


@pytest.mark.asyncio
async def test_close_room_requires_owner_token() -> None:
    registry, outbox = make_registry()
    room, created = registry.create_room(name="Campfire")
    await registry.join(room.room_id, "alice", "Alice", "ha")

    with pytest.raises(PermissionDenied):
        await registry.close_room(room.room_id, "wrong-token")
    assert not room.is_closed

    await registry.close_room(room.room_id, created.owner_token)

    assert room.is_closed
    assert room.close_reason == "closed_by_owner"
    assert room.room_id not in registry.rooms
    assert "room_closed" in outbox.types_for("ha")
    with pytest.raises(NotFoundError):
        registry.resolve("ha")


@pytest.mark.asyncio
async def test_auto_created_room_cannot_be_closed_by_token() -> None:
    registry, _outbox = make_registry()
    await registry.join("campfire", "alice", "Alice", "ha")

    with pytest.raises(PermissionDenied):
        await registry.close_room("campfire", "")
    await registry.shutdown()


@pytest.mark.asyncio
async def test_join_after_close_starts_a_fresh_room() -> None:
    registry, _outbox = make_registry()
    room, created = registry.create_room(room_id="campfire")
    await registry.close_room("campfire", created.owner_token)

    await registry.join("campfire", "alice", "Alice", "ha")

    fresh = registry.get_room("campfire")
    assert fresh is not room
    assert not fresh.is_closed
    await registry.shutdown()


@pytest.mark.asyncio
async def test_shutdown_closes_every_room() -> None:
    registry, _outbox = make_registry()
    first, _ = registry.create_room()
    second, _ = registry.create_room()

    await registry.shutdown()

    assert first.close_reason == "shutdown"
    assert second.close_reason == "shutdown"
    assert registry.rooms == {}


@pytest.mark.asyncio
async def test_same_display_name_in_another_room_leaves_first_room_alone() -> None:
    registry, outbox = make_registry()
    alex = await registry.join("r1", None, "Alex", "c1")
    await registry.join("r1", None, "Bo", "c2")

    await registry.join("r2", None, "Alex", "c3")

    first_room = registry.get_room("r1")
    assert [first_room.participants[pid].display_name for pid in first_room.scheduler.roster] == ["Alex", "Bo"]
    assert first_room.state is RoomState.ACTIVE
    assert registry.resolve("c1") == ("r1", alex.participant_id)
    assert "participant_left" not in outbox.types_for("c1")
    await registry.shutdown()


@pytest.mark.asyncio
async def test_same_display_name_in_same_room_gets_its_own_seat() -> None:
    registry, _outbox = make_registry()
    first = await registry.join("r1", None, "Alex", "c1")
    await registry.join("r1", None, "Bo", "c2")

    second = await registry.join("r1", None, "Alex", "c3")

    assert second.participant_id != first.participant_id
    assert second.reconnected is False
    assert second.superseded_handle is None
    assert len(registry.get_room("r1").scheduler.roster) == 3
    assert registry.resolve("c1") == ("r1", first.participant_id)
    await registry.shutdown()


@pytest.mark.asyncio
async def test_issued_reconnect_token_reclaims_the_seat() -> None:
    registry, outbox = make_registry()
    first = await registry.join("r1", None, "Alex", "c1")
    token = next(event for handle, event in outbox.events if handle == "c1" and event["type"] == "joined")["reconnect_token"]
    assert token

    await registry.release("c1")
    again = await registry.join("r1", token, "Alex", "c9")

    assert again.reconnected is True
    assert again.participant_id == first.participant_id
    await registry.shutdown()


@pytest.mark.asyncio
async def test_repeated_join_on_seated_connection_keeps_the_seat() -> None:
    registry, _outbox = make_registry()
    first = await registry.join("r1", None, "Alex", "c1")

    again = await registry.join("r1", None, "Alex", "c1")

    assert again.participant_id == first.participant_id
    assert registry.get_room("r1").scheduler.roster == [first.participant_id]
    await registry.shutdown()


@pytest.mark.asyncio
async def test_create_room_skips_ids_already_taken_by_joins() -> None:
    ids = iter(["campfire", "campfire", "library"])
    registry = ParticipantRegistry(settings=BackendSettings(), outbound=Outbox(), room_ids=lambda: next(ids))
    await registry.join("campfire", None, "Alex", "c1")

    room, created = registry.create_room(name="Library")

    assert room.room_id == created.room_id == "library"
    assert registry.get_room("campfire").participants
    await registry.shutdown()

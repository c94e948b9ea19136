from typing import Any

import pytest

fastapi = pytest.importorskip("fastapi")
pytest.importorskip("httpx")
from fastapi.testclient import TestClient

from onewordstory.backend.api import create_app
from onewordstory.backend.config import BackendSettings


def make_app():
    return create_app(settings=BackendSettings(server_salt="test-salt", turn_timeout_seconds=60.0))


def receive_until(websocket, event_type: str, limit: int = 20) -> dict[str, Any]:
    for _ in range(limit):
        event = websocket.receive_json()
        if event["type"] == event_type:
            return event
    raise AssertionError(f"no {event_type} event within {limit} messages")


def test_post_rooms_returns_id_and_owner_token() -> None:
    with TestClient(make_app()) as client:
        response = client.post("/api/rooms", json={"name": "Campfire"})

        assert response.status_code == 200
        data = response.json()
        assert data["room_id"]
        assert data["owner_token"]


def test_get_room_returns_waiting_state() -> None:
    with TestClient(make_app()) as client:
        created = client.post("/api/rooms", json={"name": "Campfire"}).json()

        response = client.get(f"/api/rooms/{created['room_id']}")

        assert response.status_code == 200
        state = response.json()["state"]
        assert state["room_id"] == created["room_id"]
        assert state["name"] == "Campfire"
        assert state["state"] == "waiting"
        assert state["roster"] == []
        assert state["tail"] == 0


def test_unknown_room_is_not_found() -> None:
    with TestClient(make_app()) as client:
        assert client.get("/api/rooms/missing").status_code == 404
        assert client.get("/api/rooms/missing/transcript").status_code == 404
        assert client.get("/api/rooms/missing/story").status_code == 404
        assert client.post("/api/rooms/missing/close", json={"owner_token": "x"}).status_code == 404


def test_close_room_requires_owner_token() -> None:
    with TestClient(make_app()) as client:
        created = client.post("/api/rooms", json={"name": "Campfire"}).json()
        room_id = created["room_id"]

        forbidden = client.post(f"/api/rooms/{room_id}/close", json={"owner_token": "not-the-token"})
        allowed = client.post(f"/api/rooms/{room_id}/close", json={"owner_token": created["owner_token"]})

        assert forbidden.status_code == 403
        assert allowed.status_code == 200
        assert allowed.json()["state"]["state"] == "closed"
        assert client.get(f"/api/rooms/{room_id}").status_code == 404


def test_websocket_story_round() -> None:
    with TestClient(make_app()) as client:
        with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as bob:
            alice.send_json({"type": "join", "room_id": "campfire", "display_name": "Alice"})
            alice_joined = receive_until(alice, "joined")
            bob.send_json({"type": "join", "room_id": "campfire", "display_name": "Bob"})
            bob_joined = receive_until(bob, "joined")
            roster = receive_until(bob, "roster_snapshot")
            assert roster["state"] == "active"
            assert roster["current_participant_id"] == alice_joined["participant_id"]

            alice.send_json({"type": "submit_word", "word": "Once", "sequence_number": 1})
            accepted = receive_until(bob, "word_accepted")
            assert accepted["sequence_number"] == 1
            assert accepted["word"] == "Once"
            assert accepted["next_participant_id"] == bob_joined["participant_id"]
            ack = receive_until(alice, "ack")
            assert ack == {"type": "ack", "sequence_number": 1, "word": "Once", "duplicate": False}

            alice.send_json({"type": "submit_word", "word": "again"})
            error = receive_until(alice, "error")
            assert error["reason"] == "not_your_turn"

            bob.send_json({"type": "submit_word", "word": "Hello world"})
            assert receive_until(bob, "error")["reason"] == "invalid_word"
            bob.send_json({"type": "submit_word", "word": "upon", "sequence_number": 2})
            assert receive_until(bob, "ack")["sequence_number"] == 2

            bob.send_json({"type": "story"})
            story = receive_until(bob, "story")
            assert story == {"type": "story", "title": "Story so far", "text": "Once upon"}

        transcript = client.get("/api/rooms/campfire/transcript", params={"since": 1}).json()
        assert transcript["tail"] == 2
        assert [entry["word"] for entry in transcript["entries"]] == ["upon"]
        story = client.get("/api/rooms/campfire/story").json()
        assert story["chunks"] == [{"title": "Story so far", "text": "Once upon"}]


def test_websocket_reconnect_replays_missed_words() -> None:
    with TestClient(make_app()) as client:
        with client.websocket_connect("/ws") as bob:
            with client.websocket_connect("/ws") as alice:
                alice.send_json({"type": "join", "room_id": "campfire", "display_name": "Alice"})
                first = receive_until(alice, "joined")
                bob.send_json({"type": "join", "room_id": "campfire", "display_name": "Bob"})
                receive_until(bob, "joined")
                alice.send_json({"type": "submit_word", "word": "Once"})
                receive_until(alice, "ack")

            bob.send_json({"type": "submit_word", "word": "upon"})
            receive_until(bob, "ack")

            with client.websocket_connect("/ws") as alice_again:
                alice_again.send_json(
                    {
                        "type": "join",
                        "room_id": "campfire",
                        "display_name": "Alice",
                        "reconnect_token": first["reconnect_token"],
                        "last_sequence": 1,
                    }
                )
                joined = receive_until(alice_again, "joined")
                replayed = receive_until(alice_again, "word_accepted")

                assert joined["participant_id"] == first["participant_id"]
                assert joined["reconnected"] is True
                assert replayed["sequence_number"] == 2
                assert replayed["word"] == "upon"
                assert replayed["replay"] is True


def test_websocket_rejects_malformed_messages() -> None:
    with TestClient(make_app()) as client:
        with client.websocket_connect("/ws") as websocket:
            websocket.send_text("not json")
            assert websocket.receive_json()["reason"] == "invalid_message"
            websocket.send_json({"type": "submit_word"})
            assert websocket.receive_json()["reason"] == "invalid_message"
            websocket.send_json({"type": "ping"})
            assert websocket.receive_json() == {"type": "pong"}


def test_owner_can_close_room_over_websocket() -> None:
    with TestClient(make_app()) as client:
        created = client.post("/api/rooms", json={"name": "Campfire"}).json()
        with client.websocket_connect("/ws") as websocket:
            websocket.send_json({"type": "join", "room_id": created["room_id"], "display_name": "Alice"})
            receive_until(websocket, "joined")

            websocket.send_json({"type": "close", "owner_token": "wrong"})
            assert receive_until(websocket, "error")["reason"] == "forbidden"
            websocket.send_json({"type": "close", "owner_token": created["owner_token"]})
            closed = receive_until(websocket, "room_closed")

            assert closed == {"type": "room_closed", "room_id": created["room_id"], "reason": "closed_by_owner"}

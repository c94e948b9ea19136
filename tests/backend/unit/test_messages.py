import pydantic
import pytest

from onewordstory.backend.messages import JoinMessage, SubmitWordMessage, error_event, parse_inbound


def test_join_without_reconnect_token_is_a_fresh_participant() -> None:
    message = parse_inbound({"type": "join", "room_id": "campfire", "display_name": "Alice"})

    assert isinstance(message, JoinMessage)
    assert message.reconnect_token is None
    assert message.last_sequence == 0


def test_join_carries_reconnect_token_and_last_sequence() -> None:
    message = parse_inbound(
        {"type": "join", "room_id": "campfire", "display_name": "Alice", "reconnect_token": "tok", "last_sequence": 7}
    )

    assert message.reconnect_token == "tok"
    assert message.last_sequence == 7


def test_submit_word_carries_optional_sequence_number() -> None:
    message = parse_inbound({"type": "submit_word", "word": "Once", "sequence_number": 4})

    assert isinstance(message, SubmitWordMessage)
    assert message.sequence_number == 4


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "dance"},
        {"type": "join", "room_id": "campfire"},
        {"type": "submit_word", "word": "Once", "sequence_number": 0},
        {"type": "close", "owner_token": ""},
        "not a mapping",
    ],
)
def test_malformed_payloads_raise_validation_error(payload) -> None:
    with pytest.raises(pydantic.ValidationError):
        parse_inbound(payload)


def test_error_event_defaults_message_to_reason() -> None:
    assert error_event("not_your_turn") == {"type": "error", "reason": "not_your_turn", "message": "not_your_turn"}


from nyaagent.agent.events import AgentEvent, EventKind


def test_to_dict_drops_unset_fields() -> None:
    event = AgentEvent.dialogue("hello", 3000)

    assert event.to_dict() == {
        "kind": "dialogue_complete",
        "text": "hello",
        "duration": 3000,
        "metadata": {},
    }


def test_stream_chunk_keeps_reasoning_delta() -> None:
    event = AgentEvent.stream_chunk("s1", "", reasoning_delta="thinking")

    assert event.kind is EventKind.STREAM_CHUNK
    assert event.to_dict()["reasoning_delta"] == "thinking"
    assert event.delta == ""


def test_live2d_event_exposes_command_type() -> None:
    event = AgentEvent.live2d({"type": "expression", "expressionId": "smile"})

    assert event.command == "expression"
    assert event.payload["expressionId"] == "smile"


def test_command_response_failure() -> None:
    event = AgentEvent.command_response("foo", "", success=False, error="Unknown command")

    data = event.to_dict()
    assert data["success"] is False
    assert data["error"] == "Unknown command"

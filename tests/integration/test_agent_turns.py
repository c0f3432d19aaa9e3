import pytest

from nyaagent.agent.events import EventKind
from nyaagent.agent.service import AgentService, Attachment, TapConfig
from nyaagent.plugins.base import MappedExpression, ModelInfo
from nyaagent.providers.base import (
    LLMResponse,
    LLMStreamChunk,
    ProviderMetadata,
    ToolCallDelta,
    ToolCallInfo,
)
from nyaagent.providers.instances import ProviderInstanceManager
from nyaagent.providers.registry import ProviderRegistry
from nyaagent.providers.tts import TTSProvider, TTSRequest, TTSResponse
from nyaagent.skills.manager import SkillContext, SkillResult, SkillSchema
from nyaagent.tools.registry import ToolRegistry

ITERATION_WARNING = "[Warning] tool calls exceeded maximum iterations (10), stopped."


def _clock_tools() -> ToolRegistry:
    tools = ToolRegistry("clock", "Clock")

    async def get_time(_arguments):
        return "12:00"

    async def explode(_arguments):
        raise RuntimeError("boom")

    tools.register("get_time", "Current time", get_time)
    tools.register("explode", "Always fails", explode)
    return tools


def _tool_call_response(name: str = "get_time", arguments: str = "{}") -> LLMResponse:
    return LLMResponse(
        text="",
        finish_reason="tool_calls",
        tool_calls=[ToolCallInfo(id="call_1", name=name, arguments=arguments)],
    )


@pytest.mark.asyncio
async def test_hello_turn_emits_one_dialogue(script, make_service) -> None:
    script.responses = [LLMResponse(text="Hi!", finish_reason="stop")]
    service = await make_service()
    events = []

    await service.handle_user_input("hello", emit=events.append)

    assert [e.kind for e in events] == [EventKind.DIALOGUE_COMPLETE]
    assert events[0].text == "Hi!"
    assert events[0].duration >= 3000
    history = service.history.get_history()
    assert [(m.role, m.content) for m in history] == [("user", "hello"), ("assistant", "Hi!")]
    request = script.requests[0]
    assert request.tools is None
    assert request.tool_choice is None
    assert request.system_prompt.startswith("You are Nya, a cute desktop pet catgirl.")


@pytest.mark.asyncio
async def test_streaming_turn_with_tool_call(script, make_service) -> None:
    script.streams = [
        [
            LLMStreamChunk(delta="He"),
            LLMStreamChunk(delta="llo"),
            LLMStreamChunk(
                tool_call_deltas=[ToolCallDelta(index=0, id="call_1", name="get_time", arguments="{")]
            ),
            LLMStreamChunk(tool_call_deltas=[ToolCallDelta(index=0, arguments="}")]),
            LLMStreamChunk(done=True, finish_reason="tool_calls"),
        ],
        [
            LLMStreamChunk(delta="It is 12:00"),
            LLMStreamChunk(done=True, finish_reason="stop"),
        ],
    ]
    service = await make_service(llm_stream=True)
    service.plugins.register_tool_provider(_clock_tools())
    events = []

    await service.handle_user_input("what time is it?", emit=events.append)

    history = service.history.get_history()
    assert len(history) == 4
    user, call, result, final = history
    assert user.role == "user"
    assert call.role == "assistant"
    assert call.content == "Hello"
    assert [(c.id, c.name, c.arguments) for c in call.tool_calls] == [("call_1", "get_time", "{}")]
    assert result.role == "tool"
    assert result.tool_call_id == "call_1"
    assert result.tool_name == "get_time"
    assert result.content == "12:00"
    assert (final.role, final.content) == ("assistant", "It is 12:00")

    kinds = [e.kind for e in events]
    assert kinds == [
        EventKind.STREAM_START,
        EventKind.STREAM_CHUNK,
        EventKind.STREAM_CHUNK,
        EventKind.STREAM_END,
        EventKind.COMMAND_RESPONSE,
        EventKind.STREAM_START,
        EventKind.STREAM_CHUNK,
        EventKind.STREAM_END,
    ]
    assert events[3].text == "Hello"
    assert events[4].command == "tool_status"
    assert events[4].text == "[Tool] get_time: 12:00"
    assert events[-1].text == "It is 12:00"
    assert events[0].stream_id != events[5].stream_id

    second = script.requests[1]
    assert [t["name"] for t in second.tools] == ["get_time", "explode"]
    assert second.tool_choice == "auto"
    assert second.messages[-1].role == "tool"


@pytest.mark.asyncio
async def test_tool_loop_stops_at_iteration_limit(script, make_service) -> None:
    script.responses = [_tool_call_response()]
    service = await make_service()
    service.plugins.register_tool_provider(_clock_tools())
    events = []

    await service.handle_user_input("loop forever", emit=events.append)

    assert len(script.requests) == 10
    assert events[-1].kind == EventKind.DIALOGUE_COMPLETE
    assert events[-1].text == ITERATION_WARNING
    tool_messages = [m for m in service.history.get_history(100) if m.role == "tool"]
    assert len(tool_messages) == 10


@pytest.mark.asyncio
async def test_streaming_tool_loop_respects_configured_limit(script, make_service) -> None:
    script.streams = [
        [
            LLMStreamChunk(
                tool_call_deltas=[ToolCallDelta(index=0, id="c", name="get_time", arguments="{}")]
            ),
            LLMStreamChunk(done=True),
        ]
    ]
    service = await make_service(llm_stream=True, max_tool_iterations=3)
    service.plugins.register_tool_provider(_clock_tools())
    events = []

    await service.handle_user_input("loop", emit=events.append)

    assert len(script.requests) == 3
    assert events[-1].kind == EventKind.STREAM_END
    assert events[-1].text == "[Warning] tool calls exceeded maximum iterations (3), stopped."


@pytest.mark.asyncio
async def test_error_finish_reason_becomes_error_dialogue(script, make_service) -> None:
    script.responses = [LLMResponse(text="HTTP 500: boom", finish_reason="error")]
    service = await make_service()
    events = []

    await service.handle_user_input("hi", emit=events.append)

    assert len(events) == 1
    assert events[0].text == "[Error] HTTP 500: boom"
    assert events[0].duration == 5000
    assert service.history.get_history()[-1].content == "[Error] HTTP 500: boom"


@pytest.mark.asyncio
async def test_stream_error_chunk_ends_stream_with_error(script, make_service) -> None:
    script.streams = [[LLMStreamChunk(delta="HTTP 401: bad key", done=True, finish_reason="error")]]
    service = await make_service(llm_stream=True)
    events = []

    await service.handle_user_input("hi", emit=events.append)

    assert [e.kind for e in events] == [EventKind.STREAM_START, EventKind.STREAM_END]
    assert events[-1].text == "[Error] HTTP 401: bad key"
    assert service.history.get_history()[-1].content == "[Error] HTTP 401: bad key"


@pytest.mark.asyncio
async def test_stream_flag_in_instance_config_enables_streaming(script, make_service) -> None:
    script.streams = [[LLMStreamChunk(delta="streamed"), LLMStreamChunk(done=True)]]
    service = await make_service()
    config = service.instances.llm.get_config("main")
    config.config.extra["stream"] = "true"
    await service.instances.llm.update("main", config)
    await service.instances.llm.wait_for_primary(1.0)
    events = []

    await service.handle_user_input("hi", emit=events.append)

    assert events[-1].kind == EventKind.STREAM_END
    assert events[-1].text == "streamed"


@pytest.mark.asyncio
async def test_failed_and_unknown_tools_feed_back_into_the_loop(script, make_service) -> None:
    script.responses = [
        LLMResponse(
            text="",
            tool_calls=[
                ToolCallInfo(id="a", name="explode", arguments="{}"),
                ToolCallInfo(id="b", name="nope", arguments="{}"),
                ToolCallInfo(id="c", name="get_time", arguments="{not json"),
            ],
        ),
        LLMResponse(text="done"),
    ]
    service = await make_service()
    service.plugins.register_tool_provider(_clock_tools())
    events = []

    await service.handle_user_input("go", emit=events.append)

    tool_messages = [m for m in service.history.get_history() if m.role == "tool"]
    assert [m.tool_call_id for m in tool_messages] == ["a", "b", "c"]
    assert tool_messages[0].content == "tool execution failed: boom"
    assert tool_messages[1].content == "tool execution failed: Tool not found: nope"
    assert tool_messages[2].content == "12:00"
    assert events[-1].text == "done"


@pytest.mark.asyncio
async def test_skill_tool_call_dispatches_to_skill(script, make_service) -> None:
    script.responses = [_tool_call_response("skill_greet", '{"name": "Mochi"}'), LLMResponse(text="ok")]
    service = await make_service()
    seen = {}

    async def greet(params, ctx: SkillContext) -> SkillResult:
        seen.update(params)
        return SkillResult(success=True, output=f"greeted {params['name']}")

    service.skills.register(SkillSchema(name="greet", description="Greets someone"), greet)
    events = []

    await service.handle_user_input("greet Mochi", emit=events.append)

    assert seen == {"name": "Mochi"}
    assert "skill_greet" in [t["name"] for t in script.requests[0].tools]
    tool_message = [m for m in service.history.get_history() if m.role == "tool"][0]
    assert tool_message.content == "greeted Mochi"
    status = [e for e in events if e.command == "tool_status"]
    assert status[0].text == "[Skill] skill_greet: greeted Mochi"


@pytest.mark.asyncio
async def test_missing_primary_reports_configuration_warning(scripted_registry) -> None:
    service = AgentService(ProviderInstanceManager(scripted_registry))
    events = []

    await service.handle_user_input("hello", emit=events.append)

    assert len(events) == 1
    assert events[0].text == (
        "[Warning] no primary LLM instance set. Check LLM provider configuration."
    )
    assert events[0].duration == 8000
    assert service.history.get_history() == []


@pytest.mark.asyncio
async def test_image_attachment_is_attached_to_user_message(script, make_service) -> None:
    script.responses = [LLMResponse(text="cute")]
    service = await make_service()

    await service.handle_user_input(
        "look",
        Attachment(type="image", data="aGVsbG8=", name="cat.png", source="image/png"),
        emit=lambda _e: None,
    )

    user = service.history.get_history()[0]
    assert user.content == "look\n[Attachment: cat.png]"
    assert user.attachment.mime_type == "image/png"
    assert user.attachment.data == "aGVsbG8="


@pytest.mark.asyncio
async def test_builtin_plugins_shape_prompt_and_commands(script, make_service) -> None:
    script.responses = [LLMResponse(text="Nya~")]
    service = await make_service(builtins=True)
    events = []

    await service.handle_input("hello", emit=events.append)
    await service.handle_input("/history", emit=events.append)
    await service.handle_input("/clear", emit=events.append)
    await service.handle_input("/nope", emit=events.append)

    request = script.requests[0]
    assert request.system_prompt.startswith("## Character\n")
    assert "## Tools" in request.system_prompt
    assert {"set_personality", "clear_memory", "view_memory_stats"} <= {
        t["name"] for t in request.tools
    }
    history_reply = events[1]
    assert history_reply.command == "history"
    assert history_reply.text == "1. [user] hello\n2. [assistant] Nya~"
    assert events[2].text == "Conversation history cleared"
    assert service.history.get_history() == []
    assert events[3].success is False
    assert events[3].error == "Unknown command: /nope. Type /help to see available commands."


@pytest.mark.asyncio
async def test_expression_plugin_emits_sync_command(script, make_service) -> None:
    script.responses = [
        LLMResponse(text="Hi!"),
        LLMResponse(text='{"actions": [{"type": "expression", "expressionId": "happy"}]}'),
    ]
    service = await make_service(builtins=True)
    service.set_model_info(
        ModelInfo(
            expressions=["exp_01"],
            mapped_expressions=[MappedExpression(id="exp_01", alias="happy")],
        )
    )
    events = []

    await service.handle_user_input("hello", emit=events.append)

    sync = [e for e in events if e.kind == EventKind.SYNC_COMMAND]
    assert len(sync) == 1
    actions = sync[0].actions
    assert actions[0] == {"type": "expression", "expressionId": "exp_01"}
    assert actions[1]["type"] == "dialogue"
    assert actions[1]["text"] == "Hi!"
    assert "**Expressions**: exp_01" in script.requests[0].system_prompt


class _StubSpeech(TTSProvider):
    metadata = ProviderMetadata(id="stub-tts", name="Stub TTS")
    requests: list[TTSRequest] = []

    async def synthesize(self, request: TTSRequest) -> TTSResponse:
        _StubSpeech.requests.append(request)
        return TTSResponse(audio_base64="QUJD", mime_type="audio/wav")


@pytest.mark.asyncio
async def test_final_reply_is_spoken_by_primary_tts(script, make_service) -> None:
    script.responses = [LLMResponse(text="Hello there")]
    tts_registry = ProviderRegistry("tts")
    tts_registry.register(_StubSpeech.metadata, _StubSpeech)
    service = await make_service(
        tts_registry=tts_registry,
        tts_instances=[
            {
                "instance_id": "voice",
                "provider_id": "stub-tts",
                "config": {"format": "wav", "voiceId": "nova"},
            }
        ],
    )
    _StubSpeech.requests.clear()
    events = []

    await service.handle_user_input("talk", emit=events.append)

    kinds = [e.kind for e in events]
    assert kinds == [
        EventKind.DIALOGUE_COMPLETE,
        EventKind.AUDIO_START,
        EventKind.AUDIO_CHUNK,
        EventKind.AUDIO_END,
    ]
    assert events[1].mime_type == "audio/wav"
    assert events[1].text == "Hello there"
    assert (events[2].chunk, events[2].sequence) == ("QUJD", 0)
    assert _StubSpeech.requests[0].voice_id == "nova"
    assert _StubSpeech.requests[0].format == "wav"


@pytest.mark.asyncio
async def test_tap_event_with_config_plays_motion(script, make_service) -> None:
    service = await make_service()
    service.tap_configs["head"] = TapConfig(expression="shy", motion="TapHead/1")
    events = []

    await service.handle_tap_event("head", emit=events.append)

    assert [e.kind for e in events] == [EventKind.LIVE2D, EventKind.LIVE2D]
    assert events[0].payload == {"type": "expression", "expressionId": "shy"}
    assert events[1].payload == {"type": "motion", "group": "TapHead", "index": 1, "priority": 2}
    assert script.requests == []


@pytest.mark.asyncio
async def test_tap_event_without_config_asks_the_model(script, make_service) -> None:
    script.responses = [LLMResponse(text="Hey!")]
    service = await make_service()
    events = []

    await service.handle_tap_event("body", emit=events.append)

    assert service.history.get_history()[0].content == "(user touched body area)"
    assert events[-1].text == "Hey!"


@pytest.mark.asyncio
async def test_plugin_messages_reach_event_listener(script, make_service) -> None:
    service = await make_service(builtins=True)
    received = []
    service.set_event_listener(received.append)
    plugin = service.plugins.get_plugin("builtin.info")

    await plugin.context.send_dialogue("from plugin", 1200)
    await plugin.context.send_system_message("notice")

    assert [(e.kind, e.text) for e in received] == [
        (EventKind.DIALOGUE_COMPLETE, "from plugin"),
        (EventKind.SYSTEM, "notice"),
    ]
    assert received[0].duration == 1200

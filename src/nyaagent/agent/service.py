"""Built-in agent: the tool-calling conversation loop and its plugin host."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any

from nyaagent.agent.events import AgentEvent, EventSink
from nyaagent.agent.history import ConversationHistory
from nyaagent.commands.handlers import CommandDefinition, CommandHandler, parse_command
from nyaagent.config import Settings, get_settings
from nyaagent.errors import ProviderError
from nyaagent.ids import new_id, short_id
from nyaagent.logging import log_context
from nyaagent.plugins.base import Live2DCommand, ModelInfo, Plugin, ProviderBriefInfo
from nyaagent.plugins.builtin import builtin_plugins
from nyaagent.plugins.builtin.expression import ExpressionPlugin
from nyaagent.plugins.builtin.memory import MemoryPlugin
from nyaagent.plugins.builtin.personality import PersonalityPlugin
from nyaagent.plugins.manager import PluginManager
from nyaagent.providers.base import (
    ChatAttachment,
    ChatMessage,
    LLMProvider,
    LLMRequest,
    LLMResponse,
    ProviderConfig,
    ProviderStatus,
    ToolCallDelta,
    ToolCallInfo,
)
from nyaagent.providers.instances import ProviderInstanceInfo, ProviderInstanceManager
from nyaagent.providers.tts import TTSRequest, audio_format_to_mime_type
from nyaagent.skills.manager import SkillContext, SkillManager
from nyaagent.tools.registry import ToolResult

logger = logging.getLogger(__name__)

PRIMARY = "primary"
TOOL_STATUS = "tool_status"
MIN_DIALOGUE_MS = 3000
NOTICE_MS = 5000
WARNING_MS = 8000


@dataclass(slots=True)
class Attachment:
    """File or image sent along with user text; ``source`` holds the mime type."""

    type: str
    data: str | None = None
    name: str | None = None
    source: str | None = None


@dataclass(slots=True)
class TapConfig:
    enabled: bool = True
    expression: str = ""
    motion: str = ""


class ToolCallAccumulator:
    """Reassembles streamed tool-call fragments keyed by stream index."""

    def __init__(self) -> None:
        self._calls: dict[int, tuple[str, str, list[str]]] = {}

    def add(self, delta: ToolCallDelta) -> None:
        call_id, name, arguments = self._calls.get(delta.index, (delta.id or "", delta.name or "", []))
        if delta.id and delta.id.strip():
            call_id = delta.id
        if delta.name and delta.name.strip():
            name = delta.name
        if delta.arguments:
            arguments.append(delta.arguments)
        self._calls[delta.index] = (call_id, name, arguments)

    def __bool__(self) -> bool:
        return bool(self._calls)

    def build(self) -> list[ToolCallInfo]:
        return [
            ToolCallInfo(id=call_id, name=name, arguments="".join(arguments))
            for _, (call_id, name, arguments) in sorted(self._calls.items())
        ]


def accumulate_tool_deltas(deltas: list[ToolCallDelta]) -> list[ToolCallInfo]:
    accumulator = ToolCallAccumulator()
    for delta in deltas:
        accumulator.add(delta)
    return accumulator.build()


def parse_arguments(raw: str) -> dict[str, Any]:
    """Tool arguments as a mapping; malformed JSON falls back to ``{}``."""
    if not raw or not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Malformed tool arguments, using {}: %s", raw[:200])
        return {}
    return value if isinstance(value, dict) else {}


def format_tool_value(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _brief(info: ProviderInstanceInfo) -> ProviderBriefInfo:
    return ProviderBriefInfo(
        instance_id=info.instance_id,
        provider_id=info.provider_id,
        display_name=info.display_name,
        model=info.model,
        status=info.status.value,
    )


class AgentService:
    def __init__(
        self,
        instances: ProviderInstanceManager,
        *,
        plugins: PluginManager | None = None,
        skills: SkillManager | None = None,
        history: ConversationHistory | None = None,
        settings: Settings | None = None,
        tap_configs: dict[str, TapConfig] | None = None,
    ) -> None:
        self.instances = instances
        self.plugins = plugins or PluginManager()
        self.skills = skills or SkillManager()
        self.history = history or ConversationHistory()
        self.settings = settings or get_settings()
        self.tap_configs = dict(tap_configs or {})
        self.model_info: ModelInfo | None = None
        self._event_listener: EventSink | None = None
        self.plugins.set_context_factory(self._plugin_context)

    # ---------- host wiring ----------

    def set_event_listener(self, listener: EventSink | None) -> None:
        """Receives events that plugins send outside a turn's own sink."""
        self._event_listener = listener

    def publish(self, event: AgentEvent) -> None:
        if self._event_listener is None:
            logger.debug("Dropping %s event: no listener", event.kind.value)
            return
        self._event_listener(event)

    def _sink(self, emit: EventSink | None) -> EventSink:
        return emit if emit is not None else self.publish

    def _plugin_context(self, plugin_id: str) -> ServicePluginContext:
        return ServicePluginContext(self, plugin_id)

    def _active_plugin(self, plugin_id: str) -> Plugin | None:
        if not self.plugins.is_active(plugin_id):
            return None
        return self.plugins.get_plugin(plugin_id)

    def set_model_info(self, info: ModelInfo | None) -> None:
        self.model_info = info
        personality = self.plugins.get_plugin(PersonalityPlugin.manifest.id)
        if isinstance(personality, PersonalityPlugin):
            personality.set_model_info(info)

    # ---------- user turn ----------

    async def handle_input(
        self,
        text: str,
        attachment: Attachment | None = None,
        emit: EventSink | None = None,
    ) -> None:
        """Route ``/name args`` to a command and anything else to the model."""
        parsed = parse_command(text) if attachment is None else None
        if parsed is not None:
            name, args = parsed
            await self.handle_command(name, args, emit)
            return
        await self.handle_user_input(text, attachment, emit)

    async def handle_user_input(
        self,
        text: str,
        attachment: Attachment | None = None,
        emit: EventSink | None = None,
    ) -> None:
        sink = self._sink(emit)
        with log_context(turn_id=short_id(), instance_id=self.instances.llm.primary_id):
            await self._run_turn(text, attachment, sink)

    async def _run_turn(self, text: str, attachment: Attachment | None, emit: EventSink) -> None:
        logger.info(
            "User input: %r%s",
            text[:100],
            f" [attachment: {attachment.type}]" if attachment else "",
        )
        provider = await self.instances.llm.wait_for_primary(
            self.settings.provider_ready_timeout_seconds
        )
        if provider is None:
            detail = self.unavailable_reason()
            logger.warning("No usable provider: %s", detail)
            emit(
                AgentEvent.dialogue(
                    f"[Warning] {detail}. Check LLM provider configuration.", WARNING_MS
                )
            )
            return

        self.history.add_message(self._user_message(text, attachment))
        request = await self.build_request()
        if self._use_stream():
            await self._run_streaming(provider, request, emit)
        else:
            await self._run_non_streaming(provider, request, emit)

    def unavailable_reason(self) -> str:
        table = self.instances.llm
        primary_id = table.primary_id
        if not primary_id:
            return "no primary LLM instance set"
        info = table.get(primary_id)
        if info is None:
            return f"instance {primary_id} not found"
        if not info.enabled:
            return "instance not enabled"
        if info.status is ProviderStatus.ERROR:
            return f"initialization failed: {info.error}"
        if info.status is ProviderStatus.CONNECTING:
            return "still initializing, try again later"
        return f"provider not ready (status={info.status.value})"

    @staticmethod
    def _user_message(text: str, attachment: Attachment | None) -> ChatMessage:
        if attachment is None:
            return ChatMessage(role="user", content=text)
        content = f"{text}\n[Attachment: {attachment.name or attachment.type}]"
        if attachment.type == "image" and attachment.data and attachment.data.strip():
            return ChatMessage(
                role="user",
                content=content,
                attachment=ChatAttachment(
                    type="image",
                    data=attachment.data,
                    mime_type=attachment.source or "image/png",
                    file_name=attachment.name,
                ),
            )
        return ChatMessage(role="user", content=content)

    def _use_stream(self) -> bool:
        if self.settings.llm_stream:
            return True
        config = self.instances.llm.get_config(self.instances.llm.primary_id)
        return config is not None and config.config.extra.get("stream") == "true"

    def _iteration_limit_text(self) -> str:
        return (
            f"[Warning] tool calls exceeded maximum iterations "
            f"({self.settings.max_tool_iterations}), stopped."
        )

    async def _run_streaming(self, provider: LLMProvider, request: LLMRequest, emit: EventSink) -> None:
        started = time.monotonic()
        stream_id = new_id("stream")
        emit(AgentEvent.stream_start(stream_id))
        try:
            for _ in range(self.settings.max_tool_iterations):
                content: list[str] = []
                reasoning: list[str] = []
                calls = ToolCallAccumulator()
                stream_error: str | None = None

                async for chunk in provider.chat_stream(request):
                    if chunk.done:
                        if chunk.delta:
                            stream_error = chunk.delta
                            logger.error("Stream error: %s", chunk.delta)
                        break
                    if chunk.delta:
                        content.append(chunk.delta)
                    if chunk.reasoning_delta is not None:
                        reasoning.append(chunk.reasoning_delta)
                    if chunk.delta or chunk.reasoning_delta is not None:
                        emit(AgentEvent.stream_chunk(stream_id, chunk.delta, chunk.reasoning_delta))
                    for delta in chunk.tool_call_deltas or []:
                        calls.add(delta)

                text = "".join(content)
                if stream_error is not None and not text:
                    error_text = f"[Error] {stream_error}"
                    self.history.add_message(ChatMessage(role="assistant", content=error_text))
                    emit(AgentEvent.stream_end(stream_id, error_text, None, _elapsed_ms(started)))
                    return

                if calls:
                    tool_calls = calls.build()
                    if text.strip():
                        emit(AgentEvent.stream_end(stream_id, text, None, 0))
                    self.history.add_message(
                        ChatMessage(role="assistant", content=text, tool_calls=tool_calls)
                    )
                    for message in await self.execute_tool_calls(tool_calls, emit):
                        self.history.add_message(message)
                    request = await self.build_request()
                    stream_id = new_id("stream")
                    emit(AgentEvent.stream_start(stream_id))
                    continue

                reasoning_text = "".join(reasoning) or None
                duration = _elapsed_ms(started)
                self.history.add_message(
                    ChatMessage(role="assistant", content=text, reasoning_content=reasoning_text)
                )
                emit(AgentEvent.stream_end(stream_id, text, reasoning_text, duration))
                await self._emit_expression(text, duration, emit)
                await self._handle_tts(text, emit)
                return

            emit(AgentEvent.stream_end(stream_id, self._iteration_limit_text(), None, 0))
        except Exception as exc:
            logger.exception("Streaming chat failed")
            emit(
                AgentEvent.stream_end(
                    stream_id, f"[Error] {str(exc) or 'unknown error'}", None, _elapsed_ms(started)
                )
            )

    async def _run_non_streaming(
        self, provider: LLMProvider, request: LLMRequest, emit: EventSink
    ) -> None:
        started = time.monotonic()
        try:
            for _ in range(self.settings.max_tool_iterations):
                response = await provider.chat(request)

                if response.is_error:
                    error_text = f"[Error] {response.text}"
                    logger.error("LLM request failed: %s", response.text)
                    self.history.add_message(ChatMessage(role="assistant", content=error_text))
                    emit(AgentEvent.dialogue(error_text, NOTICE_MS))
                    return

                if response.tool_calls:
                    self.history.add_message(
                        ChatMessage(
                            role="assistant", content=response.text, tool_calls=response.tool_calls
                        )
                    )
                    for message in await self.execute_tool_calls(response.tool_calls, emit):
                        self.history.add_message(message)
                    request = await self.build_request()
                    continue

                duration = max(_elapsed_ms(started), MIN_DIALOGUE_MS)
                self.history.add_message(
                    ChatMessage(
                        role="assistant",
                        content=response.text,
                        reasoning_content=response.reasoning_content,
                    )
                )
                emit(AgentEvent.dialogue(response.text, duration, response.reasoning_content))
                await self._emit_expression(response.text, duration, emit)
                await self._handle_tts(response.text, emit)
                return

            emit(AgentEvent.dialogue(self._iteration_limit_text(), NOTICE_MS))
        except Exception as exc:
            logger.exception("Chat failed")
            emit(AgentEvent.dialogue(f"[Error] {str(exc) or 'unknown error'}", NOTICE_MS))

    # ---------- tools ----------

    async def execute_tool_calls(
        self, tool_calls: list[ToolCallInfo], emit: EventSink
    ) -> list[ChatMessage]:
        """Run calls in order; every call yields exactly one tool message."""
        logger.info(
            "Executing %d tool calls: %s", len(tool_calls), ", ".join(c.name for c in tool_calls)
        )
        messages: list[ChatMessage] = []
        for call in tool_calls:
            if self.skills.is_skill_tool_call(call.name):
                content = await self._execute_skill_call(call, emit)
            else:
                content = await self._execute_plugin_tool(call, emit)
            messages.append(
                ChatMessage(role="tool", content=content, tool_call_id=call.id, tool_name=call.name)
            )
        return messages

    async def _execute_skill_call(self, call: ToolCallInfo, emit: EventSink) -> str:
        context = SkillContext(
            call_provider=self._call_primary,
            execute_tool=self.plugins.execute_tool,
        )
        try:
            result = await self.skills.handle_tool_call(
                call.name, parse_arguments(call.arguments), context
            )
        except Exception as exc:
            logger.warning("Skill %s raised", call.name, exc_info=True)
            return f"skill execution exception: {exc}"
        output = format_tool_value(result.result)
        emit(
            AgentEvent.command_response(
                TOOL_STATUS,
                f"[Skill] {call.name}: {output[:100] if output is not None else result.error}",
                success=result.success,
            )
        )
        return output or result.error or "skill completed"

    async def _execute_plugin_tool(self, call: ToolCallInfo, emit: EventSink) -> str:
        definition = self.plugins.find_tool(call.name)
        if definition is not None and definition.require_confirm:
            emit(
                AgentEvent.command_response(
                    TOOL_STATUS, f"[Awaiting confirmation] tool: {call.name}"
                )
            )
        try:
            result: ToolResult = await self.plugins.execute_tool(
                call.name, parse_arguments(call.arguments)
            )
        except Exception as exc:
            logger.exception("Tool execution failed for '%s'", call.name)
            return f"tool execution exception: {exc}"
        if result.success:
            content = format_tool_value(result.result) or "tool executed successfully (no return value)"
        else:
            content = f"tool execution failed: {result.error or 'unknown error'}"
        emit(
            AgentEvent.command_response(
                TOOL_STATUS, f"[Tool] {call.name}: {content}", success=result.success
            )
        )
        return content

    async def _call_primary(self, request: LLMRequest) -> LLMResponse:
        provider = self.instances.llm.primary_provider()
        if provider is None:
            raise ProviderError("no primary provider")
        return await provider.chat(request)

    # ---------- request building ----------

    async def build_request(self) -> LLMRequest:
        tools = [tool.schema() for tool in self.plugins.get_all_tools()]
        tools += [tool.schema() for tool in self.skills.to_tool_definitions()]
        messages = self.history.get_history(self.settings.llm_max_history)
        memory = self._active_plugin(MemoryPlugin.manifest.id)
        if isinstance(memory, MemoryPlugin):
            try:
                messages = await memory.build_context_messages(
                    self.history.current_conversation_id, messages
                )
            except Exception:
                logger.warning("Memory compression failed, using raw history", exc_info=True)
        return LLMRequest(
            messages=messages,
            system_prompt=self.build_system_prompt(),
            temperature=self.settings.llm_temperature,
            max_tokens=self.settings.llm_max_tokens,
            tools=tools or None,
            tool_choice="auto" if tools else None,
        )

    def build_system_prompt(self) -> str:
        settings = self.settings
        if settings.llm_system_prompt.strip():
            return settings.llm_system_prompt
        personality = self._active_plugin(PersonalityPlugin.manifest.id)
        if isinstance(personality, PersonalityPlugin):
            tools = self.plugins.get_all_tools()
            if tools:
                personality.set_tools_hint(
                    "\n".join(f"- {tool.name}: {tool.description}" for tool in tools)
                )
            return personality.build_system_prompt(
                use_custom=settings.use_custom_character,
                custom_name=settings.custom_name,
                custom_personality=settings.custom_personality,
            )
        custom = settings.use_custom_character
        name = settings.custom_name if custom and settings.custom_name.strip() else "Nya"
        persona = (
            settings.custom_personality
            if custom and settings.custom_personality.strip()
            else "lively, gentle, a little mischievous"
        )
        return (
            f"You are {name}, a cute desktop pet catgirl. Your personality is {persona}. "
            "Keep replies short and natural. Do not use Markdown."
        )

    # ---------- side channels ----------

    async def _emit_expression(self, text: str, duration: int, emit: EventSink) -> None:
        plugin = self._active_plugin(ExpressionPlugin.manifest.id)
        if not isinstance(plugin, ExpressionPlugin) or not plugin.is_enabled():
            return
        try:
            commands = await plugin.generate_expression(text, self.model_info)
        except Exception:
            logger.warning("Expression generation failed (non-fatal)", exc_info=True)
            return
        if not commands:
            return
        actions = [command.to_dict() for command in commands]
        actions.append({"type": "dialogue", "text": text, "duration": duration})
        emit(AgentEvent.sync_command(actions))

    async def _handle_tts(self, text: str, emit: EventSink) -> None:
        if not text.strip():
            return
        table = self.instances.tts
        if not table.primary_id:
            return
        config = table.get_config(table.primary_id)
        if config is None or not config.enabled:
            return
        audio_format = config.config.extra.get("format") or "mp3"
        try:
            provider = await table.ensure_connected(table.primary_id)
            if provider is None:
                return
            response = await provider.synthesize(
                TTSRequest(
                    text=text,
                    voice_id=config.config.extra.get("voiceId"),
                    format=audio_format,
                )
            )
        except Exception:
            logger.warning("TTS synthesis failed (non-fatal)", exc_info=True)
            return
        emit(AgentEvent.audio_start(audio_format_to_mime_type(audio_format), text))
        emit(AgentEvent.audio_chunk(response.audio_base64, 0))
        emit(AgentEvent.audio_end())

    # ---------- commands and taps ----------

    async def handle_command(self, name: str, args: str = "", emit: EventSink | None = None) -> None:
        sink = self._sink(emit)
        handler = self.plugins.get_command_handler(name)
        if handler is None:
            sink(
                AgentEvent.command_response(
                    name,
                    "",
                    success=False,
                    error=f"Unknown command: /{name}. Type /help to see available commands.",
                )
            )
            return
        try:
            result = await handler(args)
        except Exception as exc:
            logger.warning("Command /%s failed", name, exc_info=True)
            sink(
                AgentEvent.command_response(
                    name, "", success=False, error=str(exc) or "command failed"
                )
            )
            return
        sink(AgentEvent.command_response(name, result))

    async def handle_tap_event(self, hit_area: str, emit: EventSink | None = None) -> None:
        sink = self._sink(emit)
        tap = self.tap_configs.get(hit_area)
        if tap is not None and tap.enabled:
            if tap.expression.strip():
                sink(AgentEvent.live2d(Live2DCommand("expression", expression_id=tap.expression).to_dict()))
            if tap.motion.strip():
                group, _, index = tap.motion.partition("/")
                sink(
                    AgentEvent.live2d(
                        Live2DCommand(
                            "motion",
                            group=group,
                            index=int(index) if index.isdigit() else 0,
                            priority=2,
                        ).to_dict()
                    )
                )
            return
        await self.handle_user_input(f"(user touched {hit_area} area)", None, emit)

    def get_command_definitions(self) -> list[CommandDefinition]:
        return self.plugins.get_command_definitions()

    # ---------- conversations ----------

    def new_conversation(self) -> str:
        return self.history.new_conversation()

    def switch_conversation(self, conversation_id: str) -> bool:
        return self.history.switch_conversation(conversation_id)

    def delete_conversation(self, conversation_id: str) -> bool:
        return self.history.delete_conversation(conversation_id)

    def clear_history(self) -> None:
        self.history.clear_current_history()

    async def close(self) -> None:
        await self.instances.close()


class ServicePluginContext:
    """`PluginContext` bound to one plugin id and backed by an `AgentService`."""

    def __init__(self, service: AgentService, plugin_id: str) -> None:
        self._service = service
        self.plugin_id = plugin_id
        self._log = logging.getLogger(f"nyaagent.plugin.{plugin_id}")

    def get_config(self) -> dict[str, Any]:
        return self._service.plugins.get_plugin_config(self.plugin_id)

    def save_config(self, config: dict[str, Any]) -> None:
        self._service.plugins.save_plugin_config(self.plugin_id, config)

    async def send_dialogue(self, text: str, duration: int = NOTICE_MS) -> None:
        self._service.publish(AgentEvent.dialogue(text, duration))

    async def send_live2d_command(self, command: Live2DCommand) -> None:
        self._service.publish(AgentEvent.live2d(command.to_dict()))

    async def send_system_message(self, text: str) -> None:
        self._service.publish(AgentEvent.system(text))

    def get_plugin(self, plugin_id: str) -> Plugin | None:
        return self._service.plugins.get_plugin(plugin_id)

    def register_command(self, name: str, description: str, handler: CommandHandler) -> None:
        self._service.plugins.register_command(name, description, handler, source=self.plugin_id)

    def unregister_command(self, name: str) -> None:
        self._service.plugins.unregister_command(name)

    def clear_conversation_history(self) -> None:
        self._service.history.clear_current_history()

    def get_conversation_history(self) -> list[tuple[str, str]]:
        messages = self._service.history.get_history(self._service.settings.llm_max_history)
        return [(message.role, message.content) for message in messages]

    def add_message_to_history(self, message: ChatMessage) -> None:
        self._service.history.add_message(message)

    def current_conversation_id(self) -> str:
        return self._service.history.current_conversation_id

    def get_primary_provider_info(self) -> ProviderBriefInfo | None:
        table = self._service.instances.llm
        info = table.get(table.primary_id) if table.primary_id else None
        return _brief(info) if info is not None else None

    def get_all_providers(self) -> list[ProviderBriefInfo]:
        return [_brief(info) for info in self._service.instances.llm.list()]

    def _resolve(self, instance_id: str) -> str:
        return self._service.instances.llm.primary_id if instance_id == PRIMARY else instance_id

    async def call_provider(self, instance_id: str, request: LLMRequest) -> LLMResponse:
        target = self._resolve(instance_id)
        table = self._service.instances.llm
        if target not in table:
            raise ProviderError(f"provider instance not found: {target}", retryable=False)
        provider = table.get_provider(target)
        if provider is None:
            raise ProviderError(f"provider not initialized: {target}")
        return await provider.chat(request)

    def get_provider_config(self, instance_id: str) -> ProviderConfig | None:
        config = self._service.instances.llm.get_config(self._resolve(instance_id))
        return config.config if config is not None else None

    def get_all_command_definitions(self) -> list[tuple[str, str]]:
        return [(c.name, c.description) for c in self._service.plugins.get_command_definitions()]

    def get_model_info(self) -> ModelInfo | None:
        return self._service.model_info

    def log_info(self, message: str) -> None:
        self._log.info("[%s] %s", self.plugin_id, message)

    def log_warn(self, message: str) -> None:
        self._log.warning("[%s] %s", self.plugin_id, message)

    def log_error(self, message: str) -> None:
        self._log.error("[%s] %s", self.plugin_id, message)


def build_agent_service(
    instances: ProviderInstanceManager,
    *,
    settings: Settings | None = None,
    tap_configs: dict[str, TapConfig] | None = None,
    with_builtins: bool = True,
) -> AgentService:
    """An `AgentService` with the built-in plugins activated in dependency order."""
    service = AgentService(instances, settings=settings, tap_configs=tap_configs)
    if with_builtins:
        for plugin in builtin_plugins():
            service.plugins.register(plugin, activate=False)
        statuses = service.plugins.activate_all()
        logger.info("Plugins: %s", {pid: status.value for pid, status in statuses.items()})
    return service

"""Memory plugin: compresses older history into a running summary."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from nyaagent.plugins.base import (
    ConfigFieldDef,
    ConfigFieldType,
    Plugin,
    PluginCapability,
    PluginConfigSchema,
    PluginManifest,
)
from nyaagent.providers.base import ChatMessage, LLMRequest
from nyaagent.tools.registry import ToolRegistry, ToolResult

COMPRESSION_PROMPT = """Compress the conversation history below into one concise summary. Keep the \
key information (user preferences, important facts, topics) and drop small talk and repetition. \
Write in the third person, in at most 300 words.

Conversation history:
{history}

Summary:"""

COMPRESSION_SYSTEM_PROMPT = "You summarize conversations concisely and accurately."

SUMMARY_PREFIX = "[Conversation summary]\n"


@dataclass(slots=True)
class SessionMemory:
    summary: str | None = None
    last_compression_at: int = 0
    compression_count: int = 0


def estimate_tokens(messages: list[ChatMessage]) -> int:
    return int(sum(len(message.content) for message in messages) * 1.5)


class MemoryPlugin(Plugin):
    manifest = PluginManifest(
        id="builtin.memory",
        name="Memory",
        author="NyaDeskPet",
        description="Per-session context window with automatic summary compression",
        capabilities=(PluginCapability.TOOL,),
        dependencies=("builtin.personality",),
    )
    config_schema = PluginConfigSchema(
        fields=(
            ConfigFieldDef(
                key="recentMessageCount",
                type=ConfigFieldType.INT,
                description="Number of recent messages kept verbatim.",
                default=10,
            ),
            ConfigFieldDef(
                key="compressionThreshold",
                type=ConfigFieldType.INT,
                description="Message count above which older history is compressed.",
                default=20,
            ),
            ConfigFieldDef(
                key="maxTokenEstimate",
                type=ConfigFieldType.INT,
                description="Estimated token count above which history is compressed.",
                default=4000,
            ),
            ConfigFieldDef(
                key="compressionMaxTokens",
                type=ConfigFieldType.INT,
                description="Max tokens for the summary reply.",
                default=500,
            ),
        )
    )

    def __init__(self) -> None:
        self.recent_message_count = 10
        self.compression_threshold = 20
        self.max_token_estimate = 4000
        self.compression_max_tokens = 500
        self.sessions: dict[str, SessionMemory] = {}
        super().__init__()

    def on_config_changed(self, config: dict[str, Any]) -> None:
        values = self.resolve_config(config)
        self.recent_message_count = values["recentMessageCount"]
        self.compression_threshold = values["compressionThreshold"]
        self.max_token_estimate = values["maxTokenEstimate"]
        self.compression_max_tokens = values["compressionMaxTokens"]

    def on_unload(self) -> None:
        self.sessions.clear()
        super().on_unload()

    def register_tools(self, registry: ToolRegistry) -> None:
        registry.register(
            "clear_memory",
            "Clear the summarized memory of a session. The pet forgets earlier summaries.",
            self._clear_memory,
            parameters={
                "type": "object",
                "properties": {
                    "sessionId": {
                        "type": "string",
                        "description": "Session id to clear (defaults to the current session)",
                    },
                },
            },
        )
        registry.register(
            "view_memory_stats",
            "Show memory statistics: active sessions and compression count.",
            self._view_stats,
        )

    async def _clear_memory(self, arguments: dict[str, Any]) -> ToolResult:
        session_id = arguments.get("sessionId")
        if not isinstance(session_id, str) or not session_id:
            session_id = self.context.current_conversation_id() if self.context else "default"
        self.clear_session(session_id)
        return ToolResult(success=True, result=f"Memory summary of session {session_id} cleared")

    async def _view_stats(self, _arguments: dict[str, Any]) -> ToolResult:
        sessions, compressions = self.stats()
        return ToolResult(
            success=True,
            result=f"Memory stats: {sessions} active sessions, {compressions} compressions",
        )

    def clear_session(self, session_id: str) -> None:
        self.sessions.pop(session_id, None)

    def get_summary(self, session_id: str) -> str | None:
        memory = self.sessions.get(session_id)
        return memory.summary if memory else None

    def set_summary(self, session_id: str, summary: str) -> None:
        self.sessions.setdefault(session_id, SessionMemory()).summary = summary

    def stats(self) -> tuple[int, int]:
        return len(self.sessions), sum(m.compression_count for m in self.sessions.values())

    def should_compress(self, history: list[ChatMessage], memory: SessionMemory) -> bool:
        total = len(history)
        if total > self.compression_threshold:
            if total - memory.last_compression_at >= self.recent_message_count:
                return True
        return estimate_tokens(history) > self.max_token_estimate

    async def build_context_messages(
        self,
        session_id: str,
        history: list[ChatMessage],
    ) -> list[ChatMessage]:
        """Summary (if any) as a system message followed by the recent messages."""
        memory = self.sessions.setdefault(session_id, SessionMemory())
        if self.should_compress(history, memory):
            await self._compress(session_id, history, memory)
        messages: list[ChatMessage] = []
        if memory.summary:
            messages.append(ChatMessage(role="system", content=SUMMARY_PREFIX + memory.summary))
        recent = history[-self.recent_message_count :] if self.recent_message_count > 0 else []
        # a tool result must follow the assistant message that requested it
        while recent and recent[0].role == "tool":
            recent = recent[1:]
        messages.extend(recent)
        return messages

    async def _compress(
        self,
        session_id: str,
        history: list[ChatMessage],
        memory: SessionMemory,
    ) -> None:
        context = self.context
        if context is None or len(history) <= self.recent_message_count:
            return
        older = history[: len(history) - self.recent_message_count]
        text = "\n".join(f"[{m.role}]: {m.content}" for m in older)
        if memory.summary:
            text = f"[Previous summary]: {memory.summary}\n\n[New conversation]:\n{text}"
        request = LLMRequest(
            messages=[ChatMessage(role="user", content=COMPRESSION_PROMPT.replace("{history}", text))],
            system_prompt=COMPRESSION_SYSTEM_PROMPT,
            max_tokens=self.compression_max_tokens,
        )
        try:
            response = await context.call_provider("primary", request)
        except Exception as exc:
            context.log_warn(f"compression failed: {exc}")
            return
        if response.is_error or not response.text.strip():
            context.log_warn(f"compression returned no summary: {response.text}")
            return
        memory.summary = response.text
        memory.last_compression_at = len(history)
        memory.compression_count += 1
        context.log_info(
            f"session {session_id} compressed ({memory.compression_count}), "
            f"summary {len(response.text)} chars"
        )

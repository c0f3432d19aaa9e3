"""In-memory conversation history with multiple conversations."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from nyaagent.ids import new_id
from nyaagent.providers.base import ChatMessage

TITLE_LENGTH = 50


@dataclass(slots=True)
class Conversation:
    id: str
    title: str = ""
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)


class ConversationHistory:
    """Append/read store used by the agent loop; storage is left to callers."""

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[ChatMessage]] = {}
        self._current_id = ""
        self.new_conversation()

    @property
    def current_conversation_id(self) -> str:
        return self._current_id

    def conversations(self) -> list[Conversation]:
        return list(self._conversations.values())

    def get_history(self, max_count: int = 50) -> list[ChatMessage]:
        messages = self._messages.get(self._current_id, [])
        if max_count <= 0:
            return []
        return list(messages[-max_count:])

    def get_messages(self, conversation_id: str) -> list[ChatMessage]:
        return list(self._messages.get(conversation_id, []))

    def add_message(self, message: ChatMessage) -> None:
        conversation = self._conversations[self._current_id]
        self._messages.setdefault(self._current_id, []).append(message)
        if message.role == "user" and not conversation.title.strip():
            title = message.content[:TITLE_LENGTH]
            if len(message.content) > TITLE_LENGTH:
                title += "..."
            conversation.title = title
        conversation.updated_at = time.time()

    def new_conversation(self) -> str:
        conversation = Conversation(id=new_id("conv"))
        self._conversations[conversation.id] = conversation
        self._messages[conversation.id] = []
        self._current_id = conversation.id
        return conversation.id

    def switch_conversation(self, conversation_id: str) -> bool:
        if conversation_id not in self._conversations:
            return False
        self._current_id = conversation_id
        return True

    def delete_conversation(self, conversation_id: str) -> bool:
        if self._conversations.pop(conversation_id, None) is None:
            return False
        self._messages.pop(conversation_id, None)
        if self._current_id == conversation_id:
            if self._conversations:
                self._current_id = next(reversed(self._conversations))
            else:
                self.new_conversation()
        return True

    def clear_current_history(self) -> None:
        self._messages[self._current_id] = []

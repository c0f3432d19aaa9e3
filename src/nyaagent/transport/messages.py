"""Typed push messages exchanged with a remote agent backend."""

from __future__ import annotations

import time
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from nyaagent.agent.events import AgentEvent, EventKind

DIALOGUE = "dialogue"
DIALOGUE_STREAM_START = "dialogue_stream_start"
DIALOGUE_STREAM_CHUNK = "dialogue_stream_chunk"
DIALOGUE_STREAM_END = "dialogue_stream_end"
LIVE2D = "live2d"
SYNC_COMMAND = "sync_command"
AUDIO_STREAM_START = "audio_stream_start"
AUDIO_CHUNK = "audio_chunk"
AUDIO_STREAM_END = "audio_stream_end"
TOOL_CONFIRM = "tool_confirm"
TOOL_STATUS = "tool_status"
COMMANDS_REGISTER = "commands_register"
COMMAND_RESPONSE = "command_response"
SYSTEM = "system"

# Message types that open or continue a prioritized response.
INTERRUPTIBLE_TYPES = frozenset(
    {DIALOGUE, DIALOGUE_STREAM_START, AUDIO_STREAM_START, SYNC_COMMAND, LIVE2D}
)


class MessageAttachment(BaseModel):
    type: str
    url: str | None = None
    data: str | None = None
    source: str | None = None
    name: str | None = None


class BackendMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str
    data: Any = None
    text: str | None = None
    timestamp: int | None = None
    response_id: str | None = Field(default=None, alias="responseId")
    priority: int | None = None
    attachment: MessageAttachment | None = None

    @property
    def is_interruptible(self) -> bool:
        return self.type in INTERRUPTIBLE_TYPES

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_event(
        cls,
        event: AgentEvent,
        *,
        response_id: str | None = None,
        priority: int | None = None,
    ) -> BackendMessage:
        """Wire form of an agent event as a backend would push it."""
        message_type, data, text = _EVENT_ENCODERS[event.kind](event)
        return cls(
            type=message_type,
            data=data,
            text=text,
            timestamp=int(time.time() * 1000),
            response_id=response_id,
            priority=priority,
        )


def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}


def _live2d_data(event: AgentEvent) -> dict[str, Any]:
    payload = dict(event.payload or {})
    payload["command"] = payload.pop("type", event.command)
    return payload


_EVENT_ENCODERS = {
    EventKind.DIALOGUE_COMPLETE: lambda e: (
        DIALOGUE,
        _drop_none({"text": e.text, "duration": e.duration, "reasoningContent": e.reasoning}),
        None,
    ),
    EventKind.STREAM_START: lambda e: (DIALOGUE_STREAM_START, {"streamId": e.stream_id}, None),
    EventKind.STREAM_CHUNK: lambda e: (
        DIALOGUE_STREAM_CHUNK,
        _drop_none({"streamId": e.stream_id, "delta": e.delta, "reasoningDelta": e.reasoning_delta}),
        None,
    ),
    EventKind.STREAM_END: lambda e: (
        DIALOGUE_STREAM_END,
        _drop_none({"streamId": e.stream_id, "fullText": e.text, "duration": e.duration}),
        None,
    ),
    EventKind.LIVE2D: lambda e: (LIVE2D, _live2d_data(e), None),
    EventKind.SYNC_COMMAND: lambda e: (SYNC_COMMAND, {"actions": e.actions or []}, None),
    EventKind.AUDIO_START: lambda e: (
        AUDIO_STREAM_START,
        _drop_none({"mimeType": e.mime_type, "text": e.text}),
        None,
    ),
    EventKind.AUDIO_CHUNK: lambda e: (AUDIO_CHUNK, {"chunk": e.chunk, "sequence": e.sequence}, None),
    EventKind.AUDIO_END: lambda e: (AUDIO_STREAM_END, {"complete": True}, None),
    EventKind.COMMAND_RESPONSE: lambda e: (
        COMMAND_RESPONSE,
        _drop_none(
            {"command": e.command, "success": bool(e.success), "text": e.text, "error": e.error}
        ),
        None,
    ),
    EventKind.SYSTEM: lambda e: (SYSTEM, None, e.text),
}

"""Outbound agent events: one flat, serializable model discriminated by kind."""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventKind(str, Enum):
    DIALOGUE_COMPLETE = "dialogue_complete"
    STREAM_START = "stream_start"
    STREAM_CHUNK = "stream_chunk"
    STREAM_END = "stream_end"
    LIVE2D = "live2d"
    SYNC_COMMAND = "sync_command"
    AUDIO_START = "audio_start"
    AUDIO_CHUNK = "audio_chunk"
    AUDIO_END = "audio_end"
    COMMAND_RESPONSE = "command_response"
    SYSTEM = "system"


class AgentEvent(BaseModel):
    """Only the fields meaningful for ``kind`` are set; the rest stay None."""

    kind: EventKind
    text: str | None = None
    duration: int | None = None
    reasoning: str | None = None
    stream_id: str | None = None
    delta: str | None = None
    reasoning_delta: str | None = None
    command: str | None = None
    success: bool | None = None
    error: str | None = None
    actions: list[dict[str, Any]] | None = None
    payload: dict[str, Any] | None = None
    mime_type: str | None = None
    chunk: str | None = None
    sequence: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def dialogue(cls, text: str, duration: int = 5000, reasoning: str | None = None) -> AgentEvent:
        return cls(
            kind=EventKind.DIALOGUE_COMPLETE, text=text, duration=duration, reasoning=reasoning
        )

    @classmethod
    def stream_start(cls, stream_id: str) -> AgentEvent:
        return cls(kind=EventKind.STREAM_START, stream_id=stream_id)

    @classmethod
    def stream_chunk(
        cls, stream_id: str, delta: str, reasoning_delta: str | None = None
    ) -> AgentEvent:
        return cls(
            kind=EventKind.STREAM_CHUNK,
            stream_id=stream_id,
            delta=delta,
            reasoning_delta=reasoning_delta,
        )

    @classmethod
    def stream_end(
        cls,
        stream_id: str,
        text: str,
        reasoning: str | None = None,
        duration: int = 0,
    ) -> AgentEvent:
        return cls(
            kind=EventKind.STREAM_END,
            stream_id=stream_id,
            text=text,
            reasoning=reasoning,
            duration=duration,
        )

    @classmethod
    def live2d(cls, command: dict[str, Any]) -> AgentEvent:
        return cls(kind=EventKind.LIVE2D, command=command.get("type"), payload=command)

    @classmethod
    def sync_command(cls, actions: list[dict[str, Any]]) -> AgentEvent:
        return cls(kind=EventKind.SYNC_COMMAND, actions=actions)

    @classmethod
    def audio_start(cls, mime_type: str, text: str | None = None) -> AgentEvent:
        return cls(kind=EventKind.AUDIO_START, mime_type=mime_type, text=text)

    @classmethod
    def audio_chunk(cls, chunk: str, sequence: int) -> AgentEvent:
        return cls(kind=EventKind.AUDIO_CHUNK, chunk=chunk, sequence=sequence)

    @classmethod
    def audio_end(cls) -> AgentEvent:
        return cls(kind=EventKind.AUDIO_END)

    @classmethod
    def command_response(
        cls,
        command: str,
        text: str,
        success: bool = True,
        error: str | None = None,
    ) -> AgentEvent:
        return cls(
            kind=EventKind.COMMAND_RESPONSE,
            command=command,
            text=text,
            success=success,
            error=error,
        )

    @classmethod
    def system(cls, text: str) -> AgentEvent:
        return cls(kind=EventKind.SYSTEM, text=text)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


EventSink = Callable[[AgentEvent], None]

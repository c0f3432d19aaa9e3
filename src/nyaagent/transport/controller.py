"""Arbitration between concurrently pushed response sessions.

Every inbound interruptible message names a ``response_id`` and a priority.
At most one session is current; a new session with higher or equal priority
interrupts it (audio stopped, dialogue hidden) in the same call that accepts
the newcomer, and a lower-priority session is discarded. All methods are
synchronous so a decision can never be observed half-applied.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)


class AudioPlayer(Protocol):
    def stop(self) -> None: ...


class DialogueSurface(Protocol):
    def hide(self) -> None: ...


@dataclass(slots=True, frozen=True)
class ResponseSession:
    response_id: str
    priority: int
    has_active_audio: bool = False


class ResponseController:
    def __init__(
        self,
        audio_player: AudioPlayer | None = None,
        dialogue: DialogueSurface | None = None,
    ) -> None:
        self.audio_player = audio_player
        self.dialogue = dialogue
        self._current: ResponseSession | None = None
        self._discarded: set[str] = set()

    @property
    def current(self) -> ResponseSession | None:
        return self._current

    @property
    def discarded_ids(self) -> frozenset[str]:
        return frozenset(self._discarded)

    def should_accept(self, response_id: str, priority: int = 0) -> bool:
        current = self._current
        if current is not None and current.response_id == response_id:
            self._current = ResponseSession(response_id, priority, current.has_active_audio)
            return True
        if current is not None and priority < current.priority:
            logger.debug("Discarding response %s (priority %d)", response_id, priority)
            self._discarded.add(response_id)
            return False
        if current is not None:
            logger.info(
                "Response %s (priority %d) interrupts %s (priority %d)",
                response_id,
                priority,
                current.response_id,
                current.priority,
            )
            self.interrupt_current()
        # an id discarded earlier may come back once nothing outranks it
        self._discarded.discard(response_id)
        self._current = ResponseSession(response_id, priority)
        return True

    def mark_audio_active(self) -> None:
        if self._current is not None:
            self._current = ResponseSession(
                self._current.response_id, self._current.priority, has_active_audio=True
            )

    def notify_complete(self, response_id: str) -> None:
        if self._current is not None and self._current.response_id == response_id:
            self._current = None
        self._discarded.discard(response_id)

    def interrupt_current(self) -> None:
        """Stop the current session's side effects and drop it."""
        session = self._current
        if session is None:
            return
        if session.has_active_audio and self.audio_player is not None:
            self.audio_player.stop()
        if self.dialogue is not None:
            self.dialogue.hide()
        self._discarded.add(session.response_id)
        self._current = None

"""Routes inbound backend messages through the response controller."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from nyaagent.transport.controller import ResponseController
from nyaagent.transport.messages import (
    AUDIO_STREAM_END,
    AUDIO_STREAM_START,
    DIALOGUE,
    DIALOGUE_STREAM_END,
    BackendMessage,
)

logger = logging.getLogger(__name__)

MessageHandler = Callable[[BackendMessage], None]

_COMPLETING_TYPES = frozenset({DIALOGUE, DIALOGUE_STREAM_END, AUDIO_STREAM_END})


class MessageDispatcher:
    def __init__(self, controller: ResponseController | None = None) -> None:
        self.controller = controller or ResponseController()
        self._handlers: dict[str, list[MessageHandler]] = {}

    def on(self, message_type: str, handler: MessageHandler) -> None:
        self._handlers.setdefault(message_type, []).append(handler)

    def off(self, message_type: str, handler: MessageHandler) -> None:
        handlers = self._handlers.get(message_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def dispatch_raw(self, raw: str | bytes) -> bool:
        try:
            message = BackendMessage.model_validate_json(raw)
        except ValidationError:
            logger.warning("Dropping malformed backend message", exc_info=True)
            return False
        return self.dispatch(message)

    def dispatch(self, message: BackendMessage | dict[str, Any]) -> bool:
        """Deliver ``message`` to its handlers; False when it was filtered out."""
        if isinstance(message, dict):
            try:
                message = BackendMessage.model_validate(message)
            except ValidationError:
                logger.warning("Dropping malformed backend message", exc_info=True)
                return False
        response_id = message.response_id

        if response_id is not None:
            if message.is_interruptible:
                accepted = self.controller.should_accept(response_id, message.priority or 0)
            else:
                accepted = response_id not in self.controller.discarded_ids
            if not accepted:
                # the end of a filtered session still releases its id
                if message.type in _COMPLETING_TYPES:
                    self.controller.notify_complete(response_id)
                return False
        if response_id is not None and message.type == AUDIO_STREAM_START:
            self.controller.mark_audio_active()

        handlers = list(self._handlers.get(message.type, []))
        if not handlers:
            logger.debug("No handler for message type %s", message.type)
        for handler in handlers:
            try:
                handler(message)
            except Exception:
                logger.warning("Handler for %s failed", message.type, exc_info=True)

        if response_id is not None and message.type in _COMPLETING_TYPES:
            self.controller.notify_complete(response_id)
        return True

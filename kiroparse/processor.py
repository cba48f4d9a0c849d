"""Dispatch of decoded event stream messages to their event handlers."""

from __future__ import annotations

import json
import logging
from typing import Any

from kiroparse.aggregator import StreamingJSONAggregator
from kiroparse.events import EventStreamMessage, EventType, MessageType, SSEEvent
from kiroparse.handlers import (
    AssistantResponseEventHandler,
    CompletionChunkEventHandler,
    CompletionEventHandler,
    EventHandler,
    LegacyToolUseEventHandler,
    SessionEndHandler,
    SessionStartHandler,
    ToolCallErrorHandler,
    ToolCallRequestHandler,
)
from kiroparse.session import SessionManager
from kiroparse.tools import ToolLifecycleManager

logger = logging.getLogger(__name__)

_PREVIEW_LENGTH = 100


def _decode_payload(payload: bytes) -> dict[str, Any] | None:
    """Decode an error or exception payload; None when it is empty or ``null``."""
    if not payload:
        return None
    try:
        data = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as exc:
        logger.warning("could not parse error payload: %s", exc)
        return {"message": payload.decode("utf-8", errors="replace")}
    if data is None:
        return None
    if not isinstance(data, dict):
        logger.warning("error payload is not a JSON object")
        return {"message": payload.decode("utf-8", errors="replace")}
    return data


def _string(data: dict[str, Any] | None, key: str) -> str:
    if data is None:
        return ""
    value = data.get(key)
    return value if isinstance(value, str) else ""


class CompliantMessageProcessor:
    """Turns event stream messages into SSE events, keeping session and tool state."""

    def __init__(self) -> None:
        self.session_manager = SessionManager()
        self.tool_manager = ToolLifecycleManager()
        self._completion_buffer: list[str] = []
        self.aggregator = StreamingJSONAggregator(
            self.tool_manager.update_tool_arguments_from_json
        )
        self._handlers: dict[str, EventHandler] = {
            EventType.COMPLETION.value: CompletionEventHandler(),
            EventType.COMPLETION_CHUNK.value: CompletionChunkEventHandler(
                self._completion_buffer
            ),
            EventType.TOOL_CALL_REQUEST.value: ToolCallRequestHandler(self.tool_manager),
            EventType.TOOL_CALL_ERROR.value: ToolCallErrorHandler(self.tool_manager),
            EventType.SESSION_START.value: SessionStartHandler(self.session_manager),
            EventType.SESSION_END.value: SessionEndHandler(self.session_manager),
            EventType.ASSISTANT_RESPONSE_EVENT.value: AssistantResponseEventHandler(
                self.tool_manager
            ),
            EventType.TOOL_USE_EVENT.value: LegacyToolUseEventHandler(
                self.tool_manager, self.aggregator
            ),
        }

    def reset(self) -> None:
        """Start a fresh session and forget tools and collected completion text."""
        self.session_manager.reset()
        self.tool_manager.reset()
        self._completion_buffer.clear()

    def process_message(self, message: EventStreamMessage) -> list[SSEEvent]:
        """Return the SSE events for one message.

        Raises ParseError when the handler for the event cannot read its payload.
        """
        message_type = message.message_type()
        event_type = message.event_type()
        logger.debug(
            "processing %s/%s message (%d bytes): %r",
            message_type,
            event_type,
            len(message.payload),
            message.payload[:_PREVIEW_LENGTH],
        )

        if message_type == MessageType.EVENT.value:
            handler = self._handlers.get(event_type)
            if handler is None:
                logger.debug(
                    "unknown event type %r, known: %s", event_type, sorted(self._handlers)
                )
                return []
            return handler.handle(message)
        if message_type == MessageType.ERROR.value:
            data = _decode_payload(message.payload)
            return [
                SSEEvent(
                    "error",
                    {
                        "type": "error",
                        "error_code": _string(data, "__type"),
                        "error_message": _string(data, "message"),
                        "raw_data": data,
                    },
                )
            ]
        if message_type == MessageType.EXCEPTION.value:
            data = _decode_payload(message.payload)
            return [
                SSEEvent(
                    "exception",
                    {
                        "type": "exception",
                        "exception_type": _string(data, "__type"),
                        "exception_message": _string(data, "message"),
                        "raw_data": data,
                    },
                )
            ]
        logger.warning("unknown message type %r", message_type)
        return []

    def completion_text(self) -> str:
        """The content of all completion chunks seen so far, joined."""
        return "".join(self._completion_buffer)
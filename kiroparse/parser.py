"""Full event stream parsing: binary decoding, event handling and summaries."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from kiroparse.events import (
    EventStreamMessage,
    EventType,
    MessageType,
    ParseError,
    SessionInfo,
    SSEEvent,
    ToolExecution,
)
from kiroparse.processor import CompliantMessageProcessor
from kiroparse.stream import RobustEventStreamParser, TooManyErrorsError
from kiroparse.tools import ToolLifecycleManager

logger = logging.getLogger(__name__)

_TOOL_EVENT_TYPES = {EventType.TOOL_CALL_REQUEST.value, EventType.TOOL_CALL_ERROR.value}
_COMPLETION_EVENT_TYPES = {
    EventType.COMPLETION.value,
    EventType.COMPLETION_CHUNK.value,
    EventType.ASSISTANT_RESPONSE_EVENT.value,
}
_SESSION_EVENT_TYPES = {EventType.SESSION_START.value, EventType.SESSION_END.value}
_ERROR_MESSAGE_TYPES = {MessageType.ERROR.value, MessageType.EXCEPTION.value}
_CONTENT_BLOCK_EVENTS = {"content_block_start", "content_block_stop", "content_block_delta"}


@dataclass
class ParseSummary:
    """Counts and flags describing a parsed response."""

    total_messages: int = 0
    total_events: int = 0
    message_types: dict[str, int] = field(default_factory=dict)
    event_types: dict[str, int] = field(default_factory=dict)
    has_tool_calls: bool = False
    has_completions: bool = False
    has_errors: bool = False
    has_session_events: bool = False
    tool_summary: dict[str, Any] = field(default_factory=dict)


@dataclass
class ParseResult:
    """Everything produced by parsing a complete response."""

    messages: list[EventStreamMessage]
    events: list[SSEEvent]
    tool_executions: dict[str, ToolExecution]
    active_tools: dict[str, ToolExecution]
    session_info: SessionInfo
    summary: ParseSummary
    errors: list[Exception] = field(default_factory=list)

    def completion_text(self) -> str:
        """The text of all text deltas, joined in order."""
        parts: list[str] = []
        for event in self.events:
            if event.event != "content_block_delta" or not isinstance(event.data, dict):
                continue
            delta = event.data.get("delta")
            if isinstance(delta, dict) and isinstance(delta.get("text"), str):
                parts.append(delta["text"])
        return "".join(parts)

    def tool_calls(self) -> list[ToolExecution]:
        """Finished tool executions followed by active ones."""
        return [*self.tool_executions.values(), *self.active_tools.values()]


def _is_tool_use_block(event: SSEEvent) -> bool:
    if event.event not in _CONTENT_BLOCK_EVENTS or not isinstance(event.data, dict):
        return False
    block = event.data.get("content_block")
    return isinstance(block, dict) and block.get("type") == "tool_use"


class CompliantEventStreamParser:
    """Decodes a binary event stream and turns its messages into SSE events."""

    def __init__(self) -> None:
        self._stream = RobustEventStreamParser()
        self._processor = CompliantMessageProcessor()

    def set_max_errors(self, max_errors: int) -> None:
        """Set how many decoding errors are tolerated before decoding stops."""
        self._stream.max_errors = max_errors

    def reset(self) -> None:
        """Drop buffered bytes and all session and tool state."""
        self._stream.reset()
        self._processor.reset()

    def parse_response(self, stream_data: bytes) -> ParseResult:
        """Parse a whole response; messages that fail are reported in ``errors``."""
        messages = self._decode(stream_data)
        events: list[SSEEvent] = []
        errors: list[Exception] = []

        for index, message in enumerate(messages):
            try:
                events.extend(self._processor.process_message(message))
            except ParseError as exc:
                errors.append(ParseError(f"processing message {index} failed", exc))
                logger.warning(
                    "message %d (%s/%s) failed: %s",
                    index,
                    message.message_type(),
                    message.event_type(),
                    exc,
                )

        if errors:
            logger.debug(
                "parsed %d messages into %d events with %d errors",
                len(messages),
                len(events),
                len(errors),
            )

        tools = self._processor.tool_manager
        return ParseResult(
            messages=messages,
            events=events,
            tool_executions=tools.completed_tools(),
            active_tools=tools.active_tools(),
            session_info=self._processor.session_manager.session_info(),
            summary=self._summarize(messages, events),
            errors=errors,
        )

    def parse_stream(self, data: bytes) -> list[SSEEvent]:
        """Feed more bytes and return the events of every message now complete."""
        events: list[SSEEvent] = []
        for message in self._decode(data):
            try:
                events.extend(self._processor.process_message(message))
            except ParseError as exc:
                logger.warning("streamed message failed: %s", exc)
        return events

    def tool_manager(self) -> ToolLifecycleManager:
        """The manager that tracks this stream's tool calls."""
        return self._processor.tool_manager

    def _decode(self, data: bytes) -> list[EventStreamMessage]:
        try:
            return self._stream.parse_stream(data)
        except TooManyErrorsError as exc:
            logger.warning("event stream decoding partly failed: %s", exc)
            return exc.messages

    def _summarize(
        self, messages: list[EventStreamMessage], events: list[SSEEvent]
    ) -> ParseSummary:
        summary = ParseSummary(total_messages=len(messages), total_events=len(events))
        message_types: Counter[str] = Counter()
        event_types: Counter[str] = Counter()

        for message in messages:
            message_type = message.message_type()
            message_types[message_type] += 1
            if message_type in _ERROR_MESSAGE_TYPES:
                summary.has_errors = True

            event_type = message.event_type()
            if not event_type:
                continue
            event_types[event_type] += 1
            if event_type in _TOOL_EVENT_TYPES:
                summary.has_tool_calls = True
            elif event_type in _COMPLETION_EVENT_TYPES:
                summary.has_completions = True
            elif event_type in _SESSION_EVENT_TYPES:
                summary.has_session_events = True

        for event in events:
            event_types[event.event] += 1
            if _is_tool_use_block(event):
                summary.has_tool_calls = True

        summary.message_types = dict(message_types)
        summary.event_types = dict(event_types)
        summary.tool_summary = self._processor.tool_manager.generate_tool_summary()
        return summary
"""Handlers that turn decoded event stream messages into SSE events."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from kiroparse.aggregator import StreamingJSONAggregator
from kiroparse.events import (
    AssistantResponseEvent,
    EventStreamMessage,
    EventType,
    ParseError,
    SSEEvent,
    ToolCall,
    ToolCallError,
    ToolCallFunction,
    ToolCallResult,
    parse_full_assistant_response_event,
)
from kiroparse.session import SessionManager
from kiroparse.tools import ToolLifecycleManager

logger = logging.getLogger(__name__)

_TOOL_COMPLETED_RESULT = "Tool execution completed via toolUseEvent"


def _dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def _payload_text(payload: bytes | str) -> str:
    if isinstance(payload, str):
        return payload
    return bytes(payload).decode("utf-8", errors="replace")


def _load_object(payload: bytes | str) -> dict[str, Any] | None:
    """Decode a JSON object; ``null`` gives None. Raises ParseError otherwise."""
    try:
        data = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as exc:
        raise ParseError("invalid JSON payload", exc) from exc
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ParseError("payload is not a JSON object")
    return data


def _string(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    return value if isinstance(value, str) else ""


def _typed_field(data: dict[str, Any], key: str, kind: type, default: Any) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, kind):
        raise ParseError(f"field {key!r} must be of type {kind.__name__}")
    return value


def _text_delta(text: str, index: int = 0) -> SSEEvent:
    return SSEEvent(
        "content_block_delta",
        {
            "type": "content_block_delta",
            "index": index,
            "delta": {"type": "text_delta", "text": text},
        },
    )


@dataclass
class _ToolUseEvent:
    name: str = ""
    tool_use_id: str = ""
    input: Any = None
    stop: bool = False


def _parse_tool_use_event(payload: bytes | str) -> _ToolUseEvent:
    data = _load_object(payload) or {}
    return _ToolUseEvent(
        name=_typed_field(data, "name", str, ""),
        tool_use_id=_typed_field(data, "toolUseId", str, ""),
        input=data.get("input"),
        stop=_typed_field(data, "stop", bool, False),
    )


def convert_input_to_string(input: Any) -> str:
    """Turn a tool input (string, object or None) into a JSON string."""
    if input is None:
        return "{}"
    if isinstance(input, str):
        return input
    try:
        return _dump_json(input)
    except (TypeError, ValueError) as exc:
        logger.warning("could not convert tool input to JSON: %s", exc)
        return "{}"


def is_tool_call_event(payload: bytes | str) -> bool:
    """Whether the raw payload looks like a tool call fragment."""
    text = _payload_text(payload)
    return (
        '"toolUseId":' in text
        or '"tool_use_id":' in text
        or ('"name":' in text and '"input":' in text)
    )


def is_streaming_response(event: AssistantResponseEvent | None) -> bool:
    """Whether the event carries partial content or is still in progress."""
    return event is not None and (
        event.message_status == "IN_PROGRESS" or event.content != ""
    )


class EventHandler(ABC):
    """Turns one message of a given event type into SSE events."""

    @abstractmethod
    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        """Return the SSE events for the message; raise ParseError on bad payloads."""


class CompletionEventHandler(EventHandler):
    """Handles whole completion events."""

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        data = _load_object(message.payload)
        fields = data or {}

        tool_calls: list[dict[str, Any]] = []
        raw_calls = fields.get("tool_calls")
        if isinstance(raw_calls, list):
            for raw in raw_calls:
                if not isinstance(raw, dict):
                    continue
                function = raw.get("function")
                function = function if isinstance(function, dict) else {}
                tool_calls.append(
                    {
                        "id": _string(raw, "id"),
                        "type": _string(raw, "type"),
                        "function": {
                            "name": _string(function, "name"),
                            "arguments": _string(function, "arguments"),
                        },
                    }
                )

        return [
            SSEEvent(
                "completion",
                {
                    "type": "completion",
                    "content": _string(fields, "content"),
                    "finish_reason": _string(fields, "finish_reason"),
                    "tool_calls": tool_calls,
                    "raw_data": data,
                },
            )
        ]


class CompletionChunkEventHandler(EventHandler):
    """Handles streamed completion chunks, collecting their content."""

    def __init__(self, completion_buffer: list[str] | None = None) -> None:
        self.completion_buffer: list[str] = (
            completion_buffer if completion_buffer is not None else []
        )

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        fields = _load_object(message.payload) or {}
        content = _string(fields, "content")
        delta = _string(fields, "delta")
        finish_reason = _string(fields, "finish_reason")

        self.completion_buffer.append(content)

        events = [_text_delta(delta or content)]
        if finish_reason:
            events.append(
                SSEEvent(
                    "content_block_stop",
                    {
                        "type": "content_block_stop",
                        "index": 0,
                        "finish_reason": finish_reason,
                    },
                )
            )
        return events


class ToolCallRequestHandler(EventHandler):
    """Handles tool call requests in the standard event format."""

    def __init__(self, tool_manager: ToolLifecycleManager) -> None:
        self.tool_manager = tool_manager

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        fields = _load_object(message.payload) or {}
        tool_call_id = _string(fields, "toolCallId")
        tool_name = _string(fields, "toolName")
        raw_input = fields.get("input")
        tool_input = raw_input if isinstance(raw_input, dict) else {}

        arguments = "{}"
        if tool_input:
            try:
                arguments = _dump_json(tool_input)
            except (TypeError, ValueError):
                arguments = "{}"

        logger.debug("tool call request %s (%s): %r", tool_call_id, tool_name, tool_input)
        tool_call = ToolCall(
            id=tool_call_id,
            type="function",
            function=ToolCallFunction(name=tool_name, arguments=arguments),
        )
        return self.tool_manager.handle_tool_call_request([tool_call])


class ToolCallErrorHandler(EventHandler):
    """Handles tool call errors."""

    def __init__(self, tool_manager: ToolLifecycleManager) -> None:
        self.tool_manager = tool_manager

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        fields = _load_object(message.payload) or {}
        error = ToolCallError(
            tool_call_id=_typed_field(fields, "tool_call_id", str, ""),
            error=_typed_field(fields, "error", str, ""),
        )
        return self.tool_manager.handle_tool_call_error(error)


class SessionStartHandler(EventHandler):
    """Handles session start events."""

    def __init__(self, session_manager: SessionManager) -> None:
        self.session_manager = session_manager

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        data = _load_object(message.payload)
        fields = data or {}
        session_id = _string(fields, "sessionId") or _string(fields, "session_id")
        if session_id:
            self.session_manager.session_id = session_id
            self.session_manager.start_session()
        return [SSEEvent(EventType.SESSION_START.value, data)]


class SessionEndHandler(EventHandler):
    """Handles session end events."""

    def __init__(self, session_manager: SessionManager) -> None:
        self.session_manager = session_manager

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        data = _load_object(message.payload)
        end_events = self.session_manager.end_session()
        return [SSEEvent(EventType.SESSION_END.value, data), *end_events]


class AssistantResponseEventHandler(EventHandler):
    """Handles assistant response events: text, tool fragments and legacy payloads."""

    def __init__(self, tool_manager: ToolLifecycleManager) -> None:
        self.tool_manager = tool_manager

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        if is_tool_call_event(message.payload):
            logger.debug("assistant response carries a tool call")
            return self._handle_tool_call(message)

        try:
            event = parse_full_assistant_response_event(message.payload)
        except ParseError:
            logger.debug("not a full assistant response, trying legacy format")
            return self._handle_legacy(message.payload)

        if is_streaming_response(event):
            return [_text_delta(event.content)] if event.content else []
        return self._handle_full(event)

    def _handle_tool_call(self, message: EventStreamMessage) -> list[SSEEvent]:
        try:
            evt = _parse_tool_use_event(message.payload)
        except ParseError as exc:
            logger.warning("could not parse tool call event: %s", exc)
            return []
        tool_call = ToolCall(
            id=evt.tool_use_id,
            type="function",
            function=ToolCallFunction(
                name=evt.name, arguments=convert_input_to_string(evt.input)
            ),
        )
        return self.tool_manager.handle_tool_call_request([tool_call])

    @staticmethod
    def _handle_full(event: AssistantResponseEvent) -> list[SSEEvent]:
        if not event.content:
            return []
        return [
            SSEEvent(
                "content_block_start",
                {
                    "type": "content_block_start",
                    "index": 0,
                    "content_block": {"type": "text", "text": event.content},
                },
            ),
            _text_delta(event.content),
            SSEEvent("content_block_stop", {"type": "content_block_stop", "index": 0}),
        ]

    @staticmethod
    def _handle_legacy(payload: bytes | str) -> list[SSEEvent]:
        text = _payload_text(payload).strip()
        if text and not text.startswith("{"):
            return [_text_delta(text)]
        try:
            fields = _load_object(payload) or {}
        except ParseError as exc:
            logger.warning("could not parse legacy payload: %s", exc)
            return []
        content = _string(fields, "content")
        return [_text_delta(content)] if content else []


class LegacyToolUseEventHandler(EventHandler):
    """Handles tool use events that arrive whole or as streamed fragments."""

    def __init__(
        self, tool_manager: ToolLifecycleManager, aggregator: StreamingJSONAggregator
    ) -> None:
        self.tool_manager = tool_manager
        self.aggregator = aggregator

    def handle(self, message: EventStreamMessage) -> list[SSEEvent]:
        try:
            evt = _parse_tool_use_event(message.payload)
        except ParseError as exc:
            logger.warning(
                "could not parse tool use event: %s (payload %r)", exc, message.payload
            )
            return []

        if not evt.name or not evt.tool_use_id:
            logger.warning(
                "tool use event missing fields: name=%r toolUseId=%r",
                evt.name,
                evt.tool_use_id,
            )
            if not evt.name and not evt.tool_use_id:
                return []

        input_str = convert_input_to_string(evt.input)

        if evt.tool_use_id not in self.tool_manager.active_tools():
            # The first event carries a whole input object; it registers the tool
            # directly and never goes through the fragment aggregator.
            logger.debug("registering tool %s (%s)", evt.tool_use_id, evt.name)
            tool_call = ToolCall(
                id=evt.tool_use_id,
                type="function",
                function=ToolCallFunction(name=evt.name, arguments=input_str),
            )
            return self.tool_manager.handle_tool_call_request([tool_call])

        if evt.stop:
            complete, full_input = self.aggregator.process_tool_data(
                evt.tool_use_id, evt.name, "", True, -1
            )
            if complete:
                if full_input and full_input != "{}":
                    try:
                        arguments = json.loads(full_input)
                    except ValueError as exc:
                        logger.warning(
                            "aggregated arguments of %s are invalid JSON: %s",
                            evt.tool_use_id,
                            exc,
                        )
                    else:
                        if isinstance(arguments, dict):
                            self.tool_manager.update_tool_arguments(
                                evt.tool_use_id, arguments
                            )
                return self.tool_manager.handle_tool_call_result(
                    ToolCallResult(tool_call_id=evt.tool_use_id, result=_TOOL_COMPLETED_RESULT)
                )

        if input_str in ("", "{}"):
            return []

        complete, _ = self.aggregator.process_tool_data(
            evt.tool_use_id, evt.name, input_str, evt.stop, -1
        )
        if complete:
            return []

        if not evt.tool_use_id:
            logger.warning("fragment without toolUseId, no delta sent: %r", input_str)
            return []

        index = self.tool_manager.block_index(evt.tool_use_id)
        if index < 0:
            logger.warning(
                "fragment for unregistered tool %s (%s): %r",
                evt.tool_use_id,
                evt.name,
                input_str,
            )
            return []
        return [
            SSEEvent(
                "content_block_delta",
                {
                    "type": "content_block_delta",
                    "index": index,
                    "delta": {"type": "input_json_delta", "partial_json": input_str},
                },
            )
        ]
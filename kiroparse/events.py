"""Core data types for the event stream: headers, messages, tool calls and SSE events."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any


class ValueType(IntEnum):
    """Header value types defined by the event stream encoding."""

    BOOL_TRUE = 0
    BOOL_FALSE = 1
    BYTE = 2
    SHORT = 3
    INTEGER = 4
    LONG = 5
    BYTE_ARRAY = 6
    STRING = 7
    TIMESTAMP = 8
    UUID = 9


@dataclass
class HeaderValue:
    """A typed header value."""

    type: ValueType
    value: Any


class MessageType(str, Enum):
    """Message types defined by the specification."""

    EVENT = "event"
    ERROR = "error"
    EXCEPTION = "exception"


class EventType(str, Enum):
    """Event types defined by the specification, plus the legacy ones."""

    COMPLETION = "completion"
    COMPLETION_CHUNK = "completion_chunk"

    TOOL_CALL_REQUEST = "tool_call_request"
    TOOL_CALL_RESULT = "tool_call_result"
    TOOL_CALL_ERROR = "tool_call_error"
    TOOL_EXECUTION_START = "tool_execution_start"
    TOOL_EXECUTION_END = "tool_execution_end"

    SESSION_START = "session_start"
    SESSION_END = "session_end"

    ASSISTANT_RESPONSE_EVENT = "assistantResponseEvent"
    TOOL_USE_EVENT = "toolUseEvent"


def _string_header(headers: dict[str, HeaderValue], name: str, default: str) -> str:
    header = headers.get(name)
    if header is not None and isinstance(header.value, str):
        return header.value
    return default


@dataclass
class EventStreamMessage:
    """A decoded event stream message: its headers and raw payload."""

    headers: dict[str, HeaderValue] = field(default_factory=dict)
    payload: bytes = b""

    def message_type(self) -> str:
        """The ``:message-type`` header, defaulting to ``event``."""
        return _string_header(self.headers, ":message-type", MessageType.EVENT.value)

    def event_type(self) -> str:
        """The ``:event-type`` header, or an empty string."""
        return _string_header(self.headers, ":event-type", "")

    def content_type(self) -> str:
        """The ``:content-type`` header, defaulting to ``application/json``."""
        return _string_header(self.headers, ":content-type", "application/json")


class ToolExecutionStatus(Enum):
    """Lifecycle state of a tool execution."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value


@dataclass
class ToolExecution:
    """State of a single tool invocation."""

    id: str
    name: str
    start_time: datetime = field(default_factory=datetime.now)
    end_time: datetime | None = None
    status: ToolExecutionStatus = ToolExecutionStatus.PENDING
    arguments: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    error: str = ""
    block_index: int = 0


@dataclass
class ToolCallFunction:
    """Function name and JSON-encoded arguments of a tool call."""

    name: str = ""
    arguments: str = ""


@dataclass
class ToolCall:
    """A single tool call."""

    id: str = ""
    type: str = ""
    function: ToolCallFunction = field(default_factory=ToolCallFunction)


@dataclass
class ToolCallResult:
    """The result of a tool call; execution_time is in milliseconds."""

    tool_call_id: str
    result: Any = None
    execution_time: int = 0


@dataclass
class ToolCallError:
    """An error reported for a tool call."""

    tool_call_id: str
    error: str = ""


@dataclass
class SessionInfo:
    """Identifier and timing of a session."""

    session_id: str
    start_time: datetime
    end_time: datetime | None = None


class ParseError(Exception):
    """Raised when stream data cannot be parsed."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.cause is not None:
            return f"parse error: {self.message}, cause: {self.cause}"
        return f"parse error: {self.message}"


@dataclass
class SSEEvent:
    """A server-sent event: its name and JSON-serialisable data."""

    event: str
    data: Any = None


_ASSISTANT_FIELDS = {
    "content": "content",
    "conversationId": "conversation_id",
    "messageId": "message_id",
    "messageStatus": "message_status",
    "contentType": "content_type",
}


@dataclass
class AssistantResponseEvent:
    """The main fields of an assistant response event."""

    content: str = ""
    conversation_id: str = ""
    message_id: str = ""
    message_status: str = ""
    content_type: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AssistantResponseEvent:
        """Build an event from a decoded JSON object."""
        if not isinstance(data, dict):
            raise ParseError("assistant response event must be a JSON object")
        values: dict[str, str] = {}
        for key, attr in _ASSISTANT_FIELDS.items():
            value = data.get(key)
            if value is None:
                continue
            if not isinstance(value, str):
                raise ParseError(f"field {key!r} must be a string")
            values[attr] = value
        return cls(**values)


def parse_full_assistant_response_event(payload: bytes | str) -> AssistantResponseEvent:
    """Parse a payload as a full assistant response event.

    Raises ParseError for invalid JSON and for payloads that are only
    tool call fragments without any of the main fields.
    """
    try:
        data = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as exc:
        raise ParseError("invalid JSON", exc) from exc
    if not isinstance(data, dict):
        raise ParseError("payload is not a JSON object")

    nested = data.get("assistantResponseEvent")
    if isinstance(nested, dict):
        data = nested

    is_tool_fragment = "toolUseId" in data and "name" in data
    has_main_fields = any(
        key in data and data[key] != ""
        for key in ("content", "conversationId", "messageId")
    )
    if is_tool_fragment and not has_main_fields:
        raise ParseError(
            "not a full assistantResponseEvent but a tool call fragment"
        )

    return AssistantResponseEvent.from_dict(data)
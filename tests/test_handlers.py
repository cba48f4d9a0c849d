import json

import pytest

from kiroparse.aggregator import StreamingJSONAggregator
from kiroparse.events import (
    AssistantResponseEvent,
    EventStreamMessage,
    ParseError,
    SSEEvent,
    ToolExecutionStatus,
)
from kiroparse.handlers import (
    AssistantResponseEventHandler,
    CompletionChunkEventHandler,
    CompletionEventHandler,
    LegacyToolUseEventHandler,
    SessionEndHandler,
    SessionStartHandler,
    ToolCallErrorHandler,
    ToolCallRequestHandler,
    convert_input_to_string,
    is_streaming_response,
    is_tool_call_event,
)
from kiroparse.session import SessionManager
from kiroparse.tools import ToolLifecycleManager


def _message(payload):
    if not isinstance(payload, (bytes, str)):
        payload = json.dumps(payload, ensure_ascii=False)
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return EventStreamMessage(payload=payload)


def _tool_event(name, tool_use_id, tool_input, stop):
    return _message({"name": name, "toolUseId": tool_use_id, "input": tool_input, "stop": stop})


@pytest.fixture
def manager():
    return ToolLifecycleManager()


@pytest.fixture
def aggregator(manager):
    return StreamingJSONAggregator(manager.update_tool_arguments_from_json)


@pytest.fixture
def legacy(manager, aggregator):
    return LegacyToolUseEventHandler(manager, aggregator)


def test_legacy_one_shot_complete_data(legacy, manager):
    tool_input = {
        "query": "测试查询",
        "maxResults": 10,
        "filters": {"category": "技术", "language": "zh-CN"},
    }
    events = legacy.handle(_tool_event("search_database", "test-tool-001", tool_input, True))
    assert len(events) > 0

    active = manager.active_tools()
    assert "test-tool-001" in active
    tool = active["test-tool-001"]
    assert tool.name == "search_database"
    assert tool.arguments["query"] == "测试查询"
    assert tool.arguments["maxResults"] == 10
    assert tool.arguments["filters"] == {"category": "技术", "language": "zh-CN"}


def test_legacy_streaming_fragments(legacy, manager):
    first = legacy.handle(_tool_event("write_file", "test-tool-002", {}, False))
    assert len(first) > 0
    legacy.handle(_tool_event("write_file", "test-tool-002", '{"path":"/tmp/test.txt","con', False))
    legacy.handle(_tool_event("write_file", "test-tool-002", 'tent":"测试内容"}', True))

    completed = manager.completed_tools()
    assert "test-tool-002" in completed
    assert completed["test-tool-002"].name == "write_file"
    assert completed["test-tool-002"].status is ToolExecutionStatus.COMPLETED


def test_legacy_empty_parameters(legacy, manager):
    events = legacy.handle(_tool_event("get_current_time", "test-tool-003", {}, True))
    assert len(events) > 0
    tool = manager.active_tools()["test-tool-003"]
    assert tool.name == "get_current_time"
    assert tool.arguments == {}


def test_legacy_memory_leak_prevention(legacy, manager, aggregator):
    legacy.handle(_tool_event("test_tool", "test-tool-leak", {}, False))
    legacy.handle(_tool_event("test_tool", "test-tool-leak", '{"initial":"data"', False))
    assert aggregator.has_stream("test-tool-leak")

    legacy.handle(_tool_event("test_tool", "test-tool-leak", "}", True))
    assert not aggregator.has_stream("test-tool-leak")
    assert "test-tool-leak" in manager.completed_tools()


def test_legacy_fragment_produces_input_json_delta(legacy):
    legacy.handle(_tool_event("Glob", "tool-a", {}, False))
    events = legacy.handle(_tool_event("Glob", "tool-a", '{"pattern"', False))
    assert events == [
        SSEEvent(
            "content_block_delta",
            {
                "type": "content_block_delta",
                "index": 1,
                "delta": {"type": "input_json_delta", "partial_json": '{"pattern"'},
            },
        )
    ]


def test_legacy_missing_name_and_id_is_skipped(legacy, manager):
    assert legacy.handle(_message({"input": {}, "stop": True})) == []
    assert manager.active_tools() == {}


def test_legacy_invalid_payload_returns_nothing(legacy):
    assert legacy.handle(_message(b"not json")) == []


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, "{}"),
        ('{"key":"value"}', '{"key":"value"}'),
        ({}, "{}"),
        ({"query": "测试", "limit": 10}, '{"limit":10,"query":"测试"}'),
    ],
)
def test_convert_input_to_string(value, expected):
    assert convert_input_to_string(value) == expected


@pytest.mark.parametrize(
    "payload, expected",
    [
        (b'{"toolUseId":"x"}', True),
        (b'{"tool_use_id":"x"}', True),
        (b'{"name":"a","input":{}}', True),
        (b'{"name":"a"}', False),
        (b'{"content":"hi"}', False),
    ],
)
def test_is_tool_call_event(payload, expected):
    assert is_tool_call_event(payload) is expected


def test_is_streaming_response():
    assert is_streaming_response(AssistantResponseEvent(content="x")) is True
    assert is_streaming_response(AssistantResponseEvent(message_status="IN_PROGRESS")) is True
    assert is_streaming_response(AssistantResponseEvent()) is False
    assert is_streaming_response(None) is False


def test_completion_handler():
    payload = {
        "content": "done",
        "finish_reason": "stop",
        "tool_calls": [{"id": "c1", "type": "function", "function": {"name": "f", "arguments": "{}"}}],
    }
    (event,) = CompletionEventHandler().handle(_message(payload))
    assert event.event == "completion"
    assert event.data["content"] == "done"
    assert event.data["finish_reason"] == "stop"
    assert event.data["tool_calls"] == [
        {"id": "c1", "type": "function", "function": {"name": "f", "arguments": "{}"}}
    ]
    assert event.data["raw_data"] == payload


def test_completion_handler_rejects_invalid_json():
    with pytest.raises(ParseError):
        CompletionEventHandler().handle(_message(b"{broken"))


def test_completion_chunk_handler_collects_content():
    buffer = []
    handler = CompletionChunkEventHandler(buffer)
    events = handler.handle(_message({"content": "Hel", "delta": "lo"}))
    assert events[0].data["delta"] == {"type": "text_delta", "text": "lo"}
    assert len(events) == 1

    events = handler.handle(_message({"content": "world", "finish_reason": "end"}))
    assert events[0].data["delta"]["text"] == "world"
    assert events[1].data == {"type": "content_block_stop", "index": 0, "finish_reason": "end"}
    assert buffer == ["Hel", "world"]


def test_tool_call_request_handler(manager):
    handler = ToolCallRequestHandler(manager)
    events = handler.handle(_message({"toolCallId": "t1", "toolName": "calc", "input": {"x": 1}}))
    starts = [e for e in events if e.event == "content_block_start"]
    assert starts[0].data["content_block"]["id"] == "t1"
    assert starts[0].data["index"] == 1
    assert manager.active_tools()["t1"].arguments == {"x": 1}


def test_tool_call_error_handler(manager):
    ToolCallRequestHandler(manager).handle(_message({"toolCallId": "t1", "toolName": "calc"}))
    events = ToolCallErrorHandler(manager).handle(_message({"tool_call_id": "t1", "error": "boom"}))
    assert events[0].event == "error"
    assert events[0].data["error"]["message"] == "boom"
    assert events[1].data == {"type": "content_block_stop", "index": 1}
    assert manager.completed_tools()["t1"].status is ToolExecutionStatus.ERROR


def test_tool_call_error_handler_rejects_wrong_types(manager):
    with pytest.raises(ParseError):
        ToolCallErrorHandler(manager).handle(_message({"tool_call_id": 5}))


def test_session_start_handler():
    session = SessionManager()
    events = SessionStartHandler(session).handle(_message({"sessionId": "s-1"}))
    assert events == [SSEEvent("session_start", {"sessionId": "s-1"})]
    assert session.session_id == "s-1"
    assert session.is_active() is True


def test_session_end_handler():
    session = SessionManager()
    session.session_id = "s-2"
    session.start_session()
    events = SessionEndHandler(session).handle(_message({"reason": "done"}))
    assert events[0] == SSEEvent("session_end", {"reason": "done"})
    assert events[1].data["session_id"] == "s-2"
    assert session.is_active() is False


def test_assistant_response_text_content(manager):
    events = AssistantResponseEventHandler(manager).handle(_message({"content": "hello"}))
    assert events == [
        SSEEvent(
            "content_block_delta",
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "hello"}},
        )
    ]


def test_assistant_response_without_content(manager):
    assert AssistantResponseEventHandler(manager).handle(_message({"conversationId": "c1"})) == []


def test_assistant_response_tool_fragment_registers_tool(manager):
    handler = AssistantResponseEventHandler(manager)
    handler.handle(_message({"name": "Read", "toolUseId": "tool-r", "input": {"path": "a"}}))
    assert manager.active_tools()["tool-r"].arguments == {"path": "a"}


def test_assistant_response_plain_text(manager):
    events = AssistantResponseEventHandler(manager).handle(_message(b"  plain text  "))
    assert events[0].data["delta"]["text"] == "plain text"


def test_assistant_response_legacy_non_string_content(manager):
    assert AssistantResponseEventHandler(manager).handle(_message({"content": 5})) == []
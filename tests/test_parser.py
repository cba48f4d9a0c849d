import json
import zlib

from kiroparse.events import ParseError
from kiroparse.parser import CompliantEventStreamParser


def _header(name, value):
    raw_name = name.encode()
    raw_value = value.encode()
    return (
        bytes([len(raw_name)])
        + raw_name
        + bytes([7])
        + len(raw_value).to_bytes(2, "big")
        + raw_value
    )


def _frame(payload, event_type=None, message_type="event"):
    if not isinstance(payload, bytes):
        payload = json.dumps(payload).encode()
    headers = _header(":message-type", message_type)
    if event_type is not None:
        headers += _header(":event-type", event_type)
    headers += _header(":content-type", "application/json")
    total = 12 + len(headers) + len(payload) + 4
    prelude = total.to_bytes(4, "big") + len(headers).to_bytes(4, "big")
    prelude += zlib.crc32(prelude).to_bytes(4, "big")
    body = prelude + headers + payload
    return body + zlib.crc32(body).to_bytes(4, "big")


def test_parse_response_with_completion_chunks():
    parser = CompliantEventStreamParser()
    data = _frame({"content": "Hello "}, "completion_chunk") + _frame(
        {"content": "world"}, "completion_chunk"
    )
    result = parser.parse_response(data)
    assert result.completion_text() == "Hello world"
    assert result.errors == []
    summary = result.summary
    assert summary.total_messages == 2
    assert summary.total_events == 2
    assert summary.message_types == {"event": 2}
    assert summary.event_types == {"completion_chunk": 2, "content_block_delta": 2}
    assert summary.has_completions
    assert not summary.has_tool_calls
    assert not summary.has_errors


def test_parse_response_with_tool_use():
    parser = CompliantEventStreamParser()
    payload = {"name": "read", "toolUseId": "t1", "input": {"path": "/a"}, "stop": True}
    result = parser.parse_response(_frame(payload, "toolUseEvent"))
    assert result.summary.has_tool_calls
    calls = result.tool_calls()
    assert [call.name for call in calls] == ["read"]
    assert calls[0].arguments == {"path": "/a"}
    assert "t1" in result.active_tools
    assert parser.tool_manager().get_tool_execution("t1") is calls[0]
    assert result.summary.tool_summary["active_tools"] == 1


def test_error_message_is_flagged():
    parser = CompliantEventStreamParser()
    result = parser.parse_response(_frame({"message": "oops"}, message_type="error"))
    assert result.summary.has_errors
    assert result.summary.message_types == {"error": 1}
    assert result.events[0].data["error_message"] == "oops"


def test_handler_failure_is_collected():
    parser = CompliantEventStreamParser()
    data = _frame(b"not json", "completion") + _frame({"content": "ok"}, "completion_chunk")
    result = parser.parse_response(data)
    assert len(result.errors) == 1
    assert isinstance(result.errors[0], ParseError)
    assert result.summary.total_messages == 2
    assert result.completion_text() == "ok"


def test_session_events_are_flagged():
    parser = CompliantEventStreamParser()
    result = parser.parse_response(_frame({"sessionId": "s-1"}, "session_start"))
    assert result.summary.has_session_events
    assert result.session_info.session_id == "s-1"


def test_parse_stream_across_chunks():
    parser = CompliantEventStreamParser()
    frame = _frame({"content": "piece"}, "completion_chunk")
    assert parser.parse_stream(frame[:10]) == []
    events = parser.parse_stream(frame[10:])
    assert len(events) == 1
    assert events[0].data["delta"]["text"] == "piece"


def test_messages_survive_max_errors():
    parser = CompliantEventStreamParser()
    parser.set_max_errors(1)
    frame = _frame({"content": "kept"}, "completion_chunk")
    result = parser.parse_response(b"\xff" + frame)
    assert result.summary.total_messages == 1
    assert result.completion_text() == "kept"


def test_reset_drops_buffered_bytes():
    frame = _frame({"content": "fresh"}, "completion_chunk")
    parser = CompliantEventStreamParser()
    parser.parse_stream(frame[:10])
    parser.reset()
    events = parser.parse_stream(frame)
    expected = CompliantEventStreamParser().parse_stream(frame)
    assert events == expected
    assert len(events) == 1


def test_completion_text_ignores_other_events():
    parser = CompliantEventStreamParser()
    data = _frame({"content": "text"}, "completion_chunk") + _frame(
        {"message": "x"}, message_type="exception"
    )
    result = parser.parse_response(data)
    assert result.completion_text() == "text"
    assert result.summary.has_errors
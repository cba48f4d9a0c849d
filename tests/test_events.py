import pytest

from kiroparse.events import (
    AssistantResponseEvent,
    EventStreamMessage,
    EventType,
    HeaderValue,
    MessageType,
    ParseError,
    ToolExecution,
    ToolExecutionStatus,
    ValueType,
    parse_full_assistant_response_event,
)


@pytest.mark.parametrize(
    "headers, expected",
    [
        ({":message-type": HeaderValue(ValueType.STRING, "exception")}, "exception"),
        ({}, "event"),
        ({":message-type": HeaderValue(ValueType.INTEGER, 123)}, "event"),
    ],
)
def test_message_type(headers, expected):
    assert EventStreamMessage(headers=headers).message_type() == expected


@pytest.mark.parametrize(
    "headers, expected",
    [
        ({":event-type": HeaderValue(ValueType.STRING, "contentBlockStart")}, "contentBlockStart"),
        ({}, ""),
        ({":event-type": HeaderValue(ValueType.BOOL_TRUE, True)}, ""),
    ],
)
def test_event_type(headers, expected):
    assert EventStreamMessage(headers=headers).event_type() == expected


def test_content_type_default_and_value():
    assert EventStreamMessage().content_type() == "application/json"
    msg = EventStreamMessage(headers={":content-type": HeaderValue(ValueType.STRING, "text/plain")})
    assert msg.content_type() == "text/plain"


def test_enum_members_read_back_as_wire_strings():
    msg = EventStreamMessage(
        headers={
            ":message-type": HeaderValue(ValueType.STRING, MessageType.EXCEPTION),
            ":event-type": HeaderValue(ValueType.STRING, EventType.TOOL_USE_EVENT),
        }
    )
    assert msg.message_type() == "exception"
    assert msg.event_type() == "toolUseEvent"


def test_tool_execution_status_str_and_default():
    execution = ToolExecution(id="t1", name="tool")
    assert execution.status is ToolExecutionStatus.PENDING
    assert str(ToolExecutionStatus.COMPLETED) == "completed"
    assert execution.arguments == {}


def test_parse_error_message_with_and_without_cause():
    assert str(ParseError("bad")) == "parse error: bad"
    err = ParseError("bad", ValueError("boom"))
    assert str(err) == "parse error: bad, cause: boom"
    assert isinstance(err.cause, ValueError)


def test_parse_full_event_plain():
    event = parse_full_assistant_response_event(
        b'{"content":"hello","messageStatus":"IN_PROGRESS","conversationId":"c1"}'
    )
    assert event == AssistantResponseEvent(
        content="hello", conversation_id="c1", message_status="IN_PROGRESS"
    )


def test_parse_full_event_nested():
    event = parse_full_assistant_response_event(
        b'{"assistantResponseEvent":{"content":"hi","messageId":"m1"}}'
    )
    assert event.content == "hi"
    assert event.message_id == "m1"


def test_parse_full_event_rejects_tool_fragment():
    with pytest.raises(ParseError):
        parse_full_assistant_response_event(b'{"toolUseId":"x","name":"n","input":"{"}')


def test_parse_full_event_tool_fragment_with_content_accepted():
    event = parse_full_assistant_response_event(
        b'{"toolUseId":"x","name":"n","content":"text"}'
    )
    assert event.content == "text"


def test_parse_full_event_invalid_json():
    with pytest.raises(ParseError):
        parse_full_assistant_response_event(b"not json")


def test_parse_full_event_non_object():
    with pytest.raises(ParseError):
        parse_full_assistant_response_event(b"[1,2]")


def test_from_dict_rejects_non_string_field():
    with pytest.raises(ParseError):
        AssistantResponseEvent.from_dict({"content": 5})
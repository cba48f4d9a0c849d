# kiroparse

`kiroparse` decodes AWS binary event streams of the kind the CodeWhisperer
streaming API returns. It turns them into Server-Sent Events in the Anthropic
Messages format, mainly `content_block_start`, `content_block_delta` and
`content_block_stop`. It also produces `error`, `exception`, `completion`
and session events.

The package needs nothing beyond the standard library. Diagnostics go through
the standard `logging` module, with one logger per module.

## Installation

```
pip install .
```

With the test dependencies:

```
pip install .[test]
```

## Parsing a whole response

```python
from kiroparse.parser import CompliantEventStreamParser

parser = CompliantEventStreamParser()
result = parser.parse_response(raw_bytes)

print(result.completion_text())       # text of all text deltas, in order
for tool in result.tool_calls():      # finished tool executions, then active ones
    print(tool.id, tool.name, tool.status, tool.arguments)

print(result.summary.total_messages, result.summary.has_tool_calls)
print(result.errors)                  # messages whose payload could not be handled
```

`ParseResult` also holds the decoded `messages`, the `events`, the
`tool_executions` and `active_tools` mappings, and `session_info`.
`ParseSummary` counts message types and event types. It records whether tool
calls, completions, errors or session events were seen, and it carries a tool
summary: active, completed and failed counts, total execution time in
milliseconds, and the success rate.

## Incremental parsing

Pass each chunk to `parse_stream` as it arrives. A frame that is not yet
complete stays in the buffer until the rest of it comes in.

```python
parser = CompliantEventStreamParser()
for chunk in chunks:
    for event in parser.parse_stream(chunk):
        send(event.event, event.data)
```

A message whose payload cannot be handled is logged and skipped.
`set_max_errors` sets how many decoding errors are tolerated, `reset` clears
buffered bytes along with all session and tool state, and `tool_manager`
returns the tracker of the stream's tool calls.

## Building blocks

- `kiroparse.events` defines the data types: `EventStreamMessage`,
  `HeaderValue`, `ValueType`, `MessageType`, `EventType`, `ToolCall`,
  `ToolExecution`, `ToolExecutionStatus`, `SSEEvent`, `ParseError` and
  `AssistantResponseEvent`. It also provides
  `parse_full_assistant_response_event`.
- `kiroparse.stream.RobustEventStreamParser` splits a byte stream into
  `EventStreamMessage` frames and skips data it cannot use. When the error
  count reaches its limit it raises `TooManyErrorsError`, and the messages
  decoded so far travel with that exception. `extract_tool_use_ids` and
  `is_valid_tool_use_id` check `tooluse_` identifiers.
- `kiroparse.headers.HeaderParser` decodes frame headers. Its parse state
  survives a `ParseError` raised for missing data, so parsing can continue
  later. `parse_header_value` decodes a single typed value. `default_headers`
  and the `get_*_from_headers` helpers supply the fallbacks.
- `kiroparse.aggregator.StreamingJSONAggregator` collects streamed JSON
  fragments of a tool call's input until a stop signal arrives. It holds
  back a multi-byte UTF-8 character that is split between fragments.
- `kiroparse.tools.ToolLifecycleManager` tracks each tool call from pending
  to running to completed or error. It assigns content block indices
  starting at 1 and emits the matching block events.
- `kiroparse.session.SessionManager` keeps the session id and its start and
  end times.
- `kiroparse.handlers` holds one handler per event type.
  `kiroparse.processor.CompliantMessageProcessor` sends each message to its
  handler and turns `error` and `exception` messages into events.

## What it does not do

`kiroparse` only decodes and translates. It does not send requests to the
upstream API, handle authentication tokens, or serve SSE over HTTP. It has no
command-line program. Writing the resulting events to a client, including the
surrounding `message_start`, `message_delta` and `message_stop` events, is
left to the caller.

## Running the tests

```
pytest
```
"""Resumable parser for event stream message headers."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from kiroparse.events import EventType, HeaderValue, MessageType, ParseError, ValueType

logger = logging.getLogger(__name__)

_MESSAGE_TYPE = ":message-type"
_EVENT_TYPE = ":event-type"
_CONTENT_TYPE = ":content-type"
_DEFAULT_CONTENT_TYPE = "application/json"

_FIXED_INTEGERS = {
    ValueType.BYTE: ">b",
    ValueType.SHORT: ">h",
    ValueType.INTEGER: ">i",
    ValueType.LONG: ">q",
    ValueType.TIMESTAMP: ">q",
}


class ParsePhase(IntEnum):
    """Which part of a header the parser expects next."""

    READ_NAME_LENGTH = 0
    READ_NAME = 1
    READ_VALUE_TYPE = 2
    READ_VALUE_LENGTH = 3
    READ_VALUE = 4


@dataclass
class HeaderParseState:
    """Parser state kept between calls so that parsing can resume."""

    phase: ParsePhase = ParsePhase.READ_NAME_LENGTH
    current_header: int = 0
    name_length: int = 0
    value_type: int = 0
    value_length: int = 0
    partial_name: bytearray | None = None
    partial_value: bytearray | None = None
    partial_length: bytearray | None = None
    parsed_headers: dict[str, HeaderValue] = field(default_factory=dict)

    def reset(self) -> None:
        """Return to the initial state, dropping parsed headers."""
        self.phase = ParsePhase.READ_NAME_LENGTH
        self.current_header = 0
        self._clear_current()
        self.parsed_headers = {}

    def is_complete(self) -> bool:
        """Whether at least one header was parsed and none is half-read."""
        return self.phase == ParsePhase.READ_NAME_LENGTH and bool(self.parsed_headers)

    def _clear_current(self) -> None:
        self.name_length = 0
        self.value_type = 0
        self.value_length = 0
        self.partial_name = None
        self.partial_value = None
        self.partial_length = None


def _as_value_type(value_type: int) -> ValueType | int:
    try:
        return ValueType(value_type)
    except ValueError:
        return value_type


def parse_header_value(value_type: int, data: bytes) -> Any:
    """Decode raw header value bytes according to their type.

    Raises ParseError when a fixed-size type has the wrong length.
    """
    kind = _as_value_type(value_type)
    if kind == ValueType.BOOL_TRUE:
        return True
    if kind == ValueType.BOOL_FALSE:
        return False
    if kind in _FIXED_INTEGERS:
        fmt = _FIXED_INTEGERS[kind]
        size = struct.calcsize(fmt)
        if len(data) != size:
            raise ParseError(
                f"{kind.name} length error: expected {size} bytes, got {len(data)}"
            )
        return struct.unpack(fmt, data)[0]
    if kind == ValueType.BYTE_ARRAY:
        return bytes(data)
    if kind == ValueType.STRING:
        return bytes(data).decode("utf-8", errors="replace")
    if kind == ValueType.UUID:
        if len(data) == 16:
            raw = bytes(data)
            return "-".join(
                raw[start:end].hex()
                for start, end in ((0, 4), (4, 6), (6, 8), (8, 10), (10, 16))
            )
        return bytes(data).decode("utf-8", errors="replace")
    logger.warning("unknown header value type %d", value_type)
    return bytes(data)


def default_headers() -> dict[str, HeaderValue]:
    """Headers used when none could be parsed."""
    return {
        _MESSAGE_TYPE: HeaderValue(ValueType.STRING, MessageType.EVENT.value),
        _EVENT_TYPE: HeaderValue(
            ValueType.STRING, EventType.ASSISTANT_RESPONSE_EVENT.value
        ),
        _CONTENT_TYPE: HeaderValue(ValueType.STRING, _DEFAULT_CONTENT_TYPE),
    }


def _string_header(headers: dict[str, HeaderValue], name: str, default: str) -> str:
    header = headers.get(name)
    if header is not None and isinstance(header.value, str):
        return header.value
    return default


def get_message_type_from_headers(headers: dict[str, HeaderValue]) -> str:
    """The message type header, defaulting to ``event``."""
    return _string_header(headers, _MESSAGE_TYPE, MessageType.EVENT.value)


def get_event_type_from_headers(headers: dict[str, HeaderValue]) -> str:
    """The event type header, or an empty string."""
    return _string_header(headers, _EVENT_TYPE, "")


def get_content_type_from_headers(headers: dict[str, HeaderValue]) -> str:
    """The content type header, defaulting to ``application/json``."""
    return _string_header(headers, _CONTENT_TYPE, _DEFAULT_CONTENT_TYPE)


class HeaderParser:
    """Parses header blocks, resuming across calls when data is split."""

    def __init__(self) -> None:
        self.state = HeaderParseState()

    def parse_headers(self, data: bytes) -> dict[str, HeaderValue]:
        """Parse header bytes using the parser's own state."""
        if not data:
            return {}
        return self.parse_headers_with_state(data, self.state)

    def parse_headers_with_state(
        self, data: bytes, state: HeaderParseState
    ) -> dict[str, HeaderValue]:
        """Parse header bytes, continuing from ``state``.

        Raises ParseError when more data is needed to finish a header or
        a header name length is invalid; progress is kept in ``state``.
        """
        if not data:
            return state.parsed_headers if state.parsed_headers else {}

        view = memoryview(bytes(data))
        offset = 0
        steps = {
            ParsePhase.READ_NAME_LENGTH: self._read_name_length,
            ParsePhase.READ_NAME: self._read_name,
            ParsePhase.READ_VALUE_TYPE: self._read_value_type,
            ParsePhase.READ_VALUE_LENGTH: self._read_value_length,
            ParsePhase.READ_VALUE: self._read_value,
        }
        while offset < len(view):
            offset, need_more = steps[state.phase](view, offset, state)
            if need_more:
                logger.debug(
                    "header parsing needs more data (phase %s, %d parsed)",
                    state.phase.name,
                    len(state.parsed_headers),
                )
                raise ParseError("insufficient data: more data needed to continue")

        if state.phase != ParsePhase.READ_NAME_LENGTH:
            if state.parsed_headers:
                logger.debug("data ended mid-header, completing with parsed headers")
                return self.force_complete(state)
            raise ParseError("insufficient data: more data needed to continue")

        return state.parsed_headers

    @staticmethod
    def _read_name_length(
        data: memoryview, offset: int, state: HeaderParseState
    ) -> tuple[int, bool]:
        name_length = data[offset]
        offset += 1
        if name_length == 0:
            raise ParseError(f"invalid header name length: {name_length}")
        state.name_length = name_length
        state.partial_name = bytearray()
        state.phase = ParsePhase.READ_NAME
        return offset, False

    @staticmethod
    def _accumulate(
        buffer: bytearray, wanted: int, data: memoryview, offset: int
    ) -> tuple[int, bool]:
        remaining = wanted - len(buffer)
        if len(data) - offset < remaining:
            buffer += data[offset:]
            return len(data), True
        buffer += data[offset : offset + remaining]
        return offset + remaining, False

    def _read_name(
        self, data: memoryview, offset: int, state: HeaderParseState
    ) -> tuple[int, bool]:
        assert state.partial_name is not None
        offset, need_more = self._accumulate(
            state.partial_name, state.name_length, data, offset
        )
        if not need_more:
            state.phase = ParsePhase.READ_VALUE_TYPE
        return offset, need_more

    @staticmethod
    def _read_value_type(
        data: memoryview, offset: int, state: HeaderParseState
    ) -> tuple[int, bool]:
        state.value_type = data[offset]
        state.phase = ParsePhase.READ_VALUE_LENGTH
        return offset + 1, False

    def _read_value_length(
        self, data: memoryview, offset: int, state: HeaderParseState
    ) -> tuple[int, bool]:
        if state.partial_length is None:
            state.partial_length = bytearray()
        offset, need_more = self._accumulate(state.partial_length, 2, data, offset)
        if need_more:
            return offset, True
        state.value_length = int.from_bytes(state.partial_length, "big")
        state.partial_value = bytearray()
        state.partial_length = None
        state.phase = ParsePhase.READ_VALUE
        return offset, False

    def _read_value(
        self, data: memoryview, offset: int, state: HeaderParseState
    ) -> tuple[int, bool]:
        assert state.partial_value is not None and state.partial_name is not None
        offset, need_more = self._accumulate(
            state.partial_value, state.value_length, data, offset
        )
        if need_more:
            return offset, True

        name = bytes(state.partial_name).decode("utf-8", errors="replace")
        try:
            value = parse_header_value(state.value_type, bytes(state.partial_value))
        except ParseError as exc:
            logger.warning(
                "skipping header %r of type %d: %s", name, state.value_type, exc
            )
        else:
            state.parsed_headers[name] = HeaderValue(
                _as_value_type(state.value_type), value
            )

        state.current_header += 1
        state._clear_current()
        state.phase = ParsePhase.READ_NAME_LENGTH
        return offset, False

    def reset(self) -> None:
        """Reset the parser's state."""
        self.state.reset()

    def is_recoverable(self, state: HeaderParseState) -> bool:
        """Whether enough headers were parsed to carry on after a failure."""
        return bool(state.parsed_headers)

    def force_complete(self, state: HeaderParseState) -> dict[str, HeaderValue]:
        """Return the parsed headers with missing key headers filled in."""
        if not state.parsed_headers:
            return default_headers()
        result = dict(state.parsed_headers)
        for name, value in default_headers().items():
            result.setdefault(name, value)
        return result
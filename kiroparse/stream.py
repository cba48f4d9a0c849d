"""Buffered parser that splits a binary event stream into messages."""

from __future__ import annotations

import logging
import threading

from kiroparse.events import EventStreamMessage, HeaderValue, ParseError
from kiroparse.headers import HeaderParser, default_headers

logger = logging.getLogger(__name__)

MIN_MESSAGE_SIZE = 16
MAX_MESSAGE_SIZE = 16 * 1024 * 1024
DEFAULT_MAX_ERRORS = 10

_PRELUDE_SIZE = 12
_TOOL_USE_PREFIX = "tooluse_"
_ID_BOUNDARY_CHARS = frozenset('": {')
_CORRUPT_PATTERNS = ("tooluluse_", "tooluse_tooluse_")


def _is_id_char(char: str) -> bool:
    return char.isascii() and (char.isalnum() or char in "_-")


def is_valid_tool_use_id(tool_use_id: str) -> bool:
    """Whether the id looks like a well-formed ``tooluse_`` identifier."""
    if not tool_use_id.startswith(_TOOL_USE_PREFIX):
        return False
    if not 20 <= len(tool_use_id) <= 50:
        logger.debug("tool_use_id has unusual length: %r", tool_use_id)
        return False
    suffix = tool_use_id[len(_TOOL_USE_PREFIX):]
    if not all(_is_id_char(char) for char in suffix):
        logger.debug("tool_use_id contains invalid characters: %r", tool_use_id)
        return False
    if any(pattern in tool_use_id for pattern in _CORRUPT_PATTERNS):
        logger.warning("tool_use_id looks corrupted: %r", tool_use_id)
        return False
    return True


def extract_tool_use_ids(payload: str) -> list[str]:
    """Find every well-formed ``tooluse_`` identifier in the payload."""
    found: list[str] = []
    start = 0
    while True:
        index = payload.find(_TOOL_USE_PREFIX, start)
        if index == -1:
            break
        start = index + 1
        if index > 0 and payload[index - 1] not in _ID_BOUNDARY_CHARS:
            continue

        end = index + len(_TOOL_USE_PREFIX)
        while end < len(payload) and _is_id_char(payload[end]):
            end += 1
        if end == index + len(_TOOL_USE_PREFIX):
            continue

        candidate = payload[index:end]
        if is_valid_tool_use_id(candidate):
            found.append(candidate)
        else:
            logger.warning("skipping malformed tool_use_id %r", candidate)
    return found


class TooManyErrorsError(ParseError):
    """Raised when the parser has seen too many errors.

    The messages decoded by the failing call are kept in ``messages``.
    """

    def __init__(self, error_count: int, messages: list[EventStreamMessage]) -> None:
        self.error_count = error_count
        self.messages = messages
        super().__init__(f"too many errors ({error_count}), parsing stopped")


class RobustEventStreamParser:
    """Splits incoming bytes into messages, skipping data it cannot use."""

    def __init__(self, max_errors: int = DEFAULT_MAX_ERRORS) -> None:
        self.max_errors = max_errors
        self.error_count = 0
        self._header_parser = HeaderParser()
        self._buffer = bytearray()
        self._lock = threading.Lock()

    def reset(self) -> None:
        """Drop buffered data and clear the error count."""
        with self._lock:
            self.error_count = 0
            self._buffer.clear()

    def parse_stream(self, data: bytes) -> list[EventStreamMessage]:
        """Buffer ``data`` and return every message that is now complete.

        Raises TooManyErrorsError once the error count reaches the limit;
        the messages decoded by this call travel with the exception.
        """
        with self._lock:
            self._buffer += data
            messages: list[EventStreamMessage] = []

            while len(self._buffer) >= MIN_MESSAGE_SIZE:
                total_length = int.from_bytes(self._buffer[:4], "big")
                if not MIN_MESSAGE_SIZE <= total_length <= MAX_MESSAGE_SIZE:
                    del self._buffer[:1]
                    self.error_count += 1
                    logger.warning("skipping invalid message prelude (length %d)", total_length)
                    continue
                if len(self._buffer) < total_length:
                    break

                message_data = bytes(self._buffer[:total_length])
                del self._buffer[:total_length]
                try:
                    messages.append(self.parse_message(message_data))
                except ParseError as exc:
                    logger.warning("message parsing failed: %s", exc)
                    self.error_count += 1

            if self.error_count >= self.max_errors:
                raise TooManyErrorsError(self.error_count, messages)
            return messages

    def parse_message(self, data: bytes) -> EventStreamMessage:
        """Decode one complete message.

        Raises ParseError when the lengths in the prelude do not fit the data.
        """
        if len(data) < MIN_MESSAGE_SIZE:
            raise ParseError("data too short")

        self._header_parser.reset()

        total_length = int.from_bytes(data[0:4], "big")
        header_length = int.from_bytes(data[4:8], "big")

        if total_length != len(data):
            raise ParseError(
                f"length mismatch: expected {total_length} bytes, got {len(data)}"
            )
        if total_length < MIN_MESSAGE_SIZE:
            raise ParseError(f"invalid total length: {total_length}")
        if total_length > MAX_MESSAGE_SIZE:
            raise ParseError(f"message too large: {total_length}")
        if header_length > total_length - MIN_MESSAGE_SIZE:
            raise ParseError(f"invalid header length: {header_length}")

        payload_start = _PRELUDE_SIZE + header_length
        payload_end = total_length - 4
        if payload_start > payload_end:
            raise ParseError(
                f"invalid payload bounds: start={payload_start}, end={payload_end}"
            )

        header_data = bytes(data[_PRELUDE_SIZE:payload_start])
        payload = bytes(data[payload_start:payload_end])
        logger.debug("payload: %r", payload)

        message = EventStreamMessage(headers=self._parse_headers(header_data), payload=payload)
        self._check_tool_use_ids(message)
        return message

    def _parse_headers(self, header_data: bytes) -> dict[str, HeaderValue]:
        if not header_data:
            logger.debug("empty header block, using default headers")
            return default_headers()
        parser = self._header_parser
        try:
            return parser.parse_headers(header_data)
        except ParseError as exc:
            if parser.is_recoverable(parser.state):
                logger.warning("header parsing partly failed, using parsed headers: %s", exc)
                headers = parser.force_complete(parser.state)
            else:
                logger.warning("header parsing failed, using default headers: %s", exc)
                headers = default_headers()
            parser.reset()
            return headers

    @staticmethod
    def _check_tool_use_ids(message: EventStreamMessage) -> None:
        if not message.payload:
            return
        text = message.payload.decode("utf-8", errors="replace")
        if "tool_use_id" not in text and "toolUseId" not in text:
            return
        for tool_use_id in extract_tool_use_ids(text):
            if not is_valid_tool_use_id(tool_use_id):
                logger.warning(
                    "possibly corrupted tool_use_id %r in %s/%s",
                    tool_use_id,
                    message.message_type(),
                    message.event_type(),
                )
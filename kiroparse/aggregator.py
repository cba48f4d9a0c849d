"""Aggregation of streamed JSON fragments of tool call arguments."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

ToolParamsUpdateCallback = Callable[[str, str], None]


def _as_bytes(fragment: str | bytes) -> bytes:
    return fragment.encode("utf-8") if isinstance(fragment, str) else bytes(fragment)


def _dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


@dataclass
class JSONStreamer:
    """Collects the argument fragments of one tool call.

    Fragments may be split on arbitrary byte boundaries; a trailing
    incomplete UTF-8 sequence is held back until the next fragment.
    """

    tool_use_id: str
    tool_name: str
    buffer: bytearray = field(default_factory=bytearray)
    last_update: float = field(default_factory=time.time)
    is_complete: bool = False
    has_valid_json: bool = False
    result: dict[str, Any] | None = field(default_factory=dict)
    fragment_count: int = 0
    total_bytes: int = 0
    incomplete_utf8: bytes = b""

    def append_fragment(self, fragment: str | bytes) -> None:
        """Append a fragment to the buffer."""
        raw = _as_bytes(fragment)
        self.buffer += self.ensure_utf8_integrity(raw)
        self.last_update = time.time()
        self.fragment_count += 1
        self.total_bytes += len(raw)

    def ensure_utf8_integrity(self, fragment: str | bytes) -> bytes:
        """Return the part of the fragment that ends on a UTF-8 boundary.

        Any pending bytes from the previous fragment are prepended first;
        a truncated trailing sequence is kept for the next call.
        """
        data = _as_bytes(fragment)
        if self.incomplete_utf8:
            data = self.incomplete_utf8 + data
            self.incomplete_utf8 = b""
        if not data:
            return data

        n = len(data)
        for i in range(n - 1, max(n - 5, -1), -1):
            b = data[i]
            if b & 0x80 == 0:
                break
            if b & 0xE0 == 0xC0:
                needed = 2
            elif b & 0xF0 == 0xE0:
                needed = 3
            elif b & 0xF8 == 0xF0:
                needed = 4
            else:
                continue  # continuation byte, keep looking back
            if n - i < needed:
                logger.debug(
                    "truncated UTF-8 sequence held back for %s at %d", self.tool_use_id, i
                )
                self.incomplete_utf8 = data[i:]
                return data[:i]
            break
        return data

    def try_parse(self) -> str:
        """Try to parse the buffer; return ``empty``, ``complete`` or ``invalid``."""
        content = bytes(self.buffer)
        if not content:
            return "empty"

        stripped = content.strip()
        if stripped in (b"{}", b"[]"):
            self.result = {} if stripped == b"{}" else None
            self.has_valid_json = True
            return "complete"

        try:
            parsed = json.loads(content)
        except (ValueError, UnicodeDecodeError):
            return "invalid"
        if parsed is not None and not isinstance(parsed, dict):
            return "invalid"
        self.result = parsed
        self.has_valid_json = True
        return "complete"


class StreamingJSONAggregator:
    """Joins argument fragments per tool call until a stop signal arrives."""

    def __init__(self, callback: ToolParamsUpdateCallback | None = None) -> None:
        self._streamers: dict[str, JSONStreamer] = {}
        self._lock = threading.Lock()
        self._callback = callback

    def process_tool_data(
        self,
        tool_use_id: str,
        name: str,
        input: str | bytes,
        stop: bool,
        fragment_index: int = -1,
    ) -> tuple[bool, str]:
        """Add a fragment; on stop, return ``(True, full_json)``.

        Without a stop signal the result is ``(False, "")``. On stop the
        buffered data is parsed; unparsable or empty input yields ``"{}"``.
        """
        with self._lock:
            streamer = self._streamers.get(tool_use_id)
            if streamer is None:
                streamer = JSONStreamer(tool_use_id, name)
                self._streamers[tool_use_id] = streamer
                logger.debug("created JSON streamer for %s (%s)", tool_use_id, name)

            if input:
                streamer.append_fragment(input)

            if not stop:
                return False, ""

            status = streamer.try_parse()
            logger.debug("streamed JSON for %s parsed: %s", tool_use_id, status)
            streamer.is_complete = True

            if streamer.has_valid_json and streamer.result is not None:
                full_input = _dump_json(streamer.result)
            else:
                if streamer.fragment_count or streamer.total_bytes:
                    logger.error(
                        "no valid JSON for tool %s (%s): %r",
                        streamer.tool_name,
                        tool_use_id,
                        bytes(streamer.buffer),
                    )
                else:
                    logger.debug("tool %s has no arguments", streamer.tool_name)
                full_input = "{}"

            del self._streamers[tool_use_id]

        if self._callback is not None:
            self._callback(tool_use_id, full_input)
        return True, full_input

    def has_stream(self, tool_use_id: str) -> bool:
        """Whether fragments are being collected for the tool call."""
        with self._lock:
            return tool_use_id in self._streamers
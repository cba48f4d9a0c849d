"""Lifecycle tracking of tool calls and the SSE events they produce."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from kiroparse.events import (
    SSEEvent,
    ToolCall,
    ToolCallError,
    ToolCallResult,
    ToolExecution,
    ToolExecutionStatus,
)

logger = logging.getLogger(__name__)

_FIRST_TOOL_BLOCK_INDEX = 1  # index 0 is reserved for text content


def _parse_arguments(tool_call: ToolCall) -> dict[str, Any]:
    try:
        parsed = json.loads(tool_call.function.arguments)
    except (ValueError, TypeError) as exc:
        logger.warning(
            "could not parse arguments of tool %s (%s): %s",
            tool_call.id,
            tool_call.function.name,
            exc,
        )
        return {}
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        logger.warning(
            "arguments of tool %s (%s) are not a JSON object",
            tool_call.id,
            tool_call.function.name,
        )
        return {}
    return parsed


def _dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)


class ToolLifecycleManager:
    """Keeps track of active and finished tool calls and their content blocks."""

    def __init__(self) -> None:
        self._active: dict[str, ToolExecution] = {}
        self._completed: dict[str, ToolExecution] = {}
        self._block_indexes: dict[str, int] = {}
        self._next_block_index = _FIRST_TOOL_BLOCK_INDEX
        self._text_intro_generated = False

    def reset(self) -> None:
        """Forget every tool call and start block numbering over."""
        self._active = {}
        self._completed = {}
        self._block_indexes = {}
        self._next_block_index = _FIRST_TOOL_BLOCK_INDEX
        self._text_intro_generated = False

    def handle_tool_call_request(self, tool_calls: Iterable[ToolCall]) -> list[SSEEvent]:
        """Register tool calls and return their content block events.

        A tool call whose id is already active only has its arguments
        updated (when the new ones are not empty) and produces no events.
        """
        calls = list(tool_calls)
        events: list[SSEEvent] = []

        if calls and not self._text_intro_generated:
            events.extend(self._text_introduction(calls[0]))
            self._text_intro_generated = True

        for tool_call in calls:
            existing = self._active.get(tool_call.id)
            if existing is not None:
                logger.debug(
                    "tool %s (%s) already active with status %s, updating arguments",
                    tool_call.id,
                    tool_call.function.name,
                    existing.status,
                )
                arguments = _parse_arguments(tool_call)
                if arguments:
                    existing.arguments = arguments
                continue

            arguments = _parse_arguments(tool_call)
            execution = ToolExecution(
                id=tool_call.id,
                name=tool_call.function.name,
                start_time=datetime.now(),
                status=ToolExecutionStatus.PENDING,
                arguments=arguments,
                block_index=self._assign_block_index(tool_call.id),
            )
            self._active[tool_call.id] = execution
            logger.debug(
                "tool call %s (%s) started at block %d",
                tool_call.id,
                tool_call.function.name,
                execution.block_index,
            )

            events.append(
                SSEEvent(
                    "content_block_start",
                    {
                        "type": "content_block_start",
                        "index": execution.block_index,
                        "content_block": {
                            "type": "tool_use",
                            "id": tool_call.id,
                            "name": tool_call.function.name,
                            "input": {},
                        },
                    },
                )
            )
            if arguments:
                events.append(
                    SSEEvent(
                        "content_block_delta",
                        {
                            "type": "content_block_delta",
                            "index": execution.block_index,
                            "delta": {
                                "type": "input_json_delta",
                                "partial_json": _dump_json(arguments),
                            },
                        },
                    )
                )
            execution.status = ToolExecutionStatus.RUNNING

        return events

    def handle_tool_call_result(self, result: ToolCallResult) -> list[SSEEvent]:
        """Complete an active tool call and return its block stop event."""
        execution = self._active.get(result.tool_call_id)
        if execution is None:
            logger.warning("result for unknown tool call %s", result.tool_call_id)
            return []

        execution.end_time = datetime.now()
        execution.result = result.result
        execution.status = ToolExecutionStatus.COMPLETED

        self._completed[result.tool_call_id] = execution
        del self._active[result.tool_call_id]

        return [
            SSEEvent(
                "content_block_stop",
                {"type": "content_block_stop", "index": execution.block_index},
            )
        ]

    def handle_tool_call_error(self, error: ToolCallError) -> list[SSEEvent]:
        """Fail an active tool call; return an error event and its block stop."""
        execution = self._active.get(error.tool_call_id)
        if execution is None:
            logger.warning("error for unknown tool call %s", error.tool_call_id)
            return []

        now = datetime.now()
        execution.end_time = now
        execution.error = error.error
        execution.status = ToolExecutionStatus.ERROR
        logger.warning(
            "tool call %s (%s) failed after %d ms: %s",
            error.tool_call_id,
            execution.name,
            _elapsed_ms(execution.start_time, now),
            error.error,
        )

        events = [
            SSEEvent(
                "error",
                {
                    "type": "error",
                    "error": {
                        "type": "tool_error",
                        "message": error.error,
                        "tool_call_id": error.tool_call_id,
                    },
                },
            ),
            SSEEvent(
                "content_block_stop",
                {"type": "content_block_stop", "index": execution.block_index},
            ),
        ]

        self._completed[error.tool_call_id] = execution
        del self._active[error.tool_call_id]
        return events

    def get_tool_execution(self, tool_id: str) -> ToolExecution | None:
        """The execution with this id, active or finished, if any."""
        return self._active.get(tool_id) or self._completed.get(tool_id)

    def active_tools(self) -> dict[str, ToolExecution]:
        """A copy of the mapping of active tool calls."""
        return dict(self._active)

    def completed_tools(self) -> dict[str, ToolExecution]:
        """A copy of the mapping of finished tool calls."""
        return dict(self._completed)

    def block_index(self, tool_id: str) -> int:
        """The content block index of a tool call, or -1 if it has none."""
        return self._block_indexes.get(tool_id, -1)

    def generate_tool_summary(self) -> dict[str, Any]:
        """Counts, total execution time in ms and success rate of tool calls.

        The success rate is NaN when no tool call has been seen.
        """
        active_count = len(self._active)
        completed_count = len(self._completed)
        error_count = 0
        total_time = 0
        for tool in self._completed.values():
            if tool.status is ToolExecutionStatus.ERROR:
                error_count += 1
            if tool.end_time is not None:
                total_time += _elapsed_ms(tool.start_time, tool.end_time)

        seen = completed_count + active_count
        success_rate = (completed_count - error_count) / seen if seen else float("nan")
        return {
            "active_tools": active_count,
            "completed_tools": completed_count,
            "error_tools": error_count,
            "total_execution_time": total_time,
            "success_rate": success_rate,
        }

    def update_tool_arguments(self, tool_id: str, arguments: dict[str, Any]) -> None:
        """Replace the arguments of an active or finished tool call."""
        execution = self._active.get(tool_id) or self._completed.get(tool_id)
        if execution is None:
            logger.warning("no tool %s to update arguments for", tool_id)
            return
        execution.arguments = arguments

    def update_tool_arguments_from_json(self, tool_id: str, json_args: str | bytes) -> None:
        """Replace a tool call's arguments from a JSON object; invalid JSON is ignored."""
        try:
            parsed = json.loads(json_args)
        except (ValueError, TypeError) as exc:
            logger.warning("could not parse arguments JSON for tool %s: %s", tool_id, exc)
            return
        if parsed is None:
            parsed = {}
        if not isinstance(parsed, dict):
            logger.warning("arguments JSON for tool %s is not an object", tool_id)
            return
        self.update_tool_arguments(tool_id, parsed)

    def _assign_block_index(self, tool_id: str) -> int:
        index = self._block_indexes.get(tool_id)
        if index is None:
            index = self._next_block_index
            self._block_indexes[tool_id] = index
            self._next_block_index += 1
        return index

    def _text_introduction(self, first_tool: ToolCall) -> list[SSEEvent]:
        # Block 0 is opened and closed by the stream writer; only a delta is added here.
        return [
            SSEEvent(
                "content_block_delta",
                {
                    "type": "content_block_delta",
                    "index": 0,
                    "delta": {"type": "text_delta", "text": self._intro_text(first_tool)},
                },
            )
        ]

    @staticmethod
    def _intro_text(_first_tool: ToolCall) -> str:
        return ""
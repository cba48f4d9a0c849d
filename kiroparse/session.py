"""Tracking of a streaming session's identity and lifetime."""

from __future__ import annotations

import uuid
from datetime import datetime

from kiroparse.events import EventType, SessionInfo, SSEEvent


def _now() -> datetime:
    return datetime.now().astimezone()


def _rfc3339(moment: datetime) -> str:
    text = moment.isoformat(timespec="seconds")
    return text[:-6] + "Z" if text.endswith("+00:00") else text


class SessionManager:
    """Holds the session id and start/end times of a stream."""

    def __init__(self) -> None:
        self.session_id: str = str(uuid.uuid4())
        self.start_time: datetime = _now()
        self.end_time: datetime | None = None
        self._active = False

    def start_session(self) -> list[SSEEvent]:
        """Mark the session active and return its start event."""
        self._active = True
        self.start_time = _now()
        return [
            SSEEvent(
                EventType.SESSION_START.value,
                {
                    "type": EventType.SESSION_START.value,
                    "session_id": self.session_id,
                    "timestamp": _rfc3339(self.start_time),
                },
            )
        ]

    def end_session(self) -> list[SSEEvent]:
        """Mark the session ended and return its end event with duration in ms."""
        now = _now()
        self.end_time = now
        self._active = False
        duration_ms = int((now - self.start_time).total_seconds() * 1000)
        return [
            SSEEvent(
                EventType.SESSION_END.value,
                {
                    "type": EventType.SESSION_END.value,
                    "session_id": self.session_id,
                    "timestamp": _rfc3339(now),
                    "duration": duration_ms,
                },
            )
        ]

    def is_active(self) -> bool:
        """Whether the session has started and not ended."""
        return self._active

    def session_info(self) -> SessionInfo:
        """A snapshot of the session's id and times."""
        return SessionInfo(self.session_id, self.start_time, self.end_time)

    def reset(self) -> None:
        """Start over with a fresh session id."""
        self.session_id = str(uuid.uuid4())
        self.start_time = _now()
        self.end_time = None
        self._active = False
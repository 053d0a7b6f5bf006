from __future__ import annotations

import threading
from dataclasses import dataclass

from .utils import utc_now_iso

MAX_EXIT_STATUS = 255
# Batch-fatal aborts (renderer host unreachable, coordinator failed to start).
# Shares 255 with "255 or more error events"; only the `fatal` log record
# tells the two apart.
EXIT_FATAL = MAX_EXIT_STATUS


def clamp_exit_status(count: int) -> int:
    """Map an error count onto a one-byte exit status, saturating at 255."""
    return max(0, min(MAX_EXIT_STATUS, count))


@dataclass(slots=True, frozen=True)
class ErrorEvent:
    job_id: int
    source_ref: str
    message: str
    timestamp: str


class ErrorAggregator:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[ErrorEvent] = []

    def record(self, job_id: int, source_ref: str, message: str) -> ErrorEvent:
        event = ErrorEvent(job_id=job_id, source_ref=source_ref, message=message, timestamp=utc_now_iso())
        with self._lock:
            self._events.append(event)
        return event

    @property
    def event_count(self) -> int:
        with self._lock:
            return len(self._events)

    def events(self) -> list[ErrorEvent]:
        with self._lock:
            return list(self._events)

    def exit_status(self) -> int:
        return clamp_exit_status(self.event_count)

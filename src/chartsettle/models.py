from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    SAMPLING = "sampling"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchState(str, Enum):
    RUNNING = "running"
    DRAINED = "drained"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})
ACTIVE_STATUSES = frozenset({JobStatus.ASSIGNED, JobStatus.SAMPLING})

ALLOWED_TRANSITIONS: frozenset[tuple[JobStatus, JobStatus]] = frozenset(
    {
        (JobStatus.PENDING, JobStatus.ASSIGNED),
        (JobStatus.ASSIGNED, JobStatus.SAMPLING),
        (JobStatus.SAMPLING, JobStatus.COMPLETED),
        (JobStatus.SAMPLING, JobStatus.FAILED),
        (JobStatus.ASSIGNED, JobStatus.FAILED),
    }
)


@dataclass(slots=True)
class Job:
    job_id: int
    source_ref: str
    status: JobStatus = JobStatus.PENDING
    output_ref: str | None = None
    errors: list[str] = field(default_factory=list)
    slot: int | None = None
    assigned_at: str | None = None
    completed_at: str | None = None
    failed_at: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def active(self) -> bool:
        return self.status in ACTIVE_STATUSES


@dataclass(slots=True, frozen=True)
class JobEvent:
    job_id: int
    event_type: str
    timestamp: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class Assignment:
    job_id: int
    slot: int

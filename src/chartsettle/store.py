from __future__ import annotations

import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import replace
from typing import Any

from .models import ALLOWED_TRANSITIONS, Job, JobEvent, JobStatus
from .utils import utc_now_iso


class UnknownJob(LookupError):
    def __init__(self, job_id: object) -> None:
        super().__init__(f"unknown job: {job_id}")
        self.job_id = job_id


class InvalidTransition(RuntimeError):
    def __init__(self, job_id: int, current: JobStatus, requested: JobStatus | None = None) -> None:
        if requested is None:
            message = f"job {job_id} is {current.value}"
        else:
            message = f"job {job_id} cannot move from {current.value} to {requested.value}"
        super().__init__(message)
        self.job_id = job_id
        self.current = current
        self.requested = requested


def _snapshot(job: Job) -> Job:
    return replace(job, errors=list(job.errors))


class JobStore:
    """In-memory job table for one batch.

    Jobs are created once, in the order given, and never added afterwards.
    Every method is safe to call from several request threads at once.
    """

    def __init__(self, sources: Sequence[str], output_for: Callable[[str], str]) -> None:
        self._lock = threading.Lock()
        self._jobs = [Job(job_id=index, source_ref=str(source)) for index, source in enumerate(sources)]
        self._outputs = [output_for(job.source_ref) for job in self._jobs]
        self._job_locks = [threading.RLock() for _ in self._jobs]
        self._events: list[JobEvent] = []

    def __len__(self) -> int:
        return len(self._jobs)

    def _require(self, job_id: int) -> Job:
        if not isinstance(job_id, int) or job_id < 0 or job_id >= len(self._jobs):
            raise UnknownJob(job_id)
        return self._jobs[job_id]

    def _add_event(self, job_id: int, event_type: str, details: dict[str, Any] | None = None) -> None:
        self._events.append(JobEvent(job_id, event_type, utc_now_iso(), details or {}))

    def get(self, job_id: int) -> Job:
        with self._lock:
            return _snapshot(self._require(job_id))

    def output_for(self, job_id: int) -> str:
        with self._lock:
            self._require(job_id)
            return self._outputs[job_id]

    @contextmanager
    def job_lock(self, job_id: int) -> Iterator[None]:
        with self._lock:
            self._require(job_id)
            lock = self._job_locks[job_id]
        with lock:
            yield

    def list_jobs(self) -> list[Job]:
        with self._lock:
            return [_snapshot(job) for job in self._jobs]

    def events(self, job_id: int | None = None) -> list[JobEvent]:
        with self._lock:
            if job_id is None:
                return list(self._events)
            return [event for event in self._events if event.job_id == job_id]

    def next_pending(self) -> Job | None:
        with self._lock:
            for job in self._jobs:
                if job.status is JobStatus.PENDING:
                    return _snapshot(job)
            return None

    def claim_next_pending(self, slot: int) -> Job | None:
        with self._lock:
            for job in self._jobs:
                if job.status is JobStatus.PENDING:
                    self._apply(job, JobStatus.ASSIGNED, slot=slot)
                    return _snapshot(job)
            return None

    def transition(
        self,
        job_id: int,
        new_status: JobStatus,
        *,
        output_ref: str | None = None,
        slot: int | None = None,
    ) -> Job:
        with self._lock:
            job = self._require(job_id)
            self._apply(job, new_status, output_ref=output_ref, slot=slot)
            return _snapshot(job)

    def _apply(
        self,
        job: Job,
        new_status: JobStatus,
        *,
        output_ref: str | None = None,
        slot: int | None = None,
    ) -> None:
        if (job.status, new_status) not in ALLOWED_TRANSITIONS:
            raise InvalidTransition(job.job_id, job.status, new_status)
        if new_status is JobStatus.COMPLETED and not output_ref:
            raise ValueError(f"job {job.job_id} cannot complete without an output_ref")

        previous = job.status
        job.status = new_status
        now = utc_now_iso()
        if new_status is JobStatus.ASSIGNED:
            job.slot = slot
            job.assigned_at = now
        elif new_status is JobStatus.COMPLETED:
            job.output_ref = output_ref
            job.completed_at = now
            job.slot = None
        elif new_status is JobStatus.FAILED:
            job.failed_at = now
            job.slot = None
        self._add_event(job.job_id, new_status.value, {"from": previous.value, "slot": slot})

    def record_error(self, job_id: int, message: str) -> Job:
        with self._lock:
            job = self._require(job_id)
            job.errors.append(message)
            self._add_event(job_id, "error", {"message": message})
            return _snapshot(job)

    def all_terminal(self) -> bool:
        with self._lock:
            return all(job.terminal for job in self._jobs)

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for job in self._jobs if job.active)

    def summary_counts(self) -> dict[str, int]:
        with self._lock:
            output = {status.value: 0 for status in JobStatus}
            for job in self._jobs:
                output[job.status.value] += 1
            return output

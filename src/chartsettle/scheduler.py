from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable

from .app_logging import log_with_fields
from .batch import Batch
from .models import Assignment, BatchState, Job, JobStatus
from .slots import SlotHandle
from .store import InvalidTransition

_DRAINED = object()


class Scheduler:
    """Drives jobs from pending to a terminal state through the slot pool.

    Each freed slot is offered straight to the lowest-id pending job. The
    batch drains once every job is completed or failed.
    """

    def __init__(
        self,
        batch: Batch,
        logger: logging.Logger,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.batch = batch
        self.store = batch.store
        self.logger = logger
        self.clock = clock
        self._lock = threading.RLock()
        self._holds: dict[int, tuple[SlotHandle, float]] = {}
        self._assignments: queue.Queue[object] = queue.Queue()
        self._drained = threading.Event()
        self._stop = threading.Event()
        self._watchdog: threading.Thread | None = None
        self._started = False

    @property
    def drained(self) -> bool:
        return self._drained.is_set()

    def wait_drained(self, timeout: float | None = None) -> bool:
        return self._drained.wait(timeout)

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self._started = True
            log_with_fields(
                self.logger,
                logging.INFO,
                "batch_started",
                jobs=len(self.store),
                slots=self.batch.slots.capacity,
            )
            self._fill()
            self._check_drained()

        if self.batch.config.limits.job_timeout_seconds > 0 and not self.drained:
            self._watchdog = threading.Thread(target=self._watch, name="chartsettle-watchdog", daemon=True)
            self._watchdog.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._watchdog is not None:
            self._watchdog.join(timeout=timeout)

    def next_assignment(self, timeout: float | None = None) -> Assignment | None:
        """Pop the next job handed to a slot, or ``None`` on timeout or drain."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            try:
                if deadline is None:
                    item = self._assignments.get()
                else:
                    item = self._assignments.get(timeout=max(0.0, deadline - time.monotonic()))
            except queue.Empty:
                return None
            if item is _DRAINED:
                self._assignments.put(item)
                return None
            if not isinstance(item, Assignment):
                raise TypeError(f"unexpected item on the assignment queue: {item!r}")
            # skip assignments whose job already failed, e.g. timed out before pickup
            if self.store.get(item.job_id).status is JobStatus.ASSIGNED:
                return item

    def begin_sampling(self, job_id: int) -> Job:
        with self.store.job_lock(job_id):
            job = self.store.get(job_id)
            if job.status is JobStatus.SAMPLING:
                return job
            job = self.store.transition(job_id, JobStatus.SAMPLING)
        log_with_fields(self.logger, logging.INFO, "job_sampling", job_id=job_id, source=job.source_ref)
        return job

    def complete(self, job_id: int, output_ref: str) -> Job:
        with self.store.job_lock(job_id), self._lock:
            job = self.store.transition(job_id, JobStatus.COMPLETED, output_ref=output_ref)
            self._release(job_id)
            log_with_fields(
                self.logger,
                logging.INFO,
                "job_completed",
                job_id=job_id,
                source=job.source_ref,
                output=output_ref,
            )
            self._fill()
            self._check_drained()
            return job

    def report_error(self, job_id: int, message: str) -> Job:
        with self.store.job_lock(job_id):
            job = self.store.get(job_id)
            # late reports from a renderer still working on a failed or finished job
            if job.terminal:
                raise InvalidTransition(job_id, job.status)
            job = self._record_error(job_id, message)
            limit = self.batch.config.limits.max_errors_per_job
            if limit and len(job.errors) >= limit and job.active:
                job = self._fail_locked(job_id, f"abandoned after {len(job.errors)} errors")
            return job

    def fail(self, job_id: int, reason: str) -> Job:
        with self.store.job_lock(job_id):
            job = self.store.get(job_id)
            if not job.active:
                raise InvalidTransition(job_id, job.status, JobStatus.FAILED)
            self._record_error(job_id, reason)
            return self._fail_locked(job_id, reason)

    def expire_overdue(self) -> list[int]:
        timeout = self.batch.config.limits.job_timeout_seconds
        if timeout <= 0:
            return []
        now = self.clock()
        with self._lock:
            overdue = [job_id for job_id, (_, since) in self._holds.items() if now - since >= timeout]

        expired: list[int] = []
        for job_id in overdue:
            with self.store.job_lock(job_id):
                if not self.store.get(job_id).active:
                    continue
                reason = f"timed out after {timeout:g}s"
                self._record_error(job_id, reason)
                self._fail_locked(job_id, reason)
                expired.append(job_id)
        return expired

    def _watch(self) -> None:
        timeout = self.batch.config.limits.job_timeout_seconds
        interval = min(1.0, max(0.01, timeout / 4))
        while not self._stop.wait(interval):
            if self.drained:
                return
            self.expire_overdue()

    def _record_error(self, job_id: int, message: str) -> Job:
        job = self.store.record_error(job_id, message)
        self.batch.aggregator.record(job_id, job.source_ref, message)
        log_with_fields(
            self.logger,
            logging.WARNING,
            "render_error",
            job_id=job_id,
            source=job.source_ref,
            error=message,
        )
        return job

    def _fail_locked(self, job_id: int, reason: str) -> Job:
        with self._lock:
            job = self.store.transition(job_id, JobStatus.FAILED)
            self._release(job_id)
            log_with_fields(
                self.logger,
                logging.ERROR,
                "job_failed",
                job_id=job_id,
                source=job.source_ref,
                reason=reason,
            )
            self._fill()
            self._check_drained()
            return job

    def _release(self, job_id: int) -> None:
        handle, _ = self._holds.pop(job_id)
        self.batch.slots.release(handle)

    def _fill(self) -> None:
        while True:
            handle = self.batch.slots.try_acquire()
            if handle is None:
                return
            job = self.store.claim_next_pending(handle.slot)
            if job is None:
                self.batch.slots.release(handle)
                return
            self._holds[job.job_id] = (handle, self.clock())
            self._assignments.put(Assignment(job_id=job.job_id, slot=handle.slot))
            log_with_fields(
                self.logger,
                logging.INFO,
                "job_assigned",
                job_id=job.job_id,
                slot=handle.slot,
                source=job.source_ref,
            )

    def _check_drained(self) -> None:
        if self._drained.is_set() or not self.store.all_terminal():
            return
        self.batch.state = BatchState.DRAINED
        log_with_fields(
            self.logger,
            logging.INFO,
            "batch_drained",
            counts=self.store.summary_counts(),
            error_events=self.batch.aggregator.event_count,
            exit_status=self.batch.aggregator.exit_status(),
        )
        self._drained.set()
        self._assignments.put(_DRAINED)

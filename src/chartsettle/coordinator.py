from __future__ import annotations

import base64
import binascii
import logging
import threading
from pathlib import Path
from typing import Any

from .app_logging import log_with_fields
from .batch import Batch
from .charts import ChartFormatError, read_chart
from .models import Assignment, JobStatus
from .scheduler import Scheduler
from .store import InvalidTransition
from .utils import write_bytes_durably


class BatchStillRunning(RuntimeError):
    def __init__(self, counts: dict[str, int]) -> None:
        super().__init__(f"batch is still running: {counts}")
        self.counts = counts


class BadPayload(ValueError):
    pass


class JobAborted(RuntimeError):
    def __init__(self, job_id: int, reason: str) -> None:
        super().__init__(reason)
        self.job_id = job_id
        self.reason = reason


class ChartUnavailable(JobAborted):
    pass


class OutputUnwritable(JobAborted):
    pass


def job_url(job_id: int) -> str:
    return f"/job/{job_id}"


class Coordinator:
    """Semantics of the protocol the renderer host speaks.

    The HTTP layer in ``web`` only translates requests into these calls and
    exceptions into status codes.
    """

    def __init__(self, batch: Batch, scheduler: Scheduler, logger: logging.Logger) -> None:
        self.batch = batch
        self.store = batch.store
        self.scheduler = scheduler
        self.logger = logger
        self.contacted = threading.Event()
        self.end_requested = threading.Event()

    def batch_info(self) -> dict[str, Any]:
        config = self.batch.config
        return {
            "state": self.batch.state.value,
            "slots": config.slots,
            "width": config.image.width,
            "height": config.image.height,
            "sample_interval_ms": config.sampling.interval_ms,
            "stable_samples": config.sampling.stable_samples,
            "max_samples": config.sampling.max_samples,
            "jobs": [
                {
                    "id": job.job_id,
                    "source": job.source_ref,
                    "status": job.status.value,
                    "url": job_url(job.job_id),
                }
                for job in self.store.list_jobs()
            ],
        }

    def next_assignment(self, wait: float) -> Assignment | None:
        return self.scheduler.next_assignment(timeout=wait)

    def job_status(self, job_id: int) -> JobStatus:
        return self.store.get(job_id).status

    def fetch_chart(self, job_id: int) -> bytes:
        """Serve a job's chart; the first fetch of an assigned job starts sampling.

        Finished jobs are served read-only so a retried fetch still succeeds.
        """
        job = self.store.get(job_id)
        if not job.terminal:
            job = self.scheduler.begin_sampling(job_id)
        try:
            return read_chart(job.source_ref, strip=self.batch.config.output.strip_animation)
        except (OSError, ChartFormatError) as exc:
            reason = f"cannot read chart {job.source_ref}: {exc}"
            if not job.terminal:
                self.scheduler.fail(job_id, reason)
            raise ChartUnavailable(job_id, reason) from exc

    def submit_image(self, job_id: int, image: str) -> Path:
        self.store.get(job_id)
        try:
            data = base64.b64decode(image, validate=False)
        except (binascii.Error, ValueError) as exc:
            raise BadPayload(f"image is not valid base64: {exc}") from exc
        if not data:
            raise BadPayload("image is empty")

        with self.store.job_lock(job_id):
            job = self.store.get(job_id)
            if job.status is not JobStatus.SAMPLING:
                raise InvalidTransition(job_id, job.status, JobStatus.COMPLETED)
            output = Path(self.store.output_for(job_id))
            try:
                write_bytes_durably(output, data)
            except OSError as exc:
                reason = f"cannot write image {output}: {exc}"
                self.scheduler.fail(job_id, reason)
                raise OutputUnwritable(job_id, reason) from exc
            self.scheduler.complete(job_id, str(output))

        log_with_fields(
            self.logger,
            logging.INFO,
            "image_written",
            job_id=job_id,
            output=str(output),
            size=len(data),
        )
        return output

    def submit_error(self, job_id: int, message: str) -> None:
        self.scheduler.report_error(job_id, message)

    def abandon(self, job_id: int, reason: str | None = None) -> None:
        self.scheduler.fail(job_id, reason or "abandoned by renderer host")

    def signal_end(self) -> int:
        if not self.store.all_terminal():
            raise BatchStillRunning(self.store.summary_counts())
        status = self.batch.aggregator.exit_status()
        if not self.end_requested.is_set():
            self.end_requested.set()
            log_with_fields(self.logger, logging.INFO, "end_signalled", exit_status=status)
        return status

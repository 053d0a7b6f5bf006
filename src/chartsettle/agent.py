from __future__ import annotations

import base64
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from .app_logging import LOGGER_NAME, log_with_fields
from .convergence import SampleFetchError, sample_until_settled
from .models import ACTIVE_STATUSES, JobStatus

_COORDINATOR_TIMEOUT = httpx.Timeout(connect=10.0, read=60.0, write=30.0, pool=30.0)
DEFAULT_ASSIGNMENT_WAIT = 10.0
DEFAULT_STATUS_INTERVAL = 1.0


class CoordinatorError(RuntimeError):
    def __init__(self, status_code: int, code: str, message: str) -> None:
        super().__init__(f"{status_code} {code}: {message}")
        self.status_code = status_code
        self.code = code
        self.message = message


class Renderer(Protocol):
    """One renderer instance, i.e. what occupies a single slot."""

    def load(self, chart: bytes, width: int, height: int) -> None: ...

    def sample(self) -> bytes: ...

    def close(self) -> None: ...


@dataclass(slots=True, frozen=True)
class BatchInfo:
    slots: int
    width: int
    height: int
    sample_interval_ms: int
    stable_samples: int
    max_samples: int

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> BatchInfo:
        return cls(
            slots=int(payload["slots"]),
            width=int(payload["width"]),
            height=int(payload["height"]),
            sample_interval_ms=int(payload["sample_interval_ms"]),
            stable_samples=int(payload["stable_samples"]),
            max_samples=int(payload.get("max_samples", 0)),
        )


class CoordinatorClient:
    def __init__(self, base_url: str | None = None, *, client: httpx.Client | None = None) -> None:
        if client is None:
            if base_url is None:
                raise ValueError("either base_url or client is required")
            client = httpx.Client(base_url=base_url, timeout=_COORDINATOR_TIMEOUT)
            self._owns_client = True
        else:
            self._owns_client = False
        self.client = client

    def __enter__(self) -> CoordinatorClient:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def _check(self, response: httpx.Response) -> httpx.Response:
        if response.is_success:
            return response
        code, message = "http_error", response.text
        try:
            error = response.json().get("error", {})
            code = str(error.get("code", code))
            message = str(error.get("message", message))
        except (ValueError, AttributeError):
            pass
        raise CoordinatorError(response.status_code, code, message)

    def batch_info(self) -> BatchInfo:
        response = self._check(self.client.get("/batch"))
        return BatchInfo.from_payload(response.json())

    def next_job(self, wait: float = DEFAULT_ASSIGNMENT_WAIT, stop: threading.Event | None = None) -> int | None:
        """Block until a job is assigned to this slot; ``None`` once drained."""
        while stop is None or not stop.is_set():
            response = self._check(self.client.get("/assignment", params={"wait": wait}))
            if response.status_code == 204:
                continue
            payload = response.json()
            if payload.get("done"):
                return None
            return int(payload["id"])
        return None

    def fetch_chart(self, job_id: int) -> bytes:
        return self._check(self.client.get(f"/job/{job_id}")).content

    def job_status(self, job_id: int) -> JobStatus:
        response = self._check(self.client.get(f"/job/{job_id}/status"))
        return JobStatus(response.json()["status"])

    def submit_image(self, job_id: int, image: bytes) -> None:
        encoded = base64.b64encode(image).decode("ascii")
        self._check(self.client.post(f"/job/{job_id}", data={"image": encoded}))

    def submit_error(self, job_id: int, message: str) -> None:
        self._check(self.client.post("/error", data={"id": str(job_id), "error": message}))

    def abandon(self, job_id: int, reason: str) -> None:
        self._check(self.client.post(f"/job/{job_id}/abandon", data={"reason": reason}))

    def signal_end(self) -> int:
        response = self._check(self.client.get("/end"))
        return int(response.json()["status"])


class RenderAgent:
    """Renderer-host side of a batch: one sampling thread per slot.

    Each slot thread claims jobs from the coordinator, loads the chart into its
    own renderer, samples until the output settles and uploads the image.
    When every slot sees the batch drained the agent signals ``/end``.
    Every ``status_interval`` seconds a slot asks whether its job is still
    active and drops it once the coordinator has failed it (e.g. timed out).
    """

    def __init__(
        self,
        base_url: str | None,
        renderer_factory: Callable[[], Renderer],
        *,
        client_factory: Callable[[], CoordinatorClient] | None = None,
        logger: logging.Logger | None = None,
        wait: float = DEFAULT_ASSIGNMENT_WAIT,
        status_interval: float = DEFAULT_STATUS_INTERVAL,
    ) -> None:
        if client_factory is None:
            if base_url is None:
                raise ValueError("either base_url or client_factory is required")

            def client_factory() -> CoordinatorClient:
                return CoordinatorClient(base_url)

        self.client_factory = client_factory
        self.renderer_factory = renderer_factory
        self.logger = logger or logging.getLogger(f"{LOGGER_NAME}.agent")
        self.wait = wait
        self.status_interval = status_interval
        self._stop = threading.Event()
        self._failures: list[BaseException] = []

    def stop(self) -> None:
        self._stop.set()

    def run(self) -> int | None:
        with self.client_factory() as client:
            info = client.batch_info()
            threads = [
                threading.Thread(target=self._slot_loop, args=(slot, info), name=f"chartsettle-slot-{slot}")
                for slot in range(info.slots)
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

            if self._failures:
                raise self._failures[0]
            if self._stop.is_set():
                return None
            try:
                status = client.signal_end()
            except httpx.TransportError as exc:
                log_with_fields(self.logger, logging.INFO, "coordinator_gone", error=str(exc))
                return None
            log_with_fields(self.logger, logging.INFO, "agent_finished", exit_status=status)
            return status

    def _slot_loop(self, slot: int, info: BatchInfo) -> None:
        try:
            with self.client_factory() as client:
                renderer = self.renderer_factory()
                try:
                    while not self._stop.is_set():
                        job_id = client.next_job(wait=self.wait, stop=self._stop)
                        if job_id is None:
                            return
                        self._process(client, renderer, slot, job_id, info)
                finally:
                    renderer.close()
        except Exception as exc:
            log_with_fields(self.logger, logging.ERROR, "slot_crashed", slot=slot, error=repr(exc))
            self._failures.append(exc)
            self._stop.set()

    def _process(
        self,
        client: CoordinatorClient,
        renderer: Renderer,
        slot: int,
        job_id: int,
        info: BatchInfo,
    ) -> None:
        # set once the agent stops or the coordinator no longer holds the job active
        job_stop = threading.Event()
        next_check = time.monotonic() + self.status_interval

        def sample() -> bytes:
            nonlocal next_check
            if self._stop.is_set():
                job_stop.set()
            elif time.monotonic() >= next_check:
                next_check = time.monotonic() + self.status_interval
                if client.job_status(job_id) not in ACTIVE_STATUSES:
                    job_stop.set()
            return renderer.sample()

        def report(exc: SampleFetchError) -> None:
            client.submit_error(job_id, str(exc) or type(exc).__name__)

        try:
            chart = client.fetch_chart(job_id)
            try:
                renderer.load(chart, info.width, info.height)
            except SampleFetchError as exc:
                client.abandon(job_id, f"renderer could not load chart: {exc}")
                return

            result = sample_until_settled(
                sample,
                interval=info.sample_interval_ms / 1000.0,
                stable_samples=info.stable_samples,
                max_samples=info.max_samples,
                on_error=report,
                stop=job_stop,
            )
            if result.settled and result.image is not None:
                client.submit_image(job_id, result.image)
                log_with_fields(
                    self.logger,
                    logging.INFO,
                    "job_settled",
                    job_id=job_id,
                    slot=slot,
                    samples=result.samples,
                )
            elif job_stop.is_set():
                log_with_fields(
                    self.logger,
                    logging.WARNING,
                    "job_withdrawn",
                    job_id=job_id,
                    slot=slot,
                    samples=result.samples,
                )
            else:
                client.abandon(job_id, f"no settlement after {result.samples} samples")
        except CoordinatorError as exc:
            # job was failed or timed out on the coordinator side
            log_with_fields(
                self.logger,
                logging.WARNING,
                "job_rejected",
                job_id=job_id,
                slot=slot,
                status=exc.status_code,
                code=exc.code,
                error=exc.message,
            )

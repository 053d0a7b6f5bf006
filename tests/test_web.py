from __future__ import annotations

import base64
import json
import logging
import threading
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

from fastapi.testclient import TestClient

from chartsettle.batch import Batch
from chartsettle.config import AppConfig, OutputConfig
from chartsettle.coordinator import Coordinator
from chartsettle.models import JobStatus
from chartsettle.scheduler import Scheduler
from chartsettle.web import create_app

CHART = {
    "title": {"text": "Sales"},
    "elements": [{"type": "bar", "values": [1, 2, 3], "on-show": {"type": "pop-up", "cascade": 1}}],
}


def quiet_logger() -> logging.Logger:
    logger = logging.getLogger("test_chartsettle")
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class CoordinatorApiTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp = TemporaryDirectory()
        self.root = Path(self._temp.name)
        self.charts = []
        for index in range(3):
            path = self.root / f"chart{index}.json"
            path.write_text(json.dumps(CHART), encoding="utf-8")
            self.charts.append(path)

    def tearDown(self) -> None:
        self._temp.cleanup()

    def build(self, charts: list[Path] | None = None, **output: object) -> TestClient:
        config = AppConfig(slots=2, output=OutputConfig(**output))
        self.batch = Batch.create(charts if charts is not None else self.charts, config)
        self.scheduler = Scheduler(self.batch, quiet_logger())
        self.coordinator = Coordinator(self.batch, self.scheduler, quiet_logger())
        self.scheduler.start()
        return TestClient(create_app(self.coordinator))

    def test_fetch_serves_chart_and_starts_sampling(self) -> None:
        client = self.build()
        response = client.get("/job/0")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), CHART)
        self.assertEqual(self.batch.store.get(0).status, JobStatus.SAMPLING)
        self.assertTrue(self.coordinator.contacted.is_set())
        self.assertEqual(client.get("/job/0").status_code, 200)

    def test_fetch_pending_job_is_rejected(self) -> None:
        client = self.build()
        response = client.get("/job/2")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "invalid_transition")

    def test_unknown_job_is_404(self) -> None:
        client = self.build()
        for path in ("/job/3", "/job/-1"):
            response = client.get(path)
            self.assertEqual(response.status_code, 404)
            self.assertEqual(response.json()["error"]["code"], "unknown_job")
        self.assertEqual(client.post("/job/9", data={"image": b64(b"png")}).status_code, 404)
        self.assertEqual(client.post("/error", data={"id": "9", "error": "boom"}).status_code, 404)

    def test_image_submission_writes_once(self) -> None:
        client = self.build()
        client.get("/job/0")
        response = client.post("/job/0", data={"image": b64(b"\x89PNG first")})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.content, b"")

        output = self.root / "chart0.json.png"
        self.assertEqual(output.read_bytes(), b"\x89PNG first")
        job = self.batch.store.get(0)
        self.assertEqual(job.status, JobStatus.COMPLETED)
        self.assertEqual(job.output_ref, str(output))

        again = client.post("/job/0", data={"image": b64(b"\x89PNG second")})
        self.assertEqual(again.status_code, 409)
        self.assertEqual(output.read_bytes(), b"\x89PNG first")
        self.assertEqual(self.batch.store.get(2).status, JobStatus.ASSIGNED)

    def test_concurrent_image_submissions_write_once(self) -> None:
        client = self.build()
        client.get("/job/0")
        payloads = [b"\x89PNG left", b"\x89PNG right"]
        barrier = threading.Barrier(len(payloads))
        results: dict[bytes, int] = {}

        def submit(payload: bytes) -> None:
            own_client = TestClient(client.app)
            barrier.wait(timeout=5)
            results[payload] = own_client.post("/job/0", data={"image": b64(payload)}).status_code

        threads = [threading.Thread(target=submit, args=(payload,)) for payload in payloads]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        self.assertEqual(sorted(results.values()), [200, 409])
        winner = next(payload for payload, code in results.items() if code == 200)
        self.assertEqual((self.root / "chart0.json.png").read_bytes(), winner)
        self.assertEqual(self.batch.store.get(0).status, JobStatus.COMPLETED)
        completions = [event for event in self.batch.store.events(0) if event.event_type == "completed"]
        self.assertEqual(len(completions), 1)

    def test_image_before_fetch_is_rejected(self) -> None:
        client = self.build()
        response = client.post("/job/1", data={"image": b64(b"png")})
        self.assertEqual(response.status_code, 409)
        self.assertFalse((self.root / "chart1.json.png").exists())

    def test_bad_image_payloads(self) -> None:
        client = self.build()
        client.get("/job/0")
        for payload in ("!!!!", "abc"):
            response = client.post("/job/0", data={"image": payload})
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json()["error"]["code"], "bad_payload")
        self.assertEqual(self.batch.store.get(0).status, JobStatus.SAMPLING)

    def test_output_directory(self) -> None:
        out_dir = self.root / "images"
        client = self.build(directory=out_dir)
        client.get("/job/1")
        client.post("/job/1", data={"image": b64(b"png")})
        self.assertEqual((out_dir / "chart1.json.png").read_bytes(), b"png")

    def test_error_submission_keeps_status(self) -> None:
        client = self.build()
        client.get("/job/0")
        response = client.post("/error", data={"id": "0", "error": "get_img_binary threw"})
        self.assertEqual(response.status_code, 200)
        job = self.batch.store.get(0)
        self.assertEqual(job.status, JobStatus.SAMPLING)
        self.assertEqual(job.errors, ["get_img_binary threw"])
        self.assertEqual(self.batch.aggregator.event_count, 1)

    def test_errors_for_finished_job_are_refused(self) -> None:
        client = self.build()
        client.get("/job/0")
        client.post("/job/0", data={"image": b64(b"png")})
        response = client.post("/error", data={"id": "0", "error": "late"})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "invalid_transition")
        self.assertEqual(self.batch.store.get(0).errors, [])
        self.assertEqual(self.batch.aggregator.event_count, 0)

    def test_job_status(self) -> None:
        client = self.build()
        self.assertEqual(client.get("/job/2/status").json(), {"id": 2, "status": "pending"})
        client.get("/job/0")
        self.assertEqual(client.get("/job/0/status").json()["status"], "sampling")
        client.post("/job/0/abandon", data={"reason": "gave up"})
        self.assertEqual(client.get("/job/0/status").json()["status"], "failed")
        self.assertEqual(client.get("/job/7/status").status_code, 404)

    def test_finished_job_is_served_read_only(self) -> None:
        client = self.build()
        client.get("/job/0")
        client.post("/job/0", data={"image": b64(b"png")})
        response = client.get("/job/0")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), CHART)
        self.assertEqual(self.batch.store.get(0).status, JobStatus.COMPLETED)

    def test_abandon_fails_job(self) -> None:
        client = self.build()
        client.get("/job/0")
        response = client.post("/job/0/abandon", data={"reason": "no settlement after 50 samples"})
        self.assertEqual(response.status_code, 200)
        job = self.batch.store.get(0)
        self.assertEqual(job.status, JobStatus.FAILED)
        self.assertEqual(job.errors, ["no settlement after 50 samples"])
        self.assertEqual(client.post("/job/0/abandon").status_code, 409)

    def test_unreadable_chart_fails_job(self) -> None:
        missing = self.root / "missing.json"
        client = self.build([missing])
        response = client.get("/job/0")
        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "job_failed")
        self.assertEqual(self.batch.store.get(0).status, JobStatus.FAILED)
        self.assertEqual(self.batch.aggregator.event_count, 1)
        self.assertTrue(self.scheduler.drained)

    def test_strip_animation(self) -> None:
        client = self.build(strip_animation=True)
        chart = client.get("/job/0").json()
        self.assertNotIn("on-show", chart["elements"][0])
        self.assertEqual(chart["elements"][0]["values"], [1, 2, 3])

    def test_assignments_then_done(self) -> None:
        client = self.build()
        first = client.get("/assignment").json()
        second = client.get("/assignment").json()
        self.assertEqual((first["id"], first["url"]), (0, "/job/0"))
        self.assertEqual(second["id"], 1)
        self.assertEqual(client.get("/assignment").status_code, 204)

        for job_id in range(2):
            client.get(f"/job/{job_id}")
            client.post(f"/job/{job_id}", data={"image": b64(b"png")})
        third = client.get("/assignment").json()
        self.assertEqual(third["id"], 2)
        client.get("/job/2")
        client.post("/job/2", data={"image": b64(b"png")})
        self.assertEqual(client.get("/assignment").json(), {"done": True})

    def test_end_only_after_drain(self) -> None:
        client = self.build()
        response = client.get("/end")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"]["code"], "batch_running")
        self.assertFalse(self.coordinator.end_requested.is_set())

        client.get("/job/0")
        client.post("/error", data={"id": "0", "error": "x"})
        client.post("/error", data={"id": "0", "error": "y"})
        client.post("/job/0", data={"image": b64(b"png")})
        client.get("/job/1")
        client.post("/job/1/abandon", data={"reason": "gave up"})
        client.get("/job/2")
        client.post("/job/2", data={"image": b64(b"png")})

        response = client.get("/end")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": 3})
        self.assertTrue(self.coordinator.end_requested.is_set())

    def test_batch_info(self) -> None:
        client = self.build()
        info = client.get("/batch").json()
        self.assertEqual(info["slots"], 2)
        self.assertEqual(info["sample_interval_ms"], 200)
        self.assertEqual(info["stable_samples"], 3)
        self.assertEqual(info["state"], "running")
        self.assertEqual([job["status"] for job in info["jobs"]], ["assigned", "assigned", "pending"])


if __name__ == "__main__":
    unittest.main()

from __future__ import annotations

from importlib.metadata import version
from typing import Annotated, Any

from fastapi import FastAPI, Form, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .coordinator import BadPayload, BatchStillRunning, Coordinator, JobAborted, job_url
from .store import InvalidTransition, UnknownJob

MAX_ASSIGNMENT_WAIT = 30.0


def error_response(*, status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> JSONResponse:
    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return JSONResponse(status_code=status_code, content=payload)


async def unknown_job_handler(_req: Request, exc: UnknownJob) -> JSONResponse:
    return error_response(status_code=404, code="unknown_job", message=str(exc))


async def invalid_transition_handler(_req: Request, exc: InvalidTransition) -> JSONResponse:
    return error_response(
        status_code=409,
        code="invalid_transition",
        message=str(exc),
        details={"job_id": exc.job_id, "status": exc.current.value},
    )


async def batch_running_handler(_req: Request, exc: BatchStillRunning) -> JSONResponse:
    return error_response(status_code=409, code="batch_running", message=str(exc), details={"counts": exc.counts})


async def bad_payload_handler(_req: Request, exc: BadPayload) -> JSONResponse:
    return error_response(status_code=400, code="bad_payload", message=str(exc))


async def job_aborted_handler(_req: Request, exc: JobAborted) -> JSONResponse:
    return error_response(status_code=422, code="job_failed", message=exc.reason, details={"job_id": exc.job_id})


async def validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        status_code=400,
        code="invalid_argument",
        message="Request validation failed.",
        details={"errors": exc.errors()},
    )


def create_app(coordinator: Coordinator) -> FastAPI:
    app = FastAPI(title="chartsettle coordinator", version=version("chartsettle"))
    app.state.coordinator = coordinator

    app.add_exception_handler(UnknownJob, unknown_job_handler)
    app.add_exception_handler(InvalidTransition, invalid_transition_handler)
    app.add_exception_handler(BatchStillRunning, batch_running_handler)
    app.add_exception_handler(BadPayload, bad_payload_handler)
    app.add_exception_handler(JobAborted, job_aborted_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    @app.middleware("http")
    async def mark_contact(request: Request, call_next):  # noqa: ANN202
        coordinator.contacted.set()
        return await call_next(request)

    @app.get("/batch")
    def get_batch() -> dict[str, Any]:
        return coordinator.batch_info()

    @app.get("/assignment")
    def get_assignment(wait: Annotated[float, Query(ge=0.0, le=MAX_ASSIGNMENT_WAIT)] = 0.0) -> Response:
        assignment = coordinator.next_assignment(wait)
        if assignment is None:
            if coordinator.scheduler.drained:
                return JSONResponse({"done": True})
            return Response(status_code=204)
        return JSONResponse(
            {"id": assignment.job_id, "slot": assignment.slot, "url": job_url(assignment.job_id)}
        )

    @app.get("/job/{job_id}")
    def get_job(job_id: int) -> Response:
        return Response(content=coordinator.fetch_chart(job_id), media_type="application/json")

    @app.get("/job/{job_id}/status")
    def get_job_status(job_id: int) -> dict[str, Any]:
        return {"id": job_id, "status": coordinator.job_status(job_id).value}

    @app.post("/job/{job_id}")
    def post_job(job_id: int, image: Annotated[str, Form()]) -> Response:
        coordinator.submit_image(job_id, image)
        return Response(status_code=200)

    @app.post("/job/{job_id}/abandon")
    def post_abandon(job_id: int, reason: Annotated[str, Form()] = "") -> Response:
        coordinator.abandon(job_id, reason or None)
        return Response(status_code=200)

    @app.post("/error")
    def post_error(
        job_id: Annotated[int, Form(alias="id")],
        error: Annotated[str, Form()] = "",
    ) -> Response:
        coordinator.submit_error(job_id, error or "unspecified renderer error")
        return Response(status_code=200)

    @app.get("/end")
    def get_end() -> dict[str, int]:
        return {"status": coordinator.signal_end()}

    return app

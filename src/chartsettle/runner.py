from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from pathlib import Path

import uvicorn

from .app_logging import log_with_fields
from .batch import Batch
from .config import AppConfig
from .coordinator import Coordinator
from .host import RendererHost, RendererHostUnreachable
from .scheduler import Scheduler
from .utils import find_free_port
from .web import create_app

SERVER_STARTUP_TIMEOUT = 10.0
_POLL_INTERVAL = 0.2


class CoordinatorStartupError(RuntimeError):
    pass


def _start_server(server: uvicorn.Server) -> threading.Thread:
    thread = threading.Thread(target=server.run, name="chartsettle-server", daemon=True)
    thread.start()
    deadline = time.monotonic() + SERVER_STARTUP_TIMEOUT
    while not server.started:
        if not thread.is_alive():
            raise CoordinatorStartupError("coordinator server exited during startup")
        if time.monotonic() > deadline:
            server.should_exit = True
            raise CoordinatorStartupError(f"coordinator server not ready after {SERVER_STARTUP_TIMEOUT}s")
        time.sleep(0.05)
    return thread


def _wait_for_drain(scheduler: Scheduler, coordinator: Coordinator, host: RendererHost, config: AppConfig) -> None:
    startup_timeout = config.renderer.startup_timeout_seconds
    launched_at = time.monotonic()
    while not scheduler.wait_drained(_POLL_INTERVAL):
        if coordinator.contacted.is_set() or startup_timeout <= 0:
            continue
        if time.monotonic() - launched_at > startup_timeout:
            raise RendererHostUnreachable(
                f"renderer host (pid={host.pid}) did not contact the coordinator within {startup_timeout:g}s"
            )


def run_batch(
    config: AppConfig,
    charts: Sequence[str | Path],
    logger: logging.Logger,
    *,
    host_factory: Callable[[str, logging.Logger], RendererHost] = RendererHost,
) -> int:
    """Convert ``charts`` and return the clamped error count as exit status.

    Raises ``RendererHostUnreachable`` or ``CoordinatorStartupError`` when the
    batch cannot run at all.
    """
    batch = Batch.create(charts, config)
    scheduler = Scheduler(batch, logger)
    coordinator = Coordinator(batch, scheduler, logger)
    app = create_app(coordinator)

    bind_host = config.server.host
    port = config.server.port or find_free_port(bind_host)
    server = uvicorn.Server(
        uvicorn.Config(app, host=bind_host, port=port, log_level="warning", access_log=False, lifespan="off")
    )
    url = f"http://{bind_host}:{port}/"

    server_thread = _start_server(server)
    host: RendererHost | None = None
    try:
        scheduler.start()
        if not scheduler.drained:
            host = host_factory(config.renderer.command or "", logger)
            host.start(url)
            _wait_for_drain(scheduler, coordinator, host, config)
            coordinator.end_requested.wait(config.renderer.end_grace_seconds)
    finally:
        if host is not None:
            host.stop(config.renderer.stop_grace_seconds)
        scheduler.stop()
        server.should_exit = True
        server_thread.join(timeout=SERVER_STARTUP_TIMEOUT)

    status = batch.aggregator.exit_status()
    log_with_fields(
        logger,
        logging.INFO,
        "batch_exit",
        exit_status=status,
        error_events=batch.aggregator.event_count,
        counts=batch.store.summary_counts(),
    )
    return status

from __future__ import annotations

import logging
import shlex
import subprocess

from .app_logging import log_with_fields


class RendererHostUnreachable(RuntimeError):
    pass


class RendererHost:
    """Lifecycle handle for the external process hosting the renderer.

    The coordinator URL is appended to ``command`` as its last argument.
    """

    def __init__(self, command: str, logger: logging.Logger) -> None:
        self.command = command
        self.argv = shlex.split(command)
        self.logger = logger
        self.process: subprocess.Popen[bytes] | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def start(self, url: str) -> None:
        if not self.argv:
            raise RendererHostUnreachable("renderer command is empty")
        cmd = [*self.argv, url]
        try:
            self.process = subprocess.Popen(cmd, stdin=subprocess.DEVNULL)
        except OSError as exc:
            raise RendererHostUnreachable(f"cannot launch renderer `{self.command}`: {exc}") from exc
        log_with_fields(self.logger, logging.INFO, "renderer_launched", pid=self.process.pid, url=url)

    def request_stop(self) -> None:
        process = self.process
        if process is None or process.poll() is not None:
            return
        try:
            process.terminate()
        except OSError as exc:
            self._warn_stop_failed("SIGTERM", exc)

    def force_kill(self) -> None:
        process = self.process
        if process is None or process.poll() is not None:
            return
        try:
            process.kill()
        except OSError as exc:
            self._warn_stop_failed("SIGKILL", exc)

    def stop(self, grace_seconds: float = 5.0) -> int | None:
        """Terminate the host, escalating to a kill after ``grace_seconds``."""
        if self.process is None:
            return None
        self.request_stop()
        try:
            return self.process.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            self.force_kill()
        try:
            return self.process.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            self._warn_stop_failed("SIGKILL", None)
            return None

    def _warn_stop_failed(self, signal_name: str, exc: BaseException | None) -> None:
        log_with_fields(
            self.logger,
            logging.WARNING,
            "renderer_stop_failed",
            pid=self.pid,
            signal=signal_name,
            error=repr(exc) if exc is not None else "still running",
            hint="kill the renderer process by hand",
        )

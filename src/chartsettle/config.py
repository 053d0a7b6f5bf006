from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from pathlib import Path

import yaml


@dataclass(slots=True)
class RendererConfig:
    command: str | None = None
    stop_grace_seconds: float = 5.0
    startup_timeout_seconds: float = 60.0
    end_grace_seconds: float = 2.0


@dataclass(slots=True)
class ImageConfig:
    width: int = 400
    height: int = 300


@dataclass(slots=True)
class SamplingConfig:
    interval_ms: int = 200
    stable_samples: int = 3
    max_samples: int = 0

    @property
    def interval_seconds(self) -> float:
        return self.interval_ms / 1000.0


@dataclass(slots=True)
class LimitsConfig:
    job_timeout_seconds: float = 0.0
    max_errors_per_job: int = 0


@dataclass(slots=True)
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class OutputConfig:
    directory: Path | None = None
    strip_animation: bool = False
    log: Path | None = None


@dataclass(slots=True)
class AppConfig:
    slots: int = 1
    renderer: RendererConfig = field(default_factory=RendererConfig)
    image: ImageConfig = field(default_factory=ImageConfig)
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    output: OutputConfig = field(default_factory=OutputConfig)


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a mapping")
    return value


def _is_loopback(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def load_config(path: str | Path | None = None) -> AppConfig:
    if path is None:
        config = AppConfig()
        validate_config(config)
        return config

    config_path = Path(path).expanduser().resolve()
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"Config is not valid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    renderer_raw = _section(raw, "renderer")
    image_raw = _section(raw, "image")
    sampling_raw = _section(raw, "sampling")
    limits_raw = _section(raw, "limits")
    server_raw = _section(raw, "server")
    output_raw = _section(raw, "output")

    def to_path(value: object) -> Path | None:
        if value is None:
            return None
        output = Path(str(value)).expanduser()
        if not output.is_absolute():
            output = config_path.parent / output
        return output

    command = renderer_raw.get("command")
    config = AppConfig(
        slots=int(raw.get("slots", 1)),
        renderer=RendererConfig(
            command=str(command) if command is not None else None,
            stop_grace_seconds=float(renderer_raw.get("stop_grace_seconds", 5.0)),
            startup_timeout_seconds=float(renderer_raw.get("startup_timeout_seconds", 60.0)),
            end_grace_seconds=float(renderer_raw.get("end_grace_seconds", 2.0)),
        ),
        image=ImageConfig(
            width=int(image_raw.get("width", 400)),
            height=int(image_raw.get("height", 300)),
        ),
        sampling=SamplingConfig(
            interval_ms=int(sampling_raw.get("interval_ms", 200)),
            stable_samples=int(sampling_raw.get("stable_samples", 3)),
            max_samples=int(sampling_raw.get("max_samples", 0)),
        ),
        limits=LimitsConfig(
            job_timeout_seconds=float(limits_raw.get("job_timeout_seconds", 0.0)),
            max_errors_per_job=int(limits_raw.get("max_errors_per_job", 0)),
        ),
        server=ServerConfig(
            host=str(server_raw.get("host", "127.0.0.1")),
            port=int(server_raw.get("port", 0)),
        ),
        output=OutputConfig(
            directory=to_path(output_raw.get("directory")),
            strip_animation=bool(output_raw.get("strip_animation", False)),
            log=to_path(output_raw.get("log")),
        ),
    )
    validate_config(config)
    return config


def validate_config(config: AppConfig) -> None:
    if config.slots < 1:
        raise ValueError("`slots` must be >= 1")
    if config.image.width < 1 or config.image.height < 1:
        raise ValueError("`image.width` and `image.height` must be >= 1")
    if config.sampling.interval_ms < 1:
        raise ValueError("`sampling.interval_ms` must be >= 1")
    if config.sampling.stable_samples < 1:
        raise ValueError("`sampling.stable_samples` must be >= 1")
    if config.sampling.max_samples < 0:
        raise ValueError("`sampling.max_samples` must be >= 0")
    if config.limits.job_timeout_seconds < 0:
        raise ValueError("`limits.job_timeout_seconds` must be >= 0")
    if config.limits.max_errors_per_job < 0:
        raise ValueError("`limits.max_errors_per_job` must be >= 0")
    if config.renderer.stop_grace_seconds < 0:
        raise ValueError("`renderer.stop_grace_seconds` must be >= 0")
    if config.renderer.startup_timeout_seconds < 0:
        raise ValueError("`renderer.startup_timeout_seconds` must be >= 0")
    if config.renderer.end_grace_seconds < 0:
        raise ValueError("`renderer.end_grace_seconds` must be >= 0")
    if not _is_loopback(config.server.host):
        raise ValueError(f"`server.host` must be a loopback address, got {config.server.host}")
    if not 0 <= config.server.port <= 65535:
        raise ValueError("`server.port` must be between 0 and 65535")


def validate_for_run(config: AppConfig) -> None:
    validate_config(config)
    if not config.renderer.command or not config.renderer.command.strip():
        raise ValueError("Missing `renderer.command` (or --renderer)")


def ensure_local_paths(config: AppConfig) -> None:
    if config.output.directory is not None:
        config.output.directory.mkdir(parents=True, exist_ok=True)
    if config.output.log is not None:
        config.output.log.parent.mkdir(parents=True, exist_ok=True)

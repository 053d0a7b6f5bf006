from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .aggregator import EXIT_FATAL
from .app_logging import log_with_fields, setup_logger
from .config import AppConfig, ensure_local_paths, load_config, validate_for_run
from .host import RendererHostUnreachable
from .runner import CoordinatorStartupError, run_batch

EXIT_USAGE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chartsettle",
        description="Convert animated chart descriptions into PNG images once they settle",
        epilog=(
            "Exit status is the number of error events, capped at 255. A run that cannot start "
            "at all also exits 255 and logs a `fatal` record; invalid configuration exits 2."
        ),
    )
    parser.add_argument("--config", help="Path to chartsettle YAML config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Render every CHART into CHART.png")
    run_parser.add_argument(
        "--renderer",
        help="Shell command launching the renderer host; the coordinator URL is appended",
    )
    run_parser.add_argument("--slots", type=int, help="Renderer instances tolerated at a time")
    run_parser.add_argument("--width", type=int, help="Image width in pixels")
    run_parser.add_argument("--height", type=int, help="Image height in pixels")
    run_parser.add_argument("--output-dir", type=Path, help="Write images here instead of next to inputs")
    run_parser.add_argument(
        "--strip-animation",
        action="store_true",
        default=None,
        help="Remove entry animations from charts before rendering",
    )
    run_parser.add_argument("--max-samples", type=int, help="Give up on a chart after this many samples")
    run_parser.add_argument("--job-timeout", type=float, help="Fail a chart held longer than this many seconds")
    run_parser.add_argument("charts", nargs="+", metavar="CHART", help="Chart description file (JSON)")
    return parser


def apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    if args.renderer is not None:
        config.renderer.command = args.renderer
    if args.slots is not None:
        config.slots = args.slots
    if args.width is not None:
        config.image.width = args.width
    if args.height is not None:
        config.image.height = args.height
    if args.output_dir is not None:
        config.output.directory = args.output_dir.expanduser().resolve()
    if args.strip_animation is not None:
        config.output.strip_animation = args.strip_animation
    if args.max_samples is not None:
        config.sampling.max_samples = args.max_samples
    if args.job_timeout is not None:
        config.limits.job_timeout_seconds = args.job_timeout
    return config


def cmd_run(config: AppConfig, charts: list[str]) -> int:
    ensure_local_paths(config)
    logger = setup_logger(config.output.log)
    try:
        return run_batch(config, charts, logger)
    except (RendererHostUnreachable, CoordinatorStartupError) as exc:
        log_with_fields(logger, logging.CRITICAL, "fatal", error=str(exc), exit_status=EXIT_FATAL)
        return EXIT_FATAL
    except KeyboardInterrupt:
        log_with_fields(logging.getLogger("chartsettle"), logging.INFO, "shutdown", reason="keyboard_interrupt")
        return EXIT_FATAL


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = apply_overrides(load_config(args.config), args)
        validate_for_run(config)
    except (OSError, ValueError) as exc:
        print(f"invalid configuration: {exc}", file=sys.stderr)
        return EXIT_USAGE

    if args.command == "run":
        return cmd_run(config, args.charts)
    parser.error(f"Unknown command: {args.command}")
    return EXIT_USAGE


if __name__ == "__main__":
    raise SystemExit(main())

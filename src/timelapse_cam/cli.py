"""Command-line entry point for the timelapse recorder."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Sequence

import uvicorn

from .config import RecorderSettings, load_settings
from .event_log import EventLog
from .media import create_media_tool
from .scheduler import CaptureScheduler, RecorderStartupError
from .version import APP_VERSION

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the recorder CLI."""

    parser = argparse.ArgumentParser(
        prog="python -m timelapse_cam",
        description="Capture stills from a network camera and roll them into timelapse videos.",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the JSON settings file (defaults to $TIMELAPSE_CAM_CONFIG or data/config.json).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Logging verbosity.",
    )
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Run the recorder inside the HTTP status server.",
    )
    parser.add_argument("--host", default="0.0.0.0", help="Bind address used with --serve.")
    parser.add_argument("--port", type=int, default=8000, help="Port used with --serve.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )


async def run_recorder(settings: RecorderSettings) -> None:
    """Run the recorder until cancelled."""

    event_log = EventLog(settings.event_log_path)
    scheduler = CaptureScheduler(settings, create_media_tool(settings), event_log=event_log)
    await scheduler.startup()
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.aclose()


def run(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        settings = load_settings(args.config)
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    logger.info(
        "Recording %s every %gs, %d frames per video",
        settings.redacted_stream_url(),
        settings.capture_interval_s,
        settings.batch_size,
    )
    if args.serve:
        from .app import create_app

        uvicorn.run(create_app(settings), host=args.host, port=args.port, log_level=args.log_level.lower())
        return 0

    try:
        asyncio.run(run_recorder(settings))
    except RecorderStartupError as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted; exiting")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by ``python -m timelapse_cam``."""

    return run(argv)


__all__ = ["build_parser", "configure_logging", "main", "run", "run_recorder"]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())

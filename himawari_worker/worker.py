"""Worker process entry point for the himawari transcoding farm.

This module wires the components together and owns the process lifecycle:

Architecture Pattern:
    - Pull-based: the worker polls the coordinator, it never listens
    - Async Execution: one polling loop plus N concurrent task pipelines
    - Graceful Shutdown: SIGTERM/SIGINT set one shutdown signal; running
      ffmpeg processes are killed, temp files are removed, then the
      process exits

Usage:
    Command line:
        himawari-worker 10.0.0.5:8080 /srv/encode
        python -m himawari_worker 10.0.0.5:8080

Exit Codes:
    0: Clean shutdown
    1: Invalid configuration
    2: Invalid command line (argparse)
"""

import argparse
import asyncio
import sys
from typing import Any

from dotenv import load_dotenv

from himawari_worker import __version__
from himawari_worker.clients.coordinator import CoordinatorClient
from himawari_worker.config import (
    DEFAULT_WORK_DIR,
    WorkerSettings,
    get_log_level,
    load_settings,
)
from himawari_worker.exceptions import ConfigurationError
from himawari_worker.lifecycle import ShutdownSignal
from himawari_worker.pipeline import TaskPipeline
from himawari_worker.scheduler import Backoff, WorkerPool
from himawari_worker.utils.logging import configure_logging, get_logger
from himawari_worker.utils.transcoder import Transcoder
from himawari_worker.utils.workdir import find_orphaned_artifacts

log = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="himawari-worker",
        description="Poll a himawari coordinator for transcoding tasks and run them with ffmpeg.",
    )
    parser.add_argument("host", help="coordinator address as host[:port]")
    parser.add_argument(
        "work_dir",
        nargs="?",
        default=DEFAULT_WORK_DIR,
        help=f"directory for output artifacts (default: {DEFAULT_WORK_DIR})",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def build_pool(
    settings: WorkerSettings,
    shutdown: ShutdownSignal,
    client: CoordinatorClient | None = None,
    logger: Any = None,
) -> WorkerPool:
    """Construct the scheduler and everything it drives from settings."""
    client = client or CoordinatorClient(
        settings.host,
        threads_hint=settings.pool_size,
        acquire_timeout=settings.acquire_timeout,
        upload_timeout=settings.upload_timeout,
        logger=logger,
    )
    transcoder = Transcoder(
        binary=settings.ffmpeg_binary,
        timeout=settings.command_timeout,
        inherit_output=settings.tool_output == "inherit",
        logger=logger,
    )
    pipeline = TaskPipeline(client, transcoder, settings.work_dir, shutdown, logger=logger)
    return WorkerPool(
        client,
        pipeline.run,
        shutdown,
        pool_size=settings.pool_size,
        backoff=Backoff(settings.poll_interval, settings.poll_interval_max),
        logger=logger,
    )


async def run_worker(settings: WorkerSettings, shutdown: ShutdownSignal | None = None) -> None:
    """Run the polling loop until shutdown and release all resources.

    Args:
        settings: Resolved configuration
        shutdown: Shared signal (a new one with SIGTERM/SIGINT handlers is
            created when omitted)
    """
    loop = asyncio.get_running_loop()
    owns_signal = shutdown is None
    if shutdown is None:
        shutdown = ShutdownSignal()
        shutdown.install(loop)

    for orphan in find_orphaned_artifacts(settings.work_dir):
        log.warning("orphaned_artifact_found", path=str(orphan))

    pool = build_pool(settings, shutdown)
    log.info(
        "worker_started",
        coordinator=settings.host,
        work_dir=str(settings.work_dir),
        pool_size=settings.pool_size,
        ffmpeg_binary=settings.ffmpeg_binary,
    )
    try:
        await pool.run()
    finally:
        await pool.client.close()
        if owns_signal:
            shutdown.uninstall(loop)
        log.info("worker_shutdown", reason=shutdown.reason)


def main(argv: list[str] | None = None) -> None:
    """Worker process entry point.

    Loads configuration, registers signal handlers, runs the main loop.
    """
    args = build_parser().parse_args(argv)
    load_dotenv()
    configure_logging(get_log_level())

    try:
        settings = load_settings(args.host, args.work_dir)
    except ConfigurationError as e:
        log.error("configuration_load_failed", error=str(e))
        sys.exit(1)

    log.info(
        "worker_configuration_loaded",
        coordinator=settings.host,
        pool_size=settings.pool_size,
        acquire_timeout=settings.acquire_timeout,
        upload_timeout=settings.upload_timeout,
        command_timeout=settings.command_timeout,
    )

    try:
        asyncio.run(run_worker(settings))
    except KeyboardInterrupt:
        log.info("worker_interrupted_by_user")
    log.info("worker_exited_successfully")
    sys.exit(0)


if __name__ == "__main__":
    main()

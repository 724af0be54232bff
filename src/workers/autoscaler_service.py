#!/usr/bin/env python3
"""
Autoscaler Service Entrypoint

Runs the QueueAutoscaler until SIGTERM/SIGINT. On shutdown every worker it
started is stopped.

Usage:
    bridge-autoscaler
    bridge-autoscaler --min-workers 2 --max-workers 8 --supervisor compose
    python -m src.workers.autoscaler_service --metrics-port 9102

Command-line flags override the matching environment variables.

Author: Senior Solution Architect
Date: 2025-12-05
"""

import argparse
import asyncio
import sys

from prometheus_client import start_http_server

from src.core.config.settings import get_settings
from src.core.exceptions import BridgeBaseError
from src.core.logging.logger import get_logger, setup_logging
from src.core.scaling.queue_autoscaler import build_queue_autoscaler
from src.infrastructure.cache.redis_client import close_redis, init_redis
from src.workers.worker_service import install_signal_handlers

logger = get_logger(__name__)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bridge-autoscaler",
        description="Scale bridge workers between MIN_WORKERS and MAX_WORKERS from queue depth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                                   # Use environment configuration
  %(prog)s --min-workers 1 --max-workers 5   # Override bounds
  %(prog)s --supervisor compose              # Scale a docker compose service
        """,
    )
    parser.add_argument("--min-workers", type=int, metavar="N", help="Override MIN_WORKERS")
    parser.add_argument("--max-workers", type=int, metavar="N", help="Override MAX_WORKERS")
    parser.add_argument("--check-interval-ms", type=int, metavar="MS", help="Override CHECK_INTERVAL_MS")
    parser.add_argument("--supervisor", choices=["process", "compose"], help="Override WORKER_SUPERVISOR")
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        metavar="PORT",
        help="Expose Prometheus metrics on this port",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override LOG_LEVEL",
    )
    return parser


def apply_overrides(settings, args: argparse.Namespace):
    """Return a copy of ``settings`` with command-line overrides applied (and re-validated)."""
    overrides = {
        "MIN_WORKERS": args.min_workers,
        "MAX_WORKERS": args.max_workers,
        "CHECK_INTERVAL_MS": args.check_interval_ms,
        "WORKER_SUPERVISOR": args.supervisor,
    }
    overrides = {key: value for key, value in overrides.items() if value is not None}
    if not overrides:
        return settings
    return type(settings).model_validate({**settings.model_dump(), **overrides})


async def run_autoscaler(settings) -> int:
    if settings.autoscaler.AUTOSCALER_LEADER_LOCK_ENABLED:
        await init_redis()

    autoscaler = build_queue_autoscaler(settings)

    stop_event = asyncio.Event()
    install_signal_handlers(asyncio.get_running_loop(), stop_event)

    await autoscaler.start()
    logger.info(
        "Autoscaler service running",
        state=autoscaler.state.value,
        supervisor=settings.autoscaler.WORKER_SUPERVISOR,
    )

    await stop_event.wait()

    logger.info("Autoscaler service shutting down", workers=autoscaler.current_worker_count)
    try:
        await autoscaler.stop()
    finally:
        if settings.autoscaler.AUTOSCALER_LEADER_LOCK_ENABLED:
            await close_redis()
    return 0


def main() -> int:
    args = create_parser().parse_args()

    try:
        settings = apply_overrides(get_settings(), args)
    except ValueError as e:
        # pydantic ValidationError is a ValueError
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    setup_logging(log_level=args.log_level, log_format=settings.logging.LOG_FORMAT)

    if args.metrics_port:
        start_http_server(args.metrics_port)
        logger.info("Metrics endpoint started", port=args.metrics_port)

    try:
        return asyncio.run(run_autoscaler(settings))
    except BridgeBaseError as e:
        logger.critical("Autoscaler failed", error=e.message, error_type=type(e).__name__)
        return 1


if __name__ == "__main__":
    sys.exit(main())

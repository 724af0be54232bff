#!/usr/bin/env python3
"""
Worker Service Entrypoint

Runs one JobConsumerWorker until SIGTERM/SIGINT, then drains in-flight jobs
and exits. The autoscaler spawns this command once per worker.

Usage:
    bridge-worker
    bridge-worker --consumer-name worker-a --metrics-port 9101
    python -m src.workers.worker_service --log-level DEBUG

Exit codes:
    0  clean shutdown
    1  startup or runtime failure

Author: Senior Solution Architect
Date: 2025-12-05
"""

import argparse
import asyncio
import signal
import sys

from prometheus_client import start_http_server

from src.core.config.settings import get_settings
from src.core.exceptions import BridgeBaseError
from src.core.logging.logger import get_logger, setup_logging
from src.core.resilience.job_consumer_worker import build_job_consumer_worker
from src.infrastructure.cache.redis_client import init_redis

logger = get_logger(__name__)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bridge-worker",
        description="Consume quote and booking jobs and forward them to the insurance partner",
    )
    parser.add_argument("--consumer-name", help="Consumer name within the queue group (default: generated)")
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


def install_signal_handlers(loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event) -> None:
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))


async def run_worker(consumer_name: str | None = None) -> int:
    """
    Connect, consume until signalled, shut down gracefully.

    Returns:
        Process exit code
    """
    settings = get_settings()
    await init_redis()

    worker = build_job_consumer_worker(settings, consumer_name=consumer_name)
    await worker.initialize()

    stop_event = asyncio.Event()
    install_signal_handlers(asyncio.get_running_loop(), stop_event)

    run_task = asyncio.create_task(worker.start())
    stop_task = asyncio.create_task(stop_event.wait())

    logger.info(
        "Worker service running",
        consumer=worker.consumer_name,
        queue_type=settings.queue.QUEUE_TYPE,
        partner_mode=settings.partner.PARTNER_MODE,
    )

    done, _pending = await asyncio.wait({run_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

    exit_code = 0
    if run_task in done and run_task.exception() is not None:
        logger.error("Worker stopped unexpectedly", error=str(run_task.exception()))
        exit_code = 1

    stop_task.cancel()
    logger.info("Worker service shutting down", consumer=worker.consumer_name, in_flight=worker.in_flight)
    await worker.shutdown()
    return exit_code


def main() -> int:
    args = create_parser().parse_args()
    settings = get_settings()

    setup_logging(log_level=args.log_level, log_format=settings.logging.LOG_FORMAT)

    if args.metrics_port:
        start_http_server(args.metrics_port)
        logger.info("Metrics endpoint started", port=args.metrics_port)

    try:
        return asyncio.run(run_worker(args.consumer_name))
    except BridgeBaseError as e:
        logger.critical("Worker failed to start", error=e.message, error_type=type(e).__name__)
        return 1


if __name__ == "__main__":
    sys.exit(main())

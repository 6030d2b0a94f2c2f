"""
Worker Process Entry Point

    python -m upscaler.worker [--concurrency N]

Builds the job store, work queue, storage and strategies, runs the worker
pool until SIGINT/SIGTERM, then stops the pool and closes the queue.
"""

import argparse
import signal
import threading

from upscaler.core.config import settings
from upscaler.core.database import create_db_and_tables, create_db_engine
from upscaler.core.logging import get_logger, setup_logging
from upscaler.core.queue import create_work_queue
from upscaler.core.storage import StorageFactory
from upscaler.modules.imagery.repositories import JobStore
from upscaler.pipeline.strategies import StrategySelector
from upscaler.pipeline.tasks import JobExecutor
from upscaler.pipeline.worker_pool import WorkerPool

logger = get_logger(__name__)


def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run image processing workers")
    parser.add_argument(
        "--concurrency",
        type=positive_int,
        default=settings.WORKER_CONCURRENCY,
        help="Number of worker threads (default: %(default)s)"
    )
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    setup_logging(log_level=settings.LOG_LEVEL, json_format=settings.LOG_FORMAT_JSON)

    engine = create_db_engine()
    create_db_and_tables(engine)
    queue = create_work_queue()
    selector = StrategySelector.from_settings()
    executor = JobExecutor(JobStore(engine), queue, StorageFactory.create(), selector)
    pool = WorkerPool(queue, executor, concurrency=args.concurrency)

    shutdown = threading.Event()

    def _request_shutdown(signum, frame):
        logger.info("worker_shutdown_requested", signal=signal.Signals(signum).name)
        shutdown.set()

    signal.signal(signal.SIGINT, _request_shutdown)
    signal.signal(signal.SIGTERM, _request_shutdown)

    logger.info(
        "worker_process_starting",
        concurrency=args.concurrency,
        queue_backend=settings.QUEUE_BACKEND,
        enhance_available=selector.enhance.is_available()
    )
    pool.start()
    try:
        shutdown.wait()
    finally:
        # One shared deadline for all workers; anything left unacked is redelivered after its lease expires
        pool.stop(timeout=settings.ENHANCE_TIMEOUT_SECONDS)
        queue.close()
        engine.dispose()
        logger.info("worker_process_stopped")


if __name__ == "__main__":
    main()

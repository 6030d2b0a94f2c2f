"""
Worker Pool

A fixed number of threads, each running one job at a time:
dequeue (blocking, with timeout) -> JobExecutor.process -> repeat.

The pool size is the only concurrency throttle; there is no second limiter
in front of the enhance binary.
"""

import threading
import time
from typing import List

from upscaler.core.config import settings
from upscaler.core.exceptions import InfrastructureError
from upscaler.core.logging import get_logger
from upscaler.core.metrics import record_infrastructure_error, set_queue_depth
from upscaler.core.queue import IWorkQueue, PoisonEntryError
from upscaler.pipeline.tasks import JobExecutor

logger = get_logger(__name__)


class WorkerPool:
    """Threads that drain the work queue through a JobExecutor."""

    def __init__(
        self,
        queue: IWorkQueue,
        executor: JobExecutor,
        concurrency: int = None,
        poll_timeout: float = None,
        infrastructure_backoff: float = None
    ):
        self.queue = queue
        self.executor = executor
        self.concurrency = settings.WORKER_CONCURRENCY if concurrency is None else concurrency
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.poll_timeout = settings.WORKER_POLL_TIMEOUT_SECONDS if poll_timeout is None else poll_timeout
        self.infrastructure_backoff = (
            settings.INFRASTRUCTURE_BACKOFF_SECONDS if infrastructure_backoff is None else infrastructure_backoff
        )
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._busy = 0
        self._busy_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    @property
    def busy_workers(self) -> int:
        with self._busy_lock:
            return self._busy

    def start(self):
        if self.running:
            raise RuntimeError("Worker pool already started")
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._run, name=f"worker-{n}", daemon=True)
            for n in range(1, self.concurrency + 1)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("worker_pool_started", concurrency=self.concurrency)

    def stop(self, timeout: float = None) -> bool:
        """
        Stop taking new entries and wait for in-flight jobs.

        Args:
            timeout: Total seconds to wait for all workers, not per worker

        Returns:
            True if every worker exited within timeout
        """
        self._stop_event.set()
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            if deadline is None:
                thread.join()
            else:
                thread.join(max(deadline - time.monotonic(), 0.0))
        stopped = not self.running
        if stopped:
            logger.info("worker_pool_stopped")
        else:
            logger.warning("worker_pool_stop_timed_out", busy_workers=self.busy_workers)
        return stopped

    def _run(self):
        worker = threading.current_thread().name
        logger.info("worker_started", worker=worker)

        while not self._stop_event.is_set():
            try:
                leased = self.queue.dequeue(timeout=self.poll_timeout)
                if leased is None:
                    set_queue_depth(self.queue.depth())
                    continue

                with self._busy_lock:
                    self._busy += 1
                try:
                    outcome = self.executor.process(leased)
                finally:
                    with self._busy_lock:
                        self._busy -= 1
                logger.debug("entry_settled", worker=worker, job_id=leased.job_id, outcome=outcome.value)

            except PoisonEntryError as e:
                logger.error("poison_entry_dropped", worker=worker, entry_id=e.entry_id, error=str(e))

            except InfrastructureError as e:
                record_infrastructure_error(e.component)
                logger.error(
                    "worker_infrastructure_error",
                    worker=worker,
                    component=e.component,
                    error=e.message,
                    backoff_seconds=self.infrastructure_backoff
                )
                self._stop_event.wait(self.infrastructure_backoff)

            except Exception as e:
                logger.exception("worker_iteration_failed", worker=worker, error=str(e))

        logger.info("worker_stopped", worker=worker)

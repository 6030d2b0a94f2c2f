"""
Running-job Heartbeat

While a strategy executes, a background thread periodically refreshes the
job's updated_at and extends the queue lease. A live job therefore never
looks abandoned: its lease does not run out and stale reclaim does not hand
it to a second worker mid-run.
"""

import threading
from typing import Optional

from upscaler.core.exceptions import InfrastructureError
from upscaler.core.logging import get_logger
from upscaler.core.queue import IWorkQueue
from upscaler.modules.imagery.repositories import JobStore
from upscaler.modules.imagery.schemas import LeasedEntry

logger = get_logger(__name__)


class JobHeartbeat:
    """
    Context manager that keeps one leased job alive.

    Usage:
        with JobHeartbeat(store, queue, leased, interval=30):
            strategy.execute(...)
    """

    def __init__(self, store: JobStore, queue: IWorkQueue, leased: LeasedEntry, interval: float):
        if interval <= 0:
            raise ValueError("heartbeat interval must be positive")
        self.store = store
        self.queue = queue
        self.leased = leased
        self.interval = interval
        self.beats = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def __enter__(self):
        self._thread = threading.Thread(
            target=self._run,
            name=f"heartbeat-{self.leased.entry.job_id[:8]}",
            daemon=True,
        )
        self._thread.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._stop.set()
        self._thread.join()
        return False

    def _run(self):
        while not self._stop.wait(self.interval):
            self.beat()

    def beat(self) -> bool:
        """One refresh. False when the job or the lease is no longer ours."""
        job_id = self.leased.entry.job_id
        try:
            job_running = self.store.heartbeat(job_id)
            lease_held = self.queue.extend(self.leased)
        except InfrastructureError as e:
            # The next beat retries; a long outage ends in lease expiry
            logger.warning("heartbeat_failed", job_id=job_id, component=e.component, error=e.message)
            return False

        self.beats += 1
        if not (job_running and lease_held):
            logger.warning(
                "heartbeat_ownership_lost",
                job_id=job_id,
                job_running=job_running,
                lease_held=lease_held
            )
            return False
        return True

"""
Job Execution

Takes one leased queue entry from dequeue to settlement:
- Skips (acks) entries for unknown or already terminal jobs
- Moves QUEUED jobs to RUNNING, or reclaims RUNNING jobs abandoned by a
  crashed worker; deliveries of live RUNNING jobs are held back until the
  job could have gone stale
- Runs the selected strategy with a throttled progress callback and a
  heartbeat that keeps the job and its lease alive
- Records SUCCEEDED or FAILED and acks

Execution failures are terminal and never retried. Infrastructure failures
(store or queue unreachable) propagate without ack so the lease expires and
the entry is redelivered.
"""

import time
import traceback
from datetime import timedelta
from enum import Enum
from functools import partial
from typing import Optional

from upscaler.core.config import settings
from upscaler.core.exceptions import ExecutionError, InfrastructureError, UpscalerBaseException
from upscaler.core.logging import LogContext, get_logger
from upscaler.core.metrics import (
    active_jobs_gauge,
    record_duplicate_delivery,
    record_job_completion,
)
from upscaler.core.queue import IWorkQueue
from upscaler.core.storage import IStorage
from upscaler.modules.imagery.models import ImageJob, JobDetails, JobState, StrategyName, utcnow
from upscaler.modules.imagery.repositories import JobStore
from upscaler.modules.imagery.schemas import LeasedEntry, StateTransition
from upscaler.pipeline.heartbeat import JobHeartbeat
from upscaler.pipeline.progress import ProgressReporter
from upscaler.pipeline.strategies import ProcessingStrategy, StrategySelector

logger = get_logger(__name__)


class JobOutcome(str, Enum):
    """What a worker did with one delivery."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DUPLICATE = "duplicate"        # job already terminal, acked without work
    ORPHANED = "orphaned"          # no job record, acked without work
    CLAIMED_ELSEWHERE = "claimed"  # another worker started the job first
    DEFERRED = "deferred"          # job RUNNING and alive elsewhere, nacked


def describe_error(error: Exception) -> str:
    """error_detail text: exception type plus message."""
    message = error.message if isinstance(error, UpscalerBaseException) else str(error)
    return f"{type(error).__name__}: {message or 'no details'}"


class JobExecutor:
    """Runs leased entries against the job store with a strategy selector."""

    def __init__(
        self,
        store: JobStore,
        queue: IWorkQueue,
        storage: IStorage,
        selector: StrategySelector,
        stale_after_seconds: float = None,
        progress_min_interval: float = None,
        progress_min_step: int = None,
        heartbeat_interval: float = None,
        min_defer_seconds: float = None
    ):
        self.store = store
        self.queue = queue
        self.storage = storage
        self.selector = selector
        self.stale_after_seconds = (
            settings.STALE_RUNNING_SECONDS if stale_after_seconds is None else stale_after_seconds
        )
        self.progress_min_interval = (
            settings.PROGRESS_MIN_INTERVAL_SECONDS if progress_min_interval is None else progress_min_interval
        )
        self.progress_min_step = (
            settings.PROGRESS_MIN_STEP if progress_min_step is None else progress_min_step
        )
        self.heartbeat_interval = (
            settings.HEARTBEAT_INTERVAL_SECONDS if heartbeat_interval is None else heartbeat_interval
        )
        self.min_defer_seconds = (
            settings.MIN_DEFER_SECONDS if min_defer_seconds is None else min_defer_seconds
        )

    def process(self, leased: LeasedEntry) -> JobOutcome:
        entry = leased.entry
        with LogContext(job_id=entry.job_id) as log_context:
            logger.info("entry_received", entry_id=entry.entry_id, delivery_count=leased.delivery_count)

            job = self.store.get(entry.job_id)
            if job is None:
                logger.error("job_record_missing", entry_id=entry.entry_id)
                self.queue.ack(leased)
                return JobOutcome.ORPHANED

            if job.is_terminal:
                logger.info("duplicate_delivery_skipped", state=job.state)
                record_duplicate_delivery()
                self.queue.ack(leased)
                return JobOutcome.DUPLICATE

            if job.job_state == JobState.QUEUED:
                strategy = self._start(job, leased)
                if strategy is None:
                    self.queue.ack(leased)
                    return JobOutcome.CLAIMED_ELSEWHERE
            else:
                strategy = self._reclaim(job, leased)
                if strategy is None:
                    delay = self._defer_delay(job)
                    logger.info("job_running_elsewhere", attempts=job.attempts, retry_in_seconds=round(delay, 3))
                    self.queue.nack(leased, delay=delay)
                    return JobOutcome.DEFERRED

            log_context.set_stage(strategy.name)
            return self._run(leased, strategy)

    def _start(self, job: ImageJob, leased: LeasedEntry) -> Optional[ProcessingStrategy]:
        """QUEUED -> RUNNING. None if another worker won the transition."""
        strategy, fallback_reason = self.selector.select(leased.entry.params)
        details = JobDetails(
            fallback_reason=fallback_reason,
            enhance_model=getattr(strategy, "model", None) if strategy.name == StrategyName.AI_ENHANCE.value else None,
        )
        if not self.store.update_state(job.id, StateTransition.start(strategy.name, details.model_dump())):
            logger.warning("job_claimed_elsewhere")
            return None
        logger.info(
            "job_started",
            strategy=strategy.name,
            requested_strategy=job.strategy_hint,
            fallback_reason=fallback_reason
        )
        return strategy

    def _reclaim(self, job: ImageJob, leased: LeasedEntry) -> Optional[ProcessingStrategy]:
        """
        Take over a RUNNING job left by a crashed worker.

        Neither strategy can resume mid-run, so the job restarts from the
        input with the strategy it was started with, or with fast-resample if
        this worker cannot run that strategy. Progress already stored is
        kept; lower values written by the restart are ignored.
        """
        stale_before = utcnow() - timedelta(seconds=self.stale_after_seconds)
        if not self.store.reclaim_stale(job.id, stale_before):
            return None

        strategy, fallback_reason = self.selector.resume(job.strategy, leased.entry.params)
        if fallback_reason:
            self.store.switch_strategy(
                job.id, strategy.name, JobDetails(fallback_reason=fallback_reason).model_dump()
            )
        logger.warning(
            "job_restarting",
            strategy=strategy.name,
            recorded_strategy=job.strategy,
            fallback_reason=fallback_reason,
            attempts=job.attempts + 1
        )
        return strategy

    def _defer_delay(self, job: ImageJob) -> float:
        """Seconds until the job's heartbeat could be stale, at least min_defer_seconds."""
        age = (utcnow() - job.updated_at).total_seconds()
        return max(self.stale_after_seconds - age, self.min_defer_seconds)

    def _run(self, leased: LeasedEntry, strategy: ProcessingStrategy) -> JobOutcome:
        entry = leased.entry
        started = time.monotonic()
        reporter = ProgressReporter(
            partial(self.store.update_progress, entry.job_id),
            min_interval=self.progress_min_interval,
            min_step=self.progress_min_step,
        )

        with active_jobs_gauge.track_inprogress():
            try:
                input_path = self.storage.path_for(entry.input_ref)
                output_path = self.storage.path_for(entry.output_ref)
                if not input_path.is_file():
                    raise ExecutionError(f"Input file not found: {entry.input_ref}", strategy=strategy.name)

                with JobHeartbeat(self.store, self.queue, leased, self.heartbeat_interval):
                    result = strategy.execute(input_path, output_path, entry.params, reporter)
                reporter.flush()

                size_bytes = self.storage.size(entry.output_ref)
                if size_bytes <= 0:
                    raise ExecutionError("Output artifact is missing or empty", strategy=strategy.name)

            except InfrastructureError:
                logger.error("job_interrupted_by_infrastructure", strategy=strategy.name)
                raise

            except Exception as e:
                elapsed = time.monotonic() - started
                error_detail = describe_error(e)
                log_fields = {"error": error_detail, "error_type": type(e).__name__}
                if not isinstance(e, ExecutionError):
                    log_fields["traceback"] = traceback.format_exc()
                logger.error("job_failed", duration_ms=int(elapsed * 1000), **log_fields)

                self.store.update_state(entry.job_id, StateTransition.fail(error_detail))
                record_job_completion("failed", strategy.name, elapsed)
                self.queue.ack(leased)
                return JobOutcome.FAILED

        elapsed = time.monotonic() - started
        self.store.update_state(
            entry.job_id,
            StateTransition.succeed(entry.output_ref, result.width, result.height, size_bytes),
        )
        record_job_completion("succeeded", strategy.name, elapsed)
        self.queue.ack(leased)

        logger.info(
            "job_succeeded",
            duration_ms=int(elapsed * 1000),
            output_dimensions=(result.width, result.height),
            output_size=size_bytes,
            progress_signals=reporter.calls
        )
        return JobOutcome.SUCCEEDED

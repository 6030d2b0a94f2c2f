"""
Job Record Store

Durable record of each job's lifecycle. Every write is one conditional
UPDATE keyed on (id, expected state), so writes are atomic per job id and the
state machine is enforced by the database rather than by locks.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from upscaler.core.exceptions import InfrastructureError, InvalidTransitionError
from upscaler.core.logging import get_logger
from upscaler.modules.imagery.models import ImageJob, JobState, utcnow
from upscaler.modules.imagery.schemas import StateTransition

logger = get_logger(__name__)

# target state -> the only state it may be entered from
ALLOWED_TRANSITIONS = {
    JobState.RUNNING: JobState.QUEUED,
    JobState.SUCCEEDED: JobState.RUNNING,
    JobState.FAILED: JobState.RUNNING,
}

# Progress 100 is reserved for the SUCCEEDED transition
MAX_RUNNING_PROGRESS = 99


class JobStore:
    """SQLModel-backed job record store."""

    def __init__(self, engine: Engine):
        self.engine = engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                yield session
        except SQLAlchemyError as e:
            logger.error("job_store_unavailable", error=str(e), error_type=type(e).__name__)
            raise InfrastructureError(f"Job store unavailable: {e}", component="job_store") from e

    def create(self, job: ImageJob) -> ImageJob:
        if job.state != JobState.QUEUED.value:
            raise InvalidTransitionError(f"Jobs must be created QUEUED, got {job.state}", job_id=job.id)
        with self._session() as session:
            session.add(job)
            session.commit()
            session.refresh(job)
        logger.info("job_created", job_id=job.id, owner_id=job.owner_id)
        return job

    def get(self, job_id: str) -> Optional[ImageJob]:
        with self._session() as session:
            return session.get(ImageJob, job_id)

    def update_state(self, job_id: str, transition: StateTransition) -> bool:
        """
        Apply a state transition.

        Returns:
            True if this call moved the job, False if the job was not in the
            expected source state (lost race, duplicate, or unknown id).

        Raises:
            InvalidTransitionError: the target state cannot be entered by a write
        """
        target = transition.target
        expected = ALLOWED_TRANSITIONS.get(target)
        if expected is None:
            raise InvalidTransitionError(f"No transition enters {target.value}", job_id=job_id)

        now = utcnow()
        values = {"state": target.value, "updated_at": now}

        with self._session() as session:
            if target == JobState.RUNNING:
                values.update(
                    started_at=now,
                    progress_percent=0,
                    attempts=1,
                )
                if transition.strategy:
                    values["strategy"] = transition.strategy
                if transition.details is not None:
                    values["details"] = transition.details
            else:
                job = session.get(ImageJob, job_id)
                if job is None or job.state != expected.value:
                    return False
                values.update(
                    completed_at=now,
                    duration_ms=_elapsed_ms(job.started_at, now),
                )
                if target == JobState.SUCCEEDED:
                    values.update(
                        progress_percent=100,
                        output_ref=transition.output_ref or job.output_ref,
                        output_width=transition.output_width,
                        output_height=transition.output_height,
                        output_size_bytes=transition.output_size_bytes,
                    )
                else:
                    values["error_detail"] = transition.error_detail or "Unknown error"

            statement = (
                update(ImageJob)
                .where(ImageJob.id == job_id, ImageJob.state == expected.value)
                .values(**values)
            )
            result = session.exec(statement)
            session.commit()
            moved = result.rowcount == 1

        if moved:
            logger.info("job_state_updated", job_id=job_id, state=target.value)
        else:
            logger.warning("job_state_update_skipped", job_id=job_id, target=target.value)
        return moved

    def update_progress(self, job_id: str, percent: float) -> bool:
        """Persist progress if the job is RUNNING and the value increases."""
        percent = max(0, min(int(percent), MAX_RUNNING_PROGRESS))
        statement = (
            update(ImageJob)
            .where(
                ImageJob.id == job_id,
                ImageJob.state == JobState.RUNNING.value,
                ImageJob.progress_percent < percent,
            )
            .values(progress_percent=percent, updated_at=utcnow())
        )
        with self._session() as session:
            result = session.exec(statement)
            session.commit()
            return result.rowcount == 1

    def reclaim_stale(self, job_id: str, stale_before: datetime) -> bool:
        """
        Take over a RUNNING job whose heartbeat is older than stale_before.

        The job stays RUNNING; only one caller can win the reclaim.
        """
        statement = (
            update(ImageJob)
            .where(
                ImageJob.id == job_id,
                ImageJob.state == JobState.RUNNING.value,
                ImageJob.updated_at < stale_before,
            )
            .values(attempts=ImageJob.attempts + 1, updated_at=utcnow())
        )
        with self._session() as session:
            result = session.exec(statement)
            session.commit()
            reclaimed = result.rowcount == 1
        if reclaimed:
            logger.warning("job_reclaimed", job_id=job_id)
        return reclaimed

    def heartbeat(self, job_id: str) -> bool:
        """Refresh updated_at of a RUNNING job so it is not taken for abandoned."""
        statement = (
            update(ImageJob)
            .where(ImageJob.id == job_id, ImageJob.state == JobState.RUNNING.value)
            .values(updated_at=utcnow())
        )
        with self._session() as session:
            result = session.exec(statement)
            session.commit()
            return result.rowcount == 1

    def switch_strategy(self, job_id: str, strategy: str, details: dict) -> bool:
        """Record the strategy a reclaimed RUNNING job continues with."""
        statement = (
            update(ImageJob)
            .where(ImageJob.id == job_id, ImageJob.state == JobState.RUNNING.value)
            .values(strategy=strategy, details=details, updated_at=utcnow())
        )
        with self._session() as session:
            result = session.exec(statement)
            session.commit()
            switched = result.rowcount == 1
        if switched:
            logger.warning("job_strategy_switched", job_id=job_id, strategy=strategy)
        return switched


def _elapsed_ms(started_at: Optional[datetime], now: datetime) -> Optional[int]:
    if started_at is None:
        return None
    return int((now - started_at).total_seconds() * 1000)

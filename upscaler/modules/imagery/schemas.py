"""
Pipeline DTOs

Closed, versioned records exchanged between the gateway, the work queue,
the workers and the status service.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from upscaler.modules.imagery.models import (
    ImageJob,
    JobState,
    OperationKind,
    QualityTier,
    ResampleAlgorithm,
    StrategyName,
    SCALE_FACTORS,
    FILE_EXTENSIONS,
    utcnow,
)


class ProcessingParams(BaseModel):
    """Operation parameters a worker needs without re-reading the job."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    operation_kind: OperationKind
    scale_factor: int
    strategy_hint: StrategyName = StrategyName.FAST_RESAMPLE
    quality_tier: QualityTier = QualityTier.BALANCED
    algorithm: ResampleAlgorithm = ResampleAlgorithm.LANCZOS
    file_extension: str = "jpg"

    @field_validator("scale_factor")
    @classmethod
    def validate_scale_factor(cls, v: int) -> int:
        if v not in SCALE_FACTORS:
            raise ValueError(f"scale_factor must be one of {SCALE_FACTORS}, got {v}")
        return v

    @field_validator("file_extension")
    @classmethod
    def validate_file_extension(cls, v: str) -> str:
        v = v.lower().lstrip(".")
        if v == "jpeg":
            v = "jpg"
        if v not in FILE_EXTENSIONS:
            raise ValueError(f"file_extension must be one of {FILE_EXTENSIONS}, got {v}")
        return v


class QueueEntry(BaseModel):
    """
    Envelope handed from the gateway to a worker through the work queue.

    Version 1 is the only accepted shape; anything else fails to decode and
    is treated as a poison message by the worker.
    """
    model_config = ConfigDict(extra="forbid", frozen=True)

    version: Literal[1] = 1
    entry_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    job_id: str
    owner_id: str
    input_ref: str
    output_ref: str
    params: ProcessingParams
    enqueued_at: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, payload) -> "QueueEntry":
        return cls.model_validate_json(payload)

    @classmethod
    def for_job(cls, job: ImageJob) -> "QueueEntry":
        return cls(
            job_id=job.id,
            owner_id=job.owner_id,
            input_ref=job.input_ref,
            output_ref=job.output_ref,
            params=ProcessingParams(
                operation_kind=job.operation_kind,
                scale_factor=job.scale_factor,
                strategy_hint=job.strategy_hint,
                quality_tier=job.quality_tier,
                algorithm=job.algorithm,
                file_extension=job.file_extension,
            ),
        )


@dataclass(frozen=True)
class LeasedEntry:
    """A dequeued entry plus the lease that currently owns it."""
    entry: QueueEntry
    lease_token: str
    delivery_count: int = 1

    @property
    def job_id(self) -> str:
        return self.entry.job_id


class StateTransition(BaseModel):
    """A requested state change together with the fields it writes."""
    model_config = ConfigDict(extra="forbid")

    target: JobState
    strategy: Optional[str] = None
    output_ref: Optional[str] = None
    output_width: Optional[int] = None
    output_height: Optional[int] = None
    output_size_bytes: Optional[int] = None
    error_detail: Optional[str] = None
    details: Optional[dict] = None

    @classmethod
    def start(cls, strategy: str, details: Optional[dict] = None) -> "StateTransition":
        return cls(target=JobState.RUNNING, strategy=strategy, details=details)

    @classmethod
    def succeed(
        cls,
        output_ref: str,
        width: Optional[int] = None,
        height: Optional[int] = None,
        size_bytes: Optional[int] = None,
    ) -> "StateTransition":
        return cls(
            target=JobState.SUCCEEDED,
            output_ref=output_ref,
            output_width=width,
            output_height=height,
            output_size_bytes=size_bytes,
        )

    @classmethod
    def fail(cls, error_detail: str) -> "StateTransition":
        return cls(target=JobState.FAILED, error_detail=error_detail or "Unknown error")


class JobStatusView(BaseModel):
    """What a polling client sees for one job."""
    job_id: str
    state: JobState
    progress_percent: int
    output_ref: Optional[str] = None
    error_detail: Optional[str] = None
    duration_ms: Optional[int] = None
    operation_kind: OperationKind
    scale_factor: int
    strategy: str
    fallback_reason: Optional[str] = None
    input_resolution: Optional[str] = None
    output_resolution: Optional[str] = None
    output_size_bytes: Optional[int] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: ImageJob) -> "JobStatusView":
        succeeded = job.job_state == JobState.SUCCEEDED
        return cls(
            job_id=job.id,
            state=job.job_state,
            progress_percent=job.progress_percent,
            # Clients must check state before trusting output_ref
            output_ref=job.output_ref if succeeded else None,
            error_detail=job.error_detail if job.job_state == JobState.FAILED else None,
            duration_ms=job.duration_ms,
            operation_kind=job.operation_kind,
            scale_factor=job.scale_factor,
            strategy=job.strategy,
            fallback_reason=job.get_details().fallback_reason,
            input_resolution=_resolution(job.input_width, job.input_height),
            output_resolution=_resolution(job.output_width, job.output_height) if succeeded else None,
            output_size_bytes=job.output_size_bytes if succeeded else None,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


def _resolution(width: Optional[int], height: Optional[int]) -> Optional[str]:
    if width is None or height is None:
        return None
    return f"{width}x{height}"

"""
ImageJob Model with Pipeline State Tracking

Tracks a single resize/enhance request with:
- A closed four-state lifecycle (QUEUED -> RUNNING -> SUCCEEDED | FAILED)
- Monotonic progress and a heartbeat for stale-run detection
- Input/output artifact facts and timing
"""

import uuid
from enum import Enum
from typing import Optional, Dict, Any, Literal
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict
from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field, Column, JSON


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamps on every backend.

    SQLite keeps no offset, so values are normalized to UTC on the way in and
    tagged as UTC on the way out. Naive values are taken to be UTC already.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class JobState(str, Enum):
    """Job lifecycle states."""
    QUEUED = "QUEUED"         # Created by the gateway, waiting in the queue
    RUNNING = "RUNNING"       # Owned by the worker holding the queue lease
    SUCCEEDED = "SUCCEEDED"   # Output written, progress 100
    FAILED = "FAILED"         # error_detail recorded

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED)


class OperationKind(str, Enum):
    UPSCALE = "upscale"
    DOWNSCALE = "downscale"


class StrategyName(str, Enum):
    FAST_RESAMPLE = "fast-resample"
    AI_ENHANCE = "ai-enhance"


class QualityTier(str, Enum):
    FAST = "fast"
    BALANCED = "balanced"
    QUALITY = "quality"


class ResampleAlgorithm(str, Enum):
    LANCZOS = "lanczos"
    BICUBIC = "bicubic"
    BILINEAR = "bilinear"
    NEAREST = "nearest"


SCALE_FACTORS = (2, 4, 8)
FILE_EXTENSIONS = ("jpg", "png", "webp")


class JobDetails(BaseModel):
    """Versioned shape of the ImageJob.details JSON column."""
    model_config = ConfigDict(extra="forbid")

    schema_version: Literal[1] = 1
    fallback_reason: Optional[str] = None
    enhance_model: Optional[str] = None


class ImageJob(SQLModel, table=True):
    """
    One submitted image operation and its tracked lifecycle.

    Stores:
    - Immutable request parameters
    - Lifecycle state, progress and error detail
    - Storage keys for the input and the reserved output
    - Timing and artifact facts
    """
    __tablename__ = "image_jobs"

    # Primary Key
    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )

    # Owner association
    owner_id: str = Field(index=True)

    # Request parameters (immutable)
    operation_kind: str
    scale_factor: int
    strategy_hint: str = Field(default=StrategyName.FAST_RESAMPLE.value)
    quality_tier: str = Field(default=QualityTier.BALANCED.value)
    algorithm: str = Field(default=ResampleAlgorithm.LANCZOS.value)

    # Strategy that executes; fixed when the job enters RUNNING
    strategy: str = Field(default=StrategyName.FAST_RESAMPLE.value)

    # Lifecycle
    state: str = Field(default=JobState.QUEUED.value, index=True)
    progress_percent: int = Field(default=0)
    error_detail: Optional[str] = None
    attempts: int = Field(default=0)

    # Storage Keys (relative paths in storage)
    input_ref: str
    output_ref: str
    original_filename: Optional[str] = None
    file_extension: str = Field(default="jpg")

    # Artifact facts
    input_width: Optional[int] = None
    input_height: Optional[int] = None
    input_size_bytes: Optional[int] = None
    output_width: Optional[int] = None
    output_height: Optional[int] = None
    output_size_bytes: Optional[int] = None

    # Versioned JobDetails payload
    details: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    # Timestamps (updated_at is also the RUNNING heartbeat)
    created_at: datetime = Field(default_factory=utcnow, sa_column=Column(UTCDateTime(), nullable=False))
    updated_at: datetime = Field(default_factory=utcnow, sa_column=Column(UTCDateTime(), nullable=False))
    started_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime()))
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(UTCDateTime()))
    duration_ms: Optional[int] = None

    @property
    def job_state(self) -> JobState:
        return JobState(self.state)

    @property
    def is_terminal(self) -> bool:
        return self.job_state.is_terminal

    def get_details(self) -> JobDetails:
        """Parse the details column, rejecting unknown schema versions."""
        return JobDetails.model_validate(self.details or {})

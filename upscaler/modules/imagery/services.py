"""
Imagery Services

SubmissionGateway: validates a request, stores the input, creates the QUEUED
job record and enqueues it. Never processes pixels itself.

StatusQueryService: read-only view of a job for polling clients.
"""

import io
import uuid
from pathlib import PurePath
from typing import Optional

from PIL import Image, UnidentifiedImageError
from pydantic import ValidationError as PydanticValidationError

from upscaler.core.exceptions import JobNotFoundError, ValidationError
from upscaler.core.logging import LogContext, get_logger
from upscaler.core.metrics import record_submission
from upscaler.core.queue import IWorkQueue
from upscaler.core.storage import IStorage
from upscaler.modules.imagery.models import ImageJob
from upscaler.modules.imagery.repositories import JobStore
from upscaler.modules.imagery.schemas import JobStatusView, ProcessingParams, QueueEntry

logger = get_logger(__name__)

# Pillow format name -> stored extension
# Pillow reports multi-picture camera JPEGs as MPO; the first frame is a plain JPEG
IMAGE_FORMATS = {"JPEG": "jpg", "MPO": "jpg", "PNG": "png", "WEBP": "webp"}


def input_key(job_id: str, extension: str) -> str:
    return f"jobs/{job_id}/original.{extension}"


def output_key(job_id: str, extension: str) -> str:
    return f"jobs/{job_id}/processed.{extension}"


def _format_validation_error(error: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'request'}: {err['msg']}"
        for err in error.errors()
    )


class SubmissionGateway:
    """Accepts image operations and hands them to the work queue."""

    def __init__(self, store: JobStore, queue: IWorkQueue, storage: IStorage):
        self.store = store
        self.queue = queue
        self.storage = storage

    def submit(
        self,
        owner_id: str,
        image_bytes: bytes,
        filename: str,
        operation_kind: str,
        scale_factor: int,
        strategy_hint: Optional[str] = None,
        quality_tier: Optional[str] = None,
        algorithm: Optional[str] = None
    ) -> str:
        """
        Create and enqueue a job.

        Returns:
            The new job id

        Raises:
            ValidationError: unsupported parameters or unreadable image; no job is created
            InfrastructureError: store or queue unreachable
        """
        if not owner_id:
            raise ValidationError("owner_id is required")
        if not image_bytes:
            raise ValidationError("Image file is empty")

        width, height, extension = self._inspect_image(image_bytes, filename)

        optional = {
            "strategy_hint": strategy_hint,
            "quality_tier": quality_tier,
            "algorithm": algorithm,
        }
        try:
            params = ProcessingParams(
                operation_kind=operation_kind,
                scale_factor=scale_factor,
                file_extension=extension,
                **{key: value for key, value in optional.items() if value is not None}
            )
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid processing parameters: {_format_validation_error(e)}",
                details={"errors": e.errors(include_url=False, include_context=False)}
            )

        job_id = str(uuid.uuid4())
        with LogContext(job_id=job_id, stage="submission"):
            input_ref = self.storage.save(image_bytes, input_key(job_id, params.file_extension))
            output_ref = self.storage.reserve(output_key(job_id, params.file_extension))

            job = self.store.create(ImageJob(
                id=job_id,
                owner_id=owner_id,
                operation_kind=params.operation_kind.value,
                scale_factor=params.scale_factor,
                strategy_hint=params.strategy_hint.value,
                quality_tier=params.quality_tier.value,
                algorithm=params.algorithm.value,
                # Until a worker starts the job, the requested strategy is shown
                strategy=params.strategy_hint.value,
                input_ref=input_ref,
                output_ref=output_ref,
                original_filename=filename,
                file_extension=params.file_extension,
                input_width=width,
                input_height=height,
                input_size_bytes=len(image_bytes),
            ))

            # A failed enqueue leaves the record QUEUED; the error reaches the caller
            self.queue.enqueue(QueueEntry.for_job(job))
            record_submission(params.operation_kind.value, params.strategy_hint.value)

            logger.info(
                "job_submitted",
                owner_id=owner_id,
                operation_kind=params.operation_kind.value,
                scale_factor=params.scale_factor,
                strategy_hint=params.strategy_hint.value,
                input_dimensions=(width, height),
                input_size=len(image_bytes)
            )
        return job_id

    def _inspect_image(self, image_bytes: bytes, filename: str):
        """Return (width, height, extension) of a supported image."""
        try:
            with Image.open(io.BytesIO(image_bytes)) as image:
                width, height = image.size
                image_format = image.format
                image.verify()
        # verify() reports corrupt chunks and checksums as SyntaxError
        except (UnidentifiedImageError, OSError, SyntaxError, Image.DecompressionBombError) as e:
            raise ValidationError(f"Unreadable image {filename!r}: {e}")

        extension = IMAGE_FORMATS.get(image_format)
        if extension is None:
            suffix = PurePath(filename or "").suffix
            raise ValidationError(
                f"Unsupported image format {image_format or suffix or 'unknown'}; "
                f"expected one of {', '.join(sorted(set(IMAGE_FORMATS.values())))}"
            )
        return width, height, extension


class StatusQueryService:
    """Single-read status lookups; never waits on workers."""

    def __init__(self, store: JobStore):
        self.store = store

    def get_status(self, job_id: str) -> JobStatusView:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return JobStatusView.from_job(job)

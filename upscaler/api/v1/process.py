"""
Process Endpoint - Job Submission

POST /api/v1/process - Accept an image operation and queue it:
1. Reject disallowed content types and oversized files
2. Create the QUEUED job and enqueue it
3. Return 202 with the job id for status polling
"""

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from pydantic import BaseModel

from upscaler.api.dependencies import get_submission_gateway
from upscaler.core.config import settings
from upscaler.core.exceptions import ValidationError
from upscaler.core.logging import get_logger
from upscaler.modules.imagery.models import JobState
from upscaler.modules.imagery.services import SubmissionGateway

MAX_IMAGE_SIZE_BYTES = settings.MAX_IMAGE_SIZE_BYTES
MAX_IMAGE_SIZE_MB = MAX_IMAGE_SIZE_BYTES / (1024 * 1024)

logger = get_logger(__name__)
router = APIRouter()


class ProcessResponse(BaseModel):
    """Response from process endpoint."""
    job_id: str
    state: JobState
    status_url: str


@router.post("", response_model=ProcessResponse, status_code=status.HTTP_202_ACCEPTED)
def process_image(
    file: UploadFile = File(...),
    owner_id: str = Form(...),
    operation_kind: str = Form(...),
    scale_factor: int = Form(...),
    strategy: Optional[str] = Form(None),
    quality_tier: Optional[str] = Form(None),
    algorithm: Optional[str] = Form(None),
    gateway: SubmissionGateway = Depends(get_submission_gateway)
):
    """
    Submit an image for resizing or enhancement.

    Processing happens asynchronously in the worker pool; poll
    /api/v1/status/{job_id} until the state is SUCCEEDED or FAILED.
    """
    if file.content_type not in settings.allowed_content_types:
        raise ValidationError(
            f"Unsupported content type: {file.content_type}",
            details={"allowed": sorted(settings.allowed_content_types)}
        )

    # Read one byte past the limit to detect oversized uploads without buffering them
    image_bytes = file.file.read(MAX_IMAGE_SIZE_BYTES + 1)
    if len(image_bytes) > MAX_IMAGE_SIZE_BYTES:
        raise ValidationError(
            f"Image exceeds maximum allowed size ({MAX_IMAGE_SIZE_MB:.0f}MB)",
            details={"max_size_bytes": MAX_IMAGE_SIZE_BYTES}
        )

    logger.info(
        "process_request_received",
        owner_id=owner_id,
        image_filename=file.filename,
        image_size_mb=round(len(image_bytes) / (1024 * 1024), 2)
    )

    job_id = gateway.submit(
        owner_id=owner_id,
        image_bytes=image_bytes,
        filename=file.filename or "upload",
        operation_kind=operation_kind,
        scale_factor=scale_factor,
        strategy_hint=strategy,
        quality_tier=quality_tier,
        algorithm=algorithm,
    )

    return ProcessResponse(
        job_id=job_id,
        state=JobState.QUEUED,
        status_url=f"/api/v1/status/{job_id}"
    )

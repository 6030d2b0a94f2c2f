"""
Status Endpoint - Job Status Tracking

GET /api/v1/status/{job_id} - Current state, progress and result of a job
"""

from fastapi import APIRouter, Depends

from upscaler.api.dependencies import get_status_service
from upscaler.modules.imagery.schemas import JobStatusView
from upscaler.modules.imagery.services import StatusQueryService

router = APIRouter()


@router.get("/{job_id}", response_model=JobStatusView)
def get_job_status(
    job_id: str,
    status_service: StatusQueryService = Depends(get_status_service)
):
    """
    Get the current status of a processing job.

    output_ref is only present once the job SUCCEEDED and error_detail only
    once it FAILED. Unknown ids return 404.
    """
    return status_service.get_status(job_id)

"""
API v1 Router Module

All v1 endpoints are prefixed with /api/v1/

- POST /api/v1/process - Submit an image operation (returns 202 + job id)
- GET /api/v1/status/{job_id} - Poll a job
- GET /api/v1/metrics - Prometheus scrape endpoint
"""

from fastapi import APIRouter

from upscaler.api.v1.process import router as process_router
from upscaler.api.v1.metrics import router as metrics_router
from upscaler.api.v1.status import router as status_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(process_router, prefix="/process", tags=["process"])
api_v1_router.include_router(status_router, prefix="/status", tags=["status"])
api_v1_router.include_router(metrics_router, tags=["metrics"])

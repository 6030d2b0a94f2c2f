"""
Metrics Endpoint

GET /api/v1/metrics - Prometheus metrics endpoint
"""

from fastapi import APIRouter, Request, Response

from upscaler.core.exceptions import InfrastructureError
from upscaler.core.logging import get_logger
from upscaler.core.metrics import get_metrics, get_metrics_content_type, set_queue_depth

logger = get_logger(__name__)

router = APIRouter()


@router.get("/metrics")
def metrics(request: Request):
    """
    Prometheus metrics endpoint.

    Queue depth is sampled at scrape time so the gauge is current even when
    no worker pool runs in this process.
    """
    queue = getattr(request.app.state, "queue", None)
    if queue is not None:
        try:
            set_queue_depth(queue.depth())
        except InfrastructureError as e:
            logger.warning("queue_depth_unavailable", error=e.message)

    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )

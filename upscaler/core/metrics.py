"""
Prometheus Metrics for Observability

Tracks job throughput, strategy usage and fallbacks, and queue depth.
Exposes /api/v1/metrics endpoint for Prometheus scraping.
"""

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Jobs Counter
jobs_total = Counter(
    "upscaler_jobs_total",
    "Total number of jobs settled by workers",
    labelnames=["status", "strategy"]
)

# Job Duration - Per Strategy
job_duration_seconds = Histogram(
    "upscaler_job_duration_seconds",
    "Time from job start to settlement",
    labelnames=["strategy", "status"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

# Active Jobs
active_jobs_gauge = Gauge(
    "upscaler_active_jobs",
    "Number of jobs currently executing in this process"
)

# Strategy fallbacks (Enhance -> Resample)
strategy_fallbacks_total = Counter(
    "upscaler_strategy_fallbacks_total",
    "Requests for ai-enhance that ran on fast-resample instead",
    labelnames=["reason"]
)

# Redelivered entries for jobs already settled
duplicate_deliveries_total = Counter(
    "upscaler_duplicate_deliveries_total",
    "Queue entries acked without work because the job was already terminal"
)

# Worker iterations aborted by store/queue outages
infrastructure_errors_total = Counter(
    "upscaler_infrastructure_errors_total",
    "Worker iterations aborted because the store or queue was unreachable",
    labelnames=["component"]
)

queue_depth_gauge = Gauge(
    "upscaler_queue_depth",
    "Entries waiting in the work queue"
)

submissions_total = Counter(
    "upscaler_submissions_total",
    "Jobs accepted by the submission gateway",
    labelnames=["operation_kind", "strategy"]
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Application Info
app_info = Info(
    "upscaler_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


def record_job_completion(status: str, strategy: str, duration_seconds: float = None):
    """Record a job reaching a terminal state in this worker."""
    jobs_total.labels(status=status, strategy=strategy).inc()
    if duration_seconds is not None:
        job_duration_seconds.labels(strategy=strategy, status=status).observe(duration_seconds)


def record_strategy_fallback(reason: str):
    strategy_fallbacks_total.labels(reason=reason).inc()


def record_duplicate_delivery():
    duplicate_deliveries_total.inc()


def record_infrastructure_error(component: str):
    infrastructure_errors_total.labels(component=component).inc()


def record_submission(operation_kind: str, strategy: str):
    submissions_total.labels(operation_kind=operation_kind, strategy=strategy).inc()


def set_queue_depth(depth: int):
    queue_depth_gauge.set(depth)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST

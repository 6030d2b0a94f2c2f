"""
Global Exception Handling

Error taxonomy for the job pipeline and structured error responses for the
HTTP surface.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from upscaler.core.logging import get_logger, job_id_var

logger = get_logger(__name__)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# =============================================================================
# Custom Exceptions
# =============================================================================

class UpscalerBaseException(Exception):
    """Base exception for the upscaler pipeline."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        job_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.job_id = job_id or job_id_var.get()
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(UpscalerBaseException):
    """Raised when a request is rejected before a job exists."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class JobNotFoundError(UpscalerBaseException):
    """Raised when a job id is unknown to the store."""

    def __init__(self, job_id: str, **kwargs):
        super().__init__(f"Job not found: {job_id}", code=404, job_id=job_id, **kwargs)


class UnavailableStrategyError(UpscalerBaseException):
    """Raised when a strategy cannot run for a request. Recovered by fallback."""

    def __init__(self, message: str, strategy: str, reason: str, **kwargs):
        super().__init__(message, code=409, **kwargs)
        self.strategy = strategy
        self.reason = reason
        self.details["strategy"] = strategy
        self.details["reason"] = reason


class ExecutionError(UpscalerBaseException):
    """Raised when a strategy ran but did not produce valid output."""

    def __init__(self, message: str, strategy: Optional[str] = None, **kwargs):
        super().__init__(message, code=500, **kwargs)
        self.strategy = strategy
        if strategy:
            self.details["strategy"] = strategy


class EnhanceTimeoutError(ExecutionError):
    """Raised when the enhance subprocess exceeds its wall-clock limit."""

    def __init__(self, timeout_seconds: float, **kwargs):
        super().__init__(
            f"Enhance process timed out after {timeout_seconds:g} seconds",
            strategy="ai-enhance",
            **kwargs
        )
        self.details["timeout_seconds"] = timeout_seconds


class InvalidTransitionError(UpscalerBaseException):
    """Raised when a state write targets a state the machine does not allow."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=409, **kwargs)


class InfrastructureError(UpscalerBaseException):
    """Raised when the job store or work queue is unreachable."""

    def __init__(self, message: str, component: str, **kwargs):
        super().__init__(message, code=503, **kwargs)
        self.component = component
        self.details["component"] = component


# =============================================================================
# Exception Handlers
# =============================================================================

def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(UpscalerBaseException)
    async def upscaler_exception_handler(request: Request, exc: UpscalerBaseException):
        log = logger.warning if exc.code < 500 else logger.error
        log(
            "upscaler_exception",
            error=exc.message,
            code=exc.code,
            error_type=type(exc).__name__,
            details=exc.details
        )

        return JSONResponse(
            status_code=exc.code,
            content={
                "error": exc.message,
                "job_id": exc.job_id,
                "code": exc.code,
                "details": exc.details,
                "timestamp": _utc_timestamp()
            }
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "job_id": job_id_var.get(),
                "code": 500,
                "timestamp": _utc_timestamp()
            }
        )

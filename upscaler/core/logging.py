"""
Structured Logging with structlog

API handlers and worker threads log through the same pipeline. Each event
carries the service version and environment; events emitted while a job is
being handled also carry job_id, the stage (submission or the strategy name)
and the worker thread that ran it.
"""

import sys
import logging
import threading
import structlog
from typing import Optional, Any, Dict, List
from datetime import datetime, timezone
from contextvars import ContextVar, Token

from upscaler.core.config import settings

# Job-scoped context. Worker threads each get their own context, so values set
# while handling one entry never leak into another worker's events.
job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)

NOISY_LOGGERS = ("httpx", "asyncio", "PIL", "multipart", "sqlalchemy.engine")


def add_job_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Attach service and job context; explicit event fields win."""
    event_dict.setdefault("version", settings.APP_VERSION)
    event_dict.setdefault("environment", settings.ENVIRONMENT)

    job_id = job_id_var.get()
    if job_id:
        event_dict.setdefault("job_id", job_id)

    stage = stage_var.get()
    if stage:
        event_dict.setdefault("stage", stage)

    thread_name = threading.current_thread().name
    if thread_name.startswith("worker-"):
        event_dict.setdefault("worker", thread_name)

    return event_dict


def add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """UTC ISO-8601 timestamp with a Z suffix."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True
):
    """
    Configure stdlib logging and structlog for the API or worker process.

    Safe to call more than once; the last call wins.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_format: JSON lines when True, colored console output otherwise
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
        force=True,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_format
        else structlog.dev.ConsoleRenderer(colors=True)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            add_timestamp,
            add_job_context,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


class LogContext:
    """
    Scope job_id / stage for every event logged inside the block.

    Usage:
        with LogContext(job_id=entry.job_id) as ctx:
            ...
            ctx.set_stage("ai-enhance")
            logger.info("job_started")

    Everything set inside the block, including later set_stage calls, is
    undone on exit.
    """

    def __init__(self, job_id: Optional[str] = None, stage: Optional[str] = None):
        self.job_id = job_id
        self.stage = stage
        self._tokens: List[Token] = []

    def __enter__(self):
        if self.job_id:
            self._tokens.append(job_id_var.set(self.job_id))
        if self.stage:
            self._tokens.append(stage_var.set(self.stage))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        while self._tokens:
            token = self._tokens.pop()
            token.var.reset(token)
        return False

    def set_stage(self, stage: str):
        self._tokens.append(stage_var.set(stage))


# Example worker event:
# {
#   "timestamp": "2024-05-20T10:00:00.123456Z",
#   "level": "info",
#   "logger": "upscaler.pipeline.tasks",
#   "event": "job_succeeded",
#   "job_id": "550e8400-e29b-41d4-a716-446655440000",
#   "stage": "ai-enhance",
#   "worker": "worker-2",
#   "version": "1.0.0",
#   "environment": "development",
#   "duration_ms": 4200
# }

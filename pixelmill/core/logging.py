"""
Logging setup for the engine.

structlog renders every record as one JSON line (or a colored console line
in development). Records emitted while a worker runs a job carry that
job's id and the operation stage, taken from context variables that
LogContext sets for the current thread.
"""

import sys
import logging
import structlog
from typing import Optional, Any, Dict
from contextvars import ContextVar

from pixelmill.core.config import settings

job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)

_JOB_FIELDS = (("job_id", job_id_var), ("stage", stage_var))

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "PIL", "uvicorn.access")


def add_job_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Stamp the app version and, inside a job, its id and stage."""
    event_dict["version"] = settings.APP_VERSION
    for key, var in _JOB_FIELDS:
        value = var.get()
        if value is not None:
            event_dict.setdefault(key, value)
    return event_dict


def setup_logging(log_level: str = "INFO", json_format: bool = True):
    """
    Route stdlib logging to stdout and configure structlog on top of it.

    Args:
        log_level: Name of the minimum level, e.g. "DEBUG" or "WARNING"
        json_format: JSON lines when True, colored console output otherwise
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, level))

    renderer = (
        structlog.processors.JSONRenderer() if json_format
        else structlog.dev.ConsoleRenderer(colors=True)
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            add_job_context,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
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
    """Tag every record logged inside the block with a job id and stage."""

    def __init__(self, job_id: Optional[str] = None, stage: Optional[str] = None):
        self._values = ((job_id_var, job_id), (stage_var, stage))
        self._tokens = []

    def __enter__(self):
        self._tokens = [var.set(value) for var, value in self._values if value]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for token in reversed(self._tokens):
            token.var.reset(token)
        self._tokens = []
        return False

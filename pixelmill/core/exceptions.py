"""
Error Taxonomy and Global Exception Handling

Every failure a job can end with maps to one PixelMillError subclass with a
stable ``error_code``. Also provides the circuit breaker guarding the
external upscaler and the FastAPI handlers that render errors as JSON.
"""

import threading
import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from pixelmill.core.logging import get_logger, job_id_var

logger = get_logger(__name__)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# =============================================================================
# Custom Exceptions
# =============================================================================

class PixelMillError(Exception):
    """Base exception for the processing engine."""

    error_code = "INTERNAL_ERROR"
    transient = False

    def __init__(
        self,
        message: str,
        code: int = 500,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.job_id = job_id or job_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "error_code": self.error_code,
            "job_id": self.job_id,
            "code": self.code,
            "stage": self.stage,
            "details": self.details,
            "timestamp": _utc_now_iso(),
        }


class InvalidInput(PixelMillError):
    """Malformed or out-of-range parameters. Never retried."""

    error_code = "INVALID_INPUT"

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class UnsupportedConversion(PixelMillError):
    """Raised when a format pair cannot be converted."""

    error_code = "UNSUPPORTED_CONVERSION"

    def __init__(self, source_format: str, target_format: str, **kwargs):
        super().__init__(
            f"Conversion from {source_format} to {target_format} is not supported",
            code=422,
            **kwargs
        )
        self.details["source_format"] = source_format
        self.details["target_format"] = target_format


class EncodingFailure(PixelMillError):
    """Codec-level decode or encode failure."""

    error_code = "ENCODING_FAILURE"

    def __init__(self, message: str, source_checksum: Optional[str] = None, **kwargs):
        super().__init__(message, code=422, **kwargs)
        self.details["source_checksum"] = source_checksum


class UpscaleServiceUnavailable(PixelMillError):
    """The inference service timed out or errored and no fallback was allowed."""

    error_code = "UPSCALE_SERVICE_UNAVAILABLE"
    transient = True

    def __init__(self, message: str, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, code=503, **kwargs)
        self.details["service"] = "upscaler"
        self.details["http_status"] = http_status


class Overloaded(PixelMillError):
    """Queue depth exceeded at submission time."""

    error_code = "OVERLOADED"

    def __init__(self, queue_depth: int, **kwargs):
        super().__init__(
            f"Job queue is full ({queue_depth} jobs queued), retry later",
            code=429,
            **kwargs
        )
        self.details["queue_depth"] = queue_depth


class QueueClosed(PixelMillError):
    """Submission while the worker pool is stopped."""

    error_code = "QUEUE_CLOSED"

    def __init__(self, **kwargs):
        super().__init__("Job queue is not accepting work, retry later", code=503, **kwargs)


class JobNotFound(PixelMillError):
    """Raised when a job id is unknown (never submitted or purged)."""

    error_code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str, **kwargs):
        super().__init__(f"Job not found: {job_id}", code=404, job_id=job_id, **kwargs)


class BlobNotFound(PixelMillError):
    """Raised when storage has no blob for a checksum."""

    error_code = "BLOB_NOT_FOUND"

    def __init__(self, checksum: str, **kwargs):
        super().__init__(f"Blob not found: {checksum}", code=404, **kwargs)
        self.details["checksum"] = checksum


class AlreadyTerminal(PixelMillError):
    """Raised when cancelling a job that already finished."""

    error_code = "ALREADY_TERMINAL"

    def __init__(self, job_id: str, status: str, **kwargs):
        super().__init__(
            f"Job {job_id} is already {status}",
            code=409,
            job_id=job_id,
            **kwargs
        )
        self.details["status"] = status


# =============================================================================
# Circuit Breaker Implementation
# =============================================================================

class CircuitBreaker:
    """
    Circuit Breaker pattern for graceful failure handling.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, requests fail fast
    - HALF_OPEN: Testing if service is recovered

    Shared by all worker threads, so every transition happens under a lock.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        half_open_max_calls: int = 3
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls

        self._lock = threading.Lock()
        self._failure_count = 0
        self._last_failure_time: Optional[datetime] = None
        self._state = "CLOSED"
        self._half_open_calls = 0

    def _current_state(self) -> str:
        if self._state == "OPEN" and self._last_failure_time:
            elapsed = (datetime.now(timezone.utc) - self._last_failure_time).total_seconds()
            if elapsed >= self.recovery_timeout:
                self._state = "HALF_OPEN"
                self._half_open_calls = 0
        return self._state

    @property
    def state(self) -> str:
        """Get current circuit breaker state."""
        with self._lock:
            return self._current_state()

    def can_execute(self) -> bool:
        """Check if request can proceed."""
        with self._lock:
            state = self._current_state()
            if state == "CLOSED":
                return True
            if state == "HALF_OPEN":
                return self._half_open_calls < self.half_open_max_calls
            return False

    def record_success(self):
        """Record a successful call."""
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_calls += 1
                if self._half_open_calls >= self.half_open_max_calls:
                    self._state = "CLOSED"
                    self._failure_count = 0
                    logger.info(
                        "circuit_breaker_closed",
                        circuit=self.name,
                        message="Service recovered"
                    )
            elif self._state == "CLOSED":
                self._failure_count = 0

    def record_failure(self, error: Optional[Exception] = None):
        """Record a failed call."""
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = datetime.now(timezone.utc)

            if self._state == "HALF_OPEN":
                self._state = "OPEN"
                logger.warning(
                    "circuit_breaker_reopened",
                    circuit=self.name,
                    error=str(error) if error else None
                )
            elif self._state == "CLOSED" and self._failure_count >= self.failure_threshold:
                self._state = "OPEN"
                logger.warning(
                    "circuit_breaker_opened",
                    circuit=self.name,
                    failure_count=self._failure_count,
                    error=str(error) if error else None
                )

    def reset(self):
        """Reset the circuit breaker."""
        with self._lock:
            self._state = "CLOSED"
            self._failure_count = 0
            self._last_failure_time = None
            self._half_open_calls = 0


# =============================================================================
# Exception Handlers
# =============================================================================

def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(PixelMillError)
    async def pixelmill_exception_handler(request: Request, exc: PixelMillError):
        logger.warning(
            "request_rejected",
            error=exc.message,
            error_code=exc.error_code,
            code=exc.code,
            path=str(request.url.path)
        )
        return JSONResponse(status_code=exc.code, content=exc.to_dict())

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
                "error_code": PixelMillError.error_code,
                "job_id": job_id_var.get(),
                "code": 500,
                "timestamp": _utc_now_iso()
            }
        )


# =============================================================================
# Non-fatal Warnings
# =============================================================================

class ProcessingWarning:
    """A condition worth reporting that does not fail the job."""

    warning_code = "WARNING"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.warning_code, "message": self.message, "details": self.details}


class SizeConstraintUnmet(ProcessingWarning):
    """Even the lowest quality encoding is larger than the byte ceiling."""

    warning_code = "SIZE_CONSTRAINT_UNMET"

    def __init__(self, max_bytes: int, achieved_bytes: int, quality: int):
        super().__init__(
            f"Minimum-quality encoding is {achieved_bytes} bytes, above the {max_bytes} byte ceiling",
            details={"max_bytes": max_bytes, "achieved_bytes": achieved_bytes, "quality": quality}
        )

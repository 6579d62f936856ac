"""
Pipeline Schemas

Operation kinds, per-kind parameter models, the ProcessingJob record and the
metadata record handed to external collaborators.
"""

import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pixelmill.core.config import settings
from pixelmill.core.exceptions import InvalidInput
from pixelmill.engines.codec import ImageFormat
from pixelmill.engines.converter import parse_hex_color


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OperationKind(str, Enum):
    """Closed set of operations a job can run."""
    CONVERT = "convert"
    CROP = "crop"
    COMPRESS = "compress"
    PALETTE = "palette"
    UPSCALE = "upscale"


class JobStatus(str, Enum):
    """Job lifecycle states."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)


class Priority(str, Enum):
    """Priority classes; lower rank drains first."""
    INTERACTIVE = "interactive"
    BATCH = "batch"

    @property
    def rank(self) -> int:
        return 0 if self is Priority.INTERACTIVE else 1


# =============================================================================
# Operation Parameters
# =============================================================================

def _parse_format(value):
    if value is None:
        return None
    try:
        return ImageFormat.parse(value)
    except InvalidInput as e:
        raise ValueError(e.message)


def default_output_format(source_format: ImageFormat) -> ImageFormat:
    """Format an operation writes when none is requested: the source's, PNG for SVG."""
    return ImageFormat.PNG if source_format.is_vector else source_format


class OperationParams(BaseModel):
    """Base for per-operation parameters: unknown keys are rejected."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    def produced_format(self, source_format: ImageFormat) -> Optional[ImageFormat]:
        """Output format the parameters select, None when they select none."""
        return None

    def resolve(self, source_format: Optional[ImageFormat] = None) -> "OperationParams":
        """
        Copy with every implicit default made explicit.

        Parameter sets that produce the same output resolve to equal models,
        so they fingerprint identically.
        """
        return self


class ConvertParams(OperationParams):
    target_format: ImageFormat
    quality: Optional[int] = Field(None, ge=1, le=100)
    lossless: bool = False
    background: str = "#ffffff"
    raster_width: Optional[int] = Field(None, ge=1, le=16384)
    raster_height: Optional[int] = Field(None, ge=1, le=16384)

    @field_validator("target_format", mode="before")
    @classmethod
    def normalize_format(cls, v):
        return _parse_format(v)

    @field_validator("background")
    @classmethod
    def normalize_background(cls, v: str) -> str:
        try:
            return "#{:02x}{:02x}{:02x}".format(*parse_hex_color(v))
        except InvalidInput as e:
            raise ValueError(e.message)

    @model_validator(mode="after")
    def check_target(self):
        if self.quality is not None and not self.target_format.has_quality:
            raise ValueError(f"quality does not apply to {self.target_format.value}")
        if self.lossless and self.target_format is not ImageFormat.WEBP:
            raise ValueError("lossless applies only to WEBP")
        if self.lossless and self.quality is not None:
            raise ValueError("quality and lossless are mutually exclusive")
        return self

    def produced_format(self, source_format: ImageFormat) -> ImageFormat:
        return self.target_format

    def resolve(self, source_format: Optional[ImageFormat] = None) -> "ConvertParams":
        update: Dict[str, Any] = {}
        if self.quality is None and not self.lossless and self.target_format.has_quality:
            update["quality"] = settings.DEFAULT_LOSSY_QUALITY
        # Raster sizes only apply when rasterizing SVG
        if source_format is not None and not source_format.is_vector:
            update["raster_width"] = None
            update["raster_height"] = None
        return self.model_copy(update=update)


class CropParams(OperationParams):
    output_format: Optional[ImageFormat] = None

    @field_validator("output_format", mode="before")
    @classmethod
    def normalize_format(cls, v):
        return _parse_format(v)

    def produced_format(self, source_format: ImageFormat) -> ImageFormat:
        return self.output_format or default_output_format(source_format)

    def resolve(self, source_format: Optional[ImageFormat] = None) -> "CropParams":
        if source_format is None or self.output_format is not None:
            return self
        return self.model_copy(update={"output_format": default_output_format(source_format)})


class CompressParams(OperationParams):
    target_format: Optional[ImageFormat] = None
    quality: Optional[int] = Field(None, ge=1, le=100)
    max_bytes: Optional[int] = Field(None, ge=1)

    @field_validator("target_format", mode="before")
    @classmethod
    def normalize_format(cls, v):
        return _parse_format(v)

    @model_validator(mode="after")
    def check_constraint(self):
        if (self.quality is None) == (self.max_bytes is None):
            raise ValueError("Exactly one of quality or max_bytes is required")
        return self

    def produced_format(self, source_format: ImageFormat) -> ImageFormat:
        return self.target_format or default_output_format(source_format)

    def resolve(self, source_format: Optional[ImageFormat] = None) -> "CompressParams":
        if source_format is None or self.target_format is not None:
            return self
        return self.model_copy(update={"target_format": default_output_format(source_format)})


class PaletteParams(OperationParams):
    k: int

    @field_validator("k")
    @classmethod
    def check_k(cls, v: int) -> int:
        if not 1 <= v <= settings.PALETTE_MAX_K:
            raise ValueError(f"k must be in [1, {settings.PALETTE_MAX_K}]")
        return v


class UpscaleParams(OperationParams):
    scale_factor: int

    @field_validator("scale_factor")
    @classmethod
    def check_scale(cls, v: int) -> int:
        supported = sorted(settings.UPSCALER_SUPPORTED_SCALES)
        if v not in supported:
            raise ValueError(f"scale_factor must be one of {supported}")
        return v


PARAMS_MODELS = {
    OperationKind.CONVERT: ConvertParams,
    OperationKind.CROP: CropParams,
    OperationKind.COMPRESS: CompressParams,
    OperationKind.PALETTE: PaletteParams,
    OperationKind.UPSCALE: UpscaleParams,
}


# =============================================================================
# Results and Errors
# =============================================================================

class JobError(BaseModel):
    """Structured error attached to a failed job."""
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class JobWarning(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ResultMetadata(BaseModel):
    """Metadata record produced for each successful operation."""
    operation: OperationKind
    source_checksum: str
    result_checksum: Optional[str] = None
    result_format: Optional[str] = None
    result_size_bytes: Optional[int] = None
    source_dimensions: List[int]
    result_dimensions: Optional[List[int]] = None
    degraded: Optional[bool] = None
    palette: Optional[List[Dict[str, Any]]] = None
    crop_region: Optional[Dict[str, int]] = None
    quality: Optional[int] = None
    alpha_action: Optional[str] = None
    warnings: List[JobWarning] = Field(default_factory=list)


class OperationResult:
    """Value stored in the result cache: metadata plus the result bytes."""

    # Rough per-entry bookkeeping cost charged against the cache budget
    OVERHEAD_BYTES = 1024

    def __init__(self, metadata: ResultMetadata, data: Optional[bytes] = None):
        self.metadata = metadata
        self.data = data

    @property
    def size_bytes(self) -> int:
        return (len(self.data) if self.data else 0) + self.OVERHEAD_BYTES


class JobView(BaseModel):
    """Point-in-time snapshot of a job, safe to hand to callers."""
    id: str
    operation: OperationKind
    status: JobStatus
    priority: Priority
    submitter: str
    source_checksum: str
    params: Dict[str, Any]
    fingerprint: str
    submitted_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    attempts: int = 0
    result: Optional[ResultMetadata] = None
    error: Optional[JobError] = None


# =============================================================================
# Processing Job
# =============================================================================

class ProcessingJob:
    """
    A submitted unit of work.

    While queued the job is owned by the JobQueue; once dequeued, only the
    worker running it changes its state. ``_lock`` makes the final status
    transition atomic with respect to cancel requests.
    """

    def __init__(
        self,
        operation: OperationKind,
        params: OperationParams,
        source_checksum: str,
        fingerprint: str,
        submitter: str = "anonymous",
        priority: Priority = Priority.INTERACTIVE,
        job_id: Optional[str] = None
    ):
        self.id = job_id or str(uuid.uuid4())
        self.operation = operation
        self.params = params
        self.source_checksum = source_checksum
        self.fingerprint = fingerprint
        self.submitter = submitter
        self.priority = priority

        self.status = JobStatus.QUEUED
        self.submitted_at = utc_now()
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None
        self.attempts = 0
        self.result: Optional[OperationResult] = None
        self.error: Optional[JobError] = None

        self._cancel_requested = threading.Event()
        self._lock = threading.Lock()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    def request_cancel(self) -> JobStatus:
        """
        Flag the job for cancellation.

        Returns the status observed atomically with setting the flag; a
        terminal status means the request came too late and was ignored.
        """
        with self._lock:
            if not self.status.is_terminal:
                self._cancel_requested.set()
            return self.status

    def mark_running(self):
        with self._lock:
            self.status = JobStatus.RUNNING
            self.started_at = utc_now()

    def mark_cancelled(self):
        with self._lock:
            self.status = JobStatus.CANCELLED
            self.finished_at = utc_now()

    def finish(self, result: Optional[OperationResult], error: Optional[JobError]) -> JobStatus:
        """Record the outcome; a pending cancel request discards it."""
        with self._lock:
            if self._cancel_requested.is_set():
                self.status = JobStatus.CANCELLED
            elif error is not None:
                self.status = JobStatus.FAILED
                self.error = error
            else:
                self.status = JobStatus.SUCCEEDED
                self.result = result
            self.finished_at = utc_now()
            return self.status

    def snapshot(self) -> JobView:
        with self._lock:
            return JobView(
                id=self.id,
                operation=self.operation,
                status=self.status,
                priority=self.priority,
                submitter=self.submitter,
                source_checksum=self.source_checksum,
                params=self.params.model_dump(mode="json"),
                fingerprint=self.fingerprint,
                submitted_at=self.submitted_at,
                started_at=self.started_at,
                finished_at=self.finished_at,
                attempts=self.attempts,
                result=self.result.metadata if self.result else None,
                error=self.error
            )

"""
Processing Service

Facade over storage, registry, result cache, job queue and worker pool:
submit / status / cancel / result / purge. Submission validates everything
up front, so invalid requests never reach the queue.
"""

import threading
from typing import Any, Dict, Mapping, Optional, Tuple

from pixelmill.core.config import settings
from pixelmill.core.exceptions import AlreadyTerminal, BlobNotFound, InvalidInput, JobNotFound
from pixelmill.core.logging import get_logger
from pixelmill.core.metrics import record_job_completion
from pixelmill.core.storage import IStorage, get_storage
from pixelmill.engines.codec import EncodedImage, detect_format
from pixelmill.engines.upscaler import UpscalerAdapter
from pixelmill.pipeline.cache import ResultCache, compute_fingerprint
from pixelmill.pipeline.queue import JobQueue
from pixelmill.pipeline.registry import OperationRegistry, parse_operation
from pixelmill.pipeline.schemas import (
    JobStatus,
    JobView,
    OperationResult,
    Priority,
    ProcessingJob,
    ResultMetadata,
)
from pixelmill.pipeline.worker import RetryPolicy, WorkerPool

logger = get_logger(__name__)


def _cacheable(result: OperationResult) -> bool:
    # Degraded upscales are shared with concurrent callers but not kept, so
    # a later request can still get the model's output
    return not result.metadata.degraded


class ProcessingService:
    """Owns every ProcessingJob from submission until it is purged."""

    def __init__(
        self,
        storage: IStorage,
        registry: OperationRegistry,
        cache: ResultCache,
        queue: JobQueue,
        worker_count: int = 4,
        retry_policy: Optional[RetryPolicy] = None,
        poll_interval: float = 0.5
    ):
        self.storage = storage
        self.registry = registry
        self.cache = cache
        self.queue = queue
        self.pool = WorkerPool(
            queue,
            self._execute,
            worker_count=worker_count,
            retry_policy=retry_policy,
            poll_interval=poll_interval
        )
        self._jobs: Dict[str, ProcessingJob] = {}
        self._jobs_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        storage: Optional[IStorage] = None,
        upscaler: Optional[UpscalerAdapter] = None
    ) -> "ProcessingService":
        return cls(
            storage=storage or get_storage(),
            registry=OperationRegistry(upscaler or UpscalerAdapter.from_settings()),
            cache=ResultCache(settings.CACHE_MAX_BYTES, is_cacheable=_cacheable),
            queue=JobQueue(settings.QUEUE_MAX_DEPTH, settings.MAX_IN_FLIGHT_PER_SUBMITTER),
            worker_count=settings.WORKER_COUNT,
            retry_policy=RetryPolicy.from_settings(),
            poll_interval=settings.QUEUE_POLL_INTERVAL_SECONDS
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self):
        self.pool.start()

    def stop(self, timeout: Optional[float] = 10.0):
        self.pool.stop(timeout)
        self.registry.upscaler.close()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def upload(self, data: bytes) -> str:
        """Validate and store source image bytes, returning their checksum."""
        if not data:
            raise InvalidInput("Image payload is empty")
        if len(data) > settings.MAX_IMAGE_SIZE_BYTES:
            raise InvalidInput(
                f"Image size ({len(data)} bytes) exceeds the {settings.MAX_IMAGE_SIZE_BYTES} byte limit",
                details={"size": len(data), "max_bytes": settings.MAX_IMAGE_SIZE_BYTES}
            )
        fmt = detect_format(data)
        checksum = self.storage.put(data)
        logger.info("image_uploaded", checksum=checksum, format=fmt.value, size=len(data))
        return checksum

    def submit(
        self,
        source_checksum: str,
        operation,
        params: Optional[Mapping[str, Any]] = None,
        submitter: str = "anonymous",
        priority=Priority.INTERACTIVE
    ) -> str:
        """
        Validate and enqueue a job.

        Raises:
            InvalidInput: unknown operation, bad parameters or unknown source
            UnsupportedConversion: the operation would have to write SVG
            Overloaded: queue depth limit reached
            QueueClosed: the service is stopped
        """
        kind = parse_operation(operation)
        validated = self.registry.validate(kind, params)
        try:
            priority = Priority(priority)
        except ValueError:
            raise InvalidInput(
                f"Unknown priority: {priority!r}",
                details={"supported": [p.value for p in Priority]}
            )
        if not submitter:
            raise InvalidInput("submitter must be a non-empty string")
        try:
            source_format = detect_format(self.storage.get(source_checksum))
        except BlobNotFound:
            raise InvalidInput(
                f"Unknown source image: {source_checksum}",
                details={"source_checksum": source_checksum}
            )
        self.registry.check_supported(validated, source_format)
        resolved = validated.resolve(source_format)

        job = ProcessingJob(
            operation=kind,
            params=resolved,
            source_checksum=source_checksum,
            fingerprint=compute_fingerprint(source_checksum, kind, resolved),
            submitter=submitter,
            priority=priority
        )
        with self._jobs_lock:
            self._jobs[job.id] = job
        try:
            self.queue.put(job)
        except Exception:
            with self._jobs_lock:
                self._jobs.pop(job.id, None)
            raise

        logger.info(
            "job_submitted",
            job_id=job.id,
            operation=kind.value,
            submitter=submitter,
            priority=priority.value,
            queue_depth=self.queue.depth
        )
        return job.id

    def _get_job(self, job_id: str) -> ProcessingJob:
        with self._jobs_lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def status(self, job_id: str) -> JobView:
        return self._get_job(job_id).snapshot()

    def cancel(self, job_id: str) -> JobView:
        """
        Cancel a job.

        Queued jobs are never dispatched. Running jobs finish their current
        operation, then their result is discarded.

        Raises:
            AlreadyTerminal: the job already finished
        """
        job = self._get_job(job_id)
        observed = job.request_cancel()
        if observed.is_terminal:
            raise AlreadyTerminal(job_id, observed.value)
        if self.queue.cancel_queued(job):
            record_job_completion(job.operation.value, JobStatus.CANCELLED.value)
        logger.info("job_cancel_requested", job_id=job_id, observed_status=observed.value)
        return job.snapshot()

    def result(self, job_id: str) -> Tuple[ResultMetadata, Optional[bytes]]:
        """Metadata record and result bytes (None for palette) of a succeeded job."""
        job = self._get_job(job_id)
        view = job.snapshot()
        if view.status is not JobStatus.SUCCEEDED or view.result is None:
            raise InvalidInput(
                f"Job {job_id} has no result (status: {view.status.value})",
                job_id=job_id,
                details={"status": view.status.value}
            )
        data = None
        if view.result.result_checksum:
            data = self.storage.get(view.result.result_checksum)
        return view.result, data

    def purge(self, job_id: str):
        """Forget a terminal job; storage blobs are left to their lifecycle owner."""
        job = self._get_job(job_id)
        if not job.status.is_terminal:
            raise InvalidInput(
                f"Job {job_id} is still {job.status.value} and cannot be purged",
                job_id=job_id
            )
        with self._jobs_lock:
            self._jobs.pop(job_id, None)
        logger.info("job_purged", job_id=job_id)

    def stats(self) -> Dict[str, Any]:
        with self._jobs_lock:
            counts: Dict[str, int] = {}
            for job in self._jobs.values():
                counts[job.status.value] = counts.get(job.status.value, 0) + 1
        return {
            "jobs": counts,
            "queue_depth": self.queue.depth,
            "cache": self.cache.stats(),
            "workers": self.pool.worker_count,
        }

    # -------------------------------------------------------------------------
    # Worker side
    # -------------------------------------------------------------------------

    def _execute(self, job: ProcessingJob) -> OperationResult:
        return self.cache.get_or_compute(
            job.fingerprint,
            lambda: self._compute(job),
            keep=lambda: not job.cancel_requested
        )

    def _compute(self, job: ProcessingJob) -> OperationResult:
        source = EncodedImage.from_bytes(self.storage.get(job.source_checksum))
        output = self.registry.execute(job.operation, job.params, source)

        result_checksum = None
        data = None
        if output.encoded is not None:
            data = output.encoded.data
            result_checksum = self.storage.put(data)

        metadata = self.registry.build_metadata(job.operation, source, output, result_checksum)
        return OperationResult(metadata=metadata, data=data)

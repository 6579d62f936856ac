"""
Worker Pool

Fixed set of threads, each taking one job at a time from the JobQueue and
running it to completion. Transient failures (the upscaler being
unavailable) are retried with exponential backoff up to a fixed number of
attempts; every other failure ends the job immediately. Errors are caught
here and recorded on the job, so a failing job never takes a worker down.
"""

import threading
import traceback
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from pixelmill.core.config import settings
from pixelmill.core.exceptions import PixelMillError
from pixelmill.core.logging import LogContext, get_logger
from pixelmill.core.metrics import job_retries_total, record_job_completion, track_job_latency
from pixelmill.pipeline.queue import JobQueue
from pixelmill.pipeline.schemas import JobError, JobStatus, OperationResult, ProcessingJob

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 8.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            backoff_base=settings.RETRY_BACKOFF_BASE_SECONDS,
            backoff_max=settings.RETRY_BACKOFF_MAX_SECONDS
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after the ``attempt``-th failure (1-based)."""
        return min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))


def error_from_exception(exc: BaseException) -> JobError:
    if isinstance(exc, PixelMillError):
        return JobError(code=exc.error_code, message=exc.message, details=exc.details)
    return JobError(
        code=PixelMillError.error_code,
        message=f"Unexpected {type(exc).__name__}: {exc}",
        details={"error_type": type(exc).__name__}
    )


class WorkerPool:
    """Runs jobs from a JobQueue on ``worker_count`` threads."""

    def __init__(
        self,
        queue: JobQueue,
        executor: Callable[[ProcessingJob], OperationResult],
        worker_count: int = 4,
        retry_policy: Optional[RetryPolicy] = None,
        poll_interval: float = 0.5
    ):
        self.queue = queue
        self.executor = executor
        self.worker_count = worker_count
        self.retry_policy = retry_policy or RetryPolicy()
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self):
        if self._threads:
            return
        self._stop.clear()
        self.queue.reopen()
        for idx in range(self.worker_count):
            thread = threading.Thread(
                target=self._run,
                name=f"pixelmill-worker-{idx}",
                daemon=True
            )
            thread.start()
            self._threads.append(thread)
        logger.info("worker_pool_started", workers=self.worker_count)

    def stop(self, timeout: Optional[float] = 10.0):
        """Stop taking jobs; jobs already running finish their current operation."""
        self._stop.set()
        self.queue.close()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("worker_pool_stopped")

    def _run(self):
        while not self._stop.is_set():
            job = self.queue.get(timeout=self.poll_interval)
            if job is None:
                continue
            try:
                self.process(job)
            finally:
                self.queue.release(job)

    def process(self, job: ProcessingJob):
        """Run one job to a terminal state."""
        operation = job.operation.value
        with LogContext(job_id=job.id, stage=operation):
            if job.cancel_requested:
                job.mark_cancelled()
                record_job_completion(operation, JobStatus.CANCELLED.value)
                logger.info("job_skipped_cancelled")
                return

            job.mark_running()
            logger.info("job_started", submitter=job.submitter, priority=job.priority.value)

            with track_job_latency(operation) as tracker:
                result, error = self._execute_with_retry(job)
                status = job.finish(result, error)
                tracker["status"] = status.value

            record_job_completion(operation, status.value)
            if status is JobStatus.SUCCEEDED:
                logger.info("job_succeeded", attempts=job.attempts)
            elif status is JobStatus.CANCELLED:
                logger.info("job_cancelled_while_running", discarded_result=result is not None)
            else:
                logger.warning(
                    "job_failed",
                    error_code=error.code,
                    error=error.message,
                    attempts=job.attempts
                )

    def _execute_with_retry(self, job: ProcessingJob) -> Tuple[Optional[OperationResult], Optional[JobError]]:
        attempt = 0
        last_error: Optional[BaseException] = None

        while attempt < self.retry_policy.max_attempts:
            attempt += 1
            job.attempts = attempt
            try:
                return self.executor(job), None
            except PixelMillError as e:
                last_error = e
                if not e.transient:
                    break
            except Exception as e:
                logger.error(
                    "job_unexpected_error",
                    error=str(e),
                    error_type=type(e).__name__,
                    traceback=traceback.format_exc()
                )
                last_error = e
                break

            if attempt >= self.retry_policy.max_attempts or job.cancel_requested:
                break
            delay = self.retry_policy.delay_for(attempt)
            job_retries_total.labels(operation=job.operation.value).inc()
            logger.warning(
                "job_retry_scheduled",
                attempt=attempt,
                delay_seconds=delay,
                error_code=last_error.error_code,
                error=last_error.message
            )
            if self._stop.wait(delay):
                break

        return None, error_from_exception(last_error)

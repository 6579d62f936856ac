"""
Job Queue

Bounded multi-producer/multi-consumer queue with priority classes and a
per-submitter cap on jobs in flight. Within a class, jobs leave in
submission order, skipping only jobs whose submitter is at the cap; those
stay queued until one of the submitter's jobs is released.
"""

import threading
import time
from collections import deque
from typing import Deque, Dict, Optional

from pixelmill.core.exceptions import Overloaded, QueueClosed
from pixelmill.core.logging import get_logger
from pixelmill.core.metrics import queue_depth_gauge
from pixelmill.pipeline.schemas import Priority, ProcessingJob

logger = get_logger(__name__)


class JobQueue:
    """Shared queue; the lock is held only for enqueue/dequeue bookkeeping."""

    def __init__(self, max_depth: int, max_in_flight_per_submitter: int):
        if max_depth < 1 or max_in_flight_per_submitter < 1:
            raise ValueError("max_depth and max_in_flight_per_submitter must be positive")
        self.max_depth = max_depth
        self.max_in_flight_per_submitter = max_in_flight_per_submitter

        self._cond = threading.Condition()
        self._classes: Dict[Priority, Deque[ProcessingJob]] = {
            p: deque() for p in sorted(Priority, key=lambda p: p.rank)
        }
        self._in_flight: Dict[str, int] = {}
        self._holding: set = set()
        self._depth = 0
        self._closed = False

    @property
    def depth(self) -> int:
        return self._depth

    def in_flight(self, submitter: str) -> int:
        with self._cond:
            return self._in_flight.get(submitter, 0)

    def put(self, job: ProcessingJob):
        """
        Enqueue a job.

        Raises:
            QueueClosed: the queue was closed and not reopened
            Overloaded: the queue already holds max_depth jobs
        """
        with self._cond:
            if self._closed:
                raise QueueClosed(job_id=job.id)
            if self._depth >= self.max_depth:
                raise Overloaded(self._depth, job_id=job.id)
            self._classes[job.priority].append(job)
            self._depth += 1
            queue_depth_gauge.set(self._depth)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[ProcessingJob]:
        """
        Take the next eligible job, waiting up to ``timeout`` seconds.

        Returns None on timeout or once the queue is closed.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                job = self._take_next()
                if job is not None:
                    return job
                if self._closed:
                    return None
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def _take_next(self) -> Optional[ProcessingJob]:
        for jobs in self._classes.values():
            for idx, job in enumerate(jobs):
                # Cancelled jobs hold no slot, so the cap never blocks them
                if job.cancel_requested:
                    del jobs[idx]
                    self._depth -= 1
                    queue_depth_gauge.set(self._depth)
                    return job
                if self._in_flight.get(job.submitter, 0) < self.max_in_flight_per_submitter:
                    del jobs[idx]
                    self._depth -= 1
                    self._in_flight[job.submitter] = self._in_flight.get(job.submitter, 0) + 1
                    self._holding.add(job.id)
                    queue_depth_gauge.set(self._depth)
                    return job
        return None

    def cancel_queued(self, job: ProcessingJob) -> bool:
        """
        Remove a still-queued job and mark it cancelled.

        Returns False if a worker already took it.
        """
        with self._cond:
            jobs = self._classes[job.priority]
            try:
                jobs.remove(job)
            except ValueError:
                return False
            self._depth -= 1
            queue_depth_gauge.set(self._depth)
            job.mark_cancelled()
        logger.info("job_cancelled_while_queued", job_id=job.id)
        return True

    def release(self, job: ProcessingJob):
        """Free the submitter slot a dequeued job was holding."""
        with self._cond:
            if job.id not in self._holding:
                return
            self._holding.discard(job.id)
            remaining = self._in_flight.get(job.submitter, 0) - 1
            if remaining > 0:
                self._in_flight[job.submitter] = remaining
            else:
                self._in_flight.pop(job.submitter, None)
            # A capped job of this submitter may now be eligible
            self._cond.notify_all()

    def close(self):
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def reopen(self):
        """Accept jobs again after close(); jobs left queued are kept."""
        with self._cond:
            self._closed = False

"""
Prometheus Metrics for Observability

Tracks job throughput, queue pressure, cache effectiveness and upscaler
health. Exposed through GET /api/v1/metrics for Prometheus scraping.
"""

import time
from contextlib import contextmanager

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

# HTTP
http_requests_total = Counter(
    "pixelmill_http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "pixelmill_http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)

# Jobs
jobs_total = Counter(
    "pixelmill_jobs_total",
    "Total number of jobs that reached a terminal state",
    labelnames=["operation", "status"]
)

job_duration_seconds = Histogram(
    "pixelmill_job_duration_seconds",
    "Wall time from job start to terminal state",
    labelnames=["operation", "status"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
)

job_retries_total = Counter(
    "pixelmill_job_retries_total",
    "Retries scheduled after transient failures",
    labelnames=["operation"]
)

queue_depth_gauge = Gauge(
    "pixelmill_queue_depth",
    "Number of jobs waiting in the queue"
)

active_jobs_gauge = Gauge(
    "pixelmill_active_jobs",
    "Number of jobs currently being processed by workers"
)

# Result cache
cache_requests_total = Counter(
    "pixelmill_cache_requests_total",
    "Result cache lookups",
    labelnames=["result"]  # hit, miss, shared
)

cache_evictions_total = Counter(
    "pixelmill_cache_evictions_total",
    "Entries evicted from the result cache"
)

cache_bytes_gauge = Gauge(
    "pixelmill_cache_bytes",
    "Bytes currently held by the result cache"
)

# Upscaler
upscaler_calls_total = Counter(
    "pixelmill_upscaler_calls_total",
    "Upscale requests by outcome",
    labelnames=["outcome"]  # remote, fallback, unavailable
)

# Compression
compression_encodes = Histogram(
    "pixelmill_compression_encodes",
    "Encode passes needed by the compression tuner",
    labelnames=["format"],
    buckets=[1, 2, 3, 4, 5, 6, 7, 8]
)

# Application Info
app_info = Info(
    "pixelmill_app",
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


@contextmanager
def track_job_latency(operation: str):
    """
    Context manager that records job duration and terminal status.

    The body may set ``tracker["status"]`` to override the default
    ("succeeded", or "failed" if an exception escapes).
    """
    start = time.time()
    tracker = {"status": "succeeded"}
    active_jobs_gauge.inc()
    try:
        yield tracker
    except Exception:
        tracker["status"] = "failed"
        raise
    finally:
        active_jobs_gauge.dec()
        job_duration_seconds.labels(
            operation=operation, status=tracker["status"]
        ).observe(time.time() - start)


def record_job_completion(operation: str, status: str):
    """Record job completion."""
    jobs_total.labels(operation=operation, status=status).inc()


def record_cache_request(result: str):
    cache_requests_total.labels(result=result).inc()


def record_upscaler_call(outcome: str):
    upscaler_calls_total.labels(outcome=outcome).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST

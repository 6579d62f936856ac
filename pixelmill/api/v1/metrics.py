"""
Metrics Endpoint

GET /api/v1/metrics - Prometheus metrics endpoint
"""

from fastapi import APIRouter, Response

from pixelmill.core.metrics import get_metrics, get_metrics_content_type

router = APIRouter()


@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Exposes:
    - pixelmill_jobs_total / pixelmill_job_duration_seconds
    - pixelmill_queue_depth / pixelmill_active_jobs
    - pixelmill_cache_requests_total / pixelmill_cache_bytes
    - pixelmill_upscaler_calls_total
    - pixelmill_http_requests_total
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )

"""
API v1 Router Module

All v1 endpoints are prefixed with /api/v1/

- /api/v1/images - Upload source images
- /api/v1/jobs - Submit, poll, cancel jobs and fetch results
- /api/v1/metrics - Prometheus metrics
"""

from fastapi import APIRouter

from pixelmill.api.v1.images import router as images_router
from pixelmill.api.v1.jobs import router as jobs_router
from pixelmill.api.v1.metrics import router as metrics_router

api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(images_router, prefix="/images", tags=["images"])
api_v1_router.include_router(jobs_router, prefix="/jobs", tags=["jobs"])
api_v1_router.include_router(metrics_router, tags=["metrics"])

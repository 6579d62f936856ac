"""
Job Endpoints

POST   /api/v1/jobs                      - Submit a job
GET    /api/v1/jobs/{job_id}             - Job status snapshot
DELETE /api/v1/jobs/{job_id}             - Cancel a queued or running job
GET    /api/v1/jobs/{job_id}/result      - Result metadata record
GET    /api/v1/jobs/{job_id}/result/image - Result image bytes
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field

from pixelmill.api.dependencies import get_service
from pixelmill.core.exceptions import InvalidInput
from pixelmill.engines.codec import ImageFormat
from pixelmill.pipeline.schemas import JobView, Priority, ResultMetadata
from pixelmill.pipeline.service import ProcessingService

router = APIRouter()


# =============================================================================
# Request / Response Schemas
# =============================================================================

class SubmitJobRequest(BaseModel):
    """Job submission payload. Parameters are validated per operation."""
    source_checksum: str = Field(..., min_length=64, max_length=64)
    operation: str = Field(..., description="convert | crop | compress | palette | upscale")
    params: Dict[str, Any] = Field(default_factory=dict)
    submitter: str = Field(default="anonymous", min_length=1, max_length=128)
    priority: Priority = Priority.INTERACTIVE


class SubmitJobResponse(BaseModel):
    job_id: str
    status: str
    status_url: str


# =============================================================================
# Endpoints
# =============================================================================

@router.post("", response_model=SubmitJobResponse, status_code=202)
def submit_job(
    request: SubmitJobRequest,
    service: ProcessingService = Depends(get_service)
):
    """
    Submit a job against a previously uploaded image.

    Invalid operations or parameters are rejected here (400) and never
    queued. A full queue answers 429.
    """
    job_id = service.submit(
        request.source_checksum,
        request.operation,
        request.params,
        submitter=request.submitter,
        priority=request.priority
    )
    return SubmitJobResponse(
        job_id=job_id,
        status=service.status(job_id).status.value,
        status_url=f"/api/v1/jobs/{job_id}"
    )


@router.get("/{job_id}", response_model=JobView)
def get_job(
    job_id: str,
    service: ProcessingService = Depends(get_service)
):
    return service.status(job_id)


@router.delete("/{job_id}", response_model=JobView)
def cancel_job(
    job_id: str,
    purge: bool = False,
    service: ProcessingService = Depends(get_service)
):
    """
    Cancel a job. A terminal job answers 409, unless purge=true, in which
    case its record is removed instead.
    """
    if purge:
        view = service.status(job_id)
        service.purge(job_id)
        return view
    return service.cancel(job_id)


@router.get("/{job_id}/result", response_model=ResultMetadata)
def get_job_result(
    job_id: str,
    service: ProcessingService = Depends(get_service)
):
    metadata, _ = service.result(job_id)
    return metadata


@router.get("/{job_id}/result/image")
def get_job_result_image(
    job_id: str,
    service: ProcessingService = Depends(get_service)
):
    metadata, data = service.result(job_id)
    if data is None:
        raise InvalidInput(
            f"Operation {metadata.operation.value} does not produce an image",
            job_id=job_id
        )
    media_type = ImageFormat(metadata.result_format).mime_type
    return Response(
        content=data,
        media_type=media_type,
        headers={"ETag": f'"{metadata.result_checksum}"'}
    )

"""
Image Upload Endpoint

POST /api/v1/images - Store raw image bytes, returns the content checksum
used as source_checksum when submitting jobs.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from pixelmill.api.dependencies import get_service
from pixelmill.engines.codec import detect_format
from pixelmill.pipeline.service import ProcessingService

router = APIRouter()


class UploadResponse(BaseModel):
    checksum: str
    format: str
    size_bytes: int


@router.post("", response_model=UploadResponse, status_code=201)
async def upload_image(
    request: Request,
    service: ProcessingService = Depends(get_service)
):
    """
    Upload a source image as the raw request body.

    Identical bytes always map to the same checksum, so re-uploading is free.
    """
    data = await request.body()
    checksum = await run_in_threadpool(service.upload, data)
    return UploadResponse(
        checksum=checksum,
        format=detect_format(data).value,
        size_bytes=len(data)
    )

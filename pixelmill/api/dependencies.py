"""
FastAPI Dependencies

The ProcessingService is built once in the application lifespan and kept on
app.state; handlers receive it through get_service.
"""

from fastapi import Request

from pixelmill.pipeline.service import ProcessingService


def get_service(request: Request) -> ProcessingService:
    return request.app.state.service

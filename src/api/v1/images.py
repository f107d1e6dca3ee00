"""
Images Endpoint

GET    /api/v1/images                          - List the caller's images
POST   /api/v1/images                          - Upload an image
GET    /api/v1/images/{image_id}               - Download (optionally ?format=)
GET    /api/v1/images/{image_id}/metadata      - Image record
POST   /api/v1/images/{image_id}/transform     - Queue a transformation (202)
POST   /api/v1/images/{image_id}/transform/sync - Transform and return bytes
GET    /api/v1/images/{image_id}/status        - Processing status
GET    /api/v1/images/{image_id}/jobs          - Jobs for the image
DELETE /api/v1/images/{image_id}               - Delete image and cached outputs
"""

from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends, File, Query, Response, UploadFile
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from src.api.dependencies import get_owner_id, get_transformation_service
from src.core.logging import get_logger
from src.modules.imagery.services import TransformationService, TransformOutput

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Request Schemas
# =============================================================================

class TransformRequest(BaseModel):
    """Transformation request; the spec itself is validated by the service."""
    transformations: Dict[str, Any] = Field(default_factory=dict)


def _image_response(result: TransformOutput) -> Response:
    headers = {"X-Cache": "HIT" if result.cache_hit else "MISS"}
    if result.output.get("filename"):
        headers["Content-Disposition"] = f'inline; filename="{result.output["filename"]}"'
    return Response(content=result.data, media_type=result.content_type, headers=headers)


# =============================================================================
# Endpoints
# =============================================================================

@router.get("")
async def list_images(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    owner_id: str = Depends(get_owner_id),
    service: TransformationService = Depends(get_transformation_service)
):
    return await run_in_threadpool(service.list_images, owner_id, page, limit)


@router.post("", status_code=201)
async def upload_image(
    image: UploadFile = File(...),
    owner_id: str = Depends(get_owner_id),
    service: TransformationService = Depends(get_transformation_service)
):
    """Upload a new image (multipart field ``image``)."""
    data = await image.read()
    logger.info("upload_received", filename=image.filename, size=len(data))

    record = await run_in_threadpool(
        service.register_image,
        owner_id,
        image.filename or "upload",
        image.content_type,
        data
    )
    return {"image": record.to_response_dict()}


@router.get("/{image_id}")
async def get_image(
    image_id: str,
    format: Optional[str] = Query(None, description="Convert to this format"),
    owner_id: str = Depends(get_owner_id),
    service: TransformationService = Depends(get_transformation_service)
):
    result = await run_in_threadpool(service.get_image, image_id, owner_id, format)
    return _image_response(result)


@router.get("/{image_id}/metadata")
async def get_image_metadata(
    image_id: str,
    owner_id: str = Depends(get_owner_id),
    service: TransformationService = Depends(get_transformation_service)
):
    record = await run_in_threadpool(service.load_image, image_id, owner_id)
    return {"image": record.to_response_dict()}


@router.post("/{image_id}/transform", status_code=202)
async def transform_image(
    image_id: str,
    request: TransformRequest,
    owner_id: str = Depends(get_owner_id),
    service: TransformationService = Depends(get_transformation_service)
):
    """
    Queue a transformation job.

    Returns immediately with the job id; poll /status or /api/v1/jobs/{job_id}.
    """
    return await run_in_threadpool(service.request_transform, image_id, owner_id, request.transformations)


@router.post("/{image_id}/transform/sync")
async def transform_image_sync(
    image_id: str,
    request: TransformRequest,
    owner_id: str = Depends(get_owner_id),
    service: TransformationService = Depends(get_transformation_service)
):
    """Transform in a worker thread and return the image bytes."""
    result = await run_in_threadpool(service.transform_sync, image_id, owner_id, request.transformations)
    return _image_response(result)


@router.get("/{image_id}/status")
async def get_transformation_status(
    image_id: str,
    owner_id: str = Depends(get_owner_id),
    service: TransformationService = Depends(get_transformation_service)
):
    return await run_in_threadpool(service.get_status, image_id, owner_id)


@router.get("/{image_id}/jobs")
async def list_image_jobs(
    image_id: str,
    owner_id: str = Depends(get_owner_id),
    service: TransformationService = Depends(get_transformation_service)
):
    jobs = await run_in_threadpool(service.list_jobs, image_id, owner_id)
    return {"imageId": image_id, "jobs": jobs}


@router.delete("/{image_id}")
async def delete_image(
    image_id: str,
    owner_id: str = Depends(get_owner_id),
    service: TransformationService = Depends(get_transformation_service)
):
    return await run_in_threadpool(service.delete_image, image_id, owner_id)

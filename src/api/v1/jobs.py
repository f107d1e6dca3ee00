"""
Jobs Endpoint

GET /api/v1/jobs/{job_id} - Current state of one transformation job
"""

from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool

from src.api.dependencies import get_owner_id, get_transformation_service
from src.modules.imagery.services import TransformationService

router = APIRouter()


@router.get("/{job_id}")
async def get_job(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    service: TransformationService = Depends(get_transformation_service)
):
    return await run_in_threadpool(service.get_job, job_id, owner_id)

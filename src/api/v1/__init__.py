"""
API v1 Router Module - Image Transformation Service

All v1 endpoints are prefixed with /api/v1/

- /api/v1/images/* - Upload, download and transform images
- /api/v1/jobs/*   - Asynchronous job lookup
- /api/v1/metrics  - Prometheus scraping
"""

from fastapi import APIRouter

from src.api.v1.images import router as images_router
from src.api.v1.jobs import router as jobs_router
from src.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(images_router, prefix="/images", tags=["images"])
api_v1_router.include_router(jobs_router, prefix="/jobs", tags=["jobs"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
